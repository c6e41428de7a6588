import json
import logging
import os
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional, Tuple

logger = logging.getLogger(__name__)

CONFIG_FILE = Path("config.json")
DEFAULT_CONFIG_FILE = Path("config.default.json")
ENV_FILE = Path(".env")

DEFAULT_CONFIG_FALLBACK: Dict[str, Any] = {
    "UPLOADS_DIR": "./uploads",
    "CONFIGS_DIR": "./configs",
    "STAGING_SUBDIR": ".processing",
    "THUMBNAIL_SUFFIX": "_thumb.jpg",
    "UPLOAD_FIELD": "images",
    "MAX_FILES": 20,
    "MAX_IMAGE_MB": 50,
    "MAX_VIDEO_MB": 500,
    "ALLOWED_IMAGE_TYPES": [
        "image/jpeg",
        "image/png",
        "image/gif",
        "image/webp",
        "image/heic",
        "image/heif",
    ],
    "ALLOWED_VIDEO_TYPES": [
        "video/mp4",
        "video/webm",
        "video/quicktime",
        "video/x-msvideo",
        "video/x-matroska",
    ],
    "LANDSCAPE_WIDTH": 1920,
    "LANDSCAPE_HEIGHT": 1080,
    "PORTRAIT_WIDTH": 1080,
    "PORTRAIT_HEIGHT": 1920,
    "WEBP_QUALITY": 92,
    "VIDEO_CODEC": "libx264",
    "VIDEO_PRESET": "ultrafast",
    "VIDEO_CRF": 23,
    "VIDEO_MAX_WIDTH": 1280,
    "VIDEO_MAX_HEIGHT": 720,
    "VIDEO_AUDIO_CODEC": "aac",
    "VIDEO_AUDIO_BITRATE": "128k",
    "VIDEO_TIMEOUT_SECS": 3600,
    "THUMBNAIL_WIDTH": 320,
    "THUMBNAIL_SEEK_SECS": 2,
    "PROCESSING_WORKERS": 1,
    "FFMPEG_PATH": "ffmpeg",
    "FFPROBE_PATH": "ffprobe",
    "SOCKETIO_ASYNC_MODE": "threading",
    "CORS_ALLOWED_ORIGINS": "*",
    "HOST": "0.0.0.0",
    "PORT": 4000,
    "DEBUG": False,
    "ALLOW_UNSAFE_WERKZEUG": True,
    "logging": {
        "level": "INFO",
    },
}


@dataclass(frozen=True)
class MediaSettings:
    """Typed view over the merged configuration consumed by the media services."""

    uploads_dir: Path
    configs_dir: Path
    staging_subdir: str
    thumbnail_suffix: str
    upload_field: str
    max_files: int
    max_image_bytes: int
    max_video_bytes: int
    allowed_image_types: Tuple[str, ...]
    allowed_video_types: Tuple[str, ...]
    landscape_box: Tuple[int, int]
    portrait_box: Tuple[int, int]
    webp_quality: int
    video_codec: str
    video_preset: str
    video_crf: int
    video_max_width: int
    video_max_height: int
    video_audio_codec: str
    video_audio_bitrate: str
    video_timeout_secs: float
    thumbnail_width: int
    thumbnail_seek_secs: float
    processing_workers: int
    ffmpeg_path: str
    ffprobe_path: str
    socketio_async_mode: str
    cors_allowed_origins: str
    host: str
    port: int
    debug: bool
    allow_unsafe_werkzeug: bool
    log_level: str

    @classmethod
    def from_config(cls, cfg: Dict[str, Any]) -> "MediaSettings":
        merged = _deep_merge(DEFAULT_CONFIG_FALLBACK, cfg or {})
        logging_cfg = merged.get("logging") if isinstance(merged.get("logging"), dict) else {}
        staging_subdir = str(merged.get("STAGING_SUBDIR") or ".processing").strip().strip("/\\")
        return cls(
            uploads_dir=Path(str(merged["UPLOADS_DIR"])).expanduser(),
            configs_dir=Path(str(merged["CONFIGS_DIR"])).expanduser(),
            staging_subdir=staging_subdir or ".processing",
            thumbnail_suffix=str(merged.get("THUMBNAIL_SUFFIX") or "_thumb.jpg"),
            upload_field=str(merged.get("UPLOAD_FIELD") or "images"),
            max_files=max(1, _as_int(merged.get("MAX_FILES"), 20)),
            max_image_bytes=max(1, _as_int(merged.get("MAX_IMAGE_MB"), 50)) * 1024 * 1024,
            max_video_bytes=max(1, _as_int(merged.get("MAX_VIDEO_MB"), 500)) * 1024 * 1024,
            allowed_image_types=tuple(_normalize_list(merged.get("ALLOWED_IMAGE_TYPES"))),
            allowed_video_types=tuple(_normalize_list(merged.get("ALLOWED_VIDEO_TYPES"))),
            landscape_box=(
                max(1, _as_int(merged.get("LANDSCAPE_WIDTH"), 1920)),
                max(1, _as_int(merged.get("LANDSCAPE_HEIGHT"), 1080)),
            ),
            portrait_box=(
                max(1, _as_int(merged.get("PORTRAIT_WIDTH"), 1080)),
                max(1, _as_int(merged.get("PORTRAIT_HEIGHT"), 1920)),
            ),
            webp_quality=min(100, max(1, _as_int(merged.get("WEBP_QUALITY"), 92))),
            video_codec=str(merged.get("VIDEO_CODEC") or "libx264"),
            video_preset=str(merged.get("VIDEO_PRESET") or "ultrafast"),
            video_crf=min(51, max(0, _as_int(merged.get("VIDEO_CRF"), 23))),
            video_max_width=max(2, _as_int(merged.get("VIDEO_MAX_WIDTH"), 1280)),
            video_max_height=max(2, _as_int(merged.get("VIDEO_MAX_HEIGHT"), 720)),
            video_audio_codec=str(merged.get("VIDEO_AUDIO_CODEC") or "aac"),
            video_audio_bitrate=str(merged.get("VIDEO_AUDIO_BITRATE") or "128k"),
            video_timeout_secs=max(0.0, _as_float(merged.get("VIDEO_TIMEOUT_SECS"), 3600.0)),
            thumbnail_width=max(16, _as_int(merged.get("THUMBNAIL_WIDTH"), 320)),
            thumbnail_seek_secs=max(0.0, _as_float(merged.get("THUMBNAIL_SEEK_SECS"), 2.0)),
            processing_workers=max(1, _as_int(merged.get("PROCESSING_WORKERS"), 1)),
            ffmpeg_path=str(merged.get("FFMPEG_PATH") or "ffmpeg"),
            ffprobe_path=str(merged.get("FFPROBE_PATH") or "ffprobe"),
            socketio_async_mode=str(merged.get("SOCKETIO_ASYNC_MODE") or "threading"),
            cors_allowed_origins=str(merged.get("CORS_ALLOWED_ORIGINS") or "*"),
            host=str(merged.get("HOST") or "0.0.0.0"),
            port=_as_int(merged.get("PORT"), 4000),
            debug=_as_bool(merged.get("DEBUG"), False),
            allow_unsafe_werkzeug=_as_bool(merged.get("ALLOW_UNSAFE_WERKZEUG"), True),
            log_level=str(logging_cfg.get("level") or "INFO").upper(),
        )

    @property
    def max_upload_bytes(self) -> int:
        return max(self.max_image_bytes, self.max_video_bytes)


def _parse_env_lines(text: str) -> Iterator[Tuple[str, str]]:
    for raw in text.splitlines():
        line = raw.strip()
        if line.startswith("export "):
            line = line[len("export ") :].lstrip()
        if not line or line.startswith("#"):
            continue
        key, sep, value = line.partition("=")
        key = key.strip()
        if sep and key:
            yield key, value.strip().strip("'\"")


def load_env_file(env_path: Path = ENV_FILE) -> Dict[str, str]:
    """Export ``KEY=value`` lines from ``env_path``; variables already set win."""

    env_path = Path(env_path)
    try:
        text = env_path.read_text(encoding="utf-8")
    except FileNotFoundError:
        return {}
    except OSError as exc:
        logger.warning("Could not read env file '%s': %s", env_path, exc)
        return {}
    exported: Dict[str, str] = {}
    for key, value in _parse_env_lines(text):
        if os.environ.get(key):
            continue
        os.environ[key] = value
        exported[key] = value
    return exported


def ensure_config_file(
    config_path: Path = CONFIG_FILE,
    default_path: Path = DEFAULT_CONFIG_FILE,
    default_fallback: Optional[Dict[str, Any]] = None,
) -> Dict[str, Any]:
    """Create or upgrade the user config so it carries every shipped key."""

    defaults = _load_json(default_path) or dict(default_fallback or DEFAULT_CONFIG_FALLBACK)
    config_path = Path(config_path)
    existed = config_path.is_file()
    user_config = (_load_json(config_path) or {}) if existed else {}
    added = _merge_defaults(user_config, defaults)
    if added or not existed:
        if added and existed:
            logger.info("config.upgrade path=%s added=%s", config_path, ",".join(added))
        _write_json(config_path, user_config)
    return user_config


def load_config(
    config_path: Path = CONFIG_FILE,
    default_path: Path = DEFAULT_CONFIG_FILE,
    env_path: Path = ENV_FILE,
) -> Dict[str, Any]:
    """Shipped defaults, overlaid by ``config.json``, overlaid by the environment."""

    load_env_file(env_path)
    user_config = ensure_config_file(config_path, default_path)
    defaults = _load_json(default_path) or dict(DEFAULT_CONFIG_FALLBACK)
    merged = _deep_merge(defaults, user_config)
    merged.update(_collect_environment_overrides(merged))
    return merged


def _collect_environment_overrides(base: Dict[str, Any]) -> Dict[str, Any]:
    # Only top-level scalar and list keys are addressable; LOG_LEVEL maps into ``logging``.
    overrides: Dict[str, Any] = {}
    for key, current in base.items():
        if isinstance(current, dict):
            continue
        env_value = os.environ.get(key, "")
        if not env_value:
            continue
        overrides[key] = _normalize_list(env_value) if isinstance(current, (list, tuple)) else env_value
    level = os.environ.get("LOG_LEVEL", "").strip()
    if level:
        overrides["logging"] = {**(base.get("logging") or {}), "level": level}
    return overrides


def _normalize_list(value: Any) -> List[str]:
    """Accept a JSON array, a comma/space separated string or a sequence of MIME types."""

    if isinstance(value, str):
        text = value.strip()
        if text.startswith("["):
            try:
                value = json.loads(text)
            except json.JSONDecodeError:
                logger.warning("Ignoring malformed list value %r", text)
                return []
        else:
            value = re.split(r"[,\s]+", text)
    if not isinstance(value, (list, tuple, set)):
        return []
    result: List[str] = []
    for item in value:
        normalized = str(item).strip().lower()
        if normalized and normalized not in result:
            result.append(normalized)
    return result


def _as_int(value: Any, default: int) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        return default


def _as_bool(value: Any, default: bool) -> bool:
    if isinstance(value, bool):
        return value
    text = str(value if value is not None else "").strip().lower()
    if text in ("1", "true", "yes", "on"):
        return True
    if text in ("0", "false", "no", "off"):
        return False
    return default


def _as_float(value: Any, default: float) -> float:
    try:
        return float(value)
    except (TypeError, ValueError):
        return default


def _deep_merge(base: Dict[str, Any], overlay: Dict[str, Any]) -> Dict[str, Any]:
    merged = dict(base)
    for key, value in overlay.items():
        if value is None:
            continue
        if isinstance(merged.get(key), dict) and isinstance(value, dict):
            merged[key] = _deep_merge(merged[key], value)
        else:
            merged[key] = value
    return merged


def _merge_defaults(target: Dict[str, Any], defaults: Dict[str, Any], prefix: str = "") -> List[str]:
    """Copy keys missing from ``target``; return their dotted names."""

    added: List[str] = []
    for key, value in defaults.items():
        current = target.get(key)
        if key not in target:
            target[key] = value
            added.append(prefix + key)
        elif isinstance(current, dict) and isinstance(value, dict):
            added.extend(_merge_defaults(current, value, f"{prefix}{key}."))
    return added


def _load_json(path: Path) -> Optional[Dict[str, Any]]:
    path = Path(path)
    if not path.is_file():
        return None
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError) as exc:
        logger.warning("Failed to load JSON config '%s': %s", path, exc)
        return None
    if not isinstance(data, dict):
        logger.warning("Ignoring JSON config '%s': expected an object", path)
        return None
    return data


def _write_json(path: Path, data: Dict[str, Any]) -> None:
    path = Path(path)
    staging = path.with_name(f"{path.name}.tmp")
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        staging.write_text(json.dumps(data, indent=2) + "\n", encoding="utf-8")
        os.replace(staging, path)
    except OSError as exc:
        logger.warning("Failed to write JSON config '%s': %s", path, exc)
