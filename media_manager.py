from __future__ import annotations

import logging
import os
import re
import shutil
import time
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING, Any, Dict, FrozenSet, Iterable, List, Optional, Sequence

from werkzeug.datastructures import FileStorage

if TYPE_CHECKING:  # pragma: no cover
    from config_manager import MediaSettings
    from side_config import SideConfigStore

logger = logging.getLogger(__name__)

IMAGE_KIND = "image"
VIDEO_KIND = "video"
REJECTED_KIND = "rejected"

IMAGE_OUTPUT_EXT = ".webp"
VIDEO_OUTPUT_EXT = ".mp4"
# Sanitized upload names never contain "~", so work files cannot collide with them.
PARTIAL_MARKER = "~partial"

VIDEO_EXTENSIONS: set[str] = {
    ".mp4",
    ".webm",
    ".mkv",
    ".mov",
    ".avi",
    ".m4v",
}

_UNSAFE_NAME_CHARS = re.compile(r"[^A-Za-z0-9_-]")
_UNSAFE_FILENAME_CHARS = re.compile(r"[^A-Za-z0-9_.-]")
_STAGED_PREFIX = re.compile(r"^\d+-")


class MediaManagerError(RuntimeError):
    """Structured exception raised for media management operations."""

    def __init__(self, message: str, *, code: str = "error", status: int = 400) -> None:
        super().__init__(message)
        self.message = message
        self.code = code
        self.status = status


class ValidationError(MediaManagerError):
    def __init__(self, message: str, *, code: str = "invalid_request", status: int = 400) -> None:
        super().__init__(message, code=code, status=status)


class PayloadTooLarge(MediaManagerError):
    def __init__(self, message: str, *, code: str = "FILE_TOO_LARGE", status: int = 413) -> None:
        super().__init__(message, code=code, status=status)


class ProcessingError(MediaManagerError):
    """A single file could not be decoded, encoded or published."""

    def __init__(
        self,
        message: str,
        *,
        filename: Optional[str] = None,
        code: str = "processing_failed",
        status: int = 500,
    ) -> None:
        super().__init__(message, code=code, status=status)
        self.filename = filename


class NotFoundError(MediaManagerError):
    # Surfaced as a generic 500 to match what existing clients expect.
    def __init__(self, message: str, *, code: str = "not_found", status: int = 500) -> None:
        super().__init__(message, code=code, status=status)


def sanitize_name(name: Optional[str]) -> str:
    """Restrict a folder identifier to ``[A-Za-z0-9_-]``."""

    return _UNSAFE_NAME_CHARS.sub("", str(name or ""))


def sanitize_filename(filename: Optional[str]) -> str:
    """Return the basename of ``filename`` restricted to ``[A-Za-z0-9_.-]``.

    Path separators and parent-directory components never survive; a name
    made only of dots sanitizes to the empty string.
    """

    text = str(filename or "").replace("\\", "/")
    basename = text.rsplit("/", 1)[-1]
    cleaned = _UNSAFE_FILENAME_CHARS.sub("", basename)
    if not cleaned.strip("."):
        return ""
    return cleaned


def strip_staging_prefix(name: str) -> str:
    return _STAGED_PREFIX.sub("", name, count=1)


def partial_path(path: Path, extension: str) -> Path:
    """Work file for an output derived from ``path``, kept in the same directory."""

    return path.with_name(f"{path.name}{PARTIAL_MARKER}{extension}")


def output_name(original_name: str, extension: str) -> str:
    """Replace the extension of a sanitized upload name with ``extension``."""

    stem = Path(sanitize_filename(original_name)).stem.lstrip(".")
    return f"{stem or 'upload'}{extension}"


def reconcile_order(files: Sequence[str], saved_order: Any) -> List[str]:
    """Put names from ``saved_order`` first, then the rest in their given order."""

    present = set(files)
    ordered: List[str] = []
    seen: set[str] = set()
    if isinstance(saved_order, list):
        for name in saved_order:
            if not isinstance(name, str) or name not in present or name in seen:
                continue
            ordered.append(name)
            seen.add(name)
    ordered.extend(name for name in files if name not in seen)
    return ordered


def _normalize_mime(value: Optional[str]) -> str:
    return str(value or "").split(";", 1)[0].strip().lower()


def _human_readable_mb(size: int) -> str:
    return f"{size / (1024 * 1024):.0f} MB"


@dataclass(frozen=True)
class MediaClassifier:
    """Route declared MIME types to image/video handling and enforce intake limits."""

    image_types: FrozenSet[str]
    video_types: FrozenSet[str]
    max_image_bytes: int
    max_video_bytes: int
    max_files: int

    @classmethod
    def from_settings(cls, settings: "MediaSettings") -> "MediaClassifier":
        return cls(
            image_types=frozenset(_normalize_mime(item) for item in settings.allowed_image_types),
            video_types=frozenset(_normalize_mime(item) for item in settings.allowed_video_types),
            max_image_bytes=settings.max_image_bytes,
            max_video_bytes=settings.max_video_bytes,
            max_files=settings.max_files,
        )

    def classify(self, mimetype: Optional[str]) -> str:
        mime = _normalize_mime(mimetype)
        if mime in self.image_types:
            return IMAGE_KIND
        if mime in self.video_types:
            return VIDEO_KIND
        return REJECTED_KIND

    def size_limit(self, kind: str) -> int:
        return self.max_video_bytes if kind == VIDEO_KIND else self.max_image_bytes

    def check_batch(self, count: int) -> None:
        if count > self.max_files:
            raise ValidationError(
                f"Too many files: at most {self.max_files} files per upload",
                code="too_many_files",
            )

    def check_file(self, filename: str, mimetype: Optional[str], size: Optional[int]) -> str:
        kind = self.classify(mimetype)
        if kind == REJECTED_KIND:
            raise ValidationError(
                f"File type not allowed: {_normalize_mime(mimetype) or 'unknown'}",
                code="invalid_type",
            )
        limit = self.size_limit(kind)
        if size is not None and size > limit:
            raise PayloadTooLarge(f"'{filename}' exceeds the {_human_readable_mb(limit)} limit for {kind} files")
        return kind


@dataclass(frozen=True)
class StagedUpload:
    path: Path
    original_name: str
    mimetype: str
    size: int
    side: str
    kind: str

    @property
    def target_name(self) -> str:
        extension = VIDEO_OUTPUT_EXT if self.kind == VIDEO_KIND else IMAGE_OUTPUT_EXT
        return output_name(self.original_name, extension)


class MediaManager:
    """Filesystem layout of published folders, their staging areas and side configs."""

    def __init__(
        self,
        uploads_dir: Path,
        *,
        classifier: MediaClassifier,
        side_configs: "SideConfigStore",
        staging_subdir: str = ".processing",
        thumbnail_suffix: str = "_thumb.jpg",
    ) -> None:
        self._uploads_dir = Path(uploads_dir)
        self._classifier = classifier
        self._side_configs = side_configs
        self._staging_subdir = staging_subdir
        self._thumbnail_suffix = thumbnail_suffix

    @property
    def uploads_dir(self) -> Path:
        return self._uploads_dir

    @property
    def classifier(self) -> MediaClassifier:
        return self._classifier

    # ----------------------------------------------------------------------
    # Path helpers
    # ----------------------------------------------------------------------
    def _require_side(self, side: Optional[str]) -> str:
        safe_side = sanitize_name(side)
        if not safe_side:
            raise ValidationError("Folder name required", code="invalid_folder")
        return safe_side

    def folder_path(self, side: str) -> Path:
        return self._uploads_dir / self._require_side(side)

    def staging_path(self, side: str) -> Path:
        return self.folder_path(side) / self._staging_subdir

    def ensure_folder(self, side: str) -> Path:
        staging = self.staging_path(side)
        staging.mkdir(parents=True, exist_ok=True)
        return staging.parent

    def thumbnail_name(self, filename: str) -> str:
        return f"{Path(filename).stem}{self._thumbnail_suffix}"

    def _is_listable(self, name: str) -> bool:
        if not name or name.startswith("."):
            return False
        return not name.endswith(self._thumbnail_suffix)

    # ----------------------------------------------------------------------
    # Staging
    # ----------------------------------------------------------------------
    def stage_uploads(self, side: str, files: Sequence[FileStorage]) -> List[StagedUpload]:
        """Validate a whole batch, then write each upload into the staging area."""

        safe_side = self._require_side(side)
        candidates = [storage for storage in files if storage and (storage.filename or "").strip()]
        if not candidates:
            raise ValidationError("No files uploaded", code="no_files")
        self._classifier.check_batch(len(candidates))

        checked = []
        for storage in candidates:
            original = sanitize_filename(storage.filename)
            if not original:
                raise ValidationError(f"Invalid filename '{storage.filename}'", code="invalid_name")
            size = self._detect_size(storage)
            kind = self._classifier.check_file(original, storage.mimetype, size)
            checked.append((storage, original, kind))

        staging = self.ensure_folder(safe_side) / self._staging_subdir
        staged: List[StagedUpload] = []
        try:
            for storage, original, kind in checked:
                target = self._staging_target(staging, original)
                self._save_upload(storage, target)
                size = target.stat().st_size
                limit = self._classifier.size_limit(kind)
                if size > limit:
                    target.unlink()
                    raise PayloadTooLarge(f"'{original}' exceeds the {_human_readable_mb(limit)} limit for {kind} files")
                staged.append(
                    StagedUpload(
                        path=target,
                        original_name=original,
                        mimetype=_normalize_mime(storage.mimetype),
                        size=size,
                        side=safe_side,
                        kind=kind,
                    )
                )
        except MediaManagerError:
            self.discard_staged(staged)
            raise
        except OSError as exc:
            logger.warning("Failed to stage upload in %s: %s", staging, exc)
            self.discard_staged(staged)
            raise MediaManagerError("Failed to write uploaded file", code="upload_failed", status=500)
        logger.info("media.stage folder=%s count=%d", safe_side, len(staged))
        return staged

    def discard_staged(self, staged: Iterable[StagedUpload]) -> None:
        for item in staged:
            try:
                item.path.unlink()
            except FileNotFoundError:
                continue
            except OSError as exc:
                logger.warning("Could not remove staged file %s: %s", item.path, exc)

    def _staging_target(self, staging: Path, original: str) -> Path:
        timestamp = int(time.time() * 1000)
        target = staging / f"{timestamp}-{original}"
        while target.exists():
            timestamp += 1
            target = staging / f"{timestamp}-{original}"
        return target

    def _detect_size(self, storage: FileStorage) -> Optional[int]:
        if storage.content_length:
            return storage.content_length
        stream = storage.stream
        tell = getattr(stream, "tell", None)
        seek = getattr(stream, "seek", None)
        if callable(tell) and callable(seek):
            try:
                pos = stream.tell()
                stream.seek(0, os.SEEK_END)
                size = stream.tell()
                stream.seek(pos, os.SEEK_SET)
                return size
            except OSError:
                return None
        return None

    def _save_upload(self, storage: FileStorage, target: Path) -> None:
        stream = storage.stream
        seek = getattr(stream, "seek", None)
        if callable(seek):
            try:
                stream.seek(0)
            except OSError:
                pass
        storage.save(str(target))

    # ----------------------------------------------------------------------
    # Listing
    # ----------------------------------------------------------------------
    def published_files(self, side: str) -> List[str]:
        folder = self.folder_path(side)
        names: List[str] = []
        try:
            with os.scandir(folder) as scan:
                for entry in scan:
                    if not self._is_listable(entry.name):
                        continue
                    try:
                        if not entry.is_file():
                            continue
                    except OSError:
                        continue
                    names.append(entry.name)
        except FileNotFoundError:
            return []
        except OSError as exc:
            logger.debug("Error scanning directory %s: %s", folder, exc)
            raise MediaManagerError("Could not read folder", code="scan_failed", status=500)
        names.sort()
        return names

    def list_files(self, side: str) -> List[str]:
        safe_side = self._require_side(side)
        files = self.published_files(safe_side)
        config = self._side_configs.load(safe_side)
        return reconcile_order(files, config.get("fileOrder"))

    def processing_hints(self, side: str) -> List[str]:
        """Best-effort names of uploads still sitting in the staging area."""

        staging = self.staging_path(side)
        hints: List[str] = []
        try:
            with os.scandir(staging) as scan:
                names = sorted(entry.name for entry in scan)
        except OSError:
            return hints
        for name in names:
            if name.startswith(".") or PARTIAL_MARKER in name:
                continue
            hint = Path(strip_staging_prefix(name)).stem
            if hint:
                hints.append(hint)
        return hints

    def list_folder(self, side: str) -> Dict[str, List[str]]:
        safe_side = self._require_side(side)
        return {
            "files": self.list_files(safe_side),
            "processing": self.processing_hints(safe_side),
        }

    # ----------------------------------------------------------------------
    # Deletion
    # ----------------------------------------------------------------------
    def delete_file(self, side: Optional[str], filename: Optional[str]) -> None:
        safe_side = sanitize_name(side)
        safe_filename = sanitize_filename(filename)
        if not safe_side or not safe_filename:
            raise ValidationError("Folder and filename required", code="invalid_request")
        target = self.folder_path(safe_side) / safe_filename
        try:
            target.unlink()
        except FileNotFoundError:
            raise NotFoundError("Could not delete file")
        except OSError as exc:
            logger.debug("Failed to delete %s: %s", target, exc)
            raise MediaManagerError("Could not delete file", code="delete_failed", status=500)

        if target.suffix.lower() in VIDEO_EXTENSIONS:
            thumbnail = target.with_name(self.thumbnail_name(safe_filename))
            try:
                thumbnail.unlink()
            except FileNotFoundError:
                pass
            except OSError as exc:
                logger.warning("Could not delete thumbnail %s: %s", thumbnail, exc)

        try:
            self._side_configs.remove_references(safe_side, safe_filename)
        except (OSError, MediaManagerError) as exc:
            logger.warning("Config cleanup failed for %s/%s: %s", safe_side, safe_filename, exc)

    # ----------------------------------------------------------------------
    # Startup recovery
    # ----------------------------------------------------------------------
    def recover_staging(self) -> int:
        """Empty every staging area; uploads and partial encodes from a previous run go with it."""

        root = self._uploads_dir
        try:
            folders = sorted(entry for entry in root.iterdir() if entry.is_dir())
        except FileNotFoundError:
            return 0
        except OSError as exc:
            logger.warning("Startup recovery skipped, cannot read %s: %s", root, exc)
            return 0

        removed = 0
        for folder in folders:
            if folder.name == self._staging_subdir:
                continue
            staging = folder / self._staging_subdir
            if staging.is_dir():
                for child in list(staging.iterdir()):
                    if self._remove_path(child):
                        removed += 1
        if removed:
            logger.info("media.recover removed=%d", removed)
        return removed

    def _remove_path(self, path: Path) -> bool:
        try:
            if path.is_dir() and not path.is_symlink():
                shutil.rmtree(path)
            else:
                path.unlink()
        except FileNotFoundError:
            return False
        except OSError as exc:
            logger.warning("Could not remove leftover %s: %s", path, exc)
            return False
        return True
