"""Per-folder display configuration ("side" configs).

Each folder owns one JSON document holding the rotation interval, the
saved file order and the list of files flagged for fullscreen display.
The admin UI writes it through ``POST /config``; deletions prune stale
references from it.  The document is advisory: readers must tolerate names
that no longer exist on disk.
"""

from __future__ import annotations

import json
import logging
import os
import tempfile
from numbers import Real
from pathlib import Path
from typing import Any, Dict, List

from media_manager import ValidationError, sanitize_name

logger = logging.getLogger(__name__)

MAX_SECONDS_BETWEEN_IMAGES = 3600
LIST_FIELDS = ("fileOrder", "fullscreenMedia")


class SideConfigStore:
    """Read and write ``config_<side>.json`` documents under one directory."""

    def __init__(self, configs_dir: Path) -> None:
        self._configs_dir = Path(configs_dir)

    @property
    def configs_dir(self) -> Path:
        return self._configs_dir

    def config_path(self, side: str) -> Path:
        safe_side = sanitize_name(side)
        if not safe_side:
            raise ValidationError("Side name is required", code="invalid_side")
        return self._configs_dir / f"config_{safe_side}.json"

    def load(self, side: str) -> Dict[str, Any]:
        """Return the saved config, or an empty dict when absent or unreadable."""

        path = self.config_path(side)
        try:
            with path.open("r", encoding="utf-8") as handle:
                data = json.load(handle)
        except FileNotFoundError:
            return {}
        except (OSError, json.JSONDecodeError) as exc:
            logger.warning("Failed to read side config '%s': %s", path, exc)
            return {}
        if not isinstance(data, dict):
            logger.warning("Ignoring side config '%s': top-level value is not an object", path)
            return {}
        return data

    def save(self, side: str, data: Dict[str, Any]) -> None:
        """Persist ``data`` atomically so readers never see a half-written file."""

        path = self.config_path(side)
        path.parent.mkdir(parents=True, exist_ok=True)
        fd, temp_name = tempfile.mkstemp(prefix=f".{path.name}.", suffix=".tmp", dir=path.parent)
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                json.dump(data, handle, indent=2)
                handle.write("\n")
            os.replace(temp_name, path)
        except BaseException:
            try:
                os.unlink(temp_name)
            except OSError:
                pass
            raise

    def remove_references(self, side: str, filename: str) -> bool:
        """Drop ``filename`` from the ordered/fullscreen lists; write only on change."""

        config = self.load(side)
        changed = False
        for key in LIST_FIELDS:
            values = config.get(key)
            if not isinstance(values, list) or filename not in values:
                continue
            config[key] = [value for value in values if value != filename]
            changed = True
        if changed:
            self.save(side, config)
        return changed


def validate_side_config(payload: Any) -> Dict[str, Any]:
    """Validate a config submitted by the admin UI and return a normalized copy."""

    if not isinstance(payload, dict):
        raise ValidationError("Config must be an object", code="invalid_config")
    config = dict(payload)

    if "secondsBetweenImages" in config:
        seconds = config["secondsBetweenImages"]
        if isinstance(seconds, bool) or not isinstance(seconds, Real):
            raise ValidationError("secondsBetweenImages must be a number", code="invalid_config")
        if seconds < 0 or seconds > MAX_SECONDS_BETWEEN_IMAGES:
            raise ValidationError(
                f"secondsBetweenImages must be between 0 and {MAX_SECONDS_BETWEEN_IMAGES}",
                code="invalid_config",
            )

    for key in LIST_FIELDS:
        if key not in config:
            continue
        values = config[key]
        if not isinstance(values, list) or not all(isinstance(item, str) for item in values):
            raise ValidationError(f"{key} must be a list of filenames", code="invalid_config")
        config[key] = _dedupe(values)
    return config


def _dedupe(values: List[str]) -> List[str]:
    seen: set[str] = set()
    result: List[str] = []
    for value in values:
        if value in seen:
            continue
        seen.add(value)
        result.append(value)
    return result
