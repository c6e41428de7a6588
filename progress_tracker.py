"""In-memory progress of running video transcodes.

Entries are keyed by the filename the job will publish, exist only while
the job runs, and are shared between request handlers (polling the
snapshot) and encoder reader threads (updating percentages).  All access
goes through one lock; callers only ever receive copies.
"""

from __future__ import annotations

import logging
import threading
import time
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Callable, Dict, Iterator, List, Optional

logger = logging.getLogger(__name__)

STAGE_TRANSCODING = "transcoding"
STAGE_THUMBNAIL = "thumbnail"
STAGES = {STAGE_TRANSCODING, STAGE_THUMBNAIL}

ProgressListener = Callable[[Dict[str, Dict[str, object]]], None]


@dataclass
class ProgressEntry:
    filename: str
    percent: int = 0
    stage: str = STAGE_TRANSCODING
    started_at: float = field(default_factory=time.time)
    last_update: float = field(default_factory=time.time)

    def to_dict(self) -> Dict[str, object]:
        return {"percent": self.percent, "stage": self.stage}


class ProgressTracker:
    """Thread-safe map of target filename -> ``{percent, stage}``."""

    def __init__(self) -> None:
        self._entries: Dict[str, ProgressEntry] = {}
        self._listeners: List[ProgressListener] = []
        self._lock = threading.RLock()

    # ------------------------------------------------------------------ Listeners
    def add_listener(self, listener: ProgressListener) -> None:
        with self._lock:
            self._listeners.append(listener)

    def _notify(self) -> None:
        with self._lock:
            listeners = list(self._listeners)
            snapshot = self._snapshot_locked()
        for listener in listeners:
            try:
                listener(snapshot)
            except Exception:  # noqa: BLE001
                logger.exception("Progress listener failed")

    # ------------------------------------------------------------------ Mutation
    def start(self, filename: str) -> None:
        with self._lock:
            self._entries[filename] = ProgressEntry(filename=filename)
        self._notify()

    def update(self, filename: str, percent: float, *, stage: Optional[str] = None) -> None:
        """Record encode progress; reaching 100% moves the job to the thumbnail stage."""

        value = int(round(min(100.0, max(0.0, float(percent)))))
        with self._lock:
            entry = self._entries.get(filename)
            if entry is None:
                return
            entry.percent = value
            if stage in STAGES:
                entry.stage = stage
            elif value >= 100:
                entry.stage = STAGE_THUMBNAIL
            entry.last_update = time.time()
        self._notify()

    def set_stage(self, filename: str, stage: str) -> None:
        if stage not in STAGES:
            raise ValueError(f"Unknown progress stage '{stage}'")
        with self._lock:
            entry = self._entries.get(filename)
            if entry is None:
                return
            entry.stage = stage
            entry.last_update = time.time()
        self._notify()

    def clear(self, filename: str) -> None:
        with self._lock:
            removed = self._entries.pop(filename, None)
        if removed is not None:
            self._notify()

    @contextmanager
    def track(self, filename: str) -> Iterator[None]:
        """Create an entry for the duration of a job and always remove it afterwards."""

        self.start(filename)
        try:
            yield
        finally:
            self.clear(filename)

    # ------------------------------------------------------------------ Queries
    def get(self, filename: str) -> Optional[Dict[str, object]]:
        with self._lock:
            entry = self._entries.get(filename)
            return entry.to_dict() if entry else None

    def snapshot(self) -> Dict[str, Dict[str, object]]:
        with self._lock:
            return self._snapshot_locked()

    def _snapshot_locked(self) -> Dict[str, Dict[str, object]]:
        return {name: entry.to_dict() for name, entry in self._entries.items()}
