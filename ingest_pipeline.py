"""Turn a staged upload batch into published media files.

One pipeline serves the whole process.  At most ``workers`` files are
processed at any moment across every concurrent request, so with the
default of 1 a small display computer never runs two encodes at once.
``workers > 1`` also spreads a single batch over a bounded thread pool.

A batch either fully succeeds or raises :class:`ProcessingError`.  Files
published before the failure stay on disk; callers only learn that the
batch failed.
"""

from __future__ import annotations

import logging
import threading
from concurrent.futures import ThreadPoolExecutor
from pathlib import Path
from typing import List, Optional, Sequence

from image_processor import ImageProcessor
from media_manager import (
    IMAGE_KIND,
    VIDEO_KIND,
    MediaManager,
    MediaManagerError,
    ProcessingError,
    StagedUpload,
)
from video_processor import VideoTranscoder

logger = logging.getLogger(__name__)


class IngestPipeline:
    def __init__(
        self,
        media_manager: MediaManager,
        *,
        images: ImageProcessor,
        videos: VideoTranscoder,
        workers: int = 1,
    ) -> None:
        self._media = media_manager
        self._images = images
        self._videos = videos
        self._workers = max(1, int(workers))
        self._slots = threading.BoundedSemaphore(self._workers)

    def process_batch(self, side: str, staged: Sequence[StagedUpload]) -> List[str]:
        """Process every staged file and return published names in upload order."""

        destination = self._media.folder_path(side)
        if self._workers == 1:
            published = self._run_sequential(destination, staged)
        else:
            published = self._run_pooled(destination, staged)
        logger.info("media.batch folder=%s published=%d", side, len(published))
        return published

    def process_file(self, staged: StagedUpload, destination: Path) -> str:
        kind = self._media.classifier.classify(staged.mimetype)
        if kind == IMAGE_KIND:
            return self._images.process(staged, destination)
        if kind == VIDEO_KIND:
            return self._videos.process(staged, destination)
        raise ProcessingError(f"Unsupported media type for '{staged.original_name}'", filename=staged.original_name)

    def _run_sequential(self, destination: Path, staged: Sequence[StagedUpload]) -> List[str]:
        published: List[str] = []
        for index, item in enumerate(staged):
            try:
                published.append(self._guarded(item, destination))
            except ProcessingError:
                # Remaining inputs of a failed batch are dropped from staging.
                self._media.discard_staged(staged[index + 1 :])
                self._log_partial_failure(item, published)
                raise
        return published

    def _run_pooled(self, destination: Path, staged: Sequence[StagedUpload]) -> List[str]:
        failure: Optional[ProcessingError] = None
        published: List[str] = []
        with ThreadPoolExecutor(max_workers=self._workers, thread_name_prefix="ingest") as pool:
            futures = [pool.submit(self._guarded, item, destination) for item in staged]
            for item, future in zip(staged, futures):
                try:
                    published.append(future.result())
                except ProcessingError as exc:
                    if failure is None:
                        failure = exc
                        self._log_partial_failure(item, published)
        if failure is not None:
            raise failure
        return published

    def _guarded(self, item: StagedUpload, destination: Path) -> str:
        try:
            with self._slots:
                return self.process_file(item, destination)
        except ProcessingError:
            raise
        except MediaManagerError as exc:
            raise ProcessingError(exc.message, filename=item.original_name) from exc
        except Exception as exc:
            logger.exception("Unexpected failure processing %s", item.original_name)
            self._media.discard_staged([item])
            raise ProcessingError(
                f"Failed to process '{item.original_name}'",
                filename=item.original_name,
            ) from exc

    def _log_partial_failure(self, item: StagedUpload, published: Sequence[str]) -> None:
        if published:
            logger.warning(
                "media.batch.failed folder=%s file=%s already_published=%s",
                item.side,
                item.original_name,
                ",".join(published),
            )
        else:
            logger.warning("media.batch.failed folder=%s file=%s", item.side, item.original_name)
