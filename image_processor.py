"""Resize and re-encode uploaded images for the display panel."""

from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Tuple

import pillow_heif
from PIL import Image, ImageOps, UnidentifiedImageError

from media_manager import IMAGE_OUTPUT_EXT, ProcessingError, StagedUpload, partial_path

logger = logging.getLogger(__name__)

pillow_heif.register_heif_opener()

try:  # Pillow >= 9.1
    _RESAMPLING_FILTER = Image.Resampling.LANCZOS  # type: ignore[attr-defined]
except AttributeError:  # pragma: no cover - legacy Pillow
    _RESAMPLING_FILTER = Image.LANCZOS  # type: ignore[attr-defined]


def fit_within(size: Tuple[int, int], box: Tuple[int, int]) -> Tuple[int, int]:
    """Largest size with the aspect ratio of ``size`` that fits inside ``box``.

    Never grows the image: sizes already inside the box come back unchanged.
    """

    width, height = size
    max_width, max_height = box
    if width <= max_width and height <= max_height:
        return width, height
    scale = min(max_width / width, max_height / height)
    return max(1, round(width * scale)), max(1, round(height * scale))


class ImageProcessor:
    def __init__(
        self,
        *,
        landscape_box: Tuple[int, int],
        portrait_box: Tuple[int, int],
        quality: int,
    ) -> None:
        self._landscape_box = landscape_box
        self._portrait_box = portrait_box
        self._quality = quality

    def box_for(self, width: int, height: int) -> Tuple[int, int]:
        return self._portrait_box if height > width else self._landscape_box

    def process(self, staged: StagedUpload, destination_dir: Path) -> str:
        """Publish ``staged`` as WebP inside ``destination_dir`` and return the new name.

        The encoded image is written next to the staged input first and only
        moved into the published folder once complete.
        """

        target_name = staged.target_name
        partial = partial_path(staged.path, IMAGE_OUTPUT_EXT)
        try:
            with Image.open(staged.path) as source:
                image = ImageOps.exif_transpose(source)
                box = self.box_for(image.width, image.height)
                new_size = fit_within(image.size, box)
                if new_size != image.size:
                    image = image.resize(new_size, _RESAMPLING_FILTER)
                if image.mode not in ("RGB", "RGBA"):
                    has_alpha = "A" in image.getbands() or "transparency" in image.info
                    image = image.convert("RGBA" if has_alpha else "RGB")
                image.save(partial, "WEBP", quality=self._quality, method=4)
        except (UnidentifiedImageError, OSError, ValueError, Image.DecompressionBombError) as exc:
            _unlink_quietly(partial)
            _unlink_quietly(staged.path)
            logger.warning("Image processing failed for %s: %s", staged.original_name, exc)
            raise ProcessingError(f"Failed to process image '{staged.original_name}'", filename=staged.original_name) from exc

        destination = destination_dir / target_name
        try:
            os.replace(partial, destination)
        except OSError as exc:
            _unlink_quietly(partial)
            _unlink_quietly(staged.path)
            logger.warning("Could not publish %s: %s", destination, exc)
            raise ProcessingError(f"Failed to publish image '{target_name}'", filename=staged.original_name) from exc
        _unlink_quietly(staged.path)
        logger.info(
            "media.image folder=%s source=%s output=%s size=%dx%d",
            staged.side,
            staged.original_name,
            target_name,
            new_size[0],
            new_size[1],
        )
        return target_name


def _unlink_quietly(path: Path) -> None:
    try:
        path.unlink()
    except FileNotFoundError:
        pass
    except OSError as exc:
        logger.warning("Could not remove %s: %s", path, exc)
