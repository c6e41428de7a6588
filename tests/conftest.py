import io
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Sequence

import pytest
from PIL import Image

from config_manager import MediaSettings
from media_manager import MediaClassifier, MediaManager, StagedUpload
from side_config import SideConfigStore
from video_processor import EncoderError


def image_bytes(size=(640, 480), fmt="JPEG", color=(200, 30, 30), exif=None) -> bytes:
    buffer = io.BytesIO()
    image = Image.new("RGB", size, color)
    if exif is not None:
        image.save(buffer, fmt, exif=exif)
    else:
        image.save(buffer, fmt)
    return buffer.getvalue()


class FakeRunner:
    """Stands in for ffmpeg: writes the output named by the last argument."""

    def __init__(self, duration: Optional[float] = 10.0) -> None:
        self.duration = duration
        self.calls: List[List[str]] = []
        self.fail_transcode = False
        self.fail_thumbnail = False
        self.on_transcode: Optional[Callable[[], None]] = None
        self.on_thumbnail: Optional[Callable[[], None]] = None

    def probe_duration(self, path: Path) -> Optional[float]:
        return self.duration

    def run(self, args: Sequence[str], *, on_line=None, timeout=None) -> None:
        args = list(args)
        self.calls.append(args)
        output = Path(args[-1])
        if "-progress" in args:
            if self.fail_transcode:
                raise EncoderError("ffmpeg exited with status 1: Invalid data found when processing input")
            for microseconds in (2_500_000, 5_000_000, 10_000_000):
                if on_line:
                    on_line(f"out_time_us={microseconds}\n")
                    on_line("progress=continue\n")
            if self.on_transcode:
                self.on_transcode()
            output.write_bytes(b"\x00\x00\x00\x18ftypmp42fake-mp4")
            if on_line:
                on_line("progress=end\n")
            return
        if self.on_thumbnail:
            self.on_thumbnail()
        if self.fail_thumbnail:
            raise EncoderError("ffmpeg exited with status 1: Output file is empty")
        output.write_bytes(image_bytes((320, 180)))

    def transcode_calls(self) -> List[List[str]]:
        return [call for call in self.calls if "-progress" in call]


@pytest.fixture
def config_dict(tmp_path) -> Dict[str, Any]:
    return {
        "UPLOADS_DIR": str(tmp_path / "uploads"),
        "CONFIGS_DIR": str(tmp_path / "configs"),
        "CORS_ALLOWED_ORIGINS": "*",
    }


@pytest.fixture
def settings(config_dict) -> MediaSettings:
    return MediaSettings.from_config(config_dict)


@pytest.fixture
def side_configs(settings) -> SideConfigStore:
    return SideConfigStore(settings.configs_dir)


@pytest.fixture
def media(settings, side_configs) -> MediaManager:
    return MediaManager(
        settings.uploads_dir,
        classifier=MediaClassifier.from_settings(settings),
        side_configs=side_configs,
        staging_subdir=settings.staging_subdir,
        thumbnail_suffix=settings.thumbnail_suffix,
    )


@pytest.fixture
def fake_runner() -> FakeRunner:
    return FakeRunner()


@pytest.fixture
def stage_file(media) -> Callable[..., StagedUpload]:
    """Write raw bytes straight into a folder's staging area."""

    counter = {"value": 1700000000000}

    def _stage(side: str, name: str, data: bytes, mimetype: str, kind: str) -> StagedUpload:
        staging = media.ensure_folder(side) / ".processing"
        counter["value"] += 1
        path = staging / f"{counter['value']}-{name}"
        path.write_bytes(data)
        return StagedUpload(
            path=path,
            original_name=name,
            mimetype=mimetype,
            size=len(data),
            side=side,
            kind=kind,
        )

    return _stage
