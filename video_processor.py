"""Video transcoding through an external ``ffmpeg`` process.

Commands are always built as argument vectors from a typed
:class:`EncoderSettings` and executed without a shell.  Encoder progress is
read from ``-progress pipe:1`` on a reader thread and forwarded to the
:class:`~progress_tracker.ProgressTracker` as a percentage of the probed
duration.
"""

from __future__ import annotations

import logging
import math
import os
import subprocess
import threading
from collections import deque
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING, Callable, List, Optional, Sequence

from media_manager import VIDEO_OUTPUT_EXT, ProcessingError, StagedUpload, partial_path
from progress_tracker import ProgressTracker

if TYPE_CHECKING:  # pragma: no cover
    from config_manager import MediaSettings

logger = logging.getLogger(__name__)

STDERR_TAIL_LINES = 20


class EncoderError(RuntimeError):
    """Raised when the encoder binary is missing, fails, or exceeds its timeout."""


@dataclass(frozen=True)
class EncoderSettings:
    codec: str = "libx264"
    preset: str = "ultrafast"
    crf: int = 23
    max_width: int = 1280
    max_height: int = 720
    audio_codec: str = "aac"
    audio_bitrate: str = "128k"
    timeout_secs: float = 3600.0
    thumbnail_width: int = 320
    thumbnail_seek_secs: float = 2.0
    ffmpeg_path: str = "ffmpeg"
    ffprobe_path: str = "ffprobe"

    @classmethod
    def from_settings(cls, settings: "MediaSettings") -> "EncoderSettings":
        return cls(
            codec=settings.video_codec,
            preset=settings.video_preset,
            crf=settings.video_crf,
            max_width=settings.video_max_width,
            max_height=settings.video_max_height,
            audio_codec=settings.video_audio_codec,
            audio_bitrate=settings.video_audio_bitrate,
            timeout_secs=settings.video_timeout_secs,
            thumbnail_width=settings.thumbnail_width,
            thumbnail_seek_secs=settings.thumbnail_seek_secs,
            ffmpeg_path=settings.ffmpeg_path,
            ffprobe_path=settings.ffprobe_path,
        )

    def scale_filter(self) -> str:
        # Down-scale only; keeps aspect ratio and the even sizes H.264 needs.
        return (
            f"scale=w='min({self.max_width},iw)':h='min({self.max_height},ih)'"
            ":force_original_aspect_ratio=decrease:force_divisible_by=2"
        )


def build_transcode_args(settings: EncoderSettings, source: Path, output: Path) -> List[str]:
    return [
        settings.ffmpeg_path,
        "-hide_banner",
        "-nostdin",
        "-y",
        "-loglevel",
        "error",
        "-i",
        str(source),
        "-c:v",
        settings.codec,
        "-preset",
        settings.preset,
        "-crf",
        str(settings.crf),
        "-vf",
        settings.scale_filter(),
        "-pix_fmt",
        "yuv420p",
        "-c:a",
        settings.audio_codec,
        "-b:a",
        settings.audio_bitrate,
        "-movflags",
        "+faststart",
        "-f",
        "mp4",
        "-progress",
        "pipe:1",
        "-nostats",
        str(output),
    ]


def build_thumbnail_args(settings: EncoderSettings, video: Path, output: Path, *, seek: float) -> List[str]:
    return [
        settings.ffmpeg_path,
        "-hide_banner",
        "-nostdin",
        "-y",
        "-loglevel",
        "error",
        "-ss",
        f"{seek:g}",
        "-i",
        str(video),
        "-frames:v",
        "1",
        "-vf",
        f"scale={settings.thumbnail_width}:-2",
        "-q:v",
        "3",
        "-f",
        "image2",
        str(output),
    ]


class FFmpegRunner:
    """Run encoder commands as child processes and probe media durations."""

    def __init__(self, ffprobe_path: str = "ffprobe") -> None:
        self._ffprobe_path = ffprobe_path

    def run(
        self,
        args: Sequence[str],
        *,
        on_line: Optional[Callable[[str], None]] = None,
        timeout: Optional[float] = None,
    ) -> None:
        command = [str(arg) for arg in args]
        try:
            proc = subprocess.Popen(  # noqa: S603
                command,
                stdin=subprocess.DEVNULL,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                text=True,
                errors="replace",
            )
        except OSError as exc:
            raise EncoderError(f"Could not start {command[0]}: {exc}") from exc

        stderr_tail: deque[str] = deque(maxlen=STDERR_TAIL_LINES)
        readers = [
            threading.Thread(
                target=_drain,
                args=(proc.stdout, on_line),
                name="ffmpeg-progress",
                daemon=True,
            ),
            threading.Thread(
                target=_drain,
                args=(proc.stderr, stderr_tail.append),
                name="ffmpeg-stderr",
                daemon=True,
            ),
        ]
        for reader in readers:
            reader.start()
        try:
            returncode = proc.wait(timeout=timeout or None)
        except subprocess.TimeoutExpired:
            proc.kill()
            proc.wait()
            raise EncoderError(f"{command[0]} exceeded the {timeout:g}s timeout")
        finally:
            for reader in readers:
                reader.join(timeout=5.0)
        if returncode != 0:
            details = " | ".join(line.strip() for line in stderr_tail if line.strip())
            raise EncoderError(f"{command[0]} exited with status {returncode}: {details}")

    def probe_duration(self, path: Path) -> Optional[float]:
        cmd = [
            self._ffprobe_path,
            "-v",
            "error",
            "-show_entries",
            "format=duration",
            "-of",
            "default=noprint_wrappers=1:nokey=1",
            str(path),
        ]
        try:
            result = subprocess.run(cmd, capture_output=True, text=True, check=True, timeout=60)  # noqa: S603
            duration = float(result.stdout.strip())
        except (ValueError, subprocess.CalledProcessError, subprocess.TimeoutExpired, OSError):
            return None
        if not math.isfinite(duration) or duration <= 0:
            return None
        return duration


def _drain(stream, callback: Optional[Callable[[str], None]]) -> None:
    if stream is None:
        return
    try:
        for line in stream:
            if callback is None:
                continue
            try:
                callback(line)
            except Exception:  # noqa: BLE001
                logger.exception("Encoder output handler failed")
    finally:
        stream.close()


class ProgressParser:
    """Turn ``-progress`` key=value lines into whole-percent callbacks.

    Values stay below 100 until ffmpeg reports ``progress=end``.
    """

    def __init__(self, duration: Optional[float], on_percent: Callable[[int], None]) -> None:
        self._duration_us = duration * 1_000_000 if duration else None
        self._on_percent = on_percent
        self._last = -1

    def __call__(self, line: str) -> None:
        key, _, value = line.strip().partition("=")
        if key in ("out_time_us", "out_time_ms"):
            if not self._duration_us:
                return
            try:
                elapsed = int(value)
            except ValueError:
                return
            percent = int(min(99, max(0, elapsed * 100 / self._duration_us)))
            self._emit(percent)
        elif key == "progress" and value == "end":
            self._emit(100)

    def _emit(self, percent: int) -> None:
        if percent <= self._last:
            return
        self._last = percent
        self._on_percent(percent)


class VideoTranscoder:
    def __init__(
        self,
        settings: EncoderSettings,
        tracker: ProgressTracker,
        *,
        runner: Optional[FFmpegRunner] = None,
        thumbnail_suffix: str = "_thumb.jpg",
    ) -> None:
        self._settings = settings
        self._tracker = tracker
        self._runner = runner or FFmpegRunner(settings.ffprobe_path)
        self._thumbnail_suffix = thumbnail_suffix

    def process(self, staged: StagedUpload, destination_dir: Path) -> str:
        """Transcode ``staged`` into ``destination_dir`` and return the published name."""

        target_name = staged.target_name
        partial = partial_path(staged.path, VIDEO_OUTPUT_EXT)
        destination = destination_dir / target_name

        with self._tracker.track(target_name):
            duration = self._runner.probe_duration(staged.path)
            parser = ProgressParser(duration, lambda percent: self._tracker.update(target_name, percent))
            logger.info("media.transcode.start folder=%s source=%s output=%s", staged.side, staged.original_name, target_name)
            try:
                self._runner.run(
                    build_transcode_args(self._settings, staged.path, partial),
                    on_line=parser,
                    timeout=self._settings.timeout_secs,
                )
                os.replace(partial, destination)
            except (EncoderError, OSError) as exc:
                logger.error("Transcode failed for %s: %s", staged.original_name, exc)
                _unlink_quietly(partial)
                _unlink_quietly(staged.path)
                raise ProcessingError(
                    f"Failed to transcode video '{staged.original_name}'",
                    filename=staged.original_name,
                ) from exc
            _unlink_quietly(staged.path)

            self._tracker.update(target_name, 100)
            thumbnail = destination_dir / f"{Path(target_name).stem}{self._thumbnail_suffix}"
            self.generate_thumbnail(destination, thumbnail, work_dir=staged.path.parent)
        logger.info("media.transcode.done folder=%s output=%s", staged.side, target_name)
        return target_name

    def generate_thumbnail(self, video: Path, thumbnail: Path, *, work_dir: Path) -> Optional[Path]:
        """Capture one scaled frame from ``video``; failures are logged, never raised."""

        partial = partial_path(work_dir / thumbnail.name, ".jpg")
        seeks = [self._settings.thumbnail_seek_secs]
        if self._settings.thumbnail_seek_secs > 0:
            # Clips shorter than the seek point yield no frame.
            seeks.append(0.0)
        for seek in seeks:
            try:
                self._runner.run(
                    build_thumbnail_args(self._settings, video, partial, seek=seek),
                    timeout=120,
                )
                if partial.is_file() and partial.stat().st_size > 0:
                    os.replace(partial, thumbnail)
                    return thumbnail
            except (EncoderError, OSError) as exc:
                logger.warning("Thumbnail generation failed for %s at %gs: %s", video.name, seek, exc)
        _unlink_quietly(partial)
        logger.warning("No thumbnail generated for %s", video.name)
        return None


def _unlink_quietly(path: Path) -> None:
    try:
        path.unlink()
    except FileNotFoundError:
        pass
    except OSError as exc:
        logger.warning("Could not remove %s: %s", path, exc)
