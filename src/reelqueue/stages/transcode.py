"""FFmpeg-backed stages: audio extraction and segment cutting."""

from pathlib import Path

from ..errors import StageFailure
from ..ffmpeg_runner import FfmpegProgress, FfmpegRunner
from ..logging import get_logger
from ..models import RenderingConfig, Segment
from ..segments import clamp_segment
from .base import Cutter, MediaHandle, Transformer

logger = get_logger("stages.transcode")


def log_progress(progress: FfmpegProgress) -> None:
    logger.info(
        "ffmpeg_progress",
        position_s=round(progress.current_time_s, 1),
        speed=progress.speed,
        frame=progress.frame,
    )


def runner_from_config(rendering: RenderingConfig) -> FfmpegRunner:
    """Create an FfmpegRunner carrying the configured timeouts."""
    return FfmpegRunner(
        global_timeout_s=rendering.global_timeout_s,
        no_progress_timeout_s=rendering.no_progress_timeout_s,
        kill_grace_period_s=rendering.kill_grace_period_s,
        artifacts_dir=rendering.artifacts_dir,
        ffmpeg_loglevel=rendering.ffmpeg_loglevel,
        progress_callback=log_progress,
    )


class AudioExtractor(Transformer):
    """Video -> mp3 audio track (input for transcription)."""

    def __init__(self, runner: FfmpegRunner, bitrate: str = "128k"):
        self.runner = runner
        self.bitrate = bitrate

    def transform(self, handle: MediaHandle, destination: Path) -> MediaHandle:
        result = self.runner.extract_audio(str(handle.path), str(destination), self.bitrate)
        if not result.success:
            raise StageFailure(self.stage, result.describe())
        if not destination.exists():
            raise StageFailure(self.stage, f"no audio written to {destination}")
        return MediaHandle(path=destination, kind="audio")


class SegmentCutter(Cutter):
    """Cuts the selected window out of the source video."""

    def __init__(self, runner: FfmpegRunner, rendering: RenderingConfig):
        self.runner = runner
        self.rendering = rendering

    def _source_duration(self, handle: MediaHandle) -> float:
        if handle.duration_s:
            return handle.duration_s
        try:
            return self.runner.probe_duration(str(handle.path))
        except (OSError, RuntimeError, StopIteration) as e:
            raise StageFailure(self.stage, f"could not probe {handle.path.name}: {e}")

    def cut(self, handle: MediaHandle, segment: Segment, destination: Path) -> MediaHandle:
        duration = self._source_duration(handle)
        clamped = clamp_segment(segment, duration)
        if clamped != segment:
            logger.info(
                "segment_clamped",
                requested=[segment.start, segment.end],
                clamped=[clamped.start, clamped.end],
                source_duration_s=duration,
            )

        r = self.rendering
        result = self.runner.extract_segment(
            str(handle.path),
            clamped.start,
            clamped.end,
            str(destination),
            codec=r.video_codec,
            preset=r.preset,
            audio_codec=r.audio_codec,
            pixel_format=r.pixel_format,
            crf=r.crf,
        )
        if not result.success:
            raise StageFailure(self.stage, result.describe())
        if not destination.exists():
            raise StageFailure(self.stage, f"no clip written to {destination}")

        return MediaHandle(path=destination, kind="video", duration_s=clamped.duration)
