"""Stage adapters: the external work behind each pipeline step."""

from dataclasses import dataclass
from typing import Optional

from ..models import ReelQueueConfig
from .analyze import OpenAIAnalyzer
from .base import (
    Analyzer,
    Cutter,
    Fetcher,
    MediaHandle,
    Publisher,
    StageFailure,
    Transformer,
)
from .fetch import YtDlpFetcher
from .publish import FileIOPublisher, LocalPublisher
from .transcode import AudioExtractor, SegmentCutter, runner_from_config

__all__ = [
    "PipelineStages",
    "build_stages",
    "MediaHandle",
    "StageFailure",
    "Fetcher",
    "Transformer",
    "Analyzer",
    "Cutter",
    "Publisher",
    "YtDlpFetcher",
    "AudioExtractor",
    "SegmentCutter",
    "OpenAIAnalyzer",
    "LocalPublisher",
    "FileIOPublisher",
]


@dataclass
class PipelineStages:
    """The adapters one executor runs, in order.

    transformer and analyzer are optional; without an analyzer the
    executor cuts the fallback segment.
    """

    fetcher: Fetcher
    cutter: Cutter
    publisher: Publisher
    transformer: Optional[Transformer] = None
    analyzer: Optional[Analyzer] = None


def build_stages(config: ReelQueueConfig) -> PipelineStages:
    """Wire concrete adapters from configuration."""
    runner = runner_from_config(config.rendering)

    if config.publish.backend == "fileio":
        publisher: Publisher = FileIOPublisher(
            upload_url=config.publish.upload_url, timeout_s=config.publish.timeout_s
        )
    else:
        publisher = LocalPublisher(
            output_dir=config.publish.output_dir, base_url=config.publish.base_url
        )

    transformer = None
    analyzer = None
    if config.analysis.available:
        transformer = AudioExtractor(runner, bitrate=config.rendering.audio_bitrate)
        analyzer = OpenAIAnalyzer(
            api_key=config.analysis.api_key,
            transcription_model=config.analysis.transcription_model,
            model=config.analysis.model,
            timeout_s=config.analysis.timeout_s,
        )

    return PipelineStages(
        fetcher=YtDlpFetcher(
            executable=config.fetch.executable,
            format=config.fetch.format,
            timeout_s=config.fetch.timeout_s,
            cookies_file=config.fetch.cookies_file,
        ),
        cutter=SegmentCutter(runner, config.rendering),
        publisher=publisher,
        transformer=transformer,
        analyzer=analyzer,
    )
