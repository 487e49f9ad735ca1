"""Pydantic models for configuration and data validation."""

from typing import Literal, Optional

from pydantic import BaseModel, Field, field_validator


class StoreConfig(BaseModel):
    """Status store connection settings."""

    database_url: str = Field(
        default="sqlite:///./reelqueue.db", description="SQLAlchemy URL of the status store"
    )
    reconnect_delay_s: float = Field(
        default=5.0, gt=0.0, description="Fixed delay between store reconnection attempts"
    )


class QueueConfig(BaseModel):
    """Durable queue settings."""

    db_path: str = Field(default="queue.db", description="Path to the SQLite queue database")
    name: str = Field(default="video_processing_queue", min_length=1, description="Queue name")
    prefetch: int = Field(
        default=1, ge=1, description="Max unacknowledged messages held by one consumer"
    )
    reconnect_delay_s: float = Field(
        default=5.0, gt=0.0, description="Fixed delay between queue reconnection attempts"
    )
    poll_interval_s: float = Field(
        default=1.0, gt=0.0, description="Sleep between claims when the queue is empty"
    )
    heartbeat_interval_s: float = Field(
        default=30.0, gt=0.0, description="Lease refresh interval for the in-flight message"
    )
    stale_timeout_s: float = Field(
        default=600.0,
        gt=0.0,
        description="In-flight messages without a heartbeat for this long are redelivered",
    )


class FetchConfig(BaseModel):
    """Source download settings (yt-dlp)."""

    executable: str = Field(default="yt-dlp", description="yt-dlp executable name or path")
    format: str = Field(default="best[ext=mp4]/best", description="yt-dlp format selector")
    timeout_s: int = Field(default=900, gt=0, description="Maximum download duration in seconds")
    cookies_file: Optional[str] = Field(
        default=None, description="Netscape cookies.txt passed to yt-dlp (None = no cookies)"
    )


class AnalysisConfig(BaseModel):
    """Transcription and segment selection settings."""

    enabled: bool = Field(default=True, description="Run transcription + segment selection")
    api_key: Optional[str] = Field(
        default=None, description="OpenAI API key (None = analysis unavailable, use fallback)"
    )
    transcription_model: str = Field(default="whisper-1", description="Speech-to-text model")
    model: str = Field(default="gpt-4", description="Chat model choosing the segment")
    timeout_s: float = Field(default=300.0, gt=0.0, description="Per-request timeout")

    @property
    def available(self) -> bool:
        """Analysis runs only when enabled and configured."""
        return self.enabled and bool(self.api_key)


class RenderingConfig(BaseModel):
    """FFmpeg settings for audio extraction and clip cutting."""

    video_codec: str = Field(default="libx264", description="Video codec name")
    audio_codec: str = Field(default="aac", description="Audio codec name")
    preset: Literal[
        "ultrafast",
        "superfast",
        "veryfast",
        "faster",
        "fast",
        "medium",
        "slow",
        "slower",
        "veryslow",
    ] = Field(default="veryfast", description="Encoding speed preset (faster = larger files)")
    crf: Optional[int] = Field(
        default=23, ge=0, le=51, description="Constant Rate Factor (0-51, lower = better quality)"
    )
    pixel_format: Optional[str] = Field(
        default="yuv420p", description="Pixel format (yuv420p for broad compatibility)"
    )
    audio_bitrate: str = Field(default="128k", description="Bitrate of the extracted mp3 track")

    # FFmpeg runner settings
    global_timeout_s: int = Field(
        default=1800,
        gt=0,
        description="Maximum duration for any FFmpeg operation in seconds (30 min default)",
    )
    no_progress_timeout_s: int = Field(
        default=120,
        gt=0,
        description="Timeout if no progress update in N seconds (stall detection)",
    )
    kill_grace_period_s: int = Field(
        default=5, gt=0, description="Grace period between SIGTERM and SIGKILL"
    )
    artifacts_dir: Optional[str] = Field(
        default=None, description="Directory for FFmpeg failure logs (None = don't save)"
    )
    ffmpeg_loglevel: str = Field(
        default="info", description="FFmpeg log level: error, warning, info, verbose"
    )


class PipelineConfig(BaseModel):
    """Executor settings."""

    temp_dir: Optional[str] = Field(
        default=None, description="Parent directory of per-job workspaces (None = system temp)"
    )
    fallback_duration_s: float = Field(
        default=15.0, gt=0.0, description="Length of the fallback segment starting at 0s"
    )


class PublishConfig(BaseModel):
    """Artifact hosting settings."""

    backend: Literal["local", "fileio"] = Field(
        default="local", description="Where finished clips are published"
    )
    output_dir: str = Field(default="outputs", description="Directory used by the local backend")
    base_url: str = Field(default="/outputs", description="URL prefix for locally published clips")
    upload_url: str = Field(default="https://file.io", description="file.io upload endpoint")
    timeout_s: float = Field(default=120.0, gt=0.0, description="Upload timeout in seconds")


class LoggingConfig(BaseModel):
    """Log output settings."""

    level: Literal["debug", "info", "warn", "warning", "error"] = Field(default="info")
    format: Literal["text", "json"] = Field(default="text")

    @field_validator("level", "format", mode="before")
    @classmethod
    def lowercase(cls, v):
        """Accept LOG_LEVEL=INFO style values."""
        return v.lower() if isinstance(v, str) else v


class ApiConfig(BaseModel):
    """HTTP layer settings."""

    host: str = Field(default="0.0.0.0")
    port: int = Field(default=3000, gt=0, lt=65536)


class ReelQueueConfig(BaseModel):
    """Complete application configuration with validation."""

    store: StoreConfig = Field(default_factory=StoreConfig)
    queue: QueueConfig = Field(default_factory=QueueConfig)
    fetch: FetchConfig = Field(default_factory=FetchConfig)
    analysis: AnalysisConfig = Field(default_factory=AnalysisConfig)
    rendering: RenderingConfig = Field(default_factory=RenderingConfig)
    pipeline: PipelineConfig = Field(default_factory=PipelineConfig)
    publish: PublishConfig = Field(default_factory=PublishConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)
    api: ApiConfig = Field(default_factory=ApiConfig)

    @classmethod
    def from_dict(cls, data: dict) -> "ReelQueueConfig":
        """Create config from nested dict (YAML)."""
        return cls(**data)

    def merge_cli_overrides(self, cli_args: dict) -> "ReelQueueConfig":
        """Apply CLI overrides and return new config instance."""
        config_dict = self.model_dump()

        if cli_args.get("database_url") is not None:
            config_dict["store"]["database_url"] = cli_args["database_url"]
        if cli_args.get("queue_db") is not None:
            config_dict["queue"]["db_path"] = cli_args["queue_db"]
        if cli_args.get("no_analysis"):
            config_dict["analysis"]["enabled"] = False
        if cli_args.get("publish_backend") is not None:
            config_dict["publish"]["backend"] = cli_args["publish_backend"]
        if cli_args.get("log_level") is not None:
            config_dict["logging"]["level"] = cli_args["log_level"]
        if cli_args.get("host") is not None:
            config_dict["api"]["host"] = cli_args["host"]
        if cli_args.get("port") is not None:
            config_dict["api"]["port"] = cli_args["port"]

        return ReelQueueConfig.from_dict(config_dict)


class AnalysisResult(BaseModel):
    """Raw answer of the analyze stage, before segment validation."""

    start: float = Field(description="Suggested start time in seconds")
    end: float = Field(description="Suggested end time in seconds")
    summary: str = Field(default="", description="Why this part was chosen")


class Segment(BaseModel):
    """Clip window with validation."""

    start: float = Field(ge=0.0, description="Start time in seconds")
    end: float = Field(gt=0.0, description="End time in seconds")
    summary: str = Field(default="", description="Why this window was selected")

    @field_validator("end")
    @classmethod
    def end_after_start(cls, v: float, info) -> float:
        """Validate that end time is after start time."""
        if "start" in info.data and v <= info.data["start"]:
            raise ValueError(f"end ({v}) must be > start ({info.data['start']})")
        return v

    @property
    def duration(self) -> float:
        """Calculate segment duration."""
        return self.end - self.start
