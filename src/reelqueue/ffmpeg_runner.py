"""FFmpeg runner with process isolation, timeout enforcement, and progress monitoring.

Every FFmpeg call made by the pipeline goes through FfmpegRunner so that no
transcode can block a worker forever: with prefetch = 1 a hung process
would starve the whole queue.

Key Features:
- Process isolation with subprocess.Popen
- Dual timeout enforcement (global + no-progress), checked while running
- Real-time progress parsing from FFmpeg stderr
- Process tree cleanup via psutil
- Error classification for diagnostics
- Optional failure log preservation
"""

import contextvars
import re
import subprocess
import threading
import time
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Callable, List, Optional

import imageio_ffmpeg
import psutil

from .logging import get_logger

logger = get_logger("ffmpeg")

_OUT_TIME_RE = re.compile(r"out_time=(\d+):(\d+):(\d+)(?:\.(\d+))?")
_FRAME_RE = re.compile(r"frame=\s*(\d+)")
_FPS_RE = re.compile(r"fps=\s*([\d.]+)")
_BITRATE_RE = re.compile(r"bitrate=\s*([\d.]+)kbits/s")
_SPEED_RE = re.compile(r"speed=\s*([\d.]+)x")


class FfmpegErrorType(Enum):
    """FFmpeg error classification."""
    PERMANENT = "permanent"     # File not found, invalid format, codec error
    TRANSIENT = "transient"     # I/O stall, resource exhaustion
    TIMEOUT = "timeout"         # Process timeout (global or no-progress)


@dataclass
class FfmpegProgress:
    """Real-time FFmpeg progress metrics."""
    current_time_s: float = 0.0      # Current position in seconds
    total_duration_s: float = 0.0    # Total duration (if known)
    fps: float = 0.0                 # Current FPS
    bitrate_kbps: float = 0.0        # Current bitrate
    speed: float = 0.0               # Processing speed multiplier (e.g., 2.5x)
    frame: int = 0                   # Current frame number
    last_update: float = 0.0         # Timestamp of last update


@dataclass
class FfmpegResult:
    """Result of FFmpeg execution."""
    success: bool
    returncode: int
    stderr: str
    duration_s: float
    error_type: Optional[FfmpegErrorType] = None
    timeout_type: Optional[str] = None
    final_progress: Optional[FfmpegProgress] = None
    artifacts_saved: List[Path] = field(default_factory=list)

    def describe(self, max_chars: int = 500) -> str:
        """Short diagnostic for logs and stage failures."""
        if self.timeout_type:
            return f"ffmpeg timed out ({self.timeout_type}) after {self.duration_s:.1f}s"
        tail = (self.stderr or "").strip()[-max_chars:]
        kind = self.error_type.value if self.error_type else "unknown"
        return f"ffmpeg exited with {self.returncode} ({kind}): {tail or 'no output'}"


class FfmpegRunner:
    """FFmpeg orchestration with timeout and zombie prevention.

    Example:
        >>> runner = FfmpegRunner(global_timeout_s=1800, no_progress_timeout_s=120)
        >>> result = runner.extract_segment("input.mp4", 10.0, 25.0, "short.mp4")
        >>> if not result.success:
        ...     print(result.describe())
    """

    def __init__(
        self,
        global_timeout_s: int = 1800,
        no_progress_timeout_s: int = 120,
        kill_grace_period_s: int = 5,
        artifacts_dir: Optional[str] = None,
        ffmpeg_loglevel: str = "info",
        progress_callback: Optional[Callable[[FfmpegProgress], None]] = None,
        poll_interval_s: float = 1.0,
    ):
        """Initialize FFmpeg runner.

        Args:
            global_timeout_s: Maximum duration for any FFmpeg operation
            no_progress_timeout_s: Timeout if no progress update in N seconds
            kill_grace_period_s: Grace period between SIGTERM and SIGKILL
            artifacts_dir: Where to write failure logs (None = don't save)
            ffmpeg_loglevel: FFmpeg log level (error, warning, info, verbose)
            progress_callback: Optional callback for progress updates
            poll_interval_s: How often timeouts are checked while running
        """
        self.global_timeout_s = global_timeout_s
        self.no_progress_timeout_s = no_progress_timeout_s
        self.kill_grace_period_s = kill_grace_period_s
        self.artifacts_dir = artifacts_dir
        self.ffmpeg_loglevel = ffmpeg_loglevel
        self.progress_callback = progress_callback
        self.poll_interval_s = poll_interval_s

        self._process: Optional[subprocess.Popen] = None
        self._progress = FfmpegProgress()
        self._stderr_lines: List[str] = []

    def extract_segment(
        self,
        source_path: str,
        start: float,
        end: float,
        output_path: str,
        codec: str = "libx264",
        preset: str = "veryfast",
        audio_codec: str = "aac",
        pixel_format: Optional[str] = None,
        crf: Optional[int] = None,
    ) -> FfmpegResult:
        """Cut [start, end) out of source_path into output_path.

        Uses fast seek before input (-ss before -i). Re-encodes so the cut
        is frame-accurate. Overwrites output_path.
        """
        duration = end - start

        cmd = [
            self._get_ffmpeg_exe(),
            "-y",
            "-ss", f"{start:.3f}",
            "-i", source_path,
            "-t", f"{duration:.3f}",
            "-c:v", codec,
            "-preset", preset,
            "-c:a", audio_codec,
        ]
        if pixel_format:
            cmd.extend(["-pix_fmt", pixel_format])
        if crf is not None:
            cmd.extend(["-crf", str(crf)])

        cmd.extend([
            "-progress", "pipe:2",
            "-loglevel", self.ffmpeg_loglevel,
            output_path,
        ])

        return self._run_ffmpeg(cmd, expected_duration=duration)

    def extract_audio(
        self,
        source_path: str,
        output_path: str,
        bitrate: str = "128k",
    ) -> FfmpegResult:
        """Extract the audio track to mp3 (overwrites output_path)."""
        cmd = [
            self._get_ffmpeg_exe(),
            "-y",
            "-i", source_path,
            "-vn",
            "-acodec", "libmp3lame",
            "-b:a", bitrate,
            "-progress", "pipe:2",
            "-loglevel", self.ffmpeg_loglevel,
            output_path,
        ]
        return self._run_ffmpeg(cmd)

    def probe_duration(self, source_path: str) -> float:
        """Return media duration in seconds.

        Raises:
            RuntimeError: If the file has no readable video stream or duration
        """
        reader = imageio_ffmpeg.read_frames(source_path)
        try:
            meta = next(reader)
        finally:
            reader.close()

        duration = meta.get("duration")
        if not duration or duration <= 0:
            raise RuntimeError(f"Could not determine duration of {source_path}")
        return float(duration)

    def _run_ffmpeg(
        self,
        cmd: List[str],
        expected_duration: Optional[float] = None,
    ) -> FfmpegResult:
        """Execute FFmpeg with timeout enforcement and progress monitoring.

        Returns:
            FfmpegResult with execution details
        """
        start_time = time.time()
        self._progress = FfmpegProgress(total_duration_s=expected_duration or 0.0)
        self._stderr_lines = []
        timeout_type = None

        logger.debug("ffmpeg_started", cmd=" ".join(cmd))

        try:
            self._process = subprocess.Popen(
                cmd,
                stdout=subprocess.DEVNULL,
                stderr=subprocess.PIPE,
                stdin=subprocess.DEVNULL,
                text=True,
                bufsize=1,  # Line buffered for real-time progress
            )

            # Copy the caller's context so progress logs keep job_id and stage
            monitor = threading.Thread(
                target=contextvars.copy_context().run,
                args=(self._monitor_progress, self._process.stderr),
                daemon=True,
            )
            monitor.start()

            while True:
                try:
                    returncode = self._process.wait(timeout=self.poll_interval_s)
                    break
                except subprocess.TimeoutExpired:
                    timeout_type = self._check_timeouts(start_time)
                    if timeout_type:
                        self._kill_process_tree()
                        returncode = -1
                        break

            monitor.join(timeout=2)

        except BaseException:
            # Unexpected error (or interrupt) - never leave ffmpeg behind
            self._kill_process_tree()
            raise

        finally:
            self._process = None

        stderr = "".join(self._stderr_lines)
        duration = time.time() - start_time

        error_type = None
        if timeout_type:
            error_type = FfmpegErrorType.TIMEOUT
        elif returncode != 0:
            error_type = self._classify_error(stderr)

        artifacts = []
        if returncode != 0 and self.artifacts_dir:
            artifacts = self._save_failure_artifacts(cmd, stderr)

        result = FfmpegResult(
            success=(returncode == 0),
            returncode=returncode,
            stderr=stderr,
            duration_s=duration,
            error_type=error_type,
            timeout_type=timeout_type,
            final_progress=self._progress,
            artifacts_saved=artifacts,
        )
        if not result.success:
            logger.warning("ffmpeg_failed", detail=result.describe(200))
        return result

    def _check_timeouts(self, start_time: float) -> Optional[str]:
        """Return "global" / "no_progress" if a limit was exceeded."""
        now = time.time()
        if now - start_time > self.global_timeout_s:
            return "global"

        last_activity = self._progress.last_update or start_time
        if now - last_activity > self.no_progress_timeout_s:
            return "no_progress"
        return None

    def _monitor_progress(self, stderr_stream) -> None:
        """Monitor FFmpeg stderr for progress updates.

        Keeps every line for diagnostics, updates self._progress for
        stall detection and invokes the progress callback at most every 2s.

        FFmpeg progress format:
            frame=123
            fps=25.00
            bitrate=1234.5kbits/s
            out_time=00:00:05.123456
            speed=2.5x
            progress=continue
        """
        last_callback = 0.0

        for line in stderr_stream:
            self._stderr_lines.append(line)

            match = _OUT_TIME_RE.search(line)
            if match:
                h, m, s, frac = match.groups()
                current_time = int(h) * 3600 + int(m) * 60 + int(s)
                if frac:
                    current_time += float(f"0.{frac}")
                self._progress.current_time_s = current_time
                self._progress.last_update = time.time()

            match = _FRAME_RE.search(line)
            if match:
                self._progress.frame = int(match.group(1))

            match = _FPS_RE.search(line)
            if match:
                self._progress.fps = float(match.group(1))

            match = _BITRATE_RE.search(line)
            if match:
                self._progress.bitrate_kbps = float(match.group(1))

            match = _SPEED_RE.search(line)
            if match:
                self._progress.speed = float(match.group(1))

            now = time.time()
            if self.progress_callback and now - last_callback >= 2.0:
                last_callback = now
                try:
                    self.progress_callback(self._progress)
                except Exception as e:
                    # Callback errors must not kill the reader thread
                    logger.warning("progress_callback_failed", error=str(e))

    def _kill_process_tree(self) -> None:
        """Kill FFmpeg process and all children.

        Kill sequence:
        1. SIGTERM to the process and its children
        2. Wait grace period
        3. SIGKILL survivors
        """
        if not self._process:
            return

        try:
            parent = psutil.Process(self._process.pid)
            children = parent.children(recursive=True)
        except psutil.NoSuchProcess:
            return

        for proc in children + [parent]:
            try:
                proc.terminate()
            except psutil.NoSuchProcess:
                pass

        _, alive = psutil.wait_procs(children + [parent], timeout=self.kill_grace_period_s)

        for proc in alive:
            try:
                proc.kill()
            except psutil.NoSuchProcess:
                pass

        try:
            self._process.wait(timeout=self.kill_grace_period_s)
        except subprocess.TimeoutExpired:
            logger.error("ffmpeg_unkillable", pid=self._process.pid)

    def _classify_error(self, stderr: str) -> FfmpegErrorType:
        """Classify FFmpeg error from its stderr output."""
        stderr_lower = stderr.lower()

        permanent_patterns = [
            "no such file or directory",
            "invalid data found",
            "invalid argument",
            "permission denied",
            "unsupported codec",
            "invalid codec",
            "moov atom not found",
            "end of file",
            "corrupt",
        ]

        for pattern in permanent_patterns:
            if pattern in stderr_lower:
                return FfmpegErrorType.PERMANENT

        transient_patterns = [
            "i/o error",
            "connection refused",
            "connection timeout",
            "resource temporarily unavailable",
            "disk full",
        ]

        for pattern in transient_patterns:
            if pattern in stderr_lower:
                return FfmpegErrorType.TRANSIENT

        return FfmpegErrorType.TRANSIENT

    def _save_failure_artifacts(self, cmd: List[str], stderr: str) -> List[Path]:
        """Write ffmpeg_error_{timestamp}.log with command and stderr."""
        artifacts_dir = Path(self.artifacts_dir)
        log_path = artifacts_dir / f"ffmpeg_error_{int(time.time() * 1000)}.log"

        try:
            artifacts_dir.mkdir(parents=True, exist_ok=True)
            with open(log_path, "w") as f:
                f.write("=" * 80 + "\n")
                f.write("FFmpeg Error Log\n")
                f.write(f"Timestamp: {time.ctime()}\n")
                f.write("=" * 80 + "\n\n")
                f.write("COMMAND:\n")
                f.write(" ".join(cmd) + "\n\n")
                f.write("STDERR:\n")
                f.write(stderr or "(empty)\n")
        except OSError as e:
            logger.warning("ffmpeg_artifact_save_failed", error=str(e))
            return []

        return [log_path]

    @staticmethod
    def _get_ffmpeg_exe() -> str:
        """Get FFmpeg executable path."""
        return imageio_ffmpeg.get_ffmpeg_exe()


def check_ffmpeg() -> bool:
    """Verify ffmpeg is installed and runs."""
    try:
        subprocess.run(
            [FfmpegRunner._get_ffmpeg_exe(), "-version"],
            stdout=subprocess.DEVNULL,
            stderr=subprocess.DEVNULL,
            check=True,
        )
        return True
    except (FileNotFoundError, subprocess.CalledProcessError, OSError, RuntimeError):
        return False
