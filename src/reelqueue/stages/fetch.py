"""Fetch stage: download the source video with yt-dlp."""

import subprocess
from pathlib import Path
from typing import List, Optional

from ..errors import StageFailure
from ..logging import get_logger
from .base import Fetcher, MediaHandle

logger = get_logger("stages.fetch")


class YtDlpFetcher(Fetcher):
    """Runs the yt-dlp executable as a subprocess with a finite timeout."""

    def __init__(
        self,
        executable: str = "yt-dlp",
        format: str = "best[ext=mp4]/best",
        timeout_s: int = 900,
        cookies_file: Optional[str] = None,
    ):
        self.executable = executable
        self.format = format
        self.timeout_s = timeout_s
        self.cookies_file = cookies_file

    def is_available(self) -> bool:
        """True if the executable runs (`--version`)."""
        try:
            subprocess.run(
                [self.executable, "--version"],
                stdout=subprocess.DEVNULL,
                stderr=subprocess.DEVNULL,
                check=True,
                timeout=30,
            )
            return True
        except (OSError, subprocess.CalledProcessError, subprocess.TimeoutExpired):
            return False

    def build_command(self, reference: str, destination: Path) -> List[str]:
        cmd = [
            self.executable,
            "-f", self.format,
            "--no-playlist",
            "--force-overwrites",
            "-o", str(destination),
        ]
        if self.cookies_file:
            cmd.extend(["--cookies", self.cookies_file])
        cmd.append(reference)
        return cmd

    def fetch(self, reference: str, destination: Path) -> MediaHandle:
        cmd = self.build_command(reference, destination)
        logger.info("download_started", source_reference=reference)

        try:
            proc = subprocess.run(
                cmd,
                capture_output=True,
                text=True,
                timeout=self.timeout_s,
            )
        except FileNotFoundError:
            raise StageFailure(self.stage, f"{self.executable} not found on PATH")
        except subprocess.TimeoutExpired:
            raise StageFailure(self.stage, f"download timed out after {self.timeout_s}s")

        if proc.returncode != 0:
            tail = (proc.stderr or "").strip()[-500:]
            raise StageFailure(
                self.stage, f"{self.executable} exited with {proc.returncode}: {tail}"
            )

        if not destination.exists() or destination.stat().st_size == 0:
            raise StageFailure(self.stage, f"download produced no file at {destination}")

        logger.info("download_finished", size_bytes=destination.stat().st_size)
        return MediaHandle(path=destination, kind="video")
