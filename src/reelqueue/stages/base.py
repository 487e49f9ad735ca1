"""Abstract stage adapter interfaces.

Each adapter performs one pipeline step's external work and either
returns a typed output or raises StageFailure with a diagnostic message.
Adapters know nothing about jobs or queues; the executor decides where
outputs are written, so re-running a stage overwrites the same file.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from ..errors import StageFailure
from ..models import AnalysisResult, Segment

__all__ = [
    "MediaHandle",
    "StageFailure",
    "Fetcher",
    "Transformer",
    "Analyzer",
    "Cutter",
    "Publisher",
]


@dataclass(frozen=True)
class MediaHandle:
    """Local media file produced by a stage."""

    path: Path
    kind: str = "video"  # "video" or "audio"
    duration_s: Optional[float] = None


class Fetcher(ABC):
    """Download the referenced resource."""

    stage = "fetch"

    @abstractmethod
    def fetch(self, reference: str, destination: Path) -> MediaHandle:
        pass


class Transformer(ABC):
    """Derive an intermediate representation (e.g. the audio track)."""

    stage = "transform"

    @abstractmethod
    def transform(self, handle: MediaHandle, destination: Path) -> MediaHandle:
        pass


class Analyzer(ABC):
    """Pick the part of the media worth keeping."""

    stage = "analyze"

    @abstractmethod
    def analyze(self, handle: MediaHandle) -> AnalysisResult:
        pass


class Cutter(ABC):
    """Produce the final artifact restricted to a segment."""

    stage = "cut"

    @abstractmethod
    def cut(self, handle: MediaHandle, segment: Segment, destination: Path) -> MediaHandle:
        pass


class Publisher(ABC):
    """Host the artifact and return a public reference."""

    stage = "publish"

    @abstractmethod
    def publish(self, handle: MediaHandle, key: str) -> str:
        pass
