"""Shared fixtures: temporary status store and queue, fake stage adapters."""

import logging
from pathlib import Path

import pytest
import structlog

from reelqueue.errors import StageFailure
from reelqueue.jobs.store import SQLStatusStore
from reelqueue.models import AnalysisResult
from reelqueue.queue.sqlite_backend import SQLiteQueue
from reelqueue.stages import PipelineStages
from reelqueue.stages.base import Analyzer, Cutter, Fetcher, MediaHandle, Publisher, Transformer


@pytest.fixture(autouse=True)
def _isolate_logging_config():
    """Undo global logging configuration (e.g. by cli.main) after each test."""
    root = logging.getLogger()
    handlers, level = root.handlers[:], root.level
    yield
    structlog.reset_defaults()
    root.handlers[:] = handlers
    root.setLevel(level)


class SimulatedCrash(BaseException):
    """Stands in for the worker process dying mid-pipeline."""


class FakeFetcher(Fetcher):
    def __init__(self, error=None, on_fetch=None):
        self.error = error
        self.on_fetch = on_fetch
        self.calls = []

    def fetch(self, reference, destination):
        self.calls.append(reference)
        if self.on_fetch:
            self.on_fetch(reference)
        if self.error:
            raise self.error
        destination.write_bytes(b"video")
        return MediaHandle(path=destination, duration_s=120.0)


class FakeTransformer(Transformer):
    def __init__(self):
        self.calls = []

    def transform(self, handle, destination):
        self.calls.append(handle.path)
        destination.write_bytes(b"audio")
        return MediaHandle(path=destination, kind="audio")


class FakeAnalyzer(Analyzer):
    def __init__(self, result=None, error=None):
        self.result = result or AnalysisResult(start=10.0, end=25.0, summary="the good part")
        self.error = error
        self.calls = []

    def analyze(self, handle):
        self.calls.append(handle)
        if self.error:
            raise self.error
        return self.result


class FakeCutter(Cutter):
    def __init__(self, crash_times=0):
        self.crash_times = crash_times
        self.segments = []

    def cut(self, handle, segment, destination):
        self.segments.append(segment)
        if self.crash_times > 0:
            self.crash_times -= 1
            raise SimulatedCrash()
        destination.write_bytes(b"clip")
        return MediaHandle(path=destination, duration_s=segment.duration)


class FakePublisher(Publisher):
    def __init__(self, error=None):
        self.error = error
        self.keys = []

    def publish(self, handle, key):
        self.keys.append(key)
        if self.error:
            raise self.error
        return f"https://files.example/{key}{handle.path.suffix}"


@pytest.fixture
def fakes():
    """Namespace of fake adapter classes for building custom stages."""
    return {
        "fetcher": FakeFetcher,
        "transformer": FakeTransformer,
        "analyzer": FakeAnalyzer,
        "cutter": FakeCutter,
        "publisher": FakePublisher,
        "crash": SimulatedCrash,
        "failure": StageFailure,
    }


@pytest.fixture
def stages():
    """Complete fake pipeline without analysis."""
    return PipelineStages(
        fetcher=FakeFetcher(),
        cutter=FakeCutter(),
        publisher=FakePublisher(),
    )


@pytest.fixture
def store(tmp_path: Path):
    """Status store on a temporary SQLite file."""
    s = SQLStatusStore(f"sqlite:///{tmp_path / 'jobs.db'}")
    yield s
    s.dispose()


@pytest.fixture
def queue_path(tmp_path: Path) -> str:
    return str(tmp_path / "queue.db")


@pytest.fixture
def queue(queue_path):
    """Connected SQLite queue."""
    q = SQLiteQueue(queue_path)
    q.connect()
    yield q
    q.close()
