"""Tests for configuration and job/queue data models."""

from datetime import datetime

import pytest
from pydantic import ValidationError

from reelqueue.jobs.models import Job, JobState, can_transition
from reelqueue.models import AnalysisConfig, LoggingConfig, ReelQueueConfig, Segment
from reelqueue.queue.models import Delivery, QueueMessage


class TestJobState:
    def test_terminal_states(self):
        assert JobState.COMPLETED.is_terminal
        assert JobState.FAILED.is_terminal
        assert not JobState.QUEUED.is_terminal
        assert not JobState.PROCESSING.is_terminal

    @pytest.mark.parametrize(
        "current,target",
        [
            (JobState.QUEUED, JobState.PROCESSING),
            (JobState.PROCESSING, JobState.PROCESSING),
            (JobState.PROCESSING, JobState.COMPLETED),
            (JobState.PROCESSING, JobState.FAILED),
        ],
    )
    def test_allowed_transitions(self, current, target):
        assert can_transition(current, target)

    @pytest.mark.parametrize(
        "current,target",
        [
            (JobState.QUEUED, JobState.COMPLETED),
            (JobState.COMPLETED, JobState.PROCESSING),
            (JobState.COMPLETED, JobState.FAILED),
            (JobState.FAILED, JobState.QUEUED),
            (JobState.PROCESSING, JobState.QUEUED),
        ],
    )
    def test_forbidden_transitions(self, current, target):
        assert not can_transition(current, target)


class TestJob:
    def test_completed_requires_reference(self):
        with pytest.raises(ValidationError):
            Job(
                id=1,
                source_reference="https://example.com/video",
                state=JobState.COMPLETED,
                created_at=datetime.now(),
            )

    def test_reference_only_when_completed(self):
        with pytest.raises(ValidationError):
            Job(
                id=1,
                source_reference="https://example.com/video",
                state=JobState.FAILED,
                result_reference="https://files.example/x.mp4",
                created_at=datetime.now(),
            )

    def test_to_public(self):
        created = datetime(2024, 1, 1, 12, 0, 0)
        job = Job(id=7, source_reference="https://example.com/v", created_at=created)
        assert job.to_public() == {
            "job_id": 7,
            "source_reference": "https://example.com/v",
            "state": "queued",
            "result_reference": None,
            "created_at": created.isoformat(),
        }


class TestQueueMessage:
    def test_wire_format(self):
        body = QueueMessage(job_id=1, source_reference="https://example.com/video").encode()
        assert body == '{"job_id":1,"source_reference":"https://example.com/video"}'

    def test_decode_rejects_garbage(self):
        with pytest.raises(ValidationError):
            QueueMessage.decode("not json")
        with pytest.raises(ValidationError):
            QueueMessage.decode('{"job_id": 0, "source_reference": "x"}')

    def test_redelivered_flag(self):
        first = Delivery(message_id=1, body="{}", consumer_id="c", delivery_count=1)
        second = Delivery(message_id=1, body="{}", consumer_id="c", delivery_count=2)
        assert not first.redelivered
        assert second.redelivered


class TestSegment:
    def test_duration(self):
        assert Segment(start=10.0, end=25.0).duration == pytest.approx(15.0)

    def test_end_must_follow_start(self):
        with pytest.raises(ValidationError):
            Segment(start=10.0, end=10.0)

    def test_negative_start_rejected(self):
        with pytest.raises(ValidationError):
            Segment(start=-1.0, end=5.0)


class TestConfigModels:
    def test_defaults(self):
        config = ReelQueueConfig()
        assert config.queue.name == "video_processing_queue"
        assert config.queue.prefetch == 1
        assert config.queue.reconnect_delay_s == 5.0
        assert config.pipeline.fallback_duration_s == 15.0
        assert config.analysis.model == "gpt-4"
        assert config.publish.backend == "local"
        assert config.api.port == 3000

    def test_analysis_available_needs_key(self):
        assert not AnalysisConfig(enabled=True).available
        assert not AnalysisConfig(enabled=False, api_key="sk-test").available
        assert AnalysisConfig(enabled=True, api_key="sk-test").available

    def test_log_level_case_insensitive(self):
        assert LoggingConfig(level="INFO", format="JSON").level == "info"

    def test_invalid_values_rejected(self):
        with pytest.raises(ValidationError):
            ReelQueueConfig.from_dict({"queue": {"prefetch": 0}})
        with pytest.raises(ValidationError):
            ReelQueueConfig.from_dict({"publish": {"backend": "s3"}})

    def test_merge_cli_overrides(self):
        config = ReelQueueConfig().merge_cli_overrides(
            {
                "database_url": "sqlite:///other.db",
                "queue_db": "other_queue.db",
                "no_analysis": True,
                "publish_backend": "fileio",
                "port": 8080,
            }
        )
        assert config.store.database_url == "sqlite:///other.db"
        assert config.queue.db_path == "other_queue.db"
        assert config.analysis.enabled is False
        assert config.publish.backend == "fileio"
        assert config.api.port == 8080
