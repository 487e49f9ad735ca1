"""Tests for layered configuration resolution."""

import pytest
import yaml
from pydantic import ValidationError

from reelqueue.config import (
    env_overrides,
    get_config_value,
    merge_dicts,
    resolve_config,
)
from reelqueue.models import ReelQueueConfig


@pytest.fixture
def config_file(tmp_path):
    path = tmp_path / "config.yaml"
    path.write_text(
        yaml.safe_dump(
            {
                "queue": {"name": "from_file", "db_path": "file_queue.db"},
                "pipeline": {"fallback_duration_s": 20.0},
            }
        )
    )
    return path


def test_merge_dicts_recursive():
    base = {"queue": {"name": "a", "prefetch": 1}, "api": {"port": 3000}}
    override = {"queue": {"name": "b"}}
    merged = merge_dicts(base, override)
    assert merged == {"queue": {"name": "b", "prefetch": 1}, "api": {"port": 3000}}
    assert base["queue"]["name"] == "a"


def test_get_config_value_from_model_and_dict():
    config = ReelQueueConfig()
    assert get_config_value(config, "queue.name") == "video_processing_queue"
    assert get_config_value({"a": {"b": 1}}, "a.b") == 1
    assert get_config_value(config, "queue.missing", default="x") == "x"


def test_env_overrides_mapping():
    overrides = env_overrides(
        {
            "DATABASE_URL": "postgresql://db/jobs",
            "QUEUE_NAME": "other",
            "OPENAI_API_KEY": "sk-test",
            "UNRELATED": "ignored",
        }
    )
    assert overrides == {
        "store": {"database_url": "postgresql://db/jobs"},
        "queue": {"name": "other"},
        "analysis": {"api_key": "sk-test"},
    }


def test_resolve_from_file(config_file):
    config = resolve_config(config_path=config_file, environ={})
    assert config.queue.name == "from_file"
    assert config.queue.db_path == "file_queue.db"
    assert config.pipeline.fallback_duration_s == 20.0
    # untouched sections keep model defaults
    assert config.api.port == 3000


def test_precedence_file_env_cli(config_file):
    config = resolve_config(
        cli_args={"queue_db": "cli_queue.db"},
        config_path=config_file,
        environ={"QUEUE_NAME": "from_env", "QUEUE_DB_PATH": "env_queue.db", "LOG_LEVEL": "DEBUG"},
    )
    assert config.queue.name == "from_env"
    assert config.queue.db_path == "cli_queue.db"
    assert config.logging.level == "debug"


def test_missing_file_uses_defaults(tmp_path):
    config = resolve_config(config_path=tmp_path / "absent.yaml", environ={})
    assert config == ReelQueueConfig()


def test_invalid_file_raises(tmp_path):
    path = tmp_path / "bad.yaml"
    path.write_text(yaml.safe_dump({"api": {"port": "not-a-port"}}))
    with pytest.raises(ValidationError):
        resolve_config(config_path=path, environ={})
