import io
import json

from reelqueue.logging import configure_logging, get_logger, job_context, set_stage


def test_json_logs_carry_job_context():
    stream = io.StringIO()
    configure_logging("info", "json", stream=stream)
    logger = get_logger("test")

    with job_context(7):
        set_stage("downloading")
        logger.info("download_started", source_reference="https://example.com/v")
    logger.info("outside")

    first, second = [json.loads(line) for line in stream.getvalue().splitlines()]
    assert first["event"] == "download_started"
    assert first["job_id"] == 7
    assert first["stage"] == "downloading"
    assert first["logger_name"] == "test"
    assert first["level"] == "info"
    assert "timestamp" in first
    assert "job_id" not in second
    assert "stage" not in second


def test_level_filtering():
    stream = io.StringIO()
    configure_logging("warn", "json", stream=stream)
    logger = get_logger()
    logger.info("hidden")
    logger.warning("shown")
    events = [json.loads(line)["event"] for line in stream.getvalue().splitlines()]
    assert events == ["shown"]
