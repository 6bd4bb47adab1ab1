"""Tests for structured logging."""

import json
import logging

from utils.logging import HumanReadableFormatter, JobLogContext, JSONFormatter, get_job_context


def _record(message: str = "Job 42 succeeded", **extra) -> logging.LogRecord:
    record = logging.LogRecord("services.worker", logging.INFO, __file__, 1, message, None, None)
    for key, value in extra.items():
        setattr(record, key, value)
    return record


class TestJobLogContext:
    def test_binds_and_resets_context(self):
        with JobLogContext(job_id="42", owner_id="u1"):
            assert get_job_context() == {"job_id": "42", "owner_id": "u1"}

        assert get_job_context() == {}


class TestJSONFormatter:
    def test_includes_job_context_and_extra_fields(self):
        with JobLogContext(job_id="42", owner_id="u1"):
            line = JSONFormatter().format(_record(task_type="embed_decision"))

        data = json.loads(line)
        assert data["level"] == "INFO"
        assert data["logger"] == "services.worker"
        assert data["message"] == "Job 42 succeeded"
        assert data["job_id"] == "42"
        assert data["owner_id"] == "u1"
        assert data["extra"] == {"task_type": "embed_decision"}


class TestHumanReadableFormatter:
    def test_prefixes_job_id(self):
        with JobLogContext(job_id="7"):
            line = HumanReadableFormatter().format(_record("Claimed"))

        assert line.endswith("| services.worker | [job:7] Claimed")
