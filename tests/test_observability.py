"""Tests for JSON logging, the error taxonomy and the health endpoint body."""

import json
import logging
import sys
from unittest.mock import AsyncMock, patch

import pytest

from workout_processor import metrics
from workout_processor.errors import (
    ReferenceLookupError,
    WorkoutEventRejected,
    WorkoutInsertError,
    WorkoutPublishError,
    classify_error_code,
    is_retryable,
)
from workout_processor.health import health_body, render_response
from workout_processor.logging import JSONFormatter, TextFormatter
from workout_processor.models import PipelineContext


def _record(msg: str, **extra) -> logging.LogRecord:
    record = logging.LogRecord("workout_processor.pipeline", logging.WARNING, __file__, 10, msg, (), None)
    for key, value in extra.items():
        setattr(record, key, value)
    return record


class TestJSONFormatter:
    def test_emits_prefixed_extras(self):
        extra = PipelineContext(correlation_id="c-1", job_id=3).log_extra(
            external_id="w-1", position=2, reason="period_not_found"
        )

        entry = json.loads(JSONFormatter().format(_record("skipped", **extra)))

        assert entry["message"] == "skipped"
        assert entry["level"] == "WARNING"
        assert entry["wp_correlation_id"] == "c-1"
        assert entry["wp_job_id"] == 3
        assert entry["wp_position"] == 2
        assert entry["wp_reason"] == "period_not_found"

    def test_ignores_unprefixed_attributes(self):
        entry = json.loads(JSONFormatter().format(_record("hello", tenant="x")))

        assert "tenant" not in entry

    def test_includes_exception_text(self):
        try:
            raise WorkoutInsertError("boom")
        except WorkoutInsertError:
            record = _record("failed")
            record.exc_info = sys.exc_info()

        entry = json.loads(JSONFormatter().format(record))

        assert "WorkoutInsertError: boom" in entry["exception"]

    def test_text_format_appends_extras(self):
        line = TextFormatter().format(_record("skipped", wp_external_id="w-1", wp_position=2))

        assert line.endswith("skipped [external_id=w-1 position=2]")

    def test_text_format_without_extras_is_plain(self):
        assert TextFormatter().format(_record("hello")).endswith("workout_processor.pipeline: hello")


class TestErrorTaxonomy:
    @pytest.mark.parametrize(
        ("error", "expected"),
        [
            (WorkoutEventRejected("bad"), "validation"),
            (ReferenceLookupError("down"), "reference"),
            (WorkoutInsertError("down"), "persistence"),
            (WorkoutInsertError("dup", code="duplicate_external_id"), "persistence"),
            (WorkoutPublishError("down"), "publish"),
        ],
    )
    def test_codes_classify(self, error, expected):
        assert classify_error_code(error.code) == expected

    @pytest.mark.parametrize("code", [None, "", "  ", "something_else"])
    def test_unknown_codes_are_other(self, code):
        assert classify_error_code(code) == "other"

    def test_only_rejections_are_final(self):
        assert is_retryable(WorkoutEventRejected("bad")) is False
        assert is_retryable(WorkoutPublishError("down")) is True
        assert is_retryable(RuntimeError("anything")) is True


class TestHealth:
    @pytest.fixture(autouse=True)
    def _clean_metrics(self):
        metrics.reset_metrics()
        yield
        metrics.reset_metrics()

    def test_render_response_sets_length(self):
        raw = render_response(200, {"status": "ok"})

        head, body = raw.decode().split("\r\n\r\n")
        assert head.startswith("HTTP/1.1 200 OK")
        assert f"Content-Length: {len(body)}" in head
        assert json.loads(body) == {"status": "ok"}

    async def test_healthy_database_reports_ok_with_counters(self):
        metrics.record_pipeline_run(received=3, duplicates=1, skipped=1, inserted=1, published=1)

        with patch("workout_processor.health.check_database", new_callable=AsyncMock, return_value="ok"):
            status, body = await health_body("postgresql://db/app")

        assert status == 200
        assert body["status"] == "ok"
        assert body["metrics"]["workouts_received"] == 3
        assert body["metrics"]["workouts_inserted"] == 1

    async def test_database_error_degrades(self):
        with patch("workout_processor.health.check_database", new_callable=AsyncMock, return_value="error"):
            status, body = await health_body("postgresql://db/app")

        assert status == 503
        assert body["status"] == "degraded"
