"""Unit tests for job claiming, completion, rejection and retry handling."""

from unittest.mock import AsyncMock, MagicMock, patch

import psycopg
import pytest

from workout_processor import metrics
from workout_processor.config import Config
from workout_processor.errors import ReferenceLookupError, WorkoutEventRejected
from workout_processor.worker import ClaimedJob, Worker, backoff_seconds


class _FakeTransaction:
    """Mimics psycopg's async transaction context manager."""

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        return False  # don't suppress exceptions


class _FakeCursor:
    def __init__(self, rows=None):
        self.execute = AsyncMock()
        self.fetchall = AsyncMock(return_value=rows or [])

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        return False


def _make_mock_conn(rows=None):
    conn = AsyncMock()
    conn.transaction = MagicMock(return_value=_FakeTransaction())
    conn.execute = AsyncMock()
    conn.commit = AsyncMock()
    fake_cursor = _FakeCursor(rows)
    conn.cursor = MagicMock(return_value=fake_cursor)
    conn._fake_cursor = fake_cursor
    return conn


def _row(**overrides):
    row = {
        "id": 42,
        "user_id": 7,
        "job_type": "usr_workout.process",
        "payload": {"userId": 7, "workouts": []},
        "attempt": 1,
        "max_retries": 3,
    }
    row.update(overrides)
    return row


def _job(**overrides) -> ClaimedJob:
    return ClaimedJob.from_row(_row(**overrides))


def _status_update(conn):
    query, params = conn._fake_cursor.execute.call_args.args
    return " ".join(query.split()), params


@pytest.fixture
def worker():
    return Worker(Config(database_url="postgresql://db/app", listen_database_url="postgresql://db/app"))


@pytest.fixture(autouse=True)
def _clean_metrics():
    metrics.reset_metrics()
    yield
    metrics.reset_metrics()


class TestProcessJob:
    @pytest.mark.asyncio
    async def test_success_completes_inside_the_handler_transaction(self, worker):
        conn = _make_mock_conn()
        handler = AsyncMock()

        with patch("workout_processor.worker.get_handler", return_value=handler):
            await worker._process_job(conn, _job())

        handler.assert_awaited_once()
        _, payload, job_context = handler.call_args.args
        assert payload == {"userId": 7, "workouts": []}
        assert job_context.job_id == 42
        assert job_context.attempt == 1
        assert job_context.config is worker.config
        completion_sql = conn.execute.call_args.args[0]
        assert "status = 'completed'" in completion_sql
        assert metrics.get_metrics()["jobs_processed"] == 1

    @pytest.mark.asyncio
    async def test_missing_payload_is_passed_as_empty_dict(self, worker):
        conn = _make_mock_conn()
        handler = AsyncMock()

        with patch("workout_processor.worker.get_handler", return_value=handler):
            await worker._process_job(conn, _job(payload=None))

        assert handler.call_args.args[1] == {}

    @pytest.mark.asyncio
    async def test_rejected_event_is_dead_lettered_without_retry(self, worker):
        conn = _make_mock_conn()
        handler = AsyncMock(side_effect=WorkoutEventRejected("invalid workout event: duration"))

        with patch("workout_processor.worker.get_handler", return_value=handler):
            await worker._process_job(conn, _job(attempt=1, max_retries=3))

        query, params = _status_update(conn)
        assert "status = 'dead'" in query
        assert params == ("invalid workout event: duration", 42)
        snapshot = metrics.get_metrics()
        assert snapshot["jobs_rejected"] == 1
        assert snapshot["jobs_failed"] == 0

    @pytest.mark.asyncio
    async def test_transient_failure_is_retried_with_backoff(self, worker):
        conn = _make_mock_conn()
        handler = AsyncMock(side_effect=ReferenceLookupError("period lookup failed"))

        with patch("workout_processor.worker.get_handler", return_value=handler):
            await worker._process_job(conn, _job(attempt=2, max_retries=3))

        query, params = _status_update(conn)
        assert "status = 'pending'" in query
        assert params == ("period lookup failed", 4.0, 42)
        assert metrics.get_metrics()["jobs_failed"] == 1
        conn.commit.assert_awaited()

    @pytest.mark.asyncio
    async def test_failure_at_max_retries_is_dead(self, worker):
        conn = _make_mock_conn()
        handler = AsyncMock(side_effect=ReferenceLookupError("period lookup failed"))

        with patch("workout_processor.worker.get_handler", return_value=handler):
            await worker._process_job(conn, _job(attempt=3, max_retries=3))

        query, _ = _status_update(conn)
        assert "status = 'dead'" in query
        assert metrics.get_metrics()["jobs_dead"] == 1

    @pytest.mark.asyncio
    async def test_unknown_job_type_is_failed(self, worker):
        conn = _make_mock_conn()

        with patch("workout_processor.worker.get_handler", return_value=None):
            await worker._process_job(conn, _job(job_type="usr_workout.unknown"))

        query, params = _status_update(conn)
        assert "status = 'dead'" in query
        assert params == ("No handler for job_type=usr_workout.unknown", 42)


class TestClaimJobs:
    @pytest.mark.asyncio
    async def test_claims_only_registered_job_types(self, worker):
        conn = _make_mock_conn(rows=[_row()])

        with patch(
            "workout_processor.worker.registered_types",
            return_value=["usr_workout.process", "usr_workout.republish"],
        ):
            jobs = await worker._claim_jobs(conn)

        query, params = _status_update(conn)
        assert "FOR UPDATE SKIP LOCKED" in query
        assert "job_type = ANY(%s)" in query
        assert params == (["usr_workout.process", "usr_workout.republish"], 10)
        assert jobs == [_job()]
        assert jobs[0].payload == {"userId": 7, "workouts": []}


class TestBatchAndBackoff:
    def test_backoff_doubles_per_attempt(self):
        assert [backoff_seconds(attempt) for attempt in (1, 2, 3)] == [2, 4, 8]

    def test_notifications_for_other_job_types_are_ignored(self, worker):
        with patch(
            "workout_processor.worker.registered_types",
            return_value=["usr_workout.process"],
        ):
            assert worker._wants("usr_workout.process") is True
            assert worker._wants("") is True
            assert worker._wants("usr_workout.created") is False

    @pytest.mark.asyncio
    async def test_connection_failure_is_logged_not_raised(self, worker):
        with patch(
            "workout_processor.worker.psycopg.AsyncConnection.connect",
            new_callable=AsyncMock,
            side_effect=psycopg.OperationalError("database unavailable"),
        ):
            assert await worker.process_batch() == 0
