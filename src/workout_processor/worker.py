"""Job loop for the workout processor.

Jobs arrive as ``background_jobs`` rows. A LISTEN connection wakes the worker
as soon as one is inserted; a polling loop catches anything a missed
notification leaves behind. Each claimed job runs its handler and its
completion update in one transaction.
"""

import asyncio
import logging
import signal
from dataclasses import dataclass
from typing import Any

import psycopg
from psycopg.rows import dict_row

from .config import Config
from .errors import classify_error_code, is_retryable
from .metrics import (
    record_job_completed,
    record_job_dead,
    record_job_failed,
    record_job_rejected,
)
from .registry import JobContext, get_handler, registered_types

logger = logging.getLogger(__name__)

LISTEN_CHANNEL = "workout_jobs"
RECONNECT_DELAY_SECONDS = 5


@dataclass(frozen=True)
class ClaimedJob:
    id: int
    job_type: str
    payload: dict[str, Any]
    attempt: int
    max_retries: int

    @classmethod
    def from_row(cls, row: dict[str, Any]) -> "ClaimedJob":
        return cls(
            id=int(row["id"]),
            job_type=str(row["job_type"]),
            payload=row.get("payload") or {},
            attempt=int(row["attempt"]),
            max_retries=int(row["max_retries"]),
        )

    @property
    def exhausted(self) -> bool:
        return self.attempt >= self.max_retries


def backoff_seconds(attempt: int) -> int:
    return 2**attempt


class Worker:
    def __init__(self, config: Config) -> None:
        self.config = config
        self._shutdown = asyncio.Event()

    async def run(self) -> None:
        """Run the listen and poll loops until SIGTERM/SIGINT."""
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGTERM, signal.SIGINT):
            loop.add_signal_handler(sig, self._request_shutdown)

        logger.info(
            "Worker starting (poll_interval=%.1fs, batch_size=%d, job_types=%s)",
            self.config.poll_interval_seconds,
            self.config.batch_size,
            registered_types(),
        )
        if self.config.listen_database_url != self.config.database_url:
            logger.info("LISTEN uses a dedicated database URL")

        async with asyncio.TaskGroup() as tg:
            tg.create_task(self._listen_loop())
            tg.create_task(self._poll_loop())

    def _request_shutdown(self) -> None:
        logger.info("Shutdown requested")
        self._shutdown.set()

    def _wants(self, notify_payload: str) -> bool:
        # The trigger sends the job type; an empty payload means "check anyway".
        return not notify_payload or notify_payload in registered_types()

    async def _listen_loop(self) -> None:
        while not self._shutdown.is_set():
            try:
                async with await psycopg.AsyncConnection.connect(
                    self.config.listen_database_url, autocommit=True
                ) as conn:
                    await conn.execute(f"LISTEN {LISTEN_CHANNEL}")
                    logger.info("Listening on %s", LISTEN_CHANNEL)
                    await self._drain_notifications(conn)
            except psycopg.OperationalError:
                if self._shutdown.is_set():
                    break
                logger.warning(
                    "LISTEN connection lost, reconnecting in %ds", RECONNECT_DELAY_SECONDS
                )
                await asyncio.sleep(RECONNECT_DELAY_SECONDS)

        logger.info("Listen loop stopped")

    async def _drain_notifications(self, conn: psycopg.AsyncConnection[Any]) -> None:
        # notifies() returns on timeout, so the connection survives idle periods.
        while not self._shutdown.is_set():
            async for notify in conn.notifies(timeout=self.config.poll_interval_seconds):
                if not self._wants(notify.payload):
                    continue
                logger.debug("NOTIFY %s", notify.payload)
                await self.process_batch()
                if self._shutdown.is_set():
                    return

    async def _poll_loop(self) -> None:
        while not self._shutdown.is_set():
            try:
                await asyncio.wait_for(
                    self._shutdown.wait(), timeout=self.config.poll_interval_seconds
                )
                break
            except TimeoutError:
                pass
            await self.process_batch()

        logger.info("Poll loop stopped")

    async def process_batch(self) -> int:
        """Claim up to ``batch_size`` jobs and run them one by one.

        Returns the number of jobs claimed. Errors are logged, never raised,
        so both loops keep running.
        """
        try:
            async with await psycopg.AsyncConnection.connect(self.config.database_url) as conn:
                jobs = await self._claim_jobs(conn)
                # Claims are committed first so a crash leaves them visible as 'processing'.
                await conn.commit()
                for job in jobs:
                    await self._process_job(conn, job)
                return len(jobs)
        except Exception:
            logger.exception("Error while processing a job batch")
            return 0

    async def _claim_jobs(self, conn: psycopg.AsyncConnection[Any]) -> list[ClaimedJob]:
        """Claim pending jobs of the registered types with FOR UPDATE SKIP LOCKED.

        Other job types, including the created events this worker publishes,
        belong to downstream consumers and are left alone.
        """
        async with conn.cursor(row_factory=dict_row) as cur:
            await cur.execute(
                """
                UPDATE background_jobs
                SET status = 'processing', started_at = NOW(), attempt = attempt + 1
                WHERE id IN (
                    SELECT id FROM background_jobs
                    WHERE status = 'pending'
                      AND scheduled_for <= NOW()
                      AND job_type = ANY(%s)
                    ORDER BY scheduled_for, priority DESC, id
                    LIMIT %s
                    FOR UPDATE SKIP LOCKED
                )
                RETURNING id, job_type, payload, attempt, max_retries
                """,
                (registered_types(), self.config.batch_size),
            )
            rows = await cur.fetchall()
        return [ClaimedJob.from_row(row) for row in rows]

    async def _process_job(self, conn: psycopg.AsyncConnection[Any], job: ClaimedJob) -> None:
        extra = {"wp_job_id": job.id}
        handler = get_handler(job.job_type)
        if handler is None:
            logger.warning("No handler for job_type=%s (job %d)", job.job_type, job.id, extra=extra)
            await self._mark_dead(conn, job, f"No handler for job_type={job.job_type}")
            return

        context = JobContext(
            job_id=job.id,
            job_type=job.job_type,
            attempt=job.attempt,
            config=self.config,
        )
        try:
            async with conn.transaction():
                await handler(conn, job.payload, context)
                await conn.execute(
                    """
                    UPDATE background_jobs
                    SET status = 'completed', completed_at = NOW()
                    WHERE id = %s
                    """,
                    (job.id,),
                )
        except Exception as exc:
            # The transaction has already rolled back the handler's writes.
            await self._handle_failure(conn, job, exc)
            return

        record_job_completed()
        logger.info("Job %d completed (type=%s)", job.id, job.job_type, extra=extra)

    async def _handle_failure(
        self, conn: psycopg.AsyncConnection[Any], job: ClaimedJob, exc: Exception
    ) -> None:
        code = getattr(exc, "code", None)
        extra = {"wp_job_id": job.id, "wp_reason": code or type(exc).__name__}

        if not is_retryable(exc):
            record_job_rejected()
            logger.warning(
                "Job %d rejected (type=%s, class=%s): %s",
                job.id,
                job.job_type,
                classify_error_code(code),
                exc,
                extra=extra,
            )
            await self._mark_dead(conn, job, str(exc))
            return

        logger.exception(
            "Job %d failed (type=%s, class=%s, attempt=%d/%d)",
            job.id,
            job.job_type,
            classify_error_code(code),
            job.attempt,
            job.max_retries,
            extra=extra,
        )
        if job.exhausted:
            record_job_dead()
            logger.error("Job %d is dead after %d attempts", job.id, job.attempt, extra=extra)
            await self._mark_dead(conn, job, str(exc))
        else:
            record_job_failed()
            await self._reschedule(conn, job, str(exc))

    async def _mark_dead(
        self, conn: psycopg.AsyncConnection[Any], job: ClaimedJob, error: str
    ) -> None:
        async with conn.cursor() as cur:
            await cur.execute(
                """
                UPDATE background_jobs
                SET status = 'dead', error_message = %s, completed_at = NOW()
                WHERE id = %s
                """,
                (error, job.id),
            )
        await conn.commit()

    async def _reschedule(
        self, conn: psycopg.AsyncConnection[Any], job: ClaimedJob, error: str
    ) -> None:
        delay = backoff_seconds(job.attempt)
        logger.info("Job %d retrying in %ds (attempt=%d)", job.id, delay, job.attempt)
        async with conn.cursor() as cur:
            await cur.execute(
                """
                UPDATE background_jobs
                SET status = 'pending',
                    error_message = %s,
                    scheduled_for = NOW() + make_interval(secs => %s)
                WHERE id = %s
                """,
                (error, float(delay), job.id),
            )
        await conn.commit()
