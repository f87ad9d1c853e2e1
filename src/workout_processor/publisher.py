"""Outbound workout-created events.

Events are delivered as ``background_jobs`` rows so downstream consumers
(achievement calculation and friends) pick them up with the same claim/retry
machinery this worker uses. The table's insert trigger issues the NOTIFY.
"""

from __future__ import annotations

import logging
from collections.abc import Sequence
from typing import Any, Protocol

import psycopg
from psycopg import sql
from psycopg.types.json import Json

from .contracts import WorkoutCreatedEvent
from .errors import WorkoutPublishError

logger = logging.getLogger(__name__)


class EventPublisher(Protocol):
    async def publish(self, events: Sequence[WorkoutCreatedEvent]) -> None: ...

    async def publish_one(self, event: WorkoutCreatedEvent) -> None: ...


class JobQueuePublisher:
    def __init__(
        self,
        conn: psycopg.AsyncConnection[Any],
        *,
        job_type: str,
        max_retries: int = 3,
    ) -> None:
        self._conn = conn
        self.job_type = job_type
        self.max_retries = max_retries

    def _row(self, event: WorkoutCreatedEvent) -> tuple[Any, ...]:
        return (event.user_id, self.job_type, Json(event.to_payload()), self.max_retries)

    async def publish_one(self, event: WorkoutCreatedEvent) -> None:
        try:
            await self._conn.execute(
                """
                INSERT INTO background_jobs (user_id, job_type, payload, max_retries)
                VALUES (%s, %s, %s, %s)
                """,
                self._row(event),
            )
        except psycopg.Error as exc:
            raise WorkoutPublishError(
                f"publishing workout {event.workout_id} failed: {exc}"
            ) from exc
        logger.debug("Published %s for workout %d", self.job_type, event.workout_id)

    async def publish(self, events: Sequence[WorkoutCreatedEvent]) -> None:
        if not events:
            return
        row = sql.SQL("(%s, %s, %s, %s)")
        query = sql.SQL(
            "INSERT INTO background_jobs (user_id, job_type, payload, max_retries) VALUES {rows}"
        ).format(rows=sql.SQL(", ").join([row] * len(events)))
        params: list[Any] = []
        for event in events:
            params.extend(self._row(event))
        try:
            await self._conn.execute(query, params)
        except psycopg.Error as exc:
            raise WorkoutPublishError(
                f"publishing {len(events)} workout events failed: {exc}"
            ) from exc
        logger.debug("Published %d %s events", len(events), self.job_type)
