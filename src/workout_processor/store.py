"""Storage access for the workout pipeline.

The pipeline only talks to ``WorkoutStore`` and passes explicit query
objects; ``PgWorkoutStore`` is the psycopg implementation used by the worker.
"""

from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass
from datetime import date
from typing import Any, Protocol

import psycopg
from psycopg import errors as pg_errors
from psycopg import sql
from psycopg.rows import dict_row
from psycopg.types.json import Json

from .errors import ReferenceLookupError, WorkoutInsertError
from .models import (
    ExistingWorkout,
    NewWorkoutRecord,
    Period,
    StoredWorkout,
    WorkoutType,
)


@dataclass(frozen=True)
class ExternalIdQuery:
    external_ids: tuple[str, ...]


@dataclass(frozen=True)
class PeriodQuery:
    """Active periods whose inclusive [start, end] range holds any of the dates."""

    start_dates: tuple[date, ...]


@dataclass(frozen=True)
class WorkoutTypeQuery:
    """Active workout types named in ``names`` plus the sentinel row (and any ``ids``)."""

    names: tuple[str, ...]
    sentinel_id: int
    ids: tuple[int, ...] = ()


@dataclass(frozen=True)
class UsernameQuery:
    usernames: tuple[str, ...]


class WorkoutStore(Protocol):
    async def find_existing(self, query: ExternalIdQuery) -> list[ExistingWorkout]: ...

    async def find_periods(self, query: PeriodQuery) -> list[Period]: ...

    async def find_workout_types(self, query: WorkoutTypeQuery) -> list[WorkoutType]: ...

    async def find_user_ids(self, query: UsernameQuery) -> dict[str, int]: ...

    async def bulk_insert(self, records: Sequence[NewWorkoutRecord]) -> list[StoredWorkout]: ...

    async def find_workouts_by_id(self, workout_ids: Sequence[int]) -> list[StoredWorkout]: ...


_INSERT_COLUMNS: tuple[str, ...] = (
    "external_id",
    "user_id",
    "started_at",
    "ended_at",
    "duration",
    "distance",
    "energy_burned",
    "workout_type_id",
    "period_id",
    "workout_name",
    "metadata",
)

_WORKOUT_COLUMNS = sql.SQL(", ").join(
    sql.Identifier(name) for name in ("id", *_INSERT_COLUMNS, "created_at")
)


def _stored_workout(row: dict[str, Any]) -> StoredWorkout:
    return StoredWorkout(
        id=int(row["id"]),
        external_id=str(row["external_id"]),
        user_id=int(row["user_id"]),
        started_at=row["started_at"],
        ended_at=row["ended_at"],
        duration=row["duration"],
        distance=row.get("distance"),
        energy_burned=row["energy_burned"],
        workout_type_id=int(row["workout_type_id"]),
        period_id=int(row["period_id"]),
        workout_name=row.get("workout_name"),
        metadata=dict(row.get("metadata") or {}),
        created_at=row.get("created_at"),
    )


def build_insert_query(row_count: int) -> sql.Composed:
    """One multi-row INSERT so the whole set commits or fails together."""
    if row_count <= 0:
        raise ValueError("row_count must be positive")
    row = sql.SQL("({})").format(
        sql.SQL(", ").join([sql.Placeholder()] * len(_INSERT_COLUMNS))
    )
    return sql.SQL("INSERT INTO usr_workout ({columns}) VALUES {rows} RETURNING {returning}").format(
        columns=sql.SQL(", ").join(sql.Identifier(name) for name in _INSERT_COLUMNS),
        rows=sql.SQL(", ").join([row] * row_count),
        returning=_WORKOUT_COLUMNS,
    )


def _insert_params(records: Sequence[NewWorkoutRecord]) -> list[Any]:
    params: list[Any] = []
    for record in records:
        params.extend(
            (
                record.external_id,
                record.user_id,
                record.started_at,
                record.ended_at,
                record.duration,
                record.distance,
                record.energy_burned,
                record.workout_type_id,
                record.period_id,
                record.workout_name,
                Json(record.metadata),
            )
        )
    return params


class PgWorkoutStore:
    def __init__(self, conn: psycopg.AsyncConnection[Any]) -> None:
        self._conn = conn

    async def _fetch(self, query: str | sql.Composed, params: Sequence[Any], *, what: str) -> list[dict[str, Any]]:
        try:
            async with self._conn.cursor(row_factory=dict_row) as cur:
                await cur.execute(query, params)
                return await cur.fetchall()
        except psycopg.Error as exc:
            raise ReferenceLookupError(f"{what} lookup failed: {exc}") from exc

    async def find_existing(self, query: ExternalIdQuery) -> list[ExistingWorkout]:
        rows = await self._fetch(
            """
            SELECT id, external_id
            FROM usr_workout
            WHERE external_id = ANY(%s)
            """,
            (list(query.external_ids),),
            what="existing workout",
        )
        return [ExistingWorkout(id=int(row["id"]), external_id=str(row["external_id"])) for row in rows]

    async def find_periods(self, query: PeriodQuery) -> list[Period]:
        rows = await self._fetch(
            """
            SELECT id, start_at, end_at
            FROM cfg_period
            WHERE inactivated_at IS NULL
              AND EXISTS (
                  SELECT 1
                  FROM unnest(%s::date[]) AS candidate(day)
                  WHERE candidate.day BETWEEN cfg_period.start_at AND cfg_period.end_at
              )
            ORDER BY start_at ASC, end_at ASC, id ASC
            """,
            (list(query.start_dates),),
            what="period",
        )
        return [
            Period(id=int(row["id"]), start_date=row["start_at"], end_date=row["end_at"])
            for row in rows
        ]

    async def find_workout_types(self, query: WorkoutTypeQuery) -> list[WorkoutType]:
        rows = await self._fetch(
            """
            SELECT id, name
            FROM wrk_workout_type
            WHERE inactivated_at IS NULL
              AND (name = ANY(%s) OR id = %s OR id = ANY(%s))
            ORDER BY id ASC
            """,
            (list(query.names), query.sentinel_id, list(query.ids)),
            what="workout type",
        )
        return [WorkoutType(id=int(row["id"]), name=str(row["name"])) for row in rows]

    async def find_user_ids(self, query: UsernameQuery) -> dict[str, int]:
        rows = await self._fetch(
            """
            SELECT id, username
            FROM usr_user
            WHERE inactivated_at IS NULL
              AND username = ANY(%s)
            """,
            (list(query.usernames),),
            what="user",
        )
        return {str(row["username"]): int(row["id"]) for row in rows}

    async def find_workouts_by_id(self, workout_ids: Sequence[int]) -> list[StoredWorkout]:
        query = sql.SQL("SELECT {columns} FROM usr_workout WHERE id = ANY(%s) ORDER BY id").format(
            columns=_WORKOUT_COLUMNS
        )
        rows = await self._fetch(query, (list(workout_ids),), what="stored workout")
        return [_stored_workout(row) for row in rows]

    async def bulk_insert(self, records: Sequence[NewWorkoutRecord]) -> list[StoredWorkout]:
        if not records:
            return []
        try:
            async with self._conn.cursor(row_factory=dict_row) as cur:
                await cur.execute(build_insert_query(len(records)), _insert_params(records))
                rows = await cur.fetchall()
        except pg_errors.UniqueViolation as exc:
            # Deduplication already ran, so this is a concurrent delivery of the same workout.
            raise WorkoutInsertError(
                f"external_id already stored by a concurrent insert: {exc}",
                code="duplicate_external_id",
            ) from exc
        except psycopg.Error as exc:
            raise WorkoutInsertError(f"workout insert failed: {exc}") from exc

        if len(rows) != len(records):
            raise WorkoutInsertError(
                f"insert returned {len(rows)} rows for {len(records)} records"
            )
        return [_stored_workout(row) for row in rows]
