"""Publish-only recovery for workouts that were stored but never announced."""

from __future__ import annotations

from typing import Any

import psycopg

from ..errors import WorkoutEventRejected
from ..metrics import record_pipeline_run
from ..pipeline import PipelineSettings, republish_workouts
from ..publisher import JobQueuePublisher
from ..registry import JobContext, register
from ..store import PgWorkoutStore
from .ingest import pipeline_context

REPUBLISH_JOB_TYPE = "usr_workout.republish"


def _workout_ids(payload: Any) -> list[int]:
    raw = payload.get("workoutIds") if isinstance(payload, dict) else None
    if not isinstance(raw, list) or not raw:
        raise WorkoutEventRejected("usr_workout.republish payload requires a non-empty workoutIds list")
    ids: list[int] = []
    for value in raw:
        if isinstance(value, bool) or not isinstance(value, int) or value <= 0:
            raise WorkoutEventRejected(f"invalid workout id in workoutIds: {value!r}")
        ids.append(value)
    return sorted(set(ids))


@register(REPUBLISH_JOB_TYPE)
async def handle_workout_republish(
    conn: psycopg.AsyncConnection[Any], payload: dict[str, Any], job: JobContext
) -> None:
    workout_ids = _workout_ids(payload)
    published = await republish_workouts(
        workout_ids,
        store=PgWorkoutStore(conn),
        publisher=JobQueuePublisher(
            conn,
            job_type=job.config.created_job_type,
            max_retries=job.config.max_retries,
        ),
        settings=PipelineSettings(workout_type_other_id=job.config.workout_type_other_id),
        context=pipeline_context(payload, job),
    )
    record_pipeline_run(received=0, duplicates=0, skipped=0, inserted=0, published=published)
