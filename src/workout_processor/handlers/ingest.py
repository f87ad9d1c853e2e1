"""Workout ingestion job handler.

Consumes ``usr_workout.process`` jobs whose payload is the raw tracker event
(single workout or batch) and runs it through the ingestion pipeline.
"""

from __future__ import annotations

import logging
import time
from typing import Any

import psycopg

from ..contracts import WorkoutEventRejection, parse_workout_event
from ..errors import WorkoutEventRejected
from ..metrics import record_handler_invocation, record_pipeline_run
from ..models import PipelineContext
from ..pipeline import PipelineSettings, run_workout_pipeline
from ..publisher import JobQueuePublisher
from ..registry import JobContext, register
from ..store import PgWorkoutStore

logger = logging.getLogger(__name__)

PROCESS_JOB_TYPE = "usr_workout.process"


def pipeline_context(payload: Any, job: JobContext) -> PipelineContext:
    # JSONB payloads are not guaranteed to be objects; validation reports that.
    raw = payload.get("correlationId") if isinstance(payload, dict) else None
    correlation_id = str(raw or "").strip()
    return PipelineContext(
        correlation_id=correlation_id or f"job-{job.job_id}",
        job_id=job.job_id,
    )


@register(PROCESS_JOB_TYPE)
async def handle_workout_process(
    conn: psycopg.AsyncConnection[Any], payload: dict[str, Any], job: JobContext
) -> None:
    context = pipeline_context(payload, job)

    parsed = parse_workout_event(payload)
    if isinstance(parsed, WorkoutEventRejection):
        logger.warning(
            "Rejected workout event: %s",
            parsed.summary(),
            extra=context.log_extra(reason="validation_error"),
        )
        raise WorkoutEventRejected(
            f"invalid workout event: {parsed.summary()}",
            issues=[{"field": issue.field, "message": issue.message} for issue in parsed.issues],
        )

    t0 = time.monotonic()
    try:
        result = await run_workout_pipeline(
            parsed,
            store=PgWorkoutStore(conn),
            publisher=JobQueuePublisher(
                conn,
                job_type=job.config.created_job_type,
                max_retries=job.config.max_retries,
            ),
            settings=PipelineSettings(workout_type_other_id=job.config.workout_type_other_id),
            context=context,
        )
    except Exception:
        record_handler_invocation(PROCESS_JOB_TYPE, (time.monotonic() - t0) * 1000, success=False)
        raise
    record_handler_invocation(PROCESS_JOB_TYPE, (time.monotonic() - t0) * 1000, success=True)
    record_pipeline_run(
        received=result.received,
        duplicates=len(result.duplicates),
        skipped=len(result.skipped),
        inserted=len(result.inserted),
        published=result.published,
    )
    logger.info(
        "workout event processed outcome=%s received=%d inserted=%d skipped=%d",
        result.outcome,
        result.received,
        len(result.inserted),
        len(result.skipped),
        extra=context.log_extra(),
    )
