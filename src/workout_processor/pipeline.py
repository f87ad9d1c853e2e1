"""Workout ingestion pipeline.

Flow: dedup -> owners -> periods -> workout types -> assemble -> insert -> publish

Every read happens before the single insert. Early exits: empty input,
fully deduplicated batch, nothing left after resolution. Per-workout
resolution misses are skipped with a warning; every other failure is raised
and the caller retries the whole invocation, which is safe because a retry
deduplicates against the rows already stored.
"""

from __future__ import annotations

import logging
from collections.abc import Sequence
from dataclasses import dataclass

from .contracts import ParsedWorkoutEvent, WorkoutCreatedEvent, WorkoutInput
from .identity import OwnerResolution, resolve_owners
from .models import (
    NewWorkoutRecord,
    Period,
    PipelineContext,
    PipelineResult,
    SkippedWorkout,
    SkipReason,
    StoredWorkout,
)
from .publisher import EventPublisher
from .resolution import (
    Candidate,
    WorkoutTypeIndex,
    WorkoutTypeMatch,
    resolve_periods,
    resolve_workout_types,
)
from .store import ExternalIdQuery, PeriodQuery, WorkoutStore, WorkoutTypeQuery

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PipelineSettings:
    workout_type_other_id: int


def _skip(
    context: PipelineContext,
    candidate: Candidate,
    reason: SkipReason,
    detail: str,
) -> SkippedWorkout:
    logger.warning(
        "%s - %s (position %d)",
        candidate.external_id,
        detail,
        candidate.position,
        extra=context.log_extra(
            external_id=candidate.external_id,
            position=candidate.position,
            reason=reason,
        ),
    )
    return SkippedWorkout(
        external_id=candidate.external_id,
        position=candidate.position,
        reason=reason,
        detail=detail,
    )


def collapse_in_batch_duplicates(
    workouts: Sequence[WorkoutInput], context: PipelineContext
) -> tuple[list[Candidate], list[SkippedWorkout]]:
    """First occurrence of each external id wins."""
    seen: set[str] = set()
    candidates: list[Candidate] = []
    skipped: list[SkippedWorkout] = []
    for position, workout in enumerate(workouts):
        candidate = Candidate(position=position, workout=workout)
        if workout.external_id in seen:
            skipped.append(
                _skip(context, candidate, "duplicate_in_batch", "repeated external id in the same event")
            )
            continue
        seen.add(workout.external_id)
        candidates.append(candidate)
    return candidates, skipped


def assemble_records(
    candidates: Sequence[Candidate],
    *,
    owners: OwnerResolution,
    periods: dict[int, Period],
    workout_types: dict[int, WorkoutTypeMatch],
    context: PipelineContext,
) -> tuple[list[NewWorkoutRecord], list[SkippedWorkout]]:
    records: list[NewWorkoutRecord] = []
    skipped: list[SkippedWorkout] = []
    for candidate in candidates:
        workout = candidate.workout
        user_id = owners.user_ids.get(candidate.position)
        if user_id is None:
            username = owners.unresolved.get(candidate.position)
            skipped.append(
                _skip(context, candidate, "owner_not_found", f"could not find user {username!r}")
            )
            continue
        period = periods.get(candidate.position)
        if period is None:
            skipped.append(
                _skip(
                    context,
                    candidate,
                    "period_not_found",
                    f"could not find period for {workout.start_date.isoformat()}",
                )
            )
            continue
        match = workout_types.get(candidate.position)
        if match is None:
            skipped.append(
                _skip(
                    context,
                    candidate,
                    "workout_type_not_found",
                    f"could not find workout type for {workout.activity_type!r} "
                    "and no fallback workout type is available",
                )
            )
            continue
        records.append(
            NewWorkoutRecord(
                external_id=workout.external_id,
                user_id=user_id,
                started_at=workout.started_at,
                ended_at=workout.ended_at,
                duration=workout.duration,
                distance=workout.distance,
                energy_burned=workout.energy_burned,
                workout_type_id=match.workout_type.id,
                period_id=period.id,
                workout_name=match.workout_name,
                metadata={"correlation_id": context.correlation_id},
            )
        )
    return records, skipped


def build_created_event(
    row: StoredWorkout,
    index: WorkoutTypeIndex,
    context: PipelineContext,
) -> WorkoutCreatedEvent:
    return WorkoutCreatedEvent(
        workout_id=row.id,
        external_id=row.external_id,
        started_at=row.started_at,
        ended_at=row.ended_at,
        duration=row.duration,
        distance=row.distance,
        workout_type_id=row.workout_type_id,
        workout_type_name=index.name_for(row.workout_type_id),
        workout_name=row.workout_name,
        energy_burned=row.energy_burned,
        user_id=row.user_id,
        period_id=row.period_id,
        correlation_id=row.metadata.get("correlation_id") or context.correlation_id,
    )


async def run_workout_pipeline(
    event: ParsedWorkoutEvent,
    *,
    store: WorkoutStore,
    publisher: EventPublisher,
    settings: PipelineSettings,
    context: PipelineContext,
) -> PipelineResult:
    received = len(event.workouts)
    extra = context.log_extra()
    if not received:
        logger.info("Received an empty workouts array, nothing will be done", extra=extra)
        return PipelineResult(outcome="empty", received=0)

    logger.info("Processing %d workout(s)", received, extra=extra)

    candidates, skipped = collapse_in_batch_duplicates(event.workouts, context)

    existing = await store.find_existing(
        ExternalIdQuery(external_ids=tuple(candidate.external_id for candidate in candidates))
    )
    existing_ids = {row.external_id for row in existing}
    duplicates = tuple(
        candidate.external_id for candidate in candidates if candidate.external_id in existing_ids
    )
    if duplicates:
        logger.info("Workouts already created: %s", ", ".join(duplicates), extra=extra)

    candidates = [c for c in candidates if c.external_id not in existing_ids]
    if not candidates:
        logger.info("All workouts sent are already created", extra=extra)
        return PipelineResult(
            outcome="all_duplicates",
            received=received,
            duplicates=duplicates,
            skipped=tuple(skipped),
        )

    owners = await resolve_owners(event, candidates, store)
    periods = await store.find_periods(
        PeriodQuery(start_dates=tuple(sorted({c.workout.start_date for c in candidates})))
    )
    workout_types = await store.find_workout_types(
        WorkoutTypeQuery(
            names=tuple(sorted({c.workout.activity_type for c in candidates})),
            sentinel_id=settings.workout_type_other_id,
        )
    )
    logger.info(
        "Resolved owners via %s, %d period(s), %d workout type(s)",
        owners.source,
        len(periods),
        len(workout_types),
        extra=extra,
    )

    index = WorkoutTypeIndex.build(workout_types, settings.workout_type_other_id)
    records, unresolved = assemble_records(
        candidates,
        owners=owners,
        periods=resolve_periods(candidates, periods),
        workout_types=resolve_workout_types(candidates, index),
        context=context,
    )
    skipped.extend(unresolved)

    if not records:
        logger.warning(
            "None of the %d workout(s) received will be created, see the skip warnings above",
            received,
            extra=extra,
        )
        return PipelineResult(
            outcome="nothing_to_insert",
            received=received,
            duplicates=duplicates,
            skipped=tuple(skipped),
        )

    inserted = await store.bulk_insert(records)
    logger.info("Inserted %d workout(s)", len(inserted), extra=extra)

    events = [build_created_event(row, index, context) for row in inserted]
    if event.single and len(events) == 1:
        await publisher.publish_one(events[0])
    else:
        await publisher.publish(events)

    logger.info("All workouts created and published", extra=extra)
    return PipelineResult(
        outcome="published",
        received=received,
        duplicates=duplicates,
        skipped=tuple(skipped),
        inserted=tuple(inserted),
        published=len(events),
    )


async def republish_workouts(
    workout_ids: Sequence[int],
    *,
    store: WorkoutStore,
    publisher: EventPublisher,
    settings: PipelineSettings,
    context: PipelineContext,
) -> int:
    """Publish created events for already stored workouts without inserting anything."""
    extra = context.log_extra()
    rows = await store.find_workouts_by_id(workout_ids)
    missing = sorted(set(workout_ids) - {row.id for row in rows})
    if missing:
        logger.warning(
            "Cannot republish unknown workout id(s): %s",
            ", ".join(str(workout_id) for workout_id in missing),
            extra=extra,
        )
    if not rows:
        return 0

    workout_types = await store.find_workout_types(
        WorkoutTypeQuery(
            names=(),
            sentinel_id=settings.workout_type_other_id,
            ids=tuple(sorted({row.workout_type_id for row in rows})),
        )
    )
    index = WorkoutTypeIndex.build(workout_types, settings.workout_type_other_id)
    events = [build_created_event(row, index, context) for row in rows]
    await publisher.publish(events)
    logger.info("Republished %d workout event(s)", len(events), extra=extra)
    return len(events)
