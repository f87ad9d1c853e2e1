"""Row and pipeline value types shared by the store, resolvers and pipeline."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import Decimal
from typing import Any, Literal


@dataclass(frozen=True)
class ExistingWorkout:
    id: int
    external_id: str


@dataclass(frozen=True)
class Period:
    id: int
    start_date: date
    end_date: date
    active: bool = True


@dataclass(frozen=True)
class WorkoutType:
    id: int
    name: str
    active: bool = True


@dataclass(frozen=True)
class NewWorkoutRecord:
    external_id: str
    user_id: int
    started_at: datetime
    ended_at: datetime
    duration: Decimal
    distance: Decimal | None
    energy_burned: Decimal
    workout_type_id: int
    period_id: int
    workout_name: str | None
    metadata: dict[str, Any]


@dataclass(frozen=True)
class StoredWorkout:
    id: int
    external_id: str
    user_id: int
    started_at: datetime
    ended_at: datetime
    duration: Decimal
    distance: Decimal | None
    energy_burned: Decimal
    workout_type_id: int
    period_id: int
    workout_name: str | None
    metadata: dict[str, Any] = field(default_factory=dict)
    created_at: datetime | None = None


@dataclass(frozen=True)
class PipelineContext:
    """Explicit per-invocation context threaded through every stage."""

    correlation_id: str
    job_id: int | None = None

    def log_extra(self, **values: Any) -> dict[str, Any]:
        extra: dict[str, Any] = {"wp_correlation_id": self.correlation_id}
        if self.job_id is not None:
            extra["wp_job_id"] = self.job_id
        for key, value in values.items():
            extra[f"wp_{key}"] = value
        return extra


SkipReason = Literal[
    "duplicate_in_batch",
    "owner_not_found",
    "period_not_found",
    "workout_type_not_found",
]


@dataclass(frozen=True)
class SkippedWorkout:
    external_id: str
    position: int
    reason: SkipReason
    detail: str


PipelineOutcome = Literal["empty", "all_duplicates", "nothing_to_insert", "published"]


@dataclass(frozen=True)
class PipelineResult:
    outcome: PipelineOutcome
    received: int
    duplicates: tuple[str, ...] = ()
    skipped: tuple[SkippedWorkout, ...] = ()
    inserted: tuple[StoredWorkout, ...] = ()
    published: int = 0
