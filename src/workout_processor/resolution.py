"""Period and workout-type resolution for candidate workouts.

Both resolvers work on reference rows already loaded by the store and never
query on their own, so one invocation issues exactly one read per kind.
"""

from __future__ import annotations

from collections.abc import Iterable, Sequence
from dataclasses import dataclass
from datetime import date

from .contracts import WorkoutInput
from .models import Period, WorkoutType


@dataclass(frozen=True)
class Candidate:
    """A workout still in flight, with its position in the inbound batch."""

    position: int
    workout: WorkoutInput

    @property
    def external_id(self) -> str:
        return self.workout.external_id


def period_contains(period: Period, day: date) -> bool:
    """Both bounds are exclusive: a period's first and last day never match."""
    return period.start_date < day < period.end_date


def order_periods(periods: Iterable[Period]) -> list[Period]:
    """Active periods, earliest start first, then earliest end."""
    return sorted(
        (period for period in periods if period.active),
        key=lambda period: (period.start_date, period.end_date, period.id),
    )


def match_period(ordered_periods: Sequence[Period], day: date) -> Period | None:
    for period in ordered_periods:
        if period_contains(period, day):
            return period
    return None


def resolve_periods(
    candidates: Sequence[Candidate], periods: Iterable[Period]
) -> dict[int, Period]:
    """Map candidate position to its period. Unmatched positions are absent."""
    ordered = order_periods(periods)
    resolved: dict[int, Period] = {}
    for candidate in candidates:
        period = match_period(ordered, candidate.workout.start_date)
        if period is not None:
            resolved[candidate.position] = period
    return resolved


@dataclass(frozen=True)
class WorkoutTypeMatch:
    workout_type: WorkoutType
    fallback: bool
    label: str

    @property
    def workout_name(self) -> str | None:
        # Unrecognized labels are kept on the row for human inspection.
        return self.label if self.fallback else None


@dataclass(frozen=True)
class WorkoutTypeIndex:
    by_name: dict[str, WorkoutType]
    by_id: dict[int, WorkoutType]
    sentinel: WorkoutType | None

    @classmethod
    def build(cls, workout_types: Iterable[WorkoutType], sentinel_id: int) -> "WorkoutTypeIndex":
        by_name: dict[str, WorkoutType] = {}
        by_id: dict[int, WorkoutType] = {}
        for workout_type in sorted(workout_types, key=lambda wt: wt.id):
            if not workout_type.active:
                continue
            # lowest id wins when two active types share a name
            by_name.setdefault(workout_type.name, workout_type)
            by_id[workout_type.id] = workout_type
        return cls(by_name=by_name, by_id=by_id, sentinel=by_id.get(sentinel_id))

    def match(self, label: str) -> WorkoutTypeMatch | None:
        exact = self.by_name.get(label)
        if exact is not None:
            return WorkoutTypeMatch(workout_type=exact, fallback=False, label=label)
        if self.sentinel is not None:
            return WorkoutTypeMatch(workout_type=self.sentinel, fallback=True, label=label)
        return None

    def name_for(self, workout_type_id: int) -> str | None:
        workout_type = self.by_id.get(workout_type_id)
        return workout_type.name if workout_type is not None else None


def resolve_workout_types(
    candidates: Sequence[Candidate],
    index: WorkoutTypeIndex,
) -> dict[int, WorkoutTypeMatch]:
    """Map candidate position to its workout type. Unmatched positions are absent."""
    resolved: dict[int, WorkoutTypeMatch] = {}
    for candidate in candidates:
        match = index.match(candidate.workout.activity_type)
        if match is not None:
            resolved[candidate.position] = match
    return resolved
