"""Inbound workout event contract and outbound workout-created event.

Upstream trackers send camelCase payloads in one of two shapes:

- single workout: the workout fields plus ``username`` and/or ``userId``
- batch: ``{"username": ..., "userId": ..., "workouts": [...]}``

``parse_workout_event`` never raises for bad input. It returns either a
``ParsedWorkoutEvent`` or a ``WorkoutEventRejection`` carrying one
``FieldIssue`` per failing field.
"""

from __future__ import annotations

import re
from collections.abc import Iterator
from dataclasses import dataclass
from datetime import UTC, date, datetime
from decimal import Decimal
from typing import Annotated, Any, Literal

from pydantic import (
    BaseModel,
    BeforeValidator,
    ConfigDict,
    Field,
    StringConstraints,
    ValidationError,
    model_validator,
)
from pydantic.alias_generators import to_camel

_AMOUNT_PATTERN = re.compile(r"[0-9]{1,6}(\.[0-9]{1,2})?")


def _parse_amount(value: Any) -> Decimal:
    if not isinstance(value, str):
        raise ValueError("must be a decimal string")
    trimmed = value.strip()
    if not _AMOUNT_PATTERN.fullmatch(trimmed):
        raise ValueError("must have at most 6 integer digits and 2 fraction digits")
    return Decimal(trimmed)


def _parse_timestamp(value: Any) -> datetime:
    if isinstance(value, datetime):
        parsed = value
    else:
        if not isinstance(value, str):
            raise ValueError("must be an ISO-8601 datetime string")
        trimmed = value.strip()
        if "T" not in trimmed:
            raise ValueError("must include a time component")
        try:
            parsed = datetime.fromisoformat(trimmed.replace("Z", "+00:00"))
        except ValueError as exc:
            raise ValueError(f"invalid ISO-8601 datetime: {trimmed}") from exc
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=UTC)
    return parsed.astimezone(UTC)


ExternalId = Annotated[str, StringConstraints(strip_whitespace=True, min_length=1, max_length=255)]
Username = Annotated[str, StringConstraints(strip_whitespace=True, min_length=1, max_length=255)]
ActivityLabel = Annotated[str, StringConstraints(strip_whitespace=True, min_length=1)]
Amount = Annotated[Decimal, BeforeValidator(_parse_amount)]
Timestamp = Annotated[datetime, BeforeValidator(_parse_timestamp)]


class WorkoutInput(BaseModel):
    model_config = ConfigDict(populate_by_name=True, frozen=True)

    external_id: ExternalId = Field(alias="id")
    started_at: Timestamp = Field(alias="startTime")
    ended_at: Timestamp = Field(alias="endTime")
    duration: Amount
    distance: Amount | None = Field(default=None, alias="totalDistance")
    energy_burned: Amount = Field(alias="totalEnergyBurned")
    activity_type: ActivityLabel = Field(alias="workoutActivityType")
    username: Username | None = None

    @property
    def start_date(self) -> date:
        """UTC calendar day the workout started on; the unit periods are matched by."""
        return self.started_at.astimezone(UTC).date()


class SingleWorkoutEvent(WorkoutInput):
    user_id: int | None = Field(default=None, alias="userId", gt=0)
    correlation_id: str | None = Field(default=None, alias="correlationId")

    @model_validator(mode="after")
    def validate_owner(self) -> "SingleWorkoutEvent":
        if self.user_id is None and self.username is None:
            raise ValueError("event requires userId or username")
        return self


class WorkoutBatchEvent(BaseModel):
    model_config = ConfigDict(populate_by_name=True, frozen=True)

    workouts: list[WorkoutInput]
    username: Username | None = None
    user_id: int | None = Field(default=None, alias="userId", gt=0)
    correlation_id: str | None = Field(default=None, alias="correlationId")

    @model_validator(mode="after")
    def validate_owner(self) -> "WorkoutBatchEvent":
        if self.user_id is not None or self.username is not None:
            return self
        for position, workout in enumerate(self.workouts):
            if workout.username is None:
                raise ValueError(
                    f"workouts[{position}] has no owner: set userId, username "
                    "or a per-workout username"
                )
        return self


@dataclass(frozen=True)
class FieldIssue:
    field: str
    message: str


@dataclass(frozen=True)
class ParsedWorkoutEvent:
    workouts: tuple[WorkoutInput, ...]
    user_id: int | None = None
    username: str | None = None
    single: bool = False
    correlation_id: str | None = None
    ok: Literal[True] = True

    def owner_username(self, workout: WorkoutInput) -> str | None:
        return workout.username or self.username


@dataclass(frozen=True)
class WorkoutEventRejection:
    issues: tuple[FieldIssue, ...]
    ok: Literal[False] = False

    def summary(self) -> str:
        return "; ".join(f"{issue.field}: {issue.message}" for issue in self.issues)


ParseResult = ParsedWorkoutEvent | WorkoutEventRejection


def _field_issues(exc: ValidationError) -> Iterator[FieldIssue]:
    for error in exc.errors():
        loc = ".".join(str(part) for part in error.get("loc", ()))
        yield FieldIssue(field=loc or "$", message=error.get("msg", "invalid value"))


def parse_workout_event(payload: Any) -> ParseResult:
    if not isinstance(payload, dict):
        return WorkoutEventRejection(
            issues=(FieldIssue(field="$", message="event payload must be an object"),)
        )
    try:
        if "workouts" in payload:
            batch = WorkoutBatchEvent.model_validate(payload)
            return ParsedWorkoutEvent(
                workouts=tuple(batch.workouts),
                user_id=batch.user_id,
                username=batch.username,
                single=False,
                correlation_id=batch.correlation_id,
            )
        single = SingleWorkoutEvent.model_validate(payload)
    except ValidationError as exc:
        return WorkoutEventRejection(issues=tuple(_field_issues(exc)))
    return ParsedWorkoutEvent(
        workouts=(single,),
        user_id=single.user_id,
        username=single.username,
        single=True,
        correlation_id=single.correlation_id,
    )


class WorkoutCreatedEvent(BaseModel):
    """Published once per inserted workout for downstream consumers."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)

    workout_id: int
    external_id: str
    started_at: datetime
    ended_at: datetime
    duration: float
    distance: float | None = None
    workout_type_id: int
    workout_type_name: str | None = None
    workout_name: str | None = None
    energy_burned: float
    user_id: int
    period_id: int
    correlation_id: str | None = None

    def to_payload(self) -> dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)
