"""Pipeline errors and their stable monitoring taxonomy."""

from __future__ import annotations

from typing import Literal

ErrorClass = Literal[
    "validation",
    "reference",
    "persistence",
    "publish",
    "other",
]


class WorkoutPipelineError(Exception):
    """Fatal for one invocation; the job is retried from the top."""

    code = "pipeline_error"

    def __init__(self, message: str, *, code: str | None = None) -> None:
        super().__init__(message)
        if code is not None:
            self.code = code


class WorkoutEventRejected(WorkoutPipelineError):
    """Malformed inbound event. Retrying cannot help, so the job is dead-lettered."""

    code = "validation_error"

    def __init__(self, message: str, *, issues: list[dict[str, str]] | None = None) -> None:
        super().__init__(message)
        self.issues = issues or []


class ReferenceLookupError(WorkoutPipelineError):
    code = "reference_lookup_failed"


class WorkoutInsertError(WorkoutPipelineError):
    code = "insert_failed"


class WorkoutPublishError(WorkoutPipelineError):
    code = "publish_failed"


ERROR_CLASS_BY_CODE: dict[str, ErrorClass] = {
    "validation_error": "validation",
    "reference_lookup_failed": "reference",
    "insert_failed": "persistence",
    "duplicate_external_id": "persistence",
    "publish_failed": "publish",
}


def classify_error_code(error_code: str | None) -> ErrorClass:
    normalized = str(error_code or "").strip().lower()
    if not normalized:
        return "other"
    return ERROR_CLASS_BY_CODE.get(normalized, "other")


def is_retryable(exc: BaseException) -> bool:
    return not isinstance(exc, WorkoutEventRejected)
