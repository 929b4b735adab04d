"""Error hierarchy for the scheduling engine.

Detection-time problems (a single malformed record, one unreachable store)
are isolated and logged by the component that hits them.  Everything that
represents a decision the human resolver must make (preconditions, stale
commits, illegal state transitions) is raised to the caller as one of the
types below.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from scheduling_engine.models import ConflictResult


class SchedulingError(Exception):
    """Base error for the scheduling engine."""

    error_code = "SCHEDULING_ERROR"

    def __init__(self, message: str, *, details: dict[str, Any] | None = None) -> None:
        self.message = message
        self.details = details or {}
        super().__init__(message)


class NormalizationError(SchedulingError):
    """Raised when a raw source record cannot become an Event.

    ``kind`` is one of ``missing-time``, ``invalid-time`` or ``invalid-record``.
    """

    error_code = "NORMALIZATION_ERROR"

    MISSING_TIME = "missing-time"
    INVALID_TIME = "invalid-time"
    INVALID_RECORD = "invalid-record"

    def __init__(
        self,
        kind: str,
        message: str,
        *,
        record_id: str | None = None,
        source_origin: str | None = None,
    ) -> None:
        self.kind = kind
        self.record_id = record_id
        self.source_origin = source_origin
        super().__init__(
            message,
            details={"kind": kind, "record_id": record_id, "source_origin": source_origin},
        )


class PreconditionError(SchedulingError):
    """Raised when a proposed event or window is invalid before detection runs."""

    error_code = "PRECONDITION_FAILED"


class StoreUnavailable(SchedulingError):
    """Raised when a source store collaborator fails to respond or rejects a call."""

    error_code = "STORE_UNAVAILABLE"

    def __init__(self, source_origin: str, message: str) -> None:
        self.source_origin = source_origin
        super().__init__(
            f"Source store '{source_origin}' unavailable: {message}",
            details={"source_origin": source_origin},
        )


class DetectionTimeout(SchedulingError):
    """Raised when a negotiation stays in ``detecting`` beyond the configured bound."""

    error_code = "DETECTION_TIMEOUT"


class StaleCommit(SchedulingError):
    """Raised when pre-commit re-validation finds conflicts introduced since resolution."""

    error_code = "STALE_COMMIT"

    def __init__(self, event_id: str, result: ConflictResult) -> None:
        self.event_id = event_id
        self.result = result
        new_ids = [conflict.id for conflict in result.conflicts]
        super().__init__(
            f"Commit for event '{event_id}' is stale: {len(new_ids)} conflict(s) need resolution",
            details={"event_id": event_id, "conflict_ids": new_ids},
        )


class NegotiationStateError(SchedulingError):
    """Raised when an operation is not legal from the negotiation's current state."""

    error_code = "INVALID_NEGOTIATION_STATE"

    def __init__(self, event_id: str, state: str, operation: str) -> None:
        self.event_id = event_id
        self.state = state
        self.operation = operation
        super().__init__(
            f"Cannot {operation} negotiation for event '{event_id}' from state '{state}'",
            details={"event_id": event_id, "state": state, "operation": operation},
        )


class NegotiationInProgress(SchedulingError):
    """Raised when a second negotiation is started for an event id that already has one."""

    error_code = "NEGOTIATION_IN_PROGRESS"

    def __init__(self, event_id: str) -> None:
        self.event_id = event_id
        super().__init__(
            f"A negotiation for event '{event_id}' is already in flight; "
            "cancel or complete it first",
            details={"event_id": event_id},
        )


class UnknownConflict(SchedulingError):
    """Raised when a resolution names a conflict id the negotiation does not hold."""

    error_code = "UNKNOWN_CONFLICT"

    def __init__(self, event_id: str, conflict_id: str) -> None:
        self.event_id = event_id
        self.conflict_id = conflict_id
        super().__init__(
            f"Negotiation for event '{event_id}' has no conflict '{conflict_id}'",
            details={"event_id": event_id, "conflict_id": conflict_id},
        )


class RescheduleRejected(SchedulingError):
    """Raised when a conflicting event's new window would itself conflict."""

    error_code = "RESCHEDULE_REJECTED"

    def __init__(self, event_id: str, result: ConflictResult) -> None:
        self.event_id = event_id
        self.result = result
        super().__init__(
            f"New window for event '{event_id}' conflicts with "
            f"{len(result.conflicts)} other event(s)",
            details={
                "event_id": event_id,
                "conflict_ids": [conflict.id for conflict in result.conflicts],
            },
        )


def build_structured_error(exc: Exception) -> dict[str, Any]:
    """Render an exception as a JSON-safe dict for UI callers.

    Messages are whitespace-normalized and truncated to 200 characters.
    """
    sanitized = " ".join(str(exc).split())[:200]
    payload: dict[str, Any] = {
        "status": "error",
        "error": sanitized,
        "error_type": type(exc).__name__,
    }
    if isinstance(exc, SchedulingError):
        payload["error_code"] = exc.error_code
        payload["details"] = exc.details
    return payload
