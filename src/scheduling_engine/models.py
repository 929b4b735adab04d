"""Canonical data model for the scheduling engine.

This module defines:
- ``Event``: the schedulable unit every source record is normalized into
- ``TimeWindow``: a half-open ``[start, end)`` interval
- ``ConflictDetail`` / ``ConflictResult``: structured detection output
- ``Resolution``: one per-conflict decision taken during a negotiation

All timestamps are naive local wall-clock datetimes in the engine's
canonical timezone.  Aware datetimes are converted once by the normalizer
and never reach these models.
"""

from __future__ import annotations

from datetime import datetime, timedelta
from enum import StrEnum
from typing import Any

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    ValidationInfo,
    field_validator,
    model_validator,
)

MIN_EVENT_MINUTES = 15
MAX_EVENT_MINUTES = 24 * 60
DEFAULT_EVENT_MINUTES = 60


class EventKind(StrEnum):
    """Kinds of schedulable items."""

    EVENT = "event"
    TASK = "task"
    GOAL = "goal"
    MILESTONE = "milestone"


class Priority(StrEnum):
    """Display and tie-break priority; never suppresses conflict detection."""

    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    URGENT = "urgent"


class SourceOrigin(StrEnum):
    """Upstream store a record came from."""

    LEGACY_TASK = "legacy_task"
    SERVICE_SCHEDULE = "service_schedule"
    UNIFIED_EVENT = "unified_event"


# Aggregation keeps the first copy of an id in this order.
SOURCE_PRIORITY: dict[SourceOrigin, int] = {
    SourceOrigin.SERVICE_SCHEDULE: 0,
    SourceOrigin.LEGACY_TASK: 1,
    SourceOrigin.UNIFIED_EVENT: 2,
}


class ConflictType(StrEnum):
    """Classification of a detected conflict."""

    OVERLAP = "overlap"
    DOUBLE_BOOKING = "double_booking"
    RESOURCE_CONSTRAINT = "resource_constraint"
    BUFFER_VIOLATION = "buffer_violation"
    BUSINESS_RULE = "business_rule"


class Severity(StrEnum):
    """Coarse disruption ranking derived from overlap proportion."""

    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"

    @property
    def rank(self) -> int:
        return _SEVERITY_RANK[self]

    def at_least(self, other: Severity) -> bool:
        return self.rank >= other.rank


_SEVERITY_RANK = {
    Severity.LOW: 0,
    Severity.MEDIUM: 1,
    Severity.HIGH: 2,
    Severity.CRITICAL: 3,
}


class ResolutionKind(StrEnum):
    """Per-conflict decision taken by the human resolver."""

    UNRESOLVED = "unresolved"
    ACCEPTED = "accepted"
    EVENT_DELETED = "event_deleted"
    RESCHEDULED = "rescheduled"
    OVERRIDDEN = "overridden"
    WAITLISTED = "waitlisted"


def _require_naive(value: datetime, field_name: str) -> datetime:
    if value.tzinfo is not None and value.utcoffset() is not None:
        raise ValueError(f"{field_name} must be a naive local wall-clock datetime")
    return value


class TimeWindow(BaseModel):
    """Half-open time interval ``[start, end)``."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    start: datetime
    end: datetime

    @field_validator("start", "end")
    @classmethod
    def _naive_only(cls, value: datetime, info: ValidationInfo) -> datetime:
        return _require_naive(value, info.field_name)

    @model_validator(mode="after")
    def _validate_order(self) -> TimeWindow:
        if self.end <= self.start:
            raise ValueError("end must be after start")
        return self

    @property
    def duration(self) -> timedelta:
        return self.end - self.start

    @property
    def minutes(self) -> int:
        return int(self.duration.total_seconds() // 60)

    def overlaps(self, other: TimeWindow) -> bool:
        # Back-to-back windows share only the excluded end instant.
        return self.start < other.end and other.start < self.end

    def intersection(self, other: TimeWindow) -> TimeWindow | None:
        if not self.overlaps(other):
            return None
        return TimeWindow(start=max(self.start, other.start), end=min(self.end, other.end))

    def shifted(self, delta: timedelta) -> TimeWindow:
        return TimeWindow(start=self.start + delta, end=self.end + delta)


class Event(BaseModel):
    """Canonical event shape shared by every source store."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    id: str = Field(min_length=1)
    kind: EventKind = EventKind.EVENT
    title: str = ""
    description: str | None = None
    start_at: datetime
    end_at: datetime
    duration_minutes: int
    priority: Priority = Priority.MEDIUM
    owner_participant: str | None = None
    location: str | None = None
    participants: list[str] = Field(default_factory=list)
    source_origin: SourceOrigin = SourceOrigin.UNIFIED_EVENT

    @model_validator(mode="before")
    @classmethod
    def _derive_duration(cls, data: Any) -> Any:
        if not isinstance(data, dict) or data.get("duration_minutes") is not None:
            return data
        start_at = data.get("start_at")
        end_at = data.get("end_at")
        if isinstance(start_at, datetime) and isinstance(end_at, datetime):
            derived = int((end_at - start_at).total_seconds() // 60)
            return {**data, "duration_minutes": derived}
        return data

    @field_validator("start_at", "end_at")
    @classmethod
    def _naive_only(cls, value: datetime, info: ValidationInfo) -> datetime:
        return _require_naive(value, info.field_name)

    @model_validator(mode="after")
    def _validate_window(self) -> Event:
        if self.end_at <= self.start_at:
            raise ValueError("end_at must be after start_at")
        return self

    @property
    def window(self) -> TimeWindow:
        return TimeWindow(start=self.start_at, end=self.end_at)

    def with_window(self, window: TimeWindow) -> Event:
        """Return a copy of this event occupying *window* (same id)."""
        return self.model_copy(
            update={
                "start_at": window.start,
                "end_at": window.end,
                "duration_minutes": window.minutes,
            }
        )


class ConflictDetail(BaseModel):
    """One pairwise conflict between the proposed event and an existing one."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    id: str
    type: ConflictType
    severity: Severity
    message: str
    conflicting_event_ids: list[str] = Field(min_length=1)
    overlap_window: TimeWindow | None = None
    overlap_minutes: int = 0

    @property
    def conflicting_event_id(self) -> str:
        return self.conflicting_event_ids[0]


class ConflictResult(BaseModel):
    """Outcome of detection for one proposed event."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    has_conflicts: bool
    conflicts: list[ConflictDetail] = Field(default_factory=list)
    suggestions: list[TimeWindow] = Field(default_factory=list)
    can_proceed: bool
    warnings: list[str] = Field(default_factory=list)
    degraded: bool = False

    @model_validator(mode="after")
    def _validate_flags(self) -> ConflictResult:
        if self.has_conflicts != bool(self.conflicts):
            raise ValueError("has_conflicts must be true iff conflicts is non-empty")
        return self

    @classmethod
    def build(
        cls,
        conflicts: list[ConflictDetail],
        *,
        suggestions: list[TimeWindow] | None = None,
        warnings: list[str] | None = None,
        degraded: bool = False,
    ) -> ConflictResult:
        """Build a result whose flags are derived from *conflicts*."""
        blocking = any(c.severity.at_least(Severity.HIGH) for c in conflicts)
        return cls(
            has_conflicts=bool(conflicts),
            conflicts=conflicts,
            suggestions=suggestions or [],
            can_proceed=not blocking,
            warnings=warnings or [],
            degraded=degraded,
        )

    @classmethod
    def clear(cls, *, warnings: list[str] | None = None, degraded: bool = False) -> ConflictResult:
        return cls.build([], warnings=warnings, degraded=degraded)

    def conflict(self, conflict_id: str) -> ConflictDetail | None:
        for detail in self.conflicts:
            if detail.id == conflict_id:
                return detail
        return None


class Resolution(BaseModel):
    """A decision recorded against one ConflictDetail."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    conflict_id: str
    kind: ResolutionKind = ResolutionKind.UNRESOLVED
    event_id: str | None = None
    new_window: TimeWindow | None = None
    note: str | None = None
    decided_at: datetime | None = None
    expires_at: datetime | None = None

    @property
    def is_resolved(self) -> bool:
        return self.kind != ResolutionKind.UNRESOLVED

    def is_expired(self, now: datetime) -> bool:
        return self.expires_at is not None and now >= self.expires_at


def _format_local(value: datetime) -> str:
    return value.replace(microsecond=0).isoformat()


def event_to_record(event: Event) -> dict[str, Any]:
    """Serialise an Event to the flat persisted record shape.

    Timestamps are ISO-8601 local wall-clock values without an offset.
    """
    return {
        "id": event.id,
        "kind": event.kind.value,
        "title": event.title,
        "description": event.description,
        "startAt": _format_local(event.start_at),
        "endAt": _format_local(event.end_at),
        "durationMinutes": int(event.duration_minutes),
        "priority": event.priority.value,
        "ownerParticipant": event.owner_participant,
        "location": event.location,
        "participants": list(event.participants),
    }
