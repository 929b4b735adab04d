"""Conversion of heterogeneous source records into canonical Events.

Three upstream stores describe the same kind of thing with different field
names:

- unified events: ``startDateTime`` / ``endDateTime`` / ``duration`` / ``type``
- legacy daily tasks: ``startTime`` / ``endTime`` / ``estimatedDuration``
- service schedules: ``scheduledDate`` + ``scheduledTime`` / ``duration`` / ``service``

Every store also accepts the canonical wire keys written by
:func:`scheduling_engine.models.event_to_record`.  ``normalize`` is a pure
function; ``normalize_records`` isolates bad records so one malformed row
never stops a whole source from loading.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from datetime import date, datetime, time, timedelta
from typing import Any
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from pydantic import ValidationError

from scheduling_engine.errors import NormalizationError, PreconditionError
from scheduling_engine.models import (
    DEFAULT_EVENT_MINUTES,
    Event,
    EventKind,
    Priority,
    SourceOrigin,
)

logger = logging.getLogger(__name__)

_CANONICAL_START_KEYS = ("startAt", "start_at")
_CANONICAL_END_KEYS = ("endAt", "end_at")
_CANONICAL_DURATION_KEYS = ("durationMinutes", "duration_minutes")

_START_KEYS: dict[SourceOrigin, tuple[str, ...]] = {
    SourceOrigin.UNIFIED_EVENT: (*_CANONICAL_START_KEYS, "startDateTime"),
    SourceOrigin.LEGACY_TASK: (*_CANONICAL_START_KEYS, "startTime"),
    SourceOrigin.SERVICE_SCHEDULE: (*_CANONICAL_START_KEYS, "startDateTime"),
}
_END_KEYS: dict[SourceOrigin, tuple[str, ...]] = {
    SourceOrigin.UNIFIED_EVENT: (*_CANONICAL_END_KEYS, "endDateTime"),
    SourceOrigin.LEGACY_TASK: (*_CANONICAL_END_KEYS, "endTime"),
    SourceOrigin.SERVICE_SCHEDULE: (*_CANONICAL_END_KEYS, "endDateTime"),
}
_DURATION_KEYS: dict[SourceOrigin, tuple[str, ...]] = {
    SourceOrigin.UNIFIED_EVENT: (*_CANONICAL_DURATION_KEYS, "duration"),
    SourceOrigin.LEGACY_TASK: (*_CANONICAL_DURATION_KEYS, "estimatedDuration", "duration"),
    SourceOrigin.SERVICE_SCHEDULE: (*_CANONICAL_DURATION_KEYS, "duration"),
}
_DATE_KEYS = ("date", "scheduledDate")
_TIME_KEYS = ("time", "scheduledTime", "startTime")
_TITLE_KEYS = ("title", "service", "name")
_OWNER_KEYS = ("ownerParticipant", "owner_participant", "clientName", "clientId")
_KIND_KEYS = ("kind", "type")

# Longest stored duration accepted from a source record (one leap year).
MAX_SOURCE_DURATION_MINUTES = 366 * 24 * 60

_DEFAULT_KIND: dict[SourceOrigin, EventKind] = {
    SourceOrigin.UNIFIED_EVENT: EventKind.EVENT,
    SourceOrigin.LEGACY_TASK: EventKind.TASK,
    SourceOrigin.SERVICE_SCHEDULE: EventKind.EVENT,
}


@dataclass
class NormalizationBatch:
    """Events normalized from one source plus the records that were skipped."""

    events: list[Event] = field(default_factory=list)
    errors: list[NormalizationError] = field(default_factory=list)


def _first_present(raw: Mapping[str, Any], keys: Iterable[str]) -> Any:
    for key in keys:
        value = raw.get(key)
        if value is None:
            continue
        if isinstance(value, str) and not value.strip():
            continue
        return value
    return None


def _optional_text(value: Any) -> str | None:
    if value is None:
        return None
    normalized = str(value).strip()
    return normalized or None


def resolve_timezone(timezone: str | None) -> ZoneInfo | None:
    """ZoneInfo for *timezone*; unknown names raise PreconditionError."""
    if timezone is None:
        return None
    try:
        return ZoneInfo(timezone)
    except (ZoneInfoNotFoundError, ValueError) as exc:
        raise PreconditionError(
            f"timezone must be a valid IANA timezone: {timezone}",
            details={"timezone": timezone},
        ) from exc


def _to_local(value: datetime, zone: ZoneInfo | None) -> datetime:
    """Return the naive wall-clock form of *value* in the canonical zone.

    Naive values are already wall-clock and are kept as written.
    """
    if value.tzinfo is None or value.utcoffset() is None:
        return value.replace(tzinfo=None)
    if zone is not None:
        value = value.astimezone(zone)
    return value.replace(tzinfo=None)


def _parse_timestamp(value: Any, zone: ZoneInfo | None) -> datetime:
    if isinstance(value, datetime):
        return _to_local(value, zone)
    if isinstance(value, date):
        return datetime.combine(value, time.min)
    if isinstance(value, str):
        text = value.strip()
        if text.endswith("Z"):
            text = f"{text[:-1]}+00:00"
        return _to_local(datetime.fromisoformat(text), zone)
    raise ValueError(f"unsupported timestamp type: {type(value).__name__}")


def _parse_date(value: Any) -> date:
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    if isinstance(value, str):
        text = value.strip()
        # Some stores write a full timestamp into the date column.
        return date.fromisoformat(text.split("T", 1)[0])
    raise ValueError(f"unsupported date type: {type(value).__name__}")


def _parse_time(value: Any) -> time:
    if isinstance(value, time):
        return value
    if isinstance(value, str):
        return time.fromisoformat(value.strip())
    raise ValueError(f"unsupported time type: {type(value).__name__}")


def _is_clock_only(value: Any) -> bool:
    return isinstance(value, str) and ":" in value and "T" not in value and "-" not in value


def _parse_end(value: Any, start_at: datetime, zone: ZoneInfo | None) -> datetime:
    if _is_clock_only(value):
        return datetime.combine(start_at.date(), _parse_time(value))
    return _parse_timestamp(value, zone)


def _parse_duration(value: Any) -> int | None:
    if value is None:
        return None
    if isinstance(value, bool):
        raise ValueError("duration must be a number of minutes")
    minutes = int(round(float(value)))
    if minutes <= 0:
        raise ValueError("duration must be positive")
    if minutes > MAX_SOURCE_DURATION_MINUTES:
        raise ValueError(f"duration of {minutes} min exceeds {MAX_SOURCE_DURATION_MINUTES} min")
    return minutes


def _parse_kind(value: Any, origin: SourceOrigin) -> EventKind:
    if value is None:
        return _DEFAULT_KIND[origin]
    normalized = str(value).strip().lower()
    try:
        return EventKind(normalized)
    except ValueError:
        # Schedule stores label rows "appointment", "service" etc.
        return _DEFAULT_KIND[origin]


def _parse_priority(value: Any) -> Priority:
    if value is None:
        return Priority.MEDIUM
    try:
        return Priority(str(value).strip().lower())
    except ValueError:
        return Priority.MEDIUM


def _parse_participants(value: Any) -> list[str]:
    if value is None:
        return []
    if isinstance(value, str):
        value = value.split(",")
    if not isinstance(value, list | tuple):
        return []
    return [str(item).strip() for item in value if str(item).strip()]


def _resolve_start(
    raw: Mapping[str, Any],
    origin: SourceOrigin,
    zone: ZoneInfo | None,
    record_id: str,
) -> datetime:
    structured = _first_present(raw, _START_KEYS[origin])
    day = _first_present(raw, _DATE_KEYS)
    clock = _first_present(raw, _TIME_KEYS)

    # A legacy ``startTime`` may be a bare clock value paired with ``date``.
    if day is not None and _is_clock_only(structured):
        structured = None

    try:
        if structured is not None:
            return _parse_timestamp(structured, zone)
        if day is not None:
            parsed_day = _parse_date(day)
            parsed_clock = _parse_time(clock) if clock is not None else time.min
            return datetime.combine(parsed_day, parsed_clock)
    except (TypeError, ValueError, OverflowError) as exc:
        raise NormalizationError(
            NormalizationError.INVALID_TIME,
            f"Record {record_id}: unparsable start time ({exc})",
            record_id=record_id,
            source_origin=origin.value,
        ) from exc

    raise NormalizationError(
        NormalizationError.MISSING_TIME,
        f"Record {record_id}: missing start time",
        record_id=record_id,
        source_origin=origin.value,
    )


def normalize(
    raw: Mapping[str, Any],
    source_origin: SourceOrigin | str,
    *,
    timezone: str | None = None,
) -> Event:
    """Normalize one raw source record into an Event.

    Raises
    ------
    NormalizationError
        ``missing-time`` when no start can be found, ``invalid-time`` when a
        timestamp is unparsable or the window is non-positive, and
        ``invalid-record`` for records without an id or otherwise rejected.
    PreconditionError
        When *timezone* is not a valid IANA zone name.
    """
    origin = SourceOrigin(source_origin)
    if not isinstance(raw, Mapping):
        raise NormalizationError(
            NormalizationError.INVALID_RECORD,
            f"Record must be a mapping, got {type(raw).__name__}",
            source_origin=origin.value,
        )

    record_id = _optional_text(raw.get("id"))
    if record_id is None:
        raise NormalizationError(
            NormalizationError.INVALID_RECORD,
            "Record is missing an id",
            source_origin=origin.value,
        )

    zone = resolve_timezone(timezone)
    start_at = _resolve_start(raw, origin, zone, record_id)

    try:
        duration = _parse_duration(_first_present(raw, _DURATION_KEYS[origin]))
        end_raw = _first_present(raw, _END_KEYS[origin])
        if end_raw is not None:
            end_at = _parse_end(end_raw, start_at, zone)
        else:
            end_at = start_at + timedelta(minutes=duration or DEFAULT_EVENT_MINUTES)
    except (TypeError, ValueError, OverflowError) as exc:
        raise NormalizationError(
            NormalizationError.INVALID_TIME,
            f"Record {record_id}: unparsable end time or duration ({exc})",
            record_id=record_id,
            source_origin=origin.value,
        ) from exc

    if end_at <= start_at:
        raise NormalizationError(
            NormalizationError.INVALID_TIME,
            f"Record {record_id}: end must be after start",
            record_id=record_id,
            source_origin=origin.value,
        )

    try:
        return Event(
            id=record_id,
            kind=_parse_kind(_first_present(raw, _KIND_KEYS), origin),
            title=_optional_text(_first_present(raw, _TITLE_KEYS)) or "",
            description=_optional_text(raw.get("description")),
            start_at=start_at,
            end_at=end_at,
            duration_minutes=duration,
            priority=_parse_priority(raw.get("priority")),
            owner_participant=_optional_text(_first_present(raw, _OWNER_KEYS)),
            location=_optional_text(raw.get("location")),
            participants=_parse_participants(raw.get("participants")),
            source_origin=origin,
        )
    except ValidationError as exc:
        raise NormalizationError(
            NormalizationError.INVALID_RECORD,
            f"Record {record_id}: {exc.errors()[0]['msg']}",
            record_id=record_id,
            source_origin=origin.value,
        ) from exc


def normalize_records(
    records: Iterable[Mapping[str, Any]],
    source_origin: SourceOrigin | str,
    *,
    timezone: str | None = None,
) -> NormalizationBatch:
    """Normalize every record from one source, skipping and logging bad ones."""
    origin = SourceOrigin(source_origin)
    batch = NormalizationBatch()
    for record in records:
        try:
            batch.events.append(normalize(record, origin, timezone=timezone))
        except NormalizationError as exc:
            logger.warning(
                "Skipping %s record %s (%s): %s",
                origin.value,
                exc.record_id or "<no id>",
                exc.kind,
                exc.message,
            )
            batch.errors.append(exc)
    return batch
