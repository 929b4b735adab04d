"""Conflict detection between a proposed event and an existing event set.

Overlap uses half-open intervals: ``[s1, e1)`` and ``[s2, e2)`` overlap iff
``s1 < e2 and s2 < e1``, so back-to-back events never conflict.  Severity is
the overlap as a fraction of the shorter event's duration.

Detection never raises for a malformed *existing* event; it is skipped and
logged.  A malformed *proposed* event raises :class:`PreconditionError`
before any comparison runs.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable
from dataclasses import dataclass, field
from datetime import datetime, timedelta

from scheduling_engine.config import DetectionConfig
from scheduling_engine.errors import PreconditionError
from scheduling_engine.models import (
    MAX_EVENT_MINUTES,
    MIN_EVENT_MINUTES,
    ConflictDetail,
    ConflictResult,
    ConflictType,
    Event,
    Severity,
    TimeWindow,
)

logger = logging.getLogger(__name__)

# Stored and computed durations may differ by this factor before the stored
# value is considered authoritative.
DURATION_DISAGREEMENT_FACTOR = 2.0

# Business-rule conflicts flag the slot without blocking the commit.
BUSINESS_RULE_SEVERITY = Severity.MEDIUM

_WEEKDAY_NAMES = ("Monday", "Tuesday", "Wednesday", "Thursday", "Friday", "Saturday", "Sunday")


@dataclass
class _Candidate:
    event: Event
    window: TimeWindow


@dataclass
class CollisionGroup:
    """A maximal run of transitively overlapping events for day-view layout.

    ``columns`` maps each event id to its left-most free column.
    """

    events: list[Event] = field(default_factory=list)
    start: datetime | None = None
    end: datetime | None = None
    columns: dict[str, int] = field(default_factory=dict)

    @property
    def column_count(self) -> int:
        return max(self.columns.values(), default=-1) + 1


def conflict_id_for(proposed_id: str, existing_id: str, conflict_type: ConflictType) -> str:
    """Stable id for the conflict between two events.

    Stable across re-detection so resolutions recorded against a conflict
    survive a re-run of the detector.
    """
    prefix = "buffer" if conflict_type == ConflictType.BUFFER_VIOLATION else "conflict"
    return f"{prefix}:{proposed_id}:{existing_id}"


def rule_conflict_id(proposed_id: str, rule: str) -> str:
    return f"rule:{proposed_id}:{rule}"


def _shares_resource(a: Event, b: Event) -> bool:
    if a.owner_participant and b.owner_participant:
        if a.owner_participant.casefold() == b.owner_participant.casefold():
            return True
    if a.location and b.location:
        if a.location.casefold() == b.location.casefold():
            return True
    return False


def _describe(event: Event) -> str:
    return f"'{event.title}'" if event.title else f"event {event.id}"


def _format_span(window: TimeWindow) -> str:
    return f"{window.start:%H:%M}-{window.end:%H:%M}"


class ConflictDetector:
    """Stateless detector configured by a :class:`DetectionConfig`."""

    def __init__(self, config: DetectionConfig | None = None) -> None:
        self.config = config or DetectionConfig()

    # ------------------------------------------------------------------
    # Window reconciliation
    # ------------------------------------------------------------------

    def effective_window(self, event: Event) -> tuple[TimeWindow, str | None]:
        """Return the window used for conflict math plus an optional warning.

        When the stored duration and the start/end window disagree by more
        than 2x, or both fall outside [15 min, 24 h], the stored duration
        wins and a data-quality warning is returned.

        Raises ``ValueError`` when the event has a non-positive window and
        ``OverflowError`` when the stored duration runs past ``datetime.max``.
        """
        if event.end_at <= event.start_at:
            raise ValueError(f"event {event.id} has a non-positive window")

        window = TimeWindow(start=event.start_at, end=event.end_at)
        computed = window.duration.total_seconds() / 60
        stored = event.duration_minutes
        if not stored or stored <= 0 or stored == computed:
            return window, None

        ratio = max(stored, computed) / min(stored, computed)

        def _outside(minutes: float) -> bool:
            return not MIN_EVENT_MINUTES <= minutes <= MAX_EVENT_MINUTES

        if ratio <= DURATION_DISAGREEMENT_FACTOR and not (_outside(stored) and _outside(computed)):
            return window, None

        reconciled = TimeWindow(
            start=event.start_at,
            end=event.start_at + timedelta(minutes=stored),
        )
        warning = (
            f"Event {event.id}: stored duration {stored} min disagrees with its "
            f"{computed:g} min window; using the stored duration"
        )
        return reconciled, warning

    # ------------------------------------------------------------------
    # Classification
    # ------------------------------------------------------------------

    def severity_for(self, overlap: timedelta, a: TimeWindow, b: TimeWindow) -> Severity:
        shorter = min(a.duration, b.duration)
        fraction = overlap / shorter
        if fraction >= self.config.critical_threshold:
            return Severity.CRITICAL
        if fraction >= self.config.high_threshold:
            return Severity.HIGH
        if fraction >= self.config.medium_threshold:
            return Severity.MEDIUM
        return Severity.LOW

    def _buffer_gap(self, a: TimeWindow, b: TimeWindow) -> timedelta | None:
        """Gap between two non-overlapping windows when it is under the buffer."""
        if self.config.buffer_minutes <= 0:
            return None
        gap = b.start - a.end if a.end <= b.start else a.start - b.end
        if gap < timedelta(minutes=self.config.buffer_minutes):
            return gap
        return None

    def _build_detail(
        self,
        proposed: Event,
        proposed_window: TimeWindow,
        other: _Candidate,
    ) -> ConflictDetail | None:
        overlap = proposed_window.intersection(other.window)
        if overlap is None:
            gap = self._buffer_gap(proposed_window, other.window)
            if gap is None:
                return None
            return ConflictDetail(
                id=conflict_id_for(proposed.id, other.event.id, ConflictType.BUFFER_VIOLATION),
                type=ConflictType.BUFFER_VIOLATION,
                severity=Severity.LOW,
                message=(
                    f"Only {int(gap.total_seconds() // 60)} min between this event and "
                    f"{_describe(other.event)} ({_format_span(other.window)}); "
                    f"{self.config.buffer_minutes} min buffer required"
                ),
                conflicting_event_ids=[other.event.id],
            )

        if proposed_window == other.window:
            conflict_type = ConflictType.DOUBLE_BOOKING
            message = f"Double-booked with {_describe(other.event)} ({_format_span(overlap)})"
        elif _shares_resource(proposed, other.event):
            conflict_type = ConflictType.RESOURCE_CONSTRAINT
            message = (
                f"Shares a participant or location with {_describe(other.event)}, "
                f"overlapping {overlap.minutes} min ({_format_span(overlap)})"
            )
        else:
            conflict_type = ConflictType.OVERLAP
            message = (
                f"Overlaps {_describe(other.event)} by {overlap.minutes} min "
                f"({_format_span(overlap)})"
            )

        return ConflictDetail(
            id=conflict_id_for(proposed.id, other.event.id, conflict_type),
            type=conflict_type,
            severity=self.severity_for(overlap.duration, proposed_window, other.window),
            message=message,
            conflicting_event_ids=[other.event.id],
            overlap_window=overlap,
            overlap_minutes=overlap.minutes,
        )

    def business_rule_violations(
        self, proposed: Event, proposed_window: TimeWindow
    ) -> list[ConflictDetail]:
        """Conflicts raised by the slot itself rather than by another event.

        Work-hour and work-day rules apply only with
        ``enforce_business_hours``; every configured blackout period that
        overlaps the window is reported.
        """
        config = self.config
        details: list[ConflictDetail] = []

        def _rule(rule: str, message: str, overlap: TimeWindow | None = None) -> None:
            details.append(
                ConflictDetail(
                    id=rule_conflict_id(proposed.id, rule),
                    type=ConflictType.BUSINESS_RULE,
                    severity=BUSINESS_RULE_SEVERITY,
                    message=message,
                    conflicting_event_ids=[proposed.id],
                    overlap_window=overlap,
                    overlap_minutes=overlap.minutes if overlap is not None else 0,
                )
            )

        if config.enforce_business_hours:
            day = proposed_window.start.date()
            if day.weekday() not in config.work_days:
                _rule("work-day", f"Scheduled on a non-work day ({_WEEKDAY_NAMES[day.weekday()]})")
            day_open = datetime.combine(day, config.business_hours_start)
            day_close = datetime.combine(day, config.business_hours_end)
            if proposed_window.start < day_open or proposed_window.end > day_close:
                _rule(
                    "work-hours",
                    f"Scheduled outside business hours "
                    f"({config.business_hours_start:%H:%M}-{config.business_hours_end:%H:%M})",
                )

        for index, blackout in enumerate(config.blackout_periods):
            overlap = proposed_window.intersection(
                TimeWindow(start=blackout.start, end=blackout.end)
            )
            if overlap is None:
                continue
            label = f": {blackout.reason}" if blackout.reason else ""
            _rule(f"blackout-{index}", f"Falls within a blackout period{label}", overlap)

        return details

    # ------------------------------------------------------------------
    # Detection
    # ------------------------------------------------------------------

    def _prepare_existing(
        self,
        existing: Iterable[Event],
        dropped: set[str],
        warnings: list[str],
    ) -> list[_Candidate]:
        candidates: list[_Candidate] = []
        for event in existing:
            if not isinstance(event, Event):
                logger.warning("Skipping non-event entry in existing set: %r", event)
                continue
            if event.id in dropped:
                continue
            try:
                window, warning = self.effective_window(event)
            except (ValueError, OverflowError) as exc:
                logger.warning("Skipping malformed existing event %s: %s", event.id, exc)
                continue
            if warning:
                warnings.append(warning)
            candidates.append(_Candidate(event=event, window=window))
        return candidates

    def _proposed_window(self, proposed: Event, warnings: list[str]) -> TimeWindow:
        if not isinstance(proposed, Event):
            raise PreconditionError(
                f"Proposed event must be an Event, got {type(proposed).__name__}"
            )
        try:
            window, warning = self.effective_window(proposed)
        except (ValueError, OverflowError) as exc:
            raise PreconditionError(
                f"Proposed event {proposed.id} has an invalid time window: {exc}",
                details={"event_id": proposed.id},
            ) from exc
        if warning:
            warnings.append(warning)
        return window

    def detect(
        self,
        proposed: Event,
        existing: Iterable[Event],
        excluded: Iterable[str] = (),
        *,
        degraded: bool = False,
        warnings: Iterable[str] = (),
    ) -> ConflictResult:
        """Detect conflicts between *proposed* and every event in *existing*.

        ``proposed.id`` and every id in *excluded* are dropped from
        *existing* first.  ``degraded`` and ``warnings`` are copied onto the
        result so callers can surface store health alongside conflicts.
        """
        collected: list[str] = list(warnings)
        proposed_window = self._proposed_window(proposed, collected)
        others = self._prepare_existing(existing, {proposed.id, *excluded}, collected)

        conflicts: list[ConflictDetail] = []
        for other in others:
            detail = self._build_detail(proposed, proposed_window, other)
            if detail is not None:
                conflicts.append(detail)
        conflicts.extend(self.business_rule_violations(proposed, proposed_window))

        windows = {other.event.id: other.window for other in others}

        def _sort_key(detail: ConflictDetail) -> tuple[int, datetime, str]:
            anchor = (
                detail.overlap_window.start
                if detail.overlap_window is not None
                else windows.get(detail.conflicting_event_id, proposed_window).start
            )
            return (-detail.severity.rank, anchor, detail.conflicting_event_id)

        conflicts.sort(key=_sort_key)

        suggestions: list[TimeWindow] = []
        if conflicts:
            suggestions = self.suggest(proposed_window, others)

        return ConflictResult.build(
            conflicts,
            suggestions=suggestions,
            warnings=collected,
            degraded=degraded,
        )

    def _is_free(self, window: TimeWindow, others: list[_Candidate]) -> bool:
        for other in others:
            if window.overlaps(other.window):
                return False
            if self._buffer_gap(window, other.window) is not None:
                return False
        for blackout in self.config.blackout_periods:
            if window.start < blackout.end and blackout.start < window.end:
                return False
        return True

    def suggest(self, proposed_window: TimeWindow, others: list[_Candidate]) -> list[TimeWindow]:
        """Forward-scan the proposed day for conflict-free windows of equal length.

        Returns at most ``max_suggestions`` windows; an empty list is a valid
        answer when the rest of the day is full or outside business hours.
        """
        config = self.config
        day = proposed_window.start.date()
        if day.weekday() not in config.work_days:
            return []

        duration = proposed_window.duration
        step = timedelta(minutes=config.suggestion_step_minutes)
        day_open = datetime.combine(day, config.business_hours_start)
        day_close = datetime.combine(day, config.business_hours_end)

        suggestions: list[TimeWindow] = []
        cursor = proposed_window.start + step
        while cursor.date() == day and cursor + duration <= day_close:
            if cursor >= day_open:
                candidate = TimeWindow(start=cursor, end=cursor + duration)
                if self._is_free(candidate, others):
                    suggestions.append(candidate)
                    if len(suggestions) >= config.max_suggestions:
                        break
            cursor += step
        return suggestions

    def detect_batch(self, events: Iterable[Event]) -> dict[str, ConflictResult]:
        """Detect every event of a set against the rest of the same set."""
        pool = list(events)
        results: dict[str, ConflictResult] = {}
        for event in pool:
            try:
                results[event.id] = self.detect(event, pool)
            except PreconditionError as exc:
                logger.warning("Skipping malformed event %s in batch: %s", event.id, exc.message)
        return results


def collision_groups(events: Iterable[Event]) -> list[CollisionGroup]:
    """Group transitively overlapping events and assign left-most columns.

    Events are swept in start order; a group closes when the next event
    starts at or after the latest end seen so far.  Within a group each
    event takes the lowest column whose last occupant has already ended.
    """
    ordered = sorted(
        (event for event in events if event.end_at > event.start_at),
        key=lambda event: (event.start_at, event.end_at, event.id),
    )

    groups: list[CollisionGroup] = []
    column_ends: list[datetime] = []
    current: CollisionGroup | None = None

    for event in ordered:
        if current is None or current.end is None or event.start_at >= current.end:
            current = CollisionGroup(start=event.start_at, end=event.end_at)
            groups.append(current)
            column_ends = []

        for column, column_end in enumerate(column_ends):
            if column_end <= event.start_at:
                column_ends[column] = event.end_at
                break
        else:
            column = len(column_ends)
            column_ends.append(event.end_at)

        current.events.append(event)
        current.columns[event.id] = column
        current.end = max(current.end, event.end_at)

    return groups
