"""Drag and resize gestures turned into candidate events.

Both operations build a candidate with the same id and a new window, then
run detection with the original permanently excluded through that shared
id.  Neither writes anywhere; committing the candidate is a separate step
that requires a ``resolved`` negotiation.
"""

from __future__ import annotations

from collections.abc import Iterable

from scheduling_engine.detector import ConflictDetector
from scheduling_engine.errors import PreconditionError
from scheduling_engine.models import (
    MAX_EVENT_MINUTES,
    MIN_EVENT_MINUTES,
    ConflictResult,
    Event,
    TimeWindow,
)


def move_candidate(event: Event, from_window: TimeWindow, to_window: TimeWindow) -> Event:
    """Candidate for dragging *event* from *from_window* to *to_window*.

    Raises PreconditionError when *from_window* is not where the event
    currently sits, which means the caller is acting on a stale view.
    """
    if event.window != from_window:
        raise PreconditionError(
            f"Event {event.id} is at {event.start_at:%Y-%m-%d %H:%M}-{event.end_at:%H:%M}, "
            "not at the window the move started from",
            details={"event_id": event.id},
        )
    return event.with_window(to_window)


def resize_candidate(event: Event, new_window: TimeWindow) -> Event:
    """Candidate for resizing *event* to *new_window*.

    Raises PreconditionError when the new duration falls outside
    [15 minutes, 24 hours].
    """
    minutes = new_window.duration.total_seconds() / 60
    if not MIN_EVENT_MINUTES <= minutes <= MAX_EVENT_MINUTES:
        raise PreconditionError(
            f"Resized duration of {minutes:g} min for event {event.id} is outside "
            f"[{MIN_EVENT_MINUTES}, {MAX_EVENT_MINUTES}] minutes",
            details={"event_id": event.id, "duration_minutes": minutes},
        )
    return event.with_window(new_window)


def propose_move(
    detector: ConflictDetector,
    event: Event,
    from_window: TimeWindow,
    to_window: TimeWindow,
    existing: Iterable[Event],
) -> ConflictResult:
    candidate = move_candidate(event, from_window, to_window)
    return detector.detect(candidate, existing)


def propose_resize(
    detector: ConflictDetector,
    event: Event,
    new_window: TimeWindow,
    existing: Iterable[Event],
) -> ConflictResult:
    candidate = resize_candidate(event, new_window)
    return detector.detect(candidate, existing)
