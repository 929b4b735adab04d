"""Resolution state machine for one proposed event.

A :class:`Negotiation` is an explicit session object owned by the caller.
It holds the proposed (candidate) event, the latest detection result, and
one :class:`Resolution` per conflict.  The session itself performs no I/O;
:class:`scheduling_engine.engine.SchedulingEngine` drives it.

States::

    idle -> detecting -> awaiting_resolution -> resolved -> committed
                 |               |                 |
                 v               v                 v
               failed        cancelled         cancelled

``resolved`` is the only state from which a commit may write.
"""

from __future__ import annotations

import enum
import logging
import time
import uuid
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from datetime import datetime, timedelta

from scheduling_engine.errors import (
    NegotiationInProgress,
    NegotiationStateError,
    PreconditionError,
    UnknownConflict,
)
from scheduling_engine.models import (
    ConflictDetail,
    ConflictResult,
    Event,
    Resolution,
    ResolutionKind,
    Severity,
    TimeWindow,
)

logger = logging.getLogger(__name__)


class NegotiationState(enum.StrEnum):
    """Lifecycle states of a negotiation."""

    IDLE = "idle"
    DETECTING = "detecting"
    AWAITING_RESOLUTION = "awaiting_resolution"
    RESOLVED = "resolved"
    CANCELLED = "cancelled"
    FAILED = "failed"
    COMMITTED = "committed"


TERMINAL_STATES: frozenset[NegotiationState] = frozenset(
    {NegotiationState.CANCELLED, NegotiationState.COMMITTED}
)

# Valid state transitions: source -> set of valid targets
_VALID_TRANSITIONS: dict[NegotiationState, set[NegotiationState]] = {
    NegotiationState.IDLE: {NegotiationState.DETECTING, NegotiationState.CANCELLED},
    NegotiationState.DETECTING: {
        NegotiationState.AWAITING_RESOLUTION,
        NegotiationState.RESOLVED,
        NegotiationState.FAILED,
        NegotiationState.CANCELLED,
    },
    NegotiationState.AWAITING_RESOLUTION: {
        NegotiationState.DETECTING,
        NegotiationState.RESOLVED,
        NegotiationState.CANCELLED,
    },
    NegotiationState.RESOLVED: {
        NegotiationState.DETECTING,
        NegotiationState.COMMITTED,
        NegotiationState.CANCELLED,
    },
    NegotiationState.FAILED: {NegotiationState.DETECTING, NegotiationState.CANCELLED},
    NegotiationState.CANCELLED: set(),
    NegotiationState.COMMITTED: set(),
}

# Decisions that accept the overlap itself and stay valid on re-detection.
# Deleting or moving the other event only counts once the conflict is gone.
_CARRIED_KINDS: frozenset[ResolutionKind] = frozenset(
    {ResolutionKind.ACCEPTED, ResolutionKind.OVERRIDDEN, ResolutionKind.WAITLISTED}
)


def _now() -> datetime:
    return datetime.now().replace(microsecond=0)


@dataclass
class StateTransition:
    """One entry in a negotiation's audit trail."""

    from_state: NegotiationState
    to_state: NegotiationState
    operation: str
    at: datetime = field(default_factory=_now)


class Negotiation:
    """Caller-owned session negotiating one proposed event into a slot.

    Parameters
    ----------
    proposed:
        The candidate event that will be written on commit.
    excluded:
        Ids transiently excluded from detection (for example a just-created
        event whose write has not settled yet).
    clock:
        Monotonic clock used for the stale-commit window.
    """

    def __init__(
        self,
        proposed: Event,
        *,
        excluded: Iterable[str] = (),
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.id = str(uuid.uuid4())
        self.proposed = proposed
        self.excluded: frozenset[str] = frozenset(excluded)
        self.state = NegotiationState.IDLE
        self.result: ConflictResult | None = None
        self.resolutions: dict[str, Resolution] = {}
        self.decisions: list[Resolution] = []
        self.history: list[StateTransition] = []
        self.error: str | None = None
        self.resolved_at: float | None = None
        self._clock = clock
        self._generation = 0
        self._state_before_detection: NegotiationState | None = None

    def __repr__(self) -> str:
        return (
            f"Negotiation(id={self.id!r}, event={self.proposed.id!r}, state={self.state.value!r})"
        )

    @property
    def event_id(self) -> str:
        return self.proposed.id

    @property
    def is_terminal(self) -> bool:
        return self.state in TERMINAL_STATES

    # ------------------------------------------------------------------
    # Derived views
    # ------------------------------------------------------------------

    @property
    def conflicts(self) -> list[ConflictDetail]:
        return list(self.result.conflicts) if self.result is not None else []

    def resolution_for(self, conflict_id: str) -> Resolution:
        return self.resolutions.get(conflict_id, Resolution(conflict_id=conflict_id))

    @property
    def unresolved_conflicts(self) -> list[ConflictDetail]:
        return [c for c in self.conflicts if not self.resolution_for(c.id).is_resolved]

    def expired_resolutions(self) -> list[Resolution]:
        """Resolutions whose ``expires_at`` has passed."""
        now = _now()
        return [r for r in self.resolutions.values() if r.is_expired(now)]

    @property
    def is_fully_resolved(self) -> bool:
        return self.result is not None and not self.unresolved_conflicts

    @property
    def can_proceed(self) -> bool:
        """True when every conflict is below ``high`` or explicitly resolved."""
        if self.result is None:
            return False
        return all(
            not conflict.severity.at_least(Severity.HIGH)
            or self.resolution_for(conflict.id).is_resolved
            for conflict in self.result.conflicts
        )

    def current_result(self) -> ConflictResult | None:
        """The last detection result with ``can_proceed`` reflecting resolutions."""
        if self.result is None:
            return None
        return self.result.model_copy(update={"can_proceed": self.can_proceed})

    def snapshot(self) -> dict[str, object]:
        """JSON-safe summary for UI callers and logs."""
        result = self.current_result()
        return {
            "negotiation_id": self.id,
            "event_id": self.event_id,
            "state": self.state.value,
            "result": result.model_dump(mode="json") if result is not None else None,
            "resolutions": {
                conflict_id: resolution.model_dump(mode="json")
                for conflict_id, resolution in self.resolutions.items()
            },
            "error": self.error,
        }

    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------

    def _transition(self, target: NegotiationState, operation: str) -> None:
        if target not in _VALID_TRANSITIONS[self.state]:
            raise NegotiationStateError(self.event_id, self.state.value, operation)
        self.history.append(
            StateTransition(from_state=self.state, to_state=target, operation=operation)
        )
        logger.debug(
            "Negotiation %s for %s: %s -> %s (%s)",
            self.id,
            self.event_id,
            self.state.value,
            target.value,
            operation,
        )
        self.state = target
        if target == NegotiationState.RESOLVED:
            self.resolved_at = self._clock()

    def require_state(self, operation: str, *states: NegotiationState) -> None:
        if self.state not in states:
            raise NegotiationStateError(self.event_id, self.state.value, operation)

    def begin_detection(self, operation: str = "detect") -> int:
        """Enter ``detecting`` and return a token identifying this run."""
        previous = self.state
        self._transition(NegotiationState.DETECTING, operation)
        self._state_before_detection = previous
        self._generation += 1
        return self._generation

    def _is_current(self, token: int) -> bool:
        return self.state == NegotiationState.DETECTING and token == self._generation

    def apply_result(self, token: int, result: ConflictResult) -> bool:
        """Install a finished detection result.

        Resolutions that accept an overlap carry over by conflict id unless
        they have expired; all other conflicts start unresolved.  Returns
        False (and changes nothing) when the run was superseded or the
        session was cancelled while detection was in flight.
        """
        if not self._is_current(token):
            logger.debug("Discarding superseded detection result for %s", self.event_id)
            return False

        now = _now()
        carried: dict[str, Resolution] = {}
        for conflict in result.conflicts:
            previous = self.resolutions.get(conflict.id)
            if previous is None or previous.kind not in _CARRIED_KINDS:
                continue
            if previous.is_expired(now):
                logger.info("Resolution for %s expired; conflict reopened", conflict.id)
                continue
            carried[conflict.id] = previous

        self.result = result
        self.resolutions = carried
        self.error = None
        self._state_before_detection = None
        if self.is_fully_resolved:
            self._transition(NegotiationState.RESOLVED, "detect")
        else:
            self._transition(NegotiationState.AWAITING_RESOLUTION, "detect")
        return True

    def fail(self, token: int, reason: str) -> bool:
        """Move an in-flight detection run to ``failed``."""
        if not self._is_current(token):
            return False
        self.error = reason
        self._state_before_detection = None
        self._transition(NegotiationState.FAILED, "detect")
        return True

    def abandon_detection(self, token: int) -> None:
        """Undo ``begin_detection`` after the detecting task was cancelled."""
        if not self._is_current(token) or self._state_before_detection is None:
            return
        restored = self._state_before_detection
        self._state_before_detection = None
        self.history.append(
            StateTransition(
                from_state=self.state,
                to_state=restored,
                operation="detect-cancelled",
            )
        )
        self.state = restored

    def record(
        self,
        conflict_id: str,
        kind: ResolutionKind,
        *,
        event_id: str | None = None,
        new_window: TimeWindow | None = None,
        note: str | None = None,
        valid_for: timedelta | None = None,
    ) -> Resolution:
        """Record a decision for one conflict and advance when all are resolved.

        With *valid_for* the decision lapses after that long and the conflict
        reopens on the next detection run.
        """
        self.require_state(
            f"record {kind.value} for",
            NegotiationState.AWAITING_RESOLUTION,
        )
        conflict = self.require_conflict(conflict_id)
        if valid_for is not None and valid_for <= timedelta(0):
            raise PreconditionError(
                "A resolution lifetime must be positive",
                details={"conflict_id": conflict_id},
            )
        decided_at = _now()
        resolution = Resolution(
            conflict_id=conflict.id,
            kind=kind,
            event_id=event_id or conflict.conflicting_event_id,
            new_window=new_window,
            note=note,
            decided_at=decided_at,
            expires_at=decided_at + valid_for if valid_for is not None else None,
        )
        self.resolutions[conflict.id] = resolution
        self.decisions.append(resolution)
        if self.is_fully_resolved:
            self._transition(NegotiationState.RESOLVED, kind.value)
        return resolution

    def require_conflict(self, conflict_id: str) -> ConflictDetail:
        detail = self.result.conflict(conflict_id) if self.result is not None else None
        if detail is None:
            raise UnknownConflict(self.event_id, conflict_id)
        return detail

    def cancel(self) -> None:
        self._transition(NegotiationState.CANCELLED, "cancel")

    def mark_committed(self) -> None:
        self._transition(NegotiationState.COMMITTED, "commit")


class NegotiationRegistry:
    """In-flight negotiations keyed by proposed event id.

    Negotiations for different ids never share state.  Opening a second
    negotiation for an id whose previous one is still live raises
    :class:`NegotiationInProgress`.
    """

    def __init__(self, *, clock: Callable[[], float] = time.monotonic) -> None:
        self._sessions: dict[str, Negotiation] = {}
        self._clock = clock

    def __len__(self) -> int:
        return len(self._sessions)

    def __contains__(self, event_id: object) -> bool:
        return event_id in self._sessions

    def open(self, proposed: Event, *, excluded: Iterable[str] = ()) -> Negotiation:
        existing = self._sessions.get(proposed.id)
        if existing is not None and not existing.is_terminal:
            raise NegotiationInProgress(proposed.id)
        session = Negotiation(proposed, excluded=excluded, clock=self._clock)
        self._sessions[proposed.id] = session
        return session

    def get(self, event_id: str) -> Negotiation | None:
        return self._sessions.get(event_id)

    def live(self) -> list[Negotiation]:
        return [s for s in self._sessions.values() if not s.is_terminal]

    def release(self, session: Negotiation) -> None:
        """Forget a terminal session (no-op if a newer one replaced it)."""
        if self._sessions.get(session.event_id) is session and session.is_terminal:
            del self._sessions[session.event_id]
