"""Caller-facing scheduling engine.

``SchedulingEngine`` ties the pieces together: it reads every source store
through the :class:`EventAggregator`, runs the :class:`ConflictDetector`
against the merged set, and drives caller-owned :class:`Negotiation`
sessions through the resolution state machine.  ``commit`` is the only
operation that writes the proposed event; it is serialized per event id
and always re-validates against fresh store data before writing.
"""

from __future__ import annotations

import asyncio
import logging
import time
import weakref
from collections.abc import Awaitable, Callable, Iterable, Sequence
from datetime import date, timedelta

from scheduling_engine.aggregator import AggregateSnapshot, EventAggregator, EventSet
from scheduling_engine.config import (
    DetectionConfig,
    EngineConfig,
    NegotiationConfig,
    NotificationConfig,
    NotifierType,
    StoreConfig,
    StoreType,
)
from scheduling_engine.core.logging import negotiation_context
from scheduling_engine.detector import ConflictDetector
from scheduling_engine.errors import (
    DetectionTimeout,
    PreconditionError,
    RescheduleRejected,
    StaleCommit,
    StoreUnavailable,
)
from scheduling_engine.models import (
    ConflictDetail,
    ConflictType,
    Event,
    ResolutionKind,
    TimeWindow,
)
from scheduling_engine.negotiation import (
    Negotiation,
    NegotiationRegistry,
    NegotiationState,
)
from scheduling_engine.notifications import (
    LoggingNotifier,
    Notifier,
    RescheduleNotice,
    WebhookNotifier,
)
from scheduling_engine.reschedule import move_candidate, resize_candidate
from scheduling_engine.stores import (
    HttpSourceStore,
    InMemorySourceStore,
    JsonFileSourceStore,
    SourceStore,
)

logger = logging.getLogger(__name__)

WaitlistHook = Callable[[Negotiation, ConflictDetail], Awaitable[None]]


def build_store(config: StoreConfig) -> SourceStore:
    """Instantiate the source store described by one ``[[engine.stores]]`` entry."""
    if config.type == StoreType.JSON and config.path is not None:
        return JsonFileSourceStore(config.path, config.origin)
    if config.type == StoreType.HTTP and config.url is not None:
        return HttpSourceStore(
            config.url,
            config.origin,
            token=config.token,
            timeout=config.timeout_s,
        )
    return InMemorySourceStore(config.origin)


def build_notifier(config: NotificationConfig) -> Notifier | None:
    if config.type == NotifierType.WEBHOOK and config.url is not None:
        return WebhookNotifier(config.url, token=config.token, timeout=config.timeout_s)
    if config.type == NotifierType.LOG:
        return LoggingNotifier()
    return None


class SchedulingEngine:
    """Aggregates stores, detects conflicts and drives negotiations.

    Parameters
    ----------
    stores:
        One collaborator per upstream store; at most one per origin.
    detection:
        Detection policy (thresholds, business hours, suggestions, buffer).
    negotiation:
        Detection and store timeouts and the stale-commit window.
    timezone:
        Canonical IANA zone used when normalizing offset-aware timestamps.
    notifier:
        Optional best-effort post-commit notification collaborator.
    waitlist_hook:
        Optional coroutine called when a conflict is waitlisted.
    clock:
        Monotonic clock; injectable for tests.
    """

    def __init__(
        self,
        stores: Sequence[SourceStore],
        *,
        detection: DetectionConfig | None = None,
        negotiation: NegotiationConfig | None = None,
        timezone: str | None = None,
        notifier: Notifier | None = None,
        waitlist_hook: WaitlistHook | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.negotiation_config = negotiation or NegotiationConfig()
        self.detector = ConflictDetector(detection)
        self.aggregator = EventAggregator(
            stores,
            timezone=timezone,
            store_timeout_s=self.negotiation_config.store_timeout_s,
        )
        self.registry = NegotiationRegistry(clock=clock)
        self.notifier = notifier
        self.waitlist_hook = waitlist_hook
        self._clock = clock
        self._commit_locks: weakref.WeakValueDictionary[str, asyncio.Lock] = (
            weakref.WeakValueDictionary()
        )
        self._commit_locks_guard = asyncio.Lock()

    @classmethod
    def from_config(
        cls,
        config: EngineConfig,
        *,
        waitlist_hook: WaitlistHook | None = None,
    ) -> SchedulingEngine:
        return cls(
            [build_store(store) for store in config.stores],
            detection=config.detection,
            negotiation=config.negotiation,
            timezone=config.timezone,
            notifier=build_notifier(config.notifications),
            waitlist_hook=waitlist_hook,
        )

    async def shutdown(self) -> None:
        """Release store and notifier resources."""
        for store in self.aggregator.stores:
            await store.shutdown()
        if self.notifier is not None:
            await self.notifier.shutdown()

    # ------------------------------------------------------------------
    # Read side
    # ------------------------------------------------------------------

    async def events(self, *, refresh: bool = False) -> AggregateSnapshot:
        """Current aggregate, re-reading the stores when invalidated or asked to."""
        if refresh:
            return await self.aggregator.refresh()
        return await self.aggregator.snapshot()

    async def events_for_date(self, day: date, *, refresh: bool = False) -> EventSet:
        snapshot = await self.events(refresh=refresh)
        return snapshot.events.for_date(day).sorted_by_start()

    # ------------------------------------------------------------------
    # Detection
    # ------------------------------------------------------------------

    async def _run_detection(self, session: Negotiation, operation: str) -> Negotiation:
        """Detect *session.proposed* against fresh store data.

        The session only changes once detection has finished; a cancelled
        run is rolled back and a timed-out run leaves the session ``failed``.
        """
        token = session.begin_detection(operation)
        timeout = self.negotiation_config.detect_timeout_s
        try:
            snapshot = await asyncio.wait_for(self.aggregator.refresh(), timeout=timeout)
        except TimeoutError as exc:
            reason = f"Detection for event '{session.event_id}' exceeded {timeout:.1f}s"
            session.fail(token, reason)
            logger.error("%s", reason)
            raise DetectionTimeout(reason, details={"event_id": session.event_id}) from exc
        except asyncio.CancelledError:
            session.abandon_detection(token)
            raise
        except Exception as exc:
            session.fail(token, f"{type(exc).__name__}: {exc}")
            raise

        try:
            result = self.detector.detect(
                session.proposed,
                snapshot.events,
                session.excluded,
                degraded=snapshot.degraded,
                warnings=snapshot.warnings,
            )
        except PreconditionError as exc:
            session.fail(token, exc.message)
            raise

        if session.apply_result(token, result):
            logger.info(
                "Detection for %s: %d conflict(s), state=%s%s",
                session.event_id,
                len(result.conflicts),
                session.state.value,
                " (degraded)" if result.degraded else "",
            )
        return session

    async def detect(self, proposed: Event, *, excluded: Iterable[str] = ()) -> Negotiation:
        """Open a negotiation for *proposed* and run detection.

        Raises NegotiationInProgress when a live negotiation already exists
        for ``proposed.id``.
        """
        if proposed.end_at <= proposed.start_at:
            raise PreconditionError(
                f"Proposed event {proposed.id} must end after it starts",
                details={"event_id": proposed.id},
            )
        session = self.registry.open(proposed, excluded=excluded)
        with negotiation_context(session.id):
            return await self._run_detection(session, "detect")

    async def redetect(self, session: Negotiation) -> Negotiation:
        """Re-run detection on an existing session (for example after ``failed``)."""
        with negotiation_context(session.id):
            return await self._run_detection(session, "redetect")

    async def propose_move(
        self,
        event: Event,
        from_window: TimeWindow,
        to_window: TimeWindow,
    ) -> Negotiation:
        """Negotiate dragging *event* to *to_window*; the original is excluded by id."""
        return await self.detect(move_candidate(event, from_window, to_window))

    async def propose_resize(self, event: Event, new_window: TimeWindow) -> Negotiation:
        """Negotiate resizing *event*; rejects durations outside [15 min, 24 h] first."""
        return await self.detect(resize_candidate(event, new_window))

    # ------------------------------------------------------------------
    # Resolutions
    # ------------------------------------------------------------------

    async def accept_conflict(
        self,
        session: Negotiation,
        conflict_id: str,
        *,
        note: str | None = None,
        valid_for: timedelta | None = None,
    ) -> Negotiation:
        """Accept a conflict as-is, optionally only for *valid_for*."""
        with negotiation_context(session.id):
            session.record(conflict_id, ResolutionKind.ACCEPTED, note=note, valid_for=valid_for)
        return session

    async def override_conflict(
        self,
        session: Negotiation,
        conflict_id: str,
        reason: str,
        *,
        valid_for: timedelta | None = None,
    ) -> Negotiation:
        if not reason or not reason.strip():
            raise PreconditionError("An override requires a reason")
        with negotiation_context(session.id):
            session.record(
                conflict_id, ResolutionKind.OVERRIDDEN, note=reason.strip(), valid_for=valid_for
            )
            logger.info("Conflict %s overridden: %s", conflict_id, reason.strip())
        return session

    async def waitlist_conflict(self, session: Negotiation, conflict_id: str) -> Negotiation:
        with negotiation_context(session.id):
            session.require_state("waitlist", NegotiationState.AWAITING_RESOLUTION)
            detail = session.require_conflict(conflict_id)
            if self.waitlist_hook is not None:
                await self.waitlist_hook(session, detail)
            session.record(conflict_id, ResolutionKind.WAITLISTED)
        return session

    def _conflicting_event_id(
        self,
        session: Negotiation,
        conflict_id: str,
        event_id: str | None,
        operation: str,
    ) -> str:
        session.require_state(operation, NegotiationState.AWAITING_RESOLUTION)
        detail = session.require_conflict(conflict_id)
        if detail.type == ConflictType.BUSINESS_RULE:
            raise PreconditionError(
                f"Conflict '{conflict_id}' is a business rule; accept, override or waitlist it",
                details={"conflict_id": conflict_id},
            )
        if event_id is None:
            return detail.conflicting_event_id
        if event_id not in detail.conflicting_event_ids:
            raise PreconditionError(
                f"Event '{event_id}' is not part of conflict '{conflict_id}'",
                details={"conflict_id": conflict_id, "event_id": event_id},
            )
        return event_id

    def _stores_holding(self, snapshot: AggregateSnapshot, event_id: str) -> list[SourceStore]:
        """Every configured store whose last read contained *event_id*."""
        holders = []
        for store in self.aggregator.stores:
            source = snapshot.sources.get(store.origin)
            if source is not None and any(event.id == event_id for event in source.events):
                holders.append(store)
        return holders

    async def delete_conflicting_event(
        self,
        session: Negotiation,
        conflict_id: str,
        event_id: str | None = None,
    ) -> Negotiation:
        """Delete the event behind a conflict from its store(s), then re-detect."""
        with negotiation_context(session.id):
            target_id = self._conflicting_event_id(session, conflict_id, event_id, "delete for")
            snapshot = await self.aggregator.snapshot()
            holders = self._stores_holding(snapshot, target_id)
            if not holders:
                raise PreconditionError(
                    f"Event '{target_id}' is not present in any source store",
                    details={"event_id": target_id},
                )

            try:
                for store in holders:
                    await store.delete(target_id)
            finally:
                self.aggregator.invalidate()
            logger.info(
                "Deleted %s from %s to resolve %s",
                target_id,
                ", ".join(store.name for store in holders),
                conflict_id,
            )

            session.record(conflict_id, ResolutionKind.EVENT_DELETED, event_id=target_id)
            return await self._run_detection(session, "delete")

    async def reschedule_conflicting_event(
        self,
        session: Negotiation,
        conflict_id: str,
        event_id: str | None,
        new_window: TimeWindow,
    ) -> Negotiation:
        """Move the event behind a conflict to *new_window*, then re-detect.

        The new window is validated against every other event, including the
        proposed one but never the moved event itself.  Raises
        RescheduleRejected without touching any store when it conflicts.
        """
        with negotiation_context(session.id):
            target_id = self._conflicting_event_id(
                session, conflict_id, event_id, "reschedule for"
            )
            timeout = self.negotiation_config.detect_timeout_s
            try:
                snapshot = await asyncio.wait_for(self.aggregator.refresh(), timeout=timeout)
            except TimeoutError as exc:
                reason = f"Reading stores to reschedule '{target_id}' exceeded {timeout:.1f}s"
                logger.error("%s", reason)
                raise DetectionTimeout(
                    reason, details={"event_id": target_id, "conflict_id": conflict_id}
                ) from exc
            current = snapshot.events.get(target_id)
            if current is None:
                raise PreconditionError(
                    f"Event '{target_id}' is not present in any source store",
                    details={"event_id": target_id},
                )

            moved = current.with_window(new_window)
            pool = [*snapshot.events.without([session.proposed.id]), session.proposed]
            validation = self.detector.detect(moved, pool)
            if validation.has_conflicts:
                raise RescheduleRejected(target_id, validation)

            store = self.aggregator.store_for(moved.source_origin)
            try:
                await store.write(moved)
            finally:
                self.aggregator.invalidate()
            logger.info(
                "Rescheduled %s to %s-%s to resolve %s",
                target_id,
                new_window.start.isoformat(),
                new_window.end.isoformat(),
                conflict_id,
            )

            session.record(
                conflict_id,
                ResolutionKind.RESCHEDULED,
                event_id=target_id,
                new_window=new_window,
            )
            return await self._run_detection(session, "reschedule")

    async def cancel(self, session: Negotiation) -> Negotiation:
        """Abandon a negotiation; no store is touched."""
        with negotiation_context(session.id):
            session.cancel()
            self.registry.release(session)
            logger.info("Negotiation for %s cancelled", session.event_id)
        return session

    # ------------------------------------------------------------------
    # Commit
    # ------------------------------------------------------------------

    async def _get_commit_lock(self, event_id: str) -> asyncio.Lock:
        """Return the engine-local commit lock for *event_id*."""
        async with self._commit_locks_guard:
            lock = self._commit_locks.get(event_id)
            if lock is None:
                lock = asyncio.Lock()
                self._commit_locks[event_id] = lock
            return lock

    def _needs_stale_check(self, session: Negotiation) -> bool:
        window = self.negotiation_config.stale_check_after_s
        if window <= 0 or session.resolved_at is None:
            return True
        if session.expired_resolutions():
            return True
        return self._clock() - session.resolved_at > window

    async def commit(self, session: Negotiation, *, reason: str | None = None) -> Negotiation:
        """Write the proposed event to its source store.

        Only legal from ``resolved``.  Detection is re-run first (unless the
        session resolved within ``stale_check_after_s``); new unresolved
        conflicts raise StaleCommit and send the session back to
        ``awaiting_resolution``.  Notification failures are logged and never
        undo the write.
        """
        lock = await self._get_commit_lock(session.event_id)
        async with lock:
            with negotiation_context(session.id):
                session.require_state("commit", NegotiationState.RESOLVED)

                if self._needs_stale_check(session):
                    await self._run_detection(session, "stale-check")
                    if session.state != NegotiationState.RESOLVED:
                        result = session.current_result() or session.result
                        logger.warning(
                            "Commit for %s is stale: %d unresolved conflict(s)",
                            session.event_id,
                            len(session.unresolved_conflicts),
                        )
                        raise StaleCommit(session.event_id, result)

                snapshot = await self.aggregator.snapshot()
                original = snapshot.events.get(session.event_id)
                store = self.aggregator.store_for(session.proposed.source_origin)
                try:
                    await store.write(session.proposed)
                except StoreUnavailable:
                    logger.error(
                        "Commit for %s failed writing to %s", session.event_id, store.name
                    )
                    raise
                finally:
                    self.aggregator.invalidate()

                session.mark_committed()
                self.registry.release(session)
                logger.info("Committed %s to %s", session.event_id, store.name)

                await self._notify(original, session.proposed, reason)
        return session

    async def _notify(self, original: Event | None, new_event: Event, reason: str | None) -> None:
        if self.notifier is None:
            return
        participants: list[str] = []
        for event in (original, new_event):
            if event is None:
                continue
            for participant in event.participants:
                if participant not in participants:
                    participants.append(participant)
        notice = RescheduleNotice(
            new_event=new_event,
            original_event=original,
            participants=tuple(participants),
            reason=reason,
        )
        try:
            await self.notifier.notify(notice)
        except Exception:
            logger.exception("Notification for %s failed; commit stands", new_event.id)

