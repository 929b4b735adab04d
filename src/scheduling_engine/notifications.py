"""Post-commit notification collaborators.

Notification is best-effort: the engine calls :meth:`Notifier.notify` only
after a commit has been written, logs any failure, and never rolls the
schedule change back.
"""

from __future__ import annotations

import abc
import logging
from dataclasses import dataclass, field
from typing import Any

import httpx

from scheduling_engine.models import Event, event_to_record

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RescheduleNotice:
    """What changed in one commit and who should hear about it.

    ``original_event`` is ``None`` when the commit created a new event.
    """

    new_event: Event
    original_event: Event | None = None
    participants: tuple[str, ...] = field(default_factory=tuple)
    reason: str | None = None

    def to_payload(self) -> dict[str, Any]:
        return {
            "originalEvent": (
                event_to_record(self.original_event) if self.original_event is not None else None
            ),
            "newEvent": event_to_record(self.new_event),
            "participants": list(self.participants),
            "reason": self.reason,
        }


class Notifier(abc.ABC):
    """Abstract interface for the notification collaborator."""

    @abc.abstractmethod
    async def notify(self, notice: RescheduleNotice) -> None:
        """Deliver *notice*.  Implementations may raise; the engine logs it."""
        ...

    async def shutdown(self) -> None:
        return None


class LoggingNotifier(Notifier):
    """Writes each notice to the log instead of delivering it."""

    async def notify(self, notice: RescheduleNotice) -> None:
        logger.info(
            "Schedule change for %s (%s): %s -> %s; notifying %d participant(s)",
            notice.new_event.id,
            notice.reason or "no reason given",
            notice.original_event.window if notice.original_event is not None else "new",
            notice.new_event.window,
            len(notice.participants),
        )


class WebhookNotifier(Notifier):
    """POSTs each notice as JSON to a webhook URL."""

    def __init__(
        self,
        url: str,
        *,
        token: str | None = None,
        http_client: httpx.AsyncClient | None = None,
        timeout: float = 10.0,
    ) -> None:
        self.url = url
        self._token = token
        self._owns_http_client = http_client is None
        self._http_client = http_client or httpx.AsyncClient(timeout=timeout)

    async def notify(self, notice: RescheduleNotice) -> None:
        headers: dict[str, str] = {}
        if self._token:
            headers["Authorization"] = f"Bearer {self._token}"
        response = await self._http_client.post(
            self.url,
            json=notice.to_payload(),
            headers=headers,
        )
        response.raise_for_status()

    async def shutdown(self) -> None:
        if self._owns_http_client:
            await self._http_client.aclose()
