"""HTTP source store speaking a small JSON REST contract.

Endpoints, relative to ``base_url``:

- ``GET    /events``        -> array of records, or ``{"items": [...]}``
- ``PUT    /events/{id}``   -> upsert one record (body: ``event_to_record``)
- ``DELETE /events/{id}``   -> remove one record (404 is treated as done)

429 and 503 responses are retried with exponential backoff, honouring a
``Retry-After`` header on 429.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any
from urllib.parse import quote

import httpx

from scheduling_engine.errors import StoreUnavailable
from scheduling_engine.models import Event, SourceOrigin, event_to_record
from scheduling_engine.stores.base import SourceStore

logger = logging.getLogger(__name__)

RATE_LIMIT_RETRY_STATUS_CODES = {429, 503}
RATE_LIMIT_MAX_RETRIES = 3
RATE_LIMIT_BASE_BACKOFF_SECONDS = 1.0
DEFAULT_HTTP_TIMEOUT_SECONDS = 30.0


def _safe_error_message(response: httpx.Response) -> str:
    try:
        payload = response.json()
    except ValueError:
        payload = None

    if isinstance(payload, dict):
        error_payload = payload.get("error")
        if isinstance(error_payload, dict):
            message = error_payload.get("message")
            if isinstance(message, str) and message.strip():
                return " ".join(message.split())[:200]
        if isinstance(error_payload, str) and error_payload.strip():
            return " ".join(error_payload.split())[:200]

    raw_text = response.text.strip()
    if raw_text:
        return " ".join(raw_text.split())[:200]
    return "Request failed without an error payload"


class HttpSourceStore(SourceStore):
    """Store reached over HTTP with optional bearer authentication."""

    def __init__(
        self,
        base_url: str,
        origin: SourceOrigin | str,
        *,
        token: str | None = None,
        http_client: httpx.AsyncClient | None = None,
        timeout: float = DEFAULT_HTTP_TIMEOUT_SECONDS,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self._origin = SourceOrigin(origin)
        self._token = token
        self._owns_http_client = http_client is None
        self._http_client = http_client or httpx.AsyncClient(timeout=timeout)

    @property
    def origin(self) -> SourceOrigin:
        return self._origin

    async def _request_once(
        self,
        *,
        method: str,
        url: str,
        json_body: dict[str, Any] | None,
    ) -> httpx.Response:
        headers: dict[str, str] = {"Accept": "application/json"}
        if self._token:
            headers["Authorization"] = f"Bearer {self._token}"
        try:
            return await self._http_client.request(method, url, json=json_body, headers=headers)
        except httpx.HTTPError as exc:
            raise StoreUnavailable(self.name, f"{method} {url} failed: {exc}") from exc

    async def _request(
        self,
        method: str,
        path: str,
        *,
        json_body: dict[str, Any] | None = None,
    ) -> httpx.Response:
        normalized_path = path if path.startswith("/") else f"/{path}"
        url = f"{self.base_url}{normalized_path}"

        response = await self._request_once(method=method, url=url, json_body=json_body)

        retry = 0
        while (
            response.status_code in RATE_LIMIT_RETRY_STATUS_CODES and retry < RATE_LIMIT_MAX_RETRIES
        ):
            backoff = RATE_LIMIT_BASE_BACKOFF_SECONDS * (2**retry)
            if response.status_code == 429:
                retry_after_header = response.headers.get("Retry-After")
                if retry_after_header is not None:
                    try:
                        backoff = float(retry_after_header)
                    except ValueError:
                        pass
            logger.warning(
                "Source store %s rate-limited (status=%d), retrying in %.1fs (attempt %d/%d)",
                self.name,
                response.status_code,
                backoff,
                retry + 1,
                RATE_LIMIT_MAX_RETRIES,
            )
            await asyncio.sleep(backoff)
            response = await self._request_once(method=method, url=url, json_body=json_body)
            retry += 1

        return response

    def _raise_for_status(self, response: httpx.Response, method: str) -> None:
        if 200 <= response.status_code < 300:
            return
        raise StoreUnavailable(
            self.name,
            f"{method} returned {response.status_code}: {_safe_error_message(response)}",
        )

    async def list_records(self) -> list[dict[str, Any]]:
        response = await self._request("GET", "/events")
        self._raise_for_status(response, "GET")
        try:
            payload = response.json()
        except ValueError as exc:
            raise StoreUnavailable(self.name, "GET returned a non-JSON body") from exc

        if isinstance(payload, dict):
            payload = payload.get("items", [])
        if not isinstance(payload, list):
            raise StoreUnavailable(self.name, "GET returned an unexpected payload shape")
        return [record for record in payload if isinstance(record, dict)]

    async def delete(self, event_id: str) -> None:
        response = await self._request("DELETE", f"/events/{quote(event_id, safe='')}")
        if response.status_code == 404:
            logger.debug("Delete of %s on %s: already absent", event_id, self.name)
            return
        self._raise_for_status(response, "DELETE")

    async def write(self, event: Event) -> None:
        response = await self._request(
            "PUT",
            f"/events/{quote(event.id, safe='')}",
            json_body=event_to_record(event),
        )
        self._raise_for_status(response, "PUT")

    async def shutdown(self) -> None:
        if self._owns_http_client:
            await self._http_client.aclose()
