"""HTTP consumer for a running event bus."""

from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator
import json
import logging
from typing import Any

import httpx

from ..exceptions import EventBusUnavailableError
from .api import CURSOR_HEADER

LOGGER = logging.getLogger(__name__)

DEFAULT_BASE_URL = "http://127.0.0.1:5050"


class EventBusClient:
    """Fetch and push notifications over the event bus HTTP interface."""

    def __init__(
        self,
        base_url: str = DEFAULT_BASE_URL,
        timeout: float = 10.0,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(base_url=self.base_url, timeout=timeout)

    async def __aenter__(self) -> EventBusClient:
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    async def fetch_events(
        self, event_type: str | None = None, drain: bool = False, after: int = 0
    ) -> list[Any]:
        """Return buffered payloads in arrival order.

        ``after`` skips records whose sequence number is not greater than it.
        """
        events, _cursor = await self._fetch_page(event_type, drain, after)
        return events

    async def notify(self, payload: Any, event_type: str | None = None) -> None:
        """Push one JSON payload to the bus.

        Raises:
            ValueError: ``payload`` cannot be encoded as strict JSON.
        """
        params = {"type": event_type} if event_type is not None else None
        # httpx sends no body for json=None.
        body = json.dumps(payload, ensure_ascii=False, allow_nan=False).encode("utf-8")
        await self._request(
            "POST",
            "/notify",
            content=body,
            headers={"Content-Type": "application/json"},
            params=params,
        )

    async def poll(
        self,
        interval: float = 1.0,
        event_type: str | None = None,
        drain: bool = True,
    ) -> AsyncIterator[Any]:
        """Yield payloads as they arrive by polling ``/events`` every ``interval`` seconds.

        With ``drain`` (the default) each payload is removed once fetched.
        Without it the bus keeps its records and the poll resumes from the
        last sequence number it saw, so eviction from a capped buffer never
        hides new records.
        """
        cursor = 0
        while True:
            events, cursor = await self._fetch_page(
                event_type, drain, 0 if drain else cursor
            )
            for payload in events:
                yield payload
            await asyncio.sleep(interval)

    async def _fetch_page(
        self, event_type: str | None, drain: bool, after: int
    ) -> tuple[list[Any], int]:
        params: dict[str, str] = {}
        if event_type is not None:
            params["type"] = event_type
        if drain:
            params["drain"] = "true"
        if after:
            params["after"] = str(after)
        response = await self._request("GET", "/events", params=params)
        try:
            events = response.json()
            cursor = int(response.headers.get(CURSOR_HEADER, after))
        except ValueError as exc:
            raise EventBusUnavailableError(
                f"Invalid /events payload from {self.base_url}: {exc}"
            ) from exc
        if not isinstance(events, list):
            raise EventBusUnavailableError(
                f"Unexpected /events payload from {self.base_url}: {type(events).__name__}"
            )
        return events, cursor

    async def _request(self, method: str, path: str, **kwargs: Any) -> httpx.Response:
        try:
            response = await self._client.request(method, path, **kwargs)
            response.raise_for_status()
        except httpx.HTTPError as exc:
            LOGGER.warning(
                "event_bus.client.request_failed",
                extra={
                    "event": "event_bus.client.request_failed",
                    "method": method,
                    "path": path,
                    "error": str(exc),
                },
            )
            raise EventBusUnavailableError(
                f"Event bus at {self.base_url} is unavailable: {exc}"
            ) from exc
        return response
