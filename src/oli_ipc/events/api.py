"""HTTP routes for the loopback event bus."""

from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator
import json
import logging
from typing import TYPE_CHECKING

from fastapi import FastAPI, Header, Query, Request
from fastapi.responses import JSONResponse, Response, StreamingResponse

from .buffer import DEFAULT_EVENT_TYPE

if TYPE_CHECKING:
    from .bus import EventBus

LOGGER = logging.getLogger(__name__)

_ALL_METHODS = ["GET", "POST", "PUT", "PATCH", "DELETE", "HEAD", "OPTIONS"]
_TRUE_VALUES = {"1", "true", "yes", "on"}
CURSOR_HEADER = "X-Last-Event-ID"


def _reject_constant(name: str) -> float:
    raise ValueError(f"{name} is not valid JSON")


def _parse_flag(value: str | None) -> bool:
    return value is not None and value.strip().lower() in _TRUE_VALUES


def _format_sse(seq: int, payload: object) -> str:
    data = json.dumps(payload, ensure_ascii=False, allow_nan=False, separators=(",", ":"))
    return f"id: {seq}\ndata: {data}\n\n"


def _parse_cursor(last_event_id: str | None, after: str | None, default: int) -> int:
    """Return the first usable cursor; unparseable values are ignored."""
    for value in (last_event_id, after):
        if value is None:
            continue
        try:
            return max(0, int(value.strip()))
        except ValueError:
            LOGGER.debug(
                "event_bus.bad_cursor",
                extra={"event": "event_bus.bad_cursor", "value": value},
            )
    return default


async def _event_stream(
    bus: EventBus, request: Request, event_type: str | None, cursor: int
) -> AsyncIterator[str]:
    while not bus.is_shutting_down:
        for record in bus.buffer.snapshot(event_type, after=cursor):
            cursor = record.seq
            yield _format_sse(record.seq, record.payload)
        if await request.is_disconnected():
            return
        await asyncio.sleep(bus.stream_poll_interval)


def create_app(bus: EventBus) -> FastAPI:
    """Build the FastAPI application serving ``bus``."""
    app = FastAPI(
        title="OLI event bus",
        docs_url=None,
        redoc_url=None,
        openapi_url=None,
    )

    @app.get("/events")
    async def get_events(
        event_type: str | None = Query(default=None, alias="type"),
        drain: str | None = None,
        after: str | None = None,
    ) -> JSONResponse:
        start = _parse_cursor(None, after, 0)
        records = bus.buffer.snapshot(event_type, after=start)
        cursor = records[-1].seq if records else start
        # Render first; drain only what was sent.
        response = JSONResponse(
            [record.payload for record in records],
            headers={CURSOR_HEADER: str(cursor)},
        )
        if _parse_flag(drain):
            bus.buffer.discard(record.seq for record in records)
        return response

    @app.post("/notify")
    async def post_notify(
        request: Request,
        event_type: str = Query(default=DEFAULT_EVENT_TYPE, alias="type"),
    ) -> Response:
        body = await request.body()
        try:
            payload = json.loads(body, parse_constant=_reject_constant)
        except ValueError as exc:
            # Best-effort delivery: a bad body is dropped without telling the sender.
            LOGGER.debug(
                "event_bus.notify.invalid_body",
                extra={
                    "event": "event_bus.notify.invalid_body",
                    "error": str(exc),
                    "size": len(body),
                },
            )
        else:
            bus.notify(payload, event_type=event_type)
        return Response(status_code=204)

    @app.get("/stream")
    async def stream_events(
        request: Request,
        event_type: str | None = Query(default=None, alias="type"),
        after: str | None = None,
        last_event_id: str | None = Header(default=None),
    ) -> StreamingResponse:
        cursor = _parse_cursor(last_event_id, after, bus.buffer.last_seq)
        return StreamingResponse(
            _event_stream(bus, request, event_type, cursor),
            media_type="text/event-stream",
            headers={"Cache-Control": "no-cache"},
        )

    @app.api_route("/{path:path}", methods=_ALL_METHODS, include_in_schema=False)
    async def not_found(path: str) -> Response:
        return Response(status_code=404)

    return app
