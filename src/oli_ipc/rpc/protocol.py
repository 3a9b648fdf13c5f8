"""JSON-RPC 2.0 wire models and newline-delimited framing.

Requests are built as pydantic models and serialised to a single line of
JSON. Inbound lines are decoded into :class:`DecodeResult` values instead of
raising, so the reader decides explicitly whether a malformed line is skipped
or fails the calls waiting on it.
"""

from __future__ import annotations

from dataclasses import dataclass
import json
from typing import Any, Literal

from pydantic import BaseModel, Field

UNKNOWN_ERROR_MESSAGE = "Unknown error"


class RpcRequest(BaseModel):
    """Outbound JSON-RPC 2.0 request."""

    jsonrpc: Literal["2.0"] = "2.0"
    id: int
    method: str
    params: Any = Field(default_factory=dict)


class RpcNotification(BaseModel):
    """Outbound JSON-RPC 2.0 notification (no ``id``, no response expected)."""

    jsonrpc: Literal["2.0"] = "2.0"
    method: str
    params: Any = Field(default_factory=dict)


class RpcErrorDetail(BaseModel):
    """Error payload within a JSON-RPC error response."""

    message: str = UNKNOWN_ERROR_MESSAGE
    code: int | None = None
    data: Any | None = None

    @classmethod
    def from_wire(cls, raw: Any) -> RpcErrorDetail:
        """Build an error detail leniently from whatever the child sent."""
        if not isinstance(raw, dict):
            return cls()
        message = raw.get("message")
        code = raw.get("code")
        return cls(
            message=message if isinstance(message, str) else UNKNOWN_ERROR_MESSAGE,
            code=code if isinstance(code, int) and not isinstance(code, bool) else None,
            data=raw.get("data"),
        )


@dataclass(frozen=True)
class RpcResponse:
    """A decoded response correlated to a request id."""

    id: int
    result: Any = None
    error: RpcErrorDetail | None = None


@dataclass(frozen=True)
class DecodeResult:
    """Outcome of decoding one inbound line.

    Exactly one of ``message`` (the parsed JSON value, which may legitimately
    be ``None`` for a literal ``null``) or ``error`` is meaningful: ``ok`` tells
    which.
    """

    ok: bool
    message: Any = None
    error: str | None = None
    raw: str = ""


def encode_request(request_id: int, method: str, params: Any | None = None) -> str:
    """Serialise a request envelope to one NDJSON line (without the newline)."""
    request = RpcRequest(id=request_id, method=method, params={} if params is None else params)
    return request.model_dump_json()


def encode_notification(method: str, params: Any | None = None) -> str:
    """Serialise an id-less notification envelope to one NDJSON line."""
    notification = RpcNotification(method=method, params={} if params is None else params)
    return notification.model_dump_json()


def _reject_constant(name: str) -> float:
    raise ValueError(f"{name} is not valid JSON")


def decode_line(line: str) -> DecodeResult:
    """Parse one line of child output without raising.

    ``NaN`` and ``Infinity`` literals count as malformed.
    """
    try:
        message = json.loads(line, parse_constant=_reject_constant)
    except ValueError as exc:
        return DecodeResult(ok=False, error=str(exc), raw=line)
    return DecodeResult(ok=True, message=message, raw=line)


def response_id(message: Any) -> int | None:
    """Return the integer ``id`` of a message, or ``None`` if it has none."""
    if not isinstance(message, dict):
        return None
    value = message.get("id")
    if isinstance(value, bool) or not isinstance(value, int):
        return None
    return value


def as_response(message: dict[str, Any]) -> RpcResponse:
    """Interpret a message whose id matched a pending call.

    An ``error`` member that is present and not ``null`` wins over ``result``.
    """
    request_id = response_id(message)
    if request_id is None:
        raise ValueError("message has no integer id")
    raw_error = message.get("error")
    if raw_error is not None:
        return RpcResponse(id=request_id, error=RpcErrorDetail.from_wire(raw_error))
    return RpcResponse(id=request_id, result=message.get("result"))
