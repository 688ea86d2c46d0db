"""Typed view of JSON-RPC traffic plus internal control events.

Wire messages are classified into Request, Response or Notification. Control
events share the main loop's outbox with outbound frames but are never
serialized.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import TypeAlias

from mli_infer.exceptions import LspResponseError, MalformedMessageError
from mli_infer.json_types import JSONObject, JSONValue, RequestId

JSONRPC_VERSION = "2.0"


@dataclass(frozen=True)
class Request:
    id: RequestId
    method: str
    params: JSONValue = None

    def to_wire(self) -> JSONObject:
        message: JSONObject = {
            "jsonrpc": JSONRPC_VERSION,
            "id": self.id,
            "method": self.method,
        }
        if self.params is not None:
            message["params"] = self.params
        return message


@dataclass(frozen=True)
class Notification:
    method: str
    params: JSONValue = None

    def to_wire(self) -> JSONObject:
        message: JSONObject = {"jsonrpc": JSONRPC_VERSION, "method": self.method}
        if self.params is not None:
            message["params"] = self.params
        return message


@dataclass(frozen=True)
class Response:
    id: RequestId | None
    result: JSONValue = None
    error: LspResponseError | None = None

    @property
    def ok(self) -> bool:
        return self.error is None

    def to_wire(self) -> JSONObject:
        message: JSONObject = {"jsonrpc": JSONRPC_VERSION, "id": self.id}
        if self.error is not None:
            message["error"] = self.error.to_payload()
        else:
            message["result"] = self.result
        return message


class ControlEvent:
    """Base class for events that only exist inside the main loop."""


@dataclass(frozen=True)
class Stop(ControlEvent):
    """Ends the main loop after every frame queued before it is written."""


InboundMessage: TypeAlias = Request | Response | Notification
OutboundMessage: TypeAlias = Request | Response | Notification


def _request_id(raw: JSONValue) -> RequestId:
    if isinstance(raw, bool) or not isinstance(raw, (int, str)):
        raise MalformedMessageError(f"Invalid JSON-RPC id: {raw!r}")
    return raw


def classify(message: JSONObject) -> InboundMessage:
    method = message.get("method")
    if method is not None:
        if not isinstance(method, str):
            raise MalformedMessageError(f"Invalid JSON-RPC method: {method!r}")
        params = message.get("params")
        if "id" in message:
            return Request(_request_id(message["id"]), method, params)
        return Notification(method, params)
    if "result" in message or "error" in message:
        raw_id = message.get("id")
        response_id = None if raw_id is None else _request_id(raw_id)
        if "error" in message and message["error"] is not None:
            return Response(response_id, error=LspResponseError.from_payload(message["error"]))
        return Response(response_id, result=message.get("result"))
    raise MalformedMessageError(
        f"Unrecognised JSON-RPC message with keys {sorted(message)}"
    )
