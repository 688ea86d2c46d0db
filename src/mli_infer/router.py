"""Method-keyed dispatch of inbound notifications, requests and events."""

from __future__ import annotations

import asyncio
import inspect
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Awaitable, Callable, Generic, TypeVar

from lsprotocol.converters import get_converter
from lsprotocol.types import (
    CLIENT_REGISTER_CAPABILITY,
    CLIENT_UNREGISTER_CAPABILITY,
    PROGRESS,
    TEXT_DOCUMENT_PUBLISH_DIAGNOSTICS,
    WINDOW_LOG_MESSAGE,
    WINDOW_SHOW_MESSAGE,
    WINDOW_WORK_DONE_PROGRESS_CREATE,
    WORKSPACE_CONFIGURATION,
    ConfigurationParams,
    LogMessageParams,
    MessageType,
    ShowMessageParams,
)

from mli_infer.exceptions import LspResponseError
from mli_infer.json_types import JSONValue
from mli_infer.messages import ControlEvent, Notification, Request, Stop

logger = logging.getLogger(__name__)

S = TypeVar("S")
E = TypeVar("E", bound=ControlEvent)

_converter = get_converter()


class ControlFlow(Enum):
    CONTINUE = "continue"
    BREAK = "break"


NotificationHandler = Callable[[S, JSONValue], ControlFlow]
RequestHandler = Callable[[S, JSONValue], Awaitable[JSONValue] | JSONValue]
EventHandler = Callable[[S, ControlEvent], ControlFlow]


class Router(Generic[S]):
    """Routes inbound traffic to handlers that share one mutable state.

    Unknown notifications are ignored, unknown requests are answered with
    MethodNotFound. Every handler receives the router's state object first.
    """

    def __init__(self, state: S) -> None:
        self.state = state
        self._notifications: dict[str, NotificationHandler] = {}
        self._requests: dict[str, RequestHandler] = {}
        self._events: dict[type[ControlEvent], EventHandler] = {}

    def notification(self, method: str, handler: NotificationHandler) -> Router[S]:
        self._notifications[method] = handler
        return self

    def request(self, method: str, handler: RequestHandler) -> Router[S]:
        self._requests[method] = handler
        return self

    def event(
        self, event_type: type[E], handler: Callable[[S, E], ControlFlow]
    ) -> Router[S]:
        self._events[event_type] = handler  # type: ignore[assignment]
        return self

    def notify(self, notification: Notification) -> ControlFlow:
        handler = self._notifications.get(notification.method)
        if handler is None:
            logger.debug("ignoring notification %s", notification.method)
            return ControlFlow.CONTINUE
        return handler(self.state, notification.params)

    async def acquire(self) -> None:
        """Routers admit every request; ConcurrencyLayer adds the bound."""

    def release(self) -> None:
        pass

    async def call(self, request: Request) -> JSONValue:
        handler = self._requests.get(request.method)
        if handler is None:
            raise LspResponseError.method_not_found(request.method)
        result = handler(self.state, request.params)
        if inspect.isawaitable(result):
            result = await result
        return result

    def emit(self, event: ControlEvent) -> ControlFlow:
        handler = self._events.get(type(event))
        if handler is None:
            raise LookupError(f"no handler for control event {type(event).__name__}")
        return handler(self.state, event)


@dataclass
class ClientState:
    """Per-session state mutated only by handlers running on the main loop."""

    indexed_tx: asyncio.Future[None] | None = None

    def take_indexed(self) -> asyncio.Future[None] | None:
        tx, self.indexed_tx = self.indexed_tx, None
        return tx


def _is_work_done_end(params: JSONValue) -> bool:
    if not isinstance(params, dict):
        return False
    # Numeric tokens belong to request-scoped progress, not indexing.
    if not isinstance(params.get("token"), str):
        return False
    value = params.get("value")
    return isinstance(value, dict) and value.get("kind") == "end"


def on_progress(state: ClientState, params: JSONValue) -> ControlFlow:
    if isinstance(params, dict):
        logger.debug("progress %r %r", params.get("token"), params.get("value"))
    if _is_work_done_end(params):
        # The server may report several indexing passes; only the first counts.
        tx = state.take_indexed()
        if tx is not None and not tx.done():
            tx.set_result(None)
    return ControlFlow.CONTINUE


def on_publish_diagnostics(state: ClientState, params: JSONValue) -> ControlFlow:
    return ControlFlow.CONTINUE


def on_show_message(state: ClientState, params: JSONValue) -> ControlFlow:
    message = _converter.structure(params, ShowMessageParams)
    logger.debug("show message: %s: %s", MessageType(message.type).name, message.message)
    return ControlFlow.CONTINUE


def on_log_message(state: ClientState, params: JSONValue) -> ControlFlow:
    message = _converter.structure(params, LogMessageParams)
    logger.debug("log message: %s: %s", MessageType(message.type).name, message.message)
    return ControlFlow.CONTINUE


def _accept(state: ClientState, params: JSONValue) -> JSONValue:
    return None


def _configuration(state: ClientState, params: JSONValue) -> JSONValue:
    request = _converter.structure(params, ConfigurationParams)
    return [None for _ in request.items]


def _stop(state: ClientState, event: Stop) -> ControlFlow:
    return ControlFlow.BREAK


def build_router(state: ClientState) -> Router[ClientState]:
    return (
        Router(state)
        .notification(PROGRESS, on_progress)
        .notification(TEXT_DOCUMENT_PUBLISH_DIAGNOSTICS, on_publish_diagnostics)
        .notification(WINDOW_SHOW_MESSAGE, on_show_message)
        .notification(WINDOW_LOG_MESSAGE, on_log_message)
        .request(WINDOW_WORK_DONE_PROGRESS_CREATE, _accept)
        .request(CLIENT_REGISTER_CAPABILITY, _accept)
        .request(CLIENT_UNREGISTER_CAPABILITY, _accept)
        .request(WORKSPACE_CONFIGURATION, _configuration)
        .event(Stop, _stop)
    )
