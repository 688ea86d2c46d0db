"""Cross-cutting wrappers around a Router: failure isolation and concurrency."""

from __future__ import annotations

import asyncio
import logging
from typing import Protocol

from lsprotocol.types import ErrorCodes

from mli_infer.exceptions import LspResponseError
from mli_infer.json_types import JSONValue
from mli_infer.messages import ControlEvent, Notification, Request
from mli_infer.router import ControlFlow

logger = logging.getLogger(__name__)

DEFAULT_MAX_CONCURRENCY = 4


class Service(Protocol):
    def notify(self, notification: Notification) -> ControlFlow: ...

    async def acquire(self) -> None: ...

    def release(self) -> None: ...

    async def call(self, request: Request) -> JSONValue: ...

    def emit(self, event: ControlEvent) -> ControlFlow: ...


class CatchUnwindLayer:
    """Turns handler faults into logged events instead of loop failures.

    A failing notification handler is logged and the loop continues; a
    failing request handler answers InternalError; a failing control event
    ends the loop.
    """

    def __init__(self, inner: Service) -> None:
        self._inner = inner

    def notify(self, notification: Notification) -> ControlFlow:
        try:
            return self._inner.notify(notification)
        except Exception:
            logger.exception("handler for %s failed", notification.method)
            return ControlFlow.CONTINUE

    async def acquire(self) -> None:
        await self._inner.acquire()

    def release(self) -> None:
        self._inner.release()

    async def call(self, request: Request) -> JSONValue:
        try:
            return await self._inner.call(request)
        except LspResponseError:
            raise
        except Exception as exc:
            logger.exception("handler for %s failed", request.method)
            raise LspResponseError(
                ErrorCodes.InternalError, f"{request.method} handler failed: {exc}"
            ) from exc

    def emit(self, event: ControlEvent) -> ControlFlow:
        try:
            return self._inner.emit(event)
        except Exception:
            logger.exception("handler for %s failed", type(event).__name__)
            return ControlFlow.BREAK


class ConcurrencyLayer:
    """Caps how many inbound requests are admitted at once.

    The main loop acquires a slot before it starts a request handler and
    releases it when the answer is queued, so a full layer also stops the
    loop from reading further frames.
    """

    def __init__(self, inner: Service, max_concurrency: int = DEFAULT_MAX_CONCURRENCY) -> None:
        if max_concurrency <= 0:
            raise ValueError(f"max_concurrency must be positive, got {max_concurrency}")
        self._inner = inner
        self.max_concurrency = max_concurrency
        self._slots = asyncio.Semaphore(max_concurrency)

    def notify(self, notification: Notification) -> ControlFlow:
        return self._inner.notify(notification)

    async def acquire(self) -> None:
        await self._slots.acquire()

    def release(self) -> None:
        self._slots.release()

    async def call(self, request: Request) -> JSONValue:
        return await self._inner.call(request)

    def emit(self, event: ControlEvent) -> ControlFlow:
        return self._inner.emit(event)


def build_service(router: Service, *, max_concurrency: int = DEFAULT_MAX_CONCURRENCY) -> Service:
    return CatchUnwindLayer(ConcurrencyLayer(router, max_concurrency))
