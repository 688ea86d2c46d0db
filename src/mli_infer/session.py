"""JSON-RPC main loop multiplexing inbound frames and the outbound queue."""

from __future__ import annotations

import asyncio
import logging
from typing import Callable

from mli_infer.client import ServerHandle
from mli_infer.correlation import PendingRequests
from mli_infer.exceptions import (
    FramingError,
    LspResponseError,
    MalformedMessageError,
    SessionClosedError,
)
from mli_infer.framing import FrameWriter, read_message, write_message
from mli_infer.layers import Service
from mli_infer.messages import (
    ControlEvent,
    Notification,
    OutboundMessage,
    Request,
    Response,
    classify,
)
from mli_infer.router import ControlFlow

logger = logging.getLogger(__name__)


class MainLoop:
    """Single cooperative loop owning the wire for one language server.

    Outbound frames and control events go through one FIFO outbox, so an
    event emitted after a notification is handled after that notification
    has been written. Inbound requests run as tasks once the service admits
    them; notifications and events run inline and must not block.
    """

    def __init__(self, build_service: Callable[[ServerHandle], Service]) -> None:
        self.pending = PendingRequests()
        self._outbox: asyncio.Queue[OutboundMessage | ControlEvent] = asyncio.Queue()
        self._handlers: set[asyncio.Task[None]] = set()
        self._running = False
        self.closed = False
        self.close_reason: str | None = None
        self.handle = ServerHandle(self)
        self._service = build_service(self.handle)

    @classmethod
    def new_client(
        cls, build_service: Callable[[ServerHandle], Service]
    ) -> tuple[MainLoop, ServerHandle]:
        loop = cls(build_service)
        return loop, loop.handle

    def submit(self, item: OutboundMessage | ControlEvent) -> None:
        if self.closed:
            raise SessionClosedError(
                f"session closed ({self.close_reason or 'not running'})"
            )
        self._outbox.put_nowait(item)

    async def run(self, reader: asyncio.StreamReader, writer: FrameWriter) -> None:
        """Drive the session until Stop, end of stream or a framing fault.

        All pending requests fail with SessionClosedError when this returns.
        A desynchronised stream is re-raised as FramingError.
        """
        if self._running or self.closed:
            raise SessionClosedError("main loop can only run once")
        self._running = True
        reason = "main loop stopped"
        read_task = asyncio.ensure_future(read_message(reader))
        out_task = asyncio.ensure_future(self._outbox.get())
        try:
            while True:
                done, _ = await asyncio.wait(
                    {read_task, out_task}, return_when=asyncio.FIRST_COMPLETED
                )
                if out_task in done:
                    item = out_task.result()
                    if isinstance(item, ControlEvent):
                        if self._service.emit(item) is ControlFlow.BREAK:
                            logger.debug("main loop stopped by %s", type(item).__name__)
                            return
                    else:
                        try:
                            await write_message(writer, item.to_wire())
                        except (BrokenPipeError, ConnectionResetError) as exc:
                            reason = f"transport closed: {exc}"
                            logger.warning("language server input closed: %s", exc)
                            return
                    out_task = asyncio.ensure_future(self._outbox.get())
                if read_task in done:
                    try:
                        message = read_task.result()
                    except MalformedMessageError as exc:
                        logger.warning("dropping malformed message: %s", exc)
                        read_task = asyncio.ensure_future(read_message(reader))
                        continue
                    except FramingError as exc:
                        reason = f"framing error: {exc}"
                        raise
                    if message is None:
                        reason = "transport closed"
                        logger.debug("language server closed its output")
                        return
                    try:
                        flow = await self._dispatch(classify(message))
                    except MalformedMessageError as exc:
                        logger.warning("dropping malformed message: %s", exc)
                        flow = ControlFlow.CONTINUE
                    if flow is ControlFlow.BREAK:
                        reason = "stopped by handler"
                        return
                    read_task = asyncio.ensure_future(read_message(reader))
        except asyncio.CancelledError:
            reason = "main loop cancelled"
            raise
        finally:
            self._close(reason)
            for task in (read_task, out_task, *self._handlers):
                task.cancel()
            await asyncio.gather(read_task, out_task, *self._handlers, return_exceptions=True)
            self._handlers.clear()

    def _close(self, reason: str) -> None:
        self.closed = True
        self.close_reason = reason
        failed = self.pending.fail_all(reason)
        if failed:
            logger.warning("%d pending request(s) failed: %s", failed, reason)

    async def _dispatch(self, message: Request | Response | Notification) -> ControlFlow:
        if isinstance(message, Response):
            self.pending.resolve(message)
            return ControlFlow.CONTINUE
        if isinstance(message, Notification):
            return self._service.notify(message)
        # Blocks reading while every request slot is taken.
        await self._service.acquire()
        task = asyncio.ensure_future(self._answer(message))
        self._handlers.add(task)
        task.add_done_callback(self._handlers.discard)
        return ControlFlow.CONTINUE

    async def _answer(self, request: Request) -> None:
        try:
            result = await self._service.call(request)
        except LspResponseError as exc:
            response = Response(request.id, error=exc)
        else:
            response = Response(request.id, result=result)
        finally:
            self._service.release()
        if self.closed:
            logger.debug("session closed before answering %s", request.method)
            return
        self._outbox.put_nowait(response)
