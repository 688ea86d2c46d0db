"""Caller-facing handle for sending requests and notifications to the server."""

from __future__ import annotations

import asyncio
import logging
from typing import TYPE_CHECKING, Sequence, TypeVar

from lsprotocol.converters import get_converter
from lsprotocol.types import (
    EXIT,
    INITIALIZE,
    INITIALIZED,
    SHUTDOWN,
    TEXT_DOCUMENT_DID_OPEN,
    TEXT_DOCUMENT_FORMATTING,
    DidOpenTextDocumentParams,
    DocumentFormattingParams,
    FormattingOptions,
    InitializedParams,
    InitializeParams,
    InitializeResult,
    TextDocumentIdentifier,
    TextEdit,
)

from mli_infer.exceptions import LspClientError, RequestTimeoutError
from mli_infer.json_types import JSONValue
from mli_infer.messages import ControlEvent, Notification, Request

if TYPE_CHECKING:
    from mli_infer.documents import Document
    from mli_infer.session import MainLoop

logger = logging.getLogger(__name__)

T = TypeVar("T")

INFER_INTF = "ocamllsp/inferIntf"

_converter = get_converter()


def _structure(value: JSONValue, cls: type[T], what: str) -> T:
    try:
        return _converter.structure(value, cls)
    except Exception as exc:
        raise LspClientError(f"Invalid {what} payload: {exc}") from exc


class ServerHandle:
    """Sends traffic through a MainLoop and awaits correlated responses.

    Every request gets a fresh id and a pending future. The future resolves
    when the matching response arrives and fails with SessionClosedError
    if the loop ends first. With a request timeout set, an unanswered
    request fails with RequestTimeoutError and its id is forgotten.
    """

    def __init__(self, loop: MainLoop, *, request_timeout: float | None = None) -> None:
        self._loop = loop
        self.request_timeout = request_timeout

    async def request(
        self,
        method: str,
        params: JSONValue = None,
        *,
        timeout: float | None = None,
    ) -> JSONValue:
        request_id, future = self._loop.pending.allocate()
        logger.debug("request %s #%s", method, request_id)
        try:
            self._loop.submit(Request(request_id, method, params))
        except LspClientError:
            self._loop.pending.discard(request_id)
            raise
        deadline = timeout if timeout is not None else self.request_timeout
        try:
            if deadline is None:
                return await future
            return await asyncio.wait_for(future, deadline)
        except asyncio.TimeoutError as exc:
            raise RequestTimeoutError(
                f"{method} (id {request_id}) timed out after {deadline}s"
            ) from exc
        finally:
            self._loop.pending.discard(request_id)

    def notify(self, method: str, params: JSONValue = None) -> None:
        self._loop.submit(Notification(method, params))

    def emit(self, event: ControlEvent) -> None:
        self._loop.submit(event)

    async def initialize(self, params: InitializeParams) -> InitializeResult:
        result = await self.request(INITIALIZE, _converter.unstructure(params))
        return _structure(result, InitializeResult, INITIALIZE)

    def initialized(self) -> None:
        self.notify(INITIALIZED, _converter.unstructure(InitializedParams()))

    def open_document(self, document: Document) -> None:
        params = DidOpenTextDocumentParams(text_document=document.item())
        self.notify(TEXT_DOCUMENT_DID_OPEN, _converter.unstructure(params))

    async def formatting(
        self, document: TextDocumentIdentifier, options: FormattingOptions
    ) -> list[TextEdit]:
        params = DocumentFormattingParams(
            text_document=document,
            options=options,
        )
        result = await self.request(TEXT_DOCUMENT_FORMATTING, _converter.unstructure(params))
        if result is None:
            return []
        if not isinstance(result, list):
            raise LspClientError(
                f"Unexpected formatting result payload: {type(result).__name__}"
            )
        return [_structure(edit, TextEdit, TEXT_DOCUMENT_FORMATTING) for edit in result]

    async def infer_interface(self, uris: Sequence[str]) -> str:
        result = await self.request(INFER_INTF, list(uris))
        if not isinstance(result, str):
            raise LspClientError(
                f"Unexpected {INFER_INTF} result payload: {type(result).__name__}"
            )
        return result

    async def shutdown(self) -> None:
        await self.request(SHUTDOWN)

    def exit(self) -> None:
        self.notify(EXIT)
