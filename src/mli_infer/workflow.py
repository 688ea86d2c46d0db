"""Interface inference workflow driven over a language server session.

The workflow walks a fixed sequence: spawn, handshake, open the source,
request the inferred interface, open and format it, apply the edits, write
the result, then shut the server down. Inference or formatting failures
degrade (no output, or unformatted output); setup failures raise.
"""

from __future__ import annotations

import asyncio
import logging
import os
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Callable

from lsprotocol.types import (
    ClientCapabilities,
    ClientInfo,
    FormattingOptions,
    InitializeParams,
    InitializeResult,
    WindowClientCapabilities,
    WorkspaceFolder,
)

from mli_infer import __version__
from mli_infer.client import ServerHandle
from mli_infer.config import InferConfig
from mli_infer.documents import Document, Workspace, interface_path
from mli_infer.edits import apply_edits
from mli_infer.exceptions import (
    EditConflictError,
    HandshakeError,
    LspClientError,
    WorkspaceError,
)
from mli_infer.invariants import require_not_none
from mli_infer.layers import build_service
from mli_infer.messages import Stop
from mli_infer.router import ClientState, build_router
from mli_infer.session import MainLoop
from mli_infer.transport import ProcessFactory, ServerProcess

logger = logging.getLogger(__name__)

CLIENT_NAME = "mli-infer"
WORKSPACE_FOLDER_NAME = "root"

InterfaceWriter = Callable[[Path, str], None]


class WorkflowState(Enum):
    SPAWNING = "spawning"
    HANDSHAKING = "handshaking"
    DOCUMENT_OPENED = "document_opened"
    INFERENCE_REQUESTED = "inference_requested"
    INFERENCE_SUCCEEDED = "inference_succeeded"
    INFERENCE_FAILED = "inference_failed"
    OUTPUT_OPENED = "output_opened"
    FORMATTING = "formatting"
    APPLIED = "applied"
    SHUTTING_DOWN = "shutting_down"
    TERMINATED = "terminated"


@dataclass
class InferOutcome:
    source: Path
    interface: Path | None = None
    text: str | None = None
    formatted: bool = False
    states: list[WorkflowState] = field(default_factory=list)

    @property
    def inferred(self) -> bool:
        return self.interface is not None


def write_interface(path: Path, text: str) -> None:
    try:
        path.write_text(text, encoding="utf-8")
    except OSError as exc:
        raise WorkspaceError(f"couldn't write file {path}: {exc}") from exc


def initialize_params(root_uri: str) -> InitializeParams:
    return InitializeParams(
        process_id=os.getpid(),
        client_info=ClientInfo(name=CLIENT_NAME, version=__version__),
        root_uri=root_uri,
        workspace_folders=[WorkspaceFolder(uri=root_uri, name=WORKSPACE_FOLDER_NAME)],
        capabilities=ClientCapabilities(
            window=WindowClientCapabilities(work_done_progress=True),
        ),
    )


class InterfaceWorkflow:
    def __init__(
        self,
        config: InferConfig | None = None,
        *,
        process_factory: ProcessFactory | None = None,
        writer: InterfaceWriter = write_interface,
    ) -> None:
        self.config = config or InferConfig()
        self._process_factory = process_factory or asyncio.create_subprocess_exec
        self._writer = writer
        self._outcome: InferOutcome | None = None

    def _enter(self, state: WorkflowState) -> None:
        if self._outcome is not None:
            self._outcome.states.append(state)
        logger.debug("workflow -> %s", state.value)

    async def run(self, workspace: Workspace, source_text: str | None = None) -> InferOutcome:
        """Infer, format and write the interface for workspace.source.

        Raises SpawnError or HandshakeError on setup failure. Returns an
        outcome whose interface is None when nothing could be inferred.
        """
        if source_text is None:
            source_text = workspace.read_source()
        outcome = self._outcome = InferOutcome(source=workspace.source)
        settings = self.config.server

        self._enter(WorkflowState.SPAWNING)
        process = await ServerProcess.spawn(
            settings.command, workspace.root, process_factory=self._process_factory
        )

        async with process:
            loop = asyncio.get_running_loop()
            state = ClientState(indexed_tx=loop.create_future())
            indexed = require_not_none(state.indexed_tx, reason="indexing future missing")
            main_loop, server = MainLoop.new_client(
                lambda _server: build_service(
                    build_router(state), max_concurrency=settings.max_concurrency
                )
            )
            server.request_timeout = settings.request_timeout_seconds
            loop_task = asyncio.ensure_future(main_loop.run(process.stdout, process.stdin))
            try:
                self._enter(WorkflowState.HANDSHAKING)
                await self._handshake(server, workspace)

                write_error: WorkspaceError | None = None
                text = await self._infer(server, workspace, source_text, indexed)
                if text is not None:
                    target = interface_path(workspace.source, self.config.document.interface_suffix)
                    try:
                        self._writer(target, text)
                    except WorkspaceError as exc:
                        write_error = exc
                    else:
                        outcome.interface = target
                        outcome.text = text

                self._enter(WorkflowState.SHUTTING_DOWN)
                await self._shutdown(server, loop_task)
                self._enter(WorkflowState.TERMINATED)
                if write_error is not None:
                    raise write_error
            finally:
                if not loop_task.done():
                    loop_task.cancel()
                await asyncio.gather(loop_task, return_exceptions=True)
        return outcome

    async def _handshake(self, server: ServerHandle, workspace: Workspace) -> InitializeResult:
        try:
            result = await server.initialize(initialize_params(workspace.root_uri))
            server.initialized()
        except LspClientError as exc:
            raise HandshakeError(f"couldn't initialize: {exc}") from exc
        if result.server_info is not None:
            logger.debug(
                "server %s %s", result.server_info.name, result.server_info.version or ""
            )
        return result

    async def _wait_indexed(self, indexed: asyncio.Future[None]) -> None:
        timeout = self.config.index.timeout_seconds
        try:
            await asyncio.wait_for(asyncio.shield(indexed), timeout)
        except asyncio.TimeoutError:
            logger.warning("indexing did not finish within %ss; continuing", timeout)

    async def _infer(
        self,
        server: ServerHandle,
        workspace: Workspace,
        source_text: str,
        indexed: asyncio.Future[None],
    ) -> str | None:
        documents = self.config.document
        source = Document.from_path(
            workspace.source, source_text, language_id=documents.language_id
        )
        try:
            server.open_document(source)
            self._enter(WorkflowState.DOCUMENT_OPENED)
            if self.config.index.wait:
                await self._wait_indexed(indexed)
            self._enter(WorkflowState.INFERENCE_REQUESTED)
            text = await server.infer_interface([source.uri])
        except LspClientError as exc:
            logger.warning("couldn't infer interface: %s", exc)
            self._enter(WorkflowState.INFERENCE_FAILED)
            return None
        self._enter(WorkflowState.INFERENCE_SUCCEEDED)

        target = Document.from_path(
            interface_path(workspace.source, documents.interface_suffix),
            text,
            language_id=documents.interface_language_id,
        )
        try:
            server.open_document(target)
        except LspClientError as exc:
            logger.warning("couldn't open %s for formatting: %s", target.uri, exc)
            return text
        self._enter(WorkflowState.OUTPUT_OPENED)
        if not self.config.format.enabled:
            return text
        return await self._format(server, target)

    async def _format(self, server: ServerHandle, document: Document) -> str:
        settings = self.config.format
        self._enter(WorkflowState.FORMATTING)
        options = FormattingOptions(
            tab_size=settings.tab_size, insert_spaces=settings.insert_spaces
        )
        try:
            edits = await server.formatting(document.identifier(), options)
            text = apply_edits(document.text, edits)
        except (LspClientError, EditConflictError) as exc:
            logger.info("formatting failed, keeping unformatted interface: %s", exc)
            return document.text
        self._enter(WorkflowState.APPLIED)
        if self._outcome is not None:
            self._outcome.formatted = True
        return text

    async def _shutdown(self, server: ServerHandle, loop_task: asyncio.Future[None]) -> None:
        try:
            await server.shutdown()
        except LspClientError as exc:
            logger.warning("couldn't shutdown: %s", exc)
        try:
            server.exit()
            server.emit(Stop())
        except LspClientError as exc:
            logger.debug("session already closed: %s", exc)
        try:
            await loop_task
        except LspClientError as exc:
            logger.warning("main loop ended with an error: %s", exc)
