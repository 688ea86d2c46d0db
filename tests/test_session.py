from __future__ import annotations

import asyncio
from pathlib import Path

import pytest
from lsprotocol.types import (
    FormattingOptions,
    Position,
    Range,
    TextDocumentIdentifier,
    TextEdit,
)

from mli_infer.client import INFER_INTF
from mli_infer.documents import Document
from mli_infer.exceptions import (
    FramingError,
    LspClientError,
    LspResponseError,
    RequestTimeoutError,
    SessionClosedError,
)
from mli_infer.layers import build_service
from mli_infer.messages import Stop
from mli_infer.router import ClientState, ControlFlow, Router, build_router
from mli_infer.session import MainLoop
from mli_infer.workflow import initialize_params
from tests.lsp_helpers import (
    ScriptedServer,
    echo_results,
    rpc_error,
    rpc_frame,
    rpc_notification,
)


def _new_session(state: ClientState | None = None):
    state = state or ClientState()
    return MainLoop.new_client(lambda _server: build_service(build_router(state)))


async def _start(server: ScriptedServer, state: ClientState | None = None):
    main_loop, handle = _new_session(state)
    task = asyncio.ensure_future(main_loop.run(server.reader, server))
    return main_loop, handle, task


@pytest.mark.asyncio
async def test_request_resolves_with_matching_response() -> None:
    server = ScriptedServer(echo_results({INFER_INTF: "val f : int -> int"}))
    main_loop, handle, task = await _start(server)
    assert await handle.infer_interface(["file:///w/foo.ml"]) == "val f : int -> int"
    assert server.sent[0] == {
        "jsonrpc": "2.0",
        "id": 0,
        "method": INFER_INTF,
        "params": ["file:///w/foo.ml"],
    }
    assert len(main_loop.pending) == 0
    handle.emit(Stop())
    await task


@pytest.mark.asyncio
async def test_responses_out_of_order_reach_their_requests() -> None:
    server = ScriptedServer()
    main_loop, handle, task = await _start(server)
    first = asyncio.ensure_future(handle.request("x/first"))
    second = asyncio.ensure_future(handle.request("x/second"))
    await asyncio.sleep(0)
    await asyncio.sleep(0)
    server.feed(rpc_frame({"id": 1, "result": "second"}))
    server.feed(rpc_frame({"id": 0, "result": "first"}))
    assert await asyncio.gather(first, second) == ["first", "second"]
    handle.emit(Stop())
    await task


@pytest.mark.asyncio
async def test_remote_error_is_surfaced_as_typed_failure() -> None:
    def _respond(message: dict):
        if message.get("method") == INFER_INTF:
            yield rpc_error(message["id"], -32603, "no interface")

    server = ScriptedServer(_respond)
    _, handle, task = await _start(server)
    with pytest.raises(LspResponseError) as info:
        await handle.infer_interface(["file:///w/foo.ml"])
    assert (info.value.code, info.value.message) == (-32603, "no interface")
    handle.emit(Stop())
    await task


@pytest.mark.asyncio
async def test_transport_close_fails_all_pending_requests() -> None:
    server = ScriptedServer()
    main_loop, handle, task = await _start(server)
    requests = [asyncio.ensure_future(handle.request(f"x/{n}")) for n in range(3)]
    await asyncio.sleep(0)
    await asyncio.sleep(0)
    server.close()
    results = await asyncio.gather(*requests, return_exceptions=True)
    assert all(isinstance(result, SessionClosedError) for result in results)
    await task
    assert main_loop.closed
    assert main_loop.close_reason == "transport closed"
    with pytest.raises(SessionClosedError):
        handle.exit()
    with pytest.raises(SessionClosedError):
        await handle.shutdown()


@pytest.mark.asyncio
async def test_stop_fails_pending_requests_and_ends_loop() -> None:
    server = ScriptedServer()
    main_loop, handle, task = await _start(server)
    pending = asyncio.ensure_future(handle.request("x/never-answered"))
    await asyncio.sleep(0)
    handle.emit(Stop())
    await task
    with pytest.raises(SessionClosedError):
        await pending
    assert server.methods() == ["x/never-answered"]


@pytest.mark.asyncio
async def test_stop_is_handled_after_earlier_frames_are_written() -> None:
    server = ScriptedServer(echo_results({"shutdown": None}))
    _, handle, task = await _start(server)
    await handle.shutdown()
    handle.exit()
    handle.emit(Stop())
    await task
    assert server.methods() == ["shutdown", "exit"]


@pytest.mark.asyncio
async def test_framing_fault_ends_session_and_fails_pending() -> None:
    server = ScriptedServer()
    main_loop, handle, task = await _start(server)
    pending = asyncio.ensure_future(handle.request("x/pending"))
    await asyncio.sleep(0)
    server.feed(b"Garbage-Header\r\n\r\n")
    with pytest.raises(FramingError):
        await task
    with pytest.raises(SessionClosedError):
        await pending
    assert main_loop.close_reason.startswith("framing error")


@pytest.mark.asyncio
async def test_malformed_messages_are_dropped(caplog: pytest.LogCaptureFixture) -> None:
    server = ScriptedServer(echo_results({"x/ping": "pong"}))
    _, handle, task = await _start(server)
    server.feed(b"Content-Length: 3\r\n\r\n{x}")
    server.feed(rpc_frame({"unexpected": True}))
    server.feed(rpc_frame({"id": 42, "result": "orphan"}))
    assert await handle.request("x/ping") == "pong"
    handle.emit(Stop())
    await task
    assert "dropping malformed message" in caplog.text
    assert "unknown request id 42" in caplog.text


@pytest.mark.asyncio
async def test_notifications_reach_router_state() -> None:
    state = ClientState(indexed_tx=asyncio.get_running_loop().create_future())
    server = ScriptedServer(echo_results({"x/ping": "pong"}))
    _, handle, task = await _start(server, state)
    server.feed(rpc_notification("$/progress", {"token": 1, "value": {"kind": "end"}}))
    server.feed(rpc_notification("$/progress", {"token": "index", "value": {"kind": "end"}}))
    server.feed(rpc_notification("window/showMessage", {"bad": "params"}))
    assert await handle.request("x/ping") == "pong"
    assert state.indexed_tx is None
    handle.emit(Stop())
    await task


@pytest.mark.asyncio
async def test_server_requests_get_responses() -> None:
    server = ScriptedServer(echo_results({"x/ping": "pong"}))
    _, handle, task = await _start(server)
    server.feed(rpc_frame({"id": 0, "method": "window/workDoneProgress/create", "params": {"token": "t"}}))
    server.feed(rpc_frame({"id": "abc", "method": "workspace/semanticTokens/refresh"}))
    assert await handle.request("x/ping") == "pong"
    await asyncio.sleep(0.01)
    handle.emit(Stop())
    await task
    replies = {message["id"]: message for message in server.sent if "method" not in message}
    assert replies[0] == {"jsonrpc": "2.0", "id": 0, "result": None}
    assert replies["abc"]["error"]["code"] == -32601


@pytest.mark.asyncio
async def test_request_timeout_forgets_the_id() -> None:
    server = ScriptedServer()
    main_loop, handle, task = await _start(server)
    handle.request_timeout = 0.01
    with pytest.raises(RequestTimeoutError):
        await handle.request("x/slow")
    assert len(main_loop.pending) == 0
    server.feed(rpc_frame({"id": 0, "result": "too late"}))
    handle.emit(Stop())
    await task


@pytest.mark.asyncio
async def test_typed_requests_round_trip_through_lsprotocol() -> None:
    edit = {
        "range": {"start": {"line": 0, "character": 18}, "end": {"line": 0, "character": 18}},
        "newText": "\n",
    }
    server = ScriptedServer(
        echo_results(
            {
                "initialize": {"capabilities": {}, "serverInfo": {"name": "fake"}},
                "textDocument/formatting": [edit],
            }
        )
    )
    _, handle, task = await _start(server)
    result = await handle.initialize(initialize_params("file:///w"))
    assert result.server_info.name == "fake"
    handle.initialized()
    document = Document.from_path(
        Path("/w/foo.mli"), "val f : int -> int", language_id="ocaml.interface"
    )
    handle.open_document(document)
    edits = await handle.formatting(document.identifier(), FormattingOptions(tab_size=2, insert_spaces=True))
    assert edits == [
        TextEdit(
            range=Range(start=Position(line=0, character=18), end=Position(line=0, character=18)),
            new_text="\n",
        )
    ]
    handle.emit(Stop())
    await task

    initialize, initialized, did_open, formatting = server.sent
    assert initialize["params"]["capabilities"]["window"]["workDoneProgress"] is True
    assert initialize["params"]["workspaceFolders"] == [{"uri": "file:///w", "name": "root"}]
    assert initialize["params"]["clientInfo"]["name"] == "mli-infer"
    assert initialized["method"] == "initialized"
    assert did_open["params"]["textDocument"] == {
        "uri": "file:///w/foo.mli",
        "languageId": "ocaml.interface",
        "version": 0,
        "text": "val f : int -> int",
    }
    assert formatting["params"]["options"] == {"tabSize": 2, "insertSpaces": True}


@pytest.mark.asyncio
async def test_unexpected_result_types_are_client_errors() -> None:
    server = ScriptedServer(echo_results({INFER_INTF: 3, "textDocument/formatting": {"no": "list"}}))
    _, handle, task = await _start(server)
    with pytest.raises(LspClientError):
        await handle.infer_interface(["file:///w/foo.ml"])
    with pytest.raises(LspClientError):
        await handle.formatting(
            TextDocumentIdentifier(uri="file:///w/foo.mli"),
            FormattingOptions(tab_size=2, insert_spaces=True),
        )
    handle.emit(Stop())
    await task


@pytest.mark.asyncio
async def test_main_loop_runs_once() -> None:
    server = ScriptedServer()
    main_loop, handle, task = await _start(server)
    handle.emit(Stop())
    await task
    with pytest.raises(SessionClosedError):
        await main_loop.run(server.reader, server)


@pytest.mark.asyncio
async def test_request_flood_waits_for_free_handler_slots() -> None:
    gate = asyncio.Event()
    started = 0

    async def _slow(state: object, params: object) -> str:
        nonlocal started
        started += 1
        await gate.wait()
        return "done"

    router = (
        Router(object())
        .request("x/slow", _slow)
        .event(Stop, lambda state, event: ControlFlow.BREAK)
    )
    main_loop, handle = MainLoop.new_client(
        lambda _server: build_service(router, max_concurrency=2)
    )
    server = ScriptedServer()
    task = asyncio.ensure_future(main_loop.run(server.reader, server))
    for n in range(200):
        server.feed(rpc_frame({"id": n, "method": "x/slow"}))
    await asyncio.sleep(0.1)
    assert started == 2
    assert len(main_loop._handlers) == 2

    gate.set()
    for _ in range(200):
        if len(server.sent) == 200:
            break
        await asyncio.sleep(0.01)
    handle.emit(Stop())
    await task
    assert started == 200
    assert sorted(message["id"] for message in server.sent) == list(range(200))
    assert all(message["result"] == "done" for message in server.sent)
