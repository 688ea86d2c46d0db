from __future__ import annotations

import asyncio

import pytest

from mli_infer.correlation import PendingRequests
from mli_infer.exceptions import LspResponseError, SessionClosedError
from mli_infer.messages import Response


@pytest.mark.asyncio
async def test_ids_are_monotonic_and_unique() -> None:
    pending = PendingRequests()
    ids = [pending.allocate()[0] for _ in range(5)]
    assert ids == [0, 1, 2, 3, 4]
    assert len(pending) == 5


@pytest.mark.asyncio
async def test_resolve_completes_exactly_once() -> None:
    pending = PendingRequests()
    request_id, future = pending.allocate()
    assert pending.resolve(Response(request_id, result={"ok": True}))
    assert await future == {"ok": True}
    assert request_id not in pending
    assert not pending.resolve(Response(request_id, result="late"))


@pytest.mark.asyncio
async def test_resolve_error_raises_remote_error() -> None:
    pending = PendingRequests()
    request_id, future = pending.allocate()
    pending.resolve(Response(request_id, error=LspResponseError(-32803, "failed")))
    with pytest.raises(LspResponseError) as info:
        await future
    assert info.value.code == -32803


@pytest.mark.asyncio
async def test_unknown_response_is_discarded(caplog: pytest.LogCaptureFixture) -> None:
    pending = PendingRequests()
    pending.allocate()
    assert not pending.resolve(Response(99, result=None))
    assert not pending.resolve(Response(None, error=LspResponseError(-32700, "parse")))
    assert len(pending) == 1
    assert "unknown request id 99" in caplog.text


@pytest.mark.asyncio
async def test_fail_all_fails_every_pending_future() -> None:
    pending = PendingRequests()
    futures = [pending.allocate()[1] for _ in range(3)]
    assert pending.fail_all("transport closed") == 3
    assert len(pending) == 0
    results = await asyncio.gather(*futures, return_exceptions=True)
    assert all(isinstance(result, SessionClosedError) for result in results)
    assert all("transport closed" in str(result) for result in results)


@pytest.mark.asyncio
async def test_cancelled_future_ignores_late_response() -> None:
    pending = PendingRequests()
    request_id, future = pending.allocate()
    future.cancel()
    assert not pending.resolve(Response(request_id, result=1))
    assert len(pending) == 0
