"""Correlation of outbound request ids with pending completions."""

from __future__ import annotations

import asyncio
import logging

from mli_infer.exceptions import SessionClosedError
from mli_infer.invariants import never
from mli_infer.json_types import JSONValue, RequestId
from mli_infer.messages import Response

logger = logging.getLogger(__name__)


class PendingRequests:
    """Maps request ids to futures; each id is inserted and removed once."""

    def __init__(self) -> None:
        self._next_id = 0
        self._futures: dict[RequestId, asyncio.Future[JSONValue]] = {}

    def __len__(self) -> int:
        return len(self._futures)

    def __contains__(self, request_id: object) -> bool:
        return request_id in self._futures

    def allocate(self) -> tuple[int, asyncio.Future[JSONValue]]:
        request_id = self._next_id
        self._next_id += 1
        if request_id in self:
            never("request id reused while pending", request_id=request_id)
        future: asyncio.Future[JSONValue] = asyncio.get_running_loop().create_future()
        self._futures[request_id] = future
        return request_id, future

    def resolve(self, response: Response) -> bool:
        future = self._futures.pop(response.id, None) if response.id is not None else None
        if future is None:
            logger.warning("discarding response for unknown request id %r", response.id)
            return False
        if future.done():
            # Caller gave up (timeout or cancellation) before the reply came.
            return False
        if response.error is not None:
            future.set_exception(response.error)
        else:
            future.set_result(response.result)
        return True

    def discard(self, request_id: RequestId) -> None:
        self._futures.pop(request_id, None)

    def fail_all(self, reason: str) -> int:
        futures, self._futures = self._futures, {}
        failed = 0
        for request_id, future in futures.items():
            if not future.done():
                future.set_exception(
                    SessionClosedError(f"request {request_id!r} abandoned: {reason}")
                )
                failed += 1
        return failed
