"""Subprocess transport for the language server."""

from __future__ import annotations

import asyncio
import logging
from pathlib import Path
from typing import Awaitable, Callable, Sequence

from mli_infer.exceptions import SpawnError

logger = logging.getLogger(__name__)

DEFAULT_SERVER_COMMAND = ("ocamllsp",)
_EXIT_GRACE_SECONDS = 5.0

ProcessFactory = Callable[..., Awaitable[asyncio.subprocess.Process]]


class ServerProcess:
    """Owns a language server subprocess wired as a duplex byte stream.

    The server's stdin and stdout carry the protocol; stderr is inherited so
    its diagnostics reach the host's stderr untouched. Leaving the async
    context kills the process if it has not exited on its own.
    """

    def __init__(self, process: asyncio.subprocess.Process, command: Sequence[str]) -> None:
        if process.stdin is None or process.stdout is None:
            raise SpawnError(f"{command[0]} was started without stdio pipes")
        self.process = process
        self.command = tuple(command)
        self.stdin = process.stdin
        self.stdout = process.stdout

    @classmethod
    async def spawn(
        cls,
        command: Sequence[str],
        cwd: Path,
        *,
        process_factory: ProcessFactory = asyncio.create_subprocess_exec,
    ) -> ServerProcess:
        if not command:
            raise SpawnError("empty language server command")
        logger.debug("starting %s in %s", " ".join(command), cwd)
        try:
            process = await process_factory(
                *command,
                cwd=str(cwd),
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=None,
            )
        except OSError as exc:
            raise SpawnError(f"failed to run {command[0]}: {exc}") from exc
        return cls(process, command)

    @property
    def returncode(self) -> int | None:
        return self.process.returncode

    async def close(self, grace: float = _EXIT_GRACE_SECONDS) -> int | None:
        if self.returncode is None and not self.stdin.is_closing():
            self.stdin.close()
        try:
            await asyncio.wait_for(self.process.wait(), grace)
        except asyncio.TimeoutError:
            self.kill()
            await self.process.wait()
        return self.returncode

    def kill(self) -> None:
        if self.returncode is None:
            logger.debug("killing %s (pid %s)", self.command[0], self.process.pid)
            try:
                self.process.kill()
            except ProcessLookupError:
                pass

    async def __aenter__(self) -> ServerProcess:
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        if exc_type is not None:
            self.kill()
        await self.close()
