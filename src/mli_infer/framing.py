"""Content-Length framing for JSON-RPC messages over byte streams."""

from __future__ import annotations

import asyncio
import json
import logging
from typing import Protocol

from mli_infer.exceptions import FramingError, MalformedMessageError
from mli_infer.json_types import JSONObject

logger = logging.getLogger(__name__)

_CONTENT_LENGTH = b"content-length"
_MAX_HEADER_BYTES = 4096


class FrameWriter(Protocol):
    def write(self, data: bytes) -> None: ...

    async def drain(self) -> None: ...


def encode_message(message: JSONObject) -> bytes:
    payload = json.dumps(message, ensure_ascii=False).encode("utf-8")
    header = f"Content-Length: {len(payload)}\r\n\r\n".encode("ascii")
    return header + payload


async def _read_header(reader: asyncio.StreamReader) -> bytes | None:
    header = bytearray()
    while True:
        try:
            line = await reader.readuntil(b"\n")
        except asyncio.IncompleteReadError as exc:
            if not header and not exc.partial:
                return None
            raise FramingError("LSP stream closed inside a header") from exc
        except asyncio.LimitOverrunError as exc:
            raise FramingError("LSP header line too long") from exc
        if line in (b"\r\n", b"\n"):
            if not header:
                # Stray blank line between frames.
                continue
            return bytes(header)
        header.extend(line)
        if len(header) > _MAX_HEADER_BYTES:
            raise FramingError("LSP header too long")


def _content_length(header: bytes) -> int:
    for line in header.splitlines():
        name, sep, value = line.partition(b":")
        if not sep:
            raise FramingError(f"Invalid LSP header line: {line!r}")
        if name.strip().lower() != _CONTENT_LENGTH:
            continue
        try:
            length = int(value.strip())
        except ValueError as exc:
            raise FramingError(f"Invalid LSP Content-Length: {value!r}") from exc
        if length < 0:
            raise FramingError(f"Invalid LSP Content-Length: {length}")
        return length
    raise FramingError("Missing LSP Content-Length")


async def read_message(reader: asyncio.StreamReader) -> JSONObject | None:
    """Read one framed message, or None at a clean end of stream.

    Raises FramingError when the stream is desynchronised and
    MalformedMessageError when only the body is unusable.
    """
    header = await _read_header(reader)
    if header is None:
        return None
    length = _content_length(header)
    try:
        body = await reader.readexactly(length)
    except asyncio.IncompleteReadError as exc:
        raise FramingError("LSP stream closed inside a message body") from exc
    try:
        message = json.loads(body.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError) as exc:
        raise MalformedMessageError(f"Invalid LSP message body: {exc}") from exc
    if not isinstance(message, dict):
        raise MalformedMessageError(
            f"Invalid LSP message payload: {type(message).__name__}"
        )
    return message


async def write_message(writer: FrameWriter, message: JSONObject) -> None:
    writer.write(encode_message(message))
    await writer.drain()
