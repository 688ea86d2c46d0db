"""Error taxonomy for the interface inference client."""

from __future__ import annotations

from lsprotocol.types import ErrorCodes

from mli_infer.json_types import JSONObject, JSONValue


class NeverThrown(RuntimeError):
    """Raised by never() when a code path that must be unreachable runs.

    The env payload carries the values that were in scope, for diagnostics.
    """

    def __init__(self, message: str, *, env: dict[str, object] | None = None):
        super().__init__(message)
        self.env = dict(env or {})


class LspClientError(RuntimeError):
    pass


class SpawnError(LspClientError):
    """The analysis server executable could not be started."""


class HandshakeError(LspClientError):
    """The initialize/initialized exchange did not complete."""


class SessionClosedError(LspClientError):
    """The session ended while a request was outstanding or being sent."""


class RequestTimeoutError(LspClientError):
    pass


class FramingError(LspClientError):
    """The byte stream does not carry a well-formed LSP frame."""


class MalformedMessageError(FramingError):
    """A frame was read in full but its body is not a JSON-RPC message.

    The stream stays in sync after this error, so the reader may continue.
    """


class LspResponseError(LspClientError):
    """A JSON-RPC error object, received from the server or sent back to it."""

    def __init__(
        self,
        code: int,
        message: str,
        data: JSONValue = None,
    ):
        self.code = int(code)
        self.message = message
        self.data = data
        super().__init__(f"LSP error {self.code}: {message}")

    @classmethod
    def from_payload(cls, payload: JSONValue) -> LspResponseError:
        if not isinstance(payload, dict):
            return cls(ErrorCodes.InternalError, f"invalid error payload: {payload!r}")
        code = payload.get("code")
        if not isinstance(code, int) or isinstance(code, bool):
            code = ErrorCodes.UnknownErrorCode
        return cls(code, str(payload.get("message", "")), payload.get("data"))

    @classmethod
    def method_not_found(cls, method: str) -> LspResponseError:
        return cls(ErrorCodes.MethodNotFound, f"No such method {method}")

    def to_payload(self) -> JSONObject:
        payload: JSONObject = {"code": self.code, "message": self.message}
        if self.data is not None:
            payload["data"] = self.data
        return payload


class ConfigError(ValueError):
    pass


class WorkspaceError(ValueError):
    """The workspace root or target file cannot be used."""


class EditConflictError(ValueError):
    """Text edits overlap or address an inverted range."""
