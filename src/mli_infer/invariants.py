"""Invariant markers for the protocol session."""

from __future__ import annotations

from typing import NoReturn, TypeVar

from mli_infer.exceptions import NeverThrown

T = TypeVar("T")


def never(reason: str = "", **env: object) -> NoReturn:
    """Mark a code path as intentionally unreachable.

    The env payload is attached to the raised error for diagnostics only.
    """
    raise NeverThrown(reason or "never() marker reached", env=env)


def require_not_none(value: T | None, *, reason: str = "", **env: object) -> T:
    if value is None:
        never(reason or "required value is None", **env)
    return value
