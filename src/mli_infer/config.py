from __future__ import annotations

import logging
import os
import shlex
from datetime import date, datetime, time
from decimal import Decimal, InvalidOperation
from pathlib import Path
from typing import List, Mapping, Optional, TypeAlias
import tomllib

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from mli_infer.documents import (
    INTERFACE_SUFFIX,
    OCAML_INTERFACE_LANGUAGE_ID,
    OCAML_LANGUAGE_ID,
)
from mli_infer.exceptions import ConfigError
from mli_infer.layers import DEFAULT_MAX_CONCURRENCY
from mli_infer.transport import DEFAULT_SERVER_COMMAND

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_NAME = "mli-infer.toml"

ENV_SERVER = "MLI_INFER_SERVER"
ENV_TIMEOUT_MS = "MLI_INFER_LSP_TIMEOUT_MS"
ENV_TIMEOUT_SECONDS = "MLI_INFER_LSP_TIMEOUT_SECONDS"

TomlScalar: TypeAlias = str | int | float | bool | None | date | datetime | time
TomlValue: TypeAlias = TomlScalar | list["TomlValue"] | dict[str, "TomlValue"]
TomlTable: TypeAlias = dict[str, TomlValue]


class ServerSettings(BaseModel):
    model_config = ConfigDict(extra="forbid")

    command: List[str] = Field(default_factory=lambda: list(DEFAULT_SERVER_COMMAND), min_length=1)
    request_timeout_seconds: Optional[float] = Field(default=None, gt=0)
    max_concurrency: int = Field(default=DEFAULT_MAX_CONCURRENCY, gt=0)


class DocumentSettings(BaseModel):
    model_config = ConfigDict(extra="forbid")

    language_id: str = OCAML_LANGUAGE_ID
    interface_language_id: str = OCAML_INTERFACE_LANGUAGE_ID
    interface_suffix: str = Field(default=INTERFACE_SUFFIX, pattern=r"^\.[^./\\]+$")


class FormatSettings(BaseModel):
    model_config = ConfigDict(extra="forbid")

    enabled: bool = True
    tab_size: int = Field(default=2, ge=0)
    insert_spaces: bool = True


class IndexSettings(BaseModel):
    model_config = ConfigDict(extra="forbid")

    wait: bool = False
    timeout_seconds: float = Field(default=30.0, gt=0)


class InferConfig(BaseModel):
    model_config = ConfigDict(extra="forbid")

    server: ServerSettings = Field(default_factory=ServerSettings)
    document: DocumentSettings = Field(default_factory=DocumentSettings)
    format: FormatSettings = Field(default_factory=FormatSettings)
    index: IndexSettings = Field(default_factory=IndexSettings)


def _load_toml(path: Path) -> TomlTable:
    try:
        raw = path.read_text(encoding="utf-8")
    except FileNotFoundError:
        return {}
    except OSError as exc:
        logger.warning("ignoring unreadable config %s: %s", path, exc)
        return {}
    try:
        data = tomllib.loads(raw)
    except tomllib.TOMLDecodeError as exc:
        raise ConfigError(f"invalid config {path}: {exc}") from exc
    return data if isinstance(data, dict) else {}


def load_config(root: Path | None = None, config_path: Path | None = None) -> TomlTable:
    if config_path is None:
        base = root if root is not None else Path.cwd()
        config_path = base / DEFAULT_CONFIG_NAME
    return _load_toml(config_path)


def merge_payload(payload: Mapping[str, TomlValue], defaults: TomlTable) -> TomlTable:
    merged = dict(defaults)
    for key, value in payload.items():
        if value is None:
            continue
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = merge_payload(value, merged[key])
            continue
        merged[key] = value
    return merged


def _env_timeout_seconds(env: Mapping[str, str]) -> float | None:
    raw_ms = env.get(ENV_TIMEOUT_MS, "").strip()
    if raw_ms:
        try:
            millis = int(raw_ms)
        except ValueError:
            millis = -1
        if millis > 0:
            return millis / 1000
        raise ConfigError(f"invalid {ENV_TIMEOUT_MS}: {raw_ms!r}")
    raw_seconds = env.get(ENV_TIMEOUT_SECONDS, "").strip()
    if raw_seconds:
        try:
            seconds = Decimal(raw_seconds)
        except (InvalidOperation, ValueError):
            seconds = Decimal(-1)
        if seconds > 0:
            return float(seconds)
        raise ConfigError(f"invalid {ENV_TIMEOUT_SECONDS}: {raw_seconds!r}")
    return None


def env_overrides(env: Mapping[str, str] | None = None) -> TomlTable:
    env = os.environ if env is None else env
    server: TomlTable = {}
    raw_command = env.get(ENV_SERVER, "").strip()
    if raw_command:
        server["command"] = shlex.split(raw_command)
    timeout = _env_timeout_seconds(env)
    if timeout is not None:
        server["request_timeout_seconds"] = timeout
    return {"server": server} if server else {}


def resolve_config(
    root: Path | None = None,
    config_path: Path | None = None,
    *,
    overrides: Mapping[str, TomlValue] | None = None,
    env: Mapping[str, str] | None = None,
) -> InferConfig:
    """Build the effective config: CLI overrides > environment > file > defaults."""
    data = load_config(root=root, config_path=config_path)
    data = merge_payload(env_overrides(env), data)
    if overrides:
        data = merge_payload(overrides, data)
    try:
        return InferConfig.model_validate(data)
    except ValidationError as exc:
        raise ConfigError(f"invalid configuration: {exc}") from exc
