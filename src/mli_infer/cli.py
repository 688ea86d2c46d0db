from __future__ import annotations

import asyncio
import shlex
from pathlib import Path
from typing import Callable, Mapping, Optional, TypeAlias

import typer

from mli_infer import __version__
from mli_infer.config import InferConfig, TomlTable, resolve_config
from mli_infer.documents import Workspace, resolve_workspace
from mli_infer.exceptions import ConfigError, LspClientError, WorkspaceError
from mli_infer.log import configure_logging
from mli_infer.workflow import InferOutcome, InterfaceWorkflow

app = typer.Typer(add_completion=False)
Runner: TypeAlias = Callable[[InferConfig, Workspace], InferOutcome]

_SETUP_FAILURE_EXIT_CODE = 2


def run_workflow(config: InferConfig, workspace: Workspace) -> InferOutcome:
    return asyncio.run(InterfaceWorkflow(config).run(workspace))


DEFAULT_RUNNER: Runner = run_workflow


def _version_callback(value: bool) -> None:
    if value:
        typer.echo(f"mli-infer {__version__}")
        raise typer.Exit()


def build_overrides(
    *,
    server: str | None,
    timeout: float | None,
    no_format: bool,
) -> TomlTable:
    overrides: TomlTable = {}
    server_section: TomlTable = {}
    if server:
        server_section["command"] = shlex.split(server)
    if timeout is not None:
        server_section["request_timeout_seconds"] = timeout
    if server_section:
        overrides["server"] = server_section
    if no_format:
        overrides["format"] = {"enabled": False}
    return overrides


def _context_runner(ctx: typer.Context) -> Runner:
    obj = ctx.obj
    if isinstance(obj, Mapping):
        candidate = obj.get("runner")
        if callable(candidate):
            return candidate
    return DEFAULT_RUNNER


@app.command()
def main(
    ctx: typer.Context,
    root_dir: Path = typer.Option(..., "--root-dir", "-r", help="Workspace root directory."),
    file: Path = typer.Option(..., "--file", "-f", help="Source file, relative to the root."),
    config: Optional[Path] = typer.Option(
        None, "--config", help="Config file (default: <root>/mli-infer.toml)."
    ),
    server: Optional[str] = typer.Option(
        None, "--server", help="Language server command line (default: ocamllsp)."
    ),
    timeout: Optional[float] = typer.Option(
        None, "--timeout", help="Per-request deadline in seconds."
    ),
    no_format: bool = typer.Option(
        False, "--no-format", help="Write the inferred interface without formatting it."
    ),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug logging."),
    version: bool = typer.Option(
        False, "--version", callback=_version_callback, is_eager=True
    ),
) -> None:
    """Infer an interface file for FILE and print the path it was written to."""
    configure_logging(verbose)
    try:
        workspace = resolve_workspace(root_dir, file)
        settings = resolve_config(
            root=workspace.root,
            config_path=config,
            overrides=build_overrides(server=server, timeout=timeout, no_format=no_format),
        )
        outcome = _context_runner(ctx)(settings, workspace)
    except (ConfigError, WorkspaceError, LspClientError) as exc:
        typer.echo(f"error: {exc}", err=True)
        raise typer.Exit(code=_SETUP_FAILURE_EXIT_CODE) from exc
    if outcome.interface is not None:
        typer.echo(str(outcome.interface))


if __name__ == "__main__":  # pragma: no cover
    app()  # pragma: no cover
