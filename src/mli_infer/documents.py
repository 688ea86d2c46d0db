"""Documents exchanged with the server and workspace path handling."""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path

from lsprotocol.types import TextDocumentIdentifier, TextDocumentItem

from mli_infer.exceptions import WorkspaceError

OCAML_LANGUAGE_ID = "ocaml"
OCAML_INTERFACE_LANGUAGE_ID = "ocaml.interface"
INTERFACE_SUFFIX = ".mli"


@dataclass(frozen=True)
class Document:
    uri: str
    language_id: str
    text: str
    version: int = 0

    @classmethod
    def from_path(
        cls, path: Path, text: str, *, language_id: str = OCAML_LANGUAGE_ID
    ) -> Document:
        return cls(uri=path_to_uri(path), language_id=language_id, text=text)

    def item(self) -> TextDocumentItem:
        return TextDocumentItem(
            uri=self.uri,
            language_id=self.language_id,
            version=self.version,
            text=self.text,
        )

    def identifier(self) -> TextDocumentIdentifier:
        return TextDocumentIdentifier(uri=self.uri)


def path_to_uri(path: Path) -> str:
    if not path.is_absolute():
        raise WorkspaceError(f"document path must be absolute: {path}")
    return path.as_uri()


def interface_path(source: Path, suffix: str = INTERFACE_SUFFIX) -> Path:
    return source.with_suffix(suffix)


@dataclass(frozen=True)
class Workspace:
    """A canonical root directory and a target file inside it."""

    root: Path
    source: Path

    @property
    def root_uri(self) -> str:
        return path_to_uri(self.root)

    def read_source(self) -> str:
        try:
            return self.source.read_text(encoding="utf-8")
        except (OSError, UnicodeDecodeError) as exc:
            raise WorkspaceError(f"couldn't read file {self.source}: {exc}") from exc


def resolve_workspace(root_dir: str | Path, file: str | Path) -> Workspace:
    try:
        root = Path(root_dir).resolve(strict=True)
    except (OSError, RuntimeError) as exc:
        raise WorkspaceError(f"invalid root directory {root_dir}: {exc}") from exc
    if not root.is_dir():
        raise WorkspaceError(f"root is not a directory: {root}")
    source = root / Path(file)
    if not source.is_file():
        raise WorkspaceError(f"not a file: {source}")
    return Workspace(root=root, source=source)
