from __future__ import annotations

import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
for entry in (ROOT, ROOT / "src"):
    if str(entry) not in sys.path:
        sys.path.insert(0, str(entry))


import pytest

from mli_infer.documents import Workspace, resolve_workspace


@pytest.fixture
def ocaml_workspace(tmp_path: Path) -> Workspace:
    source = tmp_path / "foo.ml"
    source.write_text("let f x = x + 1\n", encoding="utf-8")
    return resolve_workspace(tmp_path, "foo.ml")
