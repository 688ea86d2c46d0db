"""Infer OCaml interface files through a language server."""

from mli_infer.exceptions import LspClientError, NeverThrown
from mli_infer.invariants import never

__all__ = ["__version__", "LspClientError", "NeverThrown", "never"]

__version__ = "0.1.0"
