"""Logging setup for the command line entry point."""

from __future__ import annotations

import logging
import sys

PACKAGE_LOGGER = "mli_infer"
_FORMAT = "%(levelname)s %(name)s: %(message)s"


def configure_logging(verbose: bool = False) -> None:
    """Send plain-text package logs to stderr; DEBUG when verbose, else INFO."""
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(level=logging.WARNING, format=_FORMAT, stream=sys.stderr)
    logging.getLogger(PACKAGE_LOGGER).setLevel(level)
