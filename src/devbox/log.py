"""Console logging setup shared by the devbox console scripts."""

from __future__ import annotations

import logging
import os

from rich.console import Console
from rich.logging import RichHandler

_CONFIGURED = False


def configure_logging(tag: str, level: str | None = None) -> None:
    """Route ``devbox.*`` loggers to stderr with a ``[tag]`` prefix.

    Safe to call more than once; only the first call installs a handler.
    """
    global _CONFIGURED
    if _CONFIGURED:
        return

    handler = RichHandler(
        console=Console(stderr=True),
        show_time=False,
        show_path=False,
        markup=False,
    )
    handler.setFormatter(logging.Formatter(f"[{tag}] %(message)s"))

    root = logging.getLogger("devbox")
    root.setLevel((level or os.environ.get("DEVBOX_LOG_LEVEL", "INFO")).upper())
    root.addHandler(handler)
    root.propagate = False
    _CONFIGURED = True
