"""The readiness marker polled by the container HEALTHCHECK."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Final

from .fsops import FileOps, OsFileOps

logger: Final[logging.Logger] = logging.getLogger(__name__)


class ReadinessMarker:
    """Presence of ``path`` is the only "bootstrap complete" signal."""

    def __init__(self, path: Path, fs: FileOps | None = None) -> None:
        self._path = path
        self._fs = fs or OsFileOps()

    @property
    def path(self) -> Path:
        return self._path

    def is_ready(self) -> bool:
        return self._path.is_file()

    def clear(self) -> None:
        try:
            self._path.unlink(missing_ok=True)
        except OSError as exc:
            logger.warning("Cannot remove ready marker %s: %s", self._path, exc)

    def publish(self, uid: int, gid: int) -> None:
        self._path.parent.mkdir(parents=True, exist_ok=True)
        self._path.touch(exist_ok=True)
        try:
            self._fs.chown(self._path, uid, gid)
        except OSError as exc:
            logger.warning("Cannot chown ready marker %s: %s", self._path, exc)
        logger.info("Ready marker created: %s", self._path)
