"""``pass`` secret store adapter."""

from __future__ import annotations

from pathlib import Path
from typing import Final, Protocol

from .process import CommandRunner

GPG_ID_FILE: Final[str] = ".gpg-id"


class SecretStore(Protocol):
    def is_initialized(self) -> bool: ...

    def gpg_id(self) -> str: ...

    def init(self, fingerprint: str) -> None: ...

    def insert(self, name: str, value: str) -> None: ...

    def show(self, name: str) -> str: ...

    def remove(self, name: str) -> None: ...


class PassStore:
    """SecretStore backed by the ``pass`` command.

    The runner is expected to carry ``PASSWORD_STORE_DIR`` and ``GNUPGHOME``
    for the account that owns the store.
    """

    def __init__(self, runner: CommandRunner, store_dir: Path) -> None:
        self._runner = runner
        self._store_dir = store_dir

    @property
    def marker(self) -> Path:
        return self._store_dir / GPG_ID_FILE

    def is_initialized(self) -> bool:
        return self.marker.is_file()

    def gpg_id(self) -> str:
        """Return the bound key id, or an empty string when unbound or unreadable."""
        try:
            return self.marker.read_text(encoding="utf-8").strip()
        except OSError:
            return ""

    def init(self, fingerprint: str) -> None:
        self._runner.run(["pass", "init", fingerprint])

    def insert(self, name: str, value: str) -> None:
        self._runner.run(["pass", "insert", "-m", name], input=f"{value}\n")

    def show(self, name: str) -> str:
        return self._runner.run(["pass", "show", name]).stdout.rstrip("\n")

    def remove(self, name: str) -> None:
        self._runner.run(["pass", "rm", "-f", name])
