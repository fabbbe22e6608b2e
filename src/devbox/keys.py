"""GnuPG key discovery and batch generation."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Final, Protocol

from .errors import CommandError
from .fsops import FileOps, OsFileOps
from .process import CommandRunner

logger: Final[logging.Logger] = logging.getLogger(__name__)

KEY_TYPE: Final[str] = "RSA"
KEY_LENGTH: Final[int] = 4096
FINGERPRINT_FIELD: Final[int] = 9  # zero-based index of field 10
DEFAULT_BATCH_FILE: Final[Path] = Path("/tmp/devbox-gpg-batch")


@dataclass(frozen=True, slots=True)
class KeyGenSpec:
    """Parameters for non-interactive key generation."""

    name: str
    email: str
    passphrase: str = field(default="", repr=False)

    def render(self) -> str:
        lines = [
            f"Key-Type: {KEY_TYPE}",
            f"Key-Length: {KEY_LENGTH}",
            f"Name-Real: {self.name}",
            f"Name-Email: {self.email}",
            "Expire-Date: 0",
        ]
        if self.passphrase:
            lines.append(f"Passphrase: {self.passphrase}")
        else:
            lines.append("%no-protection")
        lines.append("%commit")
        return "\n".join(lines) + "\n"


def has_secret_record(colons: str) -> bool:
    return any(line.startswith("sec:") for line in colons.splitlines())


def parse_secret_fingerprint(colons: str) -> str | None:
    """Return the fingerprint of the first secret key in ``--with-colons`` output.

    The first ``fpr`` record after the first ``sec`` record belongs to that
    key's primary; a second ``sec`` seen first means the listing is broken.
    """
    in_secret = False
    for line in colons.splitlines():
        record = line.split(":")
        kind = record[0]
        if kind == "sec":
            if in_secret:
                return None
            in_secret = True
        elif in_secret and kind == "fpr":
            if len(record) > FINGERPRINT_FIELD and record[FINGERPRINT_FIELD]:
                return record[FINGERPRINT_FIELD]
            return None
    return None


class KeyManager(Protocol):
    def restart_agent(self) -> None: ...

    def list_secret_keys(self) -> str: ...

    def generate_key(self, spec: KeyGenSpec) -> None: ...


class GpgKeyManager:
    """KeyManager shelling out to ``gpg`` and ``gpgconf``.

    ``batch_file`` is where the generation parameters are written while gpg
    reads them; it is created with mode 600, handed to ``owner`` so the
    unprivileged account can read it, and always removed afterwards.
    """

    def __init__(
        self,
        runner: CommandRunner,
        gnupg_home: Path,
        batch_file: Path = DEFAULT_BATCH_FILE,
        owner: tuple[int, int] | None = None,
        fs: FileOps | None = None,
    ) -> None:
        self._runner = runner
        self._gnupg_home = gnupg_home
        self._batch_file = batch_file
        self._owner = owner
        self._fs = fs or OsFileOps()

    @property
    def batch_file(self) -> Path:
        return self._batch_file

    def restart_agent(self) -> None:
        """Drop sockets from a previous container lifetime and relaunch the agent."""
        for socket in self._gnupg_home.glob("S.gpg-agent*"):
            try:
                socket.unlink()
            except OSError as exc:
                logger.warning("Cannot remove stale agent socket %s: %s", socket, exc)
        for action in ("--kill", "--launch"):
            try:
                self._runner.run(["gpgconf", action, "gpg-agent"])
            except CommandError as exc:
                logger.warning("%s", exc)

    def list_secret_keys(self) -> str:
        completed = self._runner.run(["gpg", "--list-secret-keys", "--with-colons"], check=False)
        return completed.stdout if completed.returncode == 0 else ""

    def generate_key(self, spec: KeyGenSpec) -> None:
        self._batch_file.parent.mkdir(parents=True, exist_ok=True)
        self._batch_file.touch(mode=0o600, exist_ok=True)
        try:
            self._fs.chmod(self._batch_file, 0o600)
            if self._owner is not None:
                self._fs.chown(self._batch_file, *self._owner)
            self._batch_file.write_text(spec.render(), encoding="utf-8")
            self._runner.run(
                [
                    "gpg",
                    "--batch",
                    "--pinentry-mode",
                    "loopback",
                    "--generate-key",
                    str(self._batch_file),
                ]
            )
        finally:
            self._batch_file.unlink(missing_ok=True)
