"""Service-account identity reconciliation.

The image ships a fixed account (``dev``) with placeholder ids. On every
start the account is moved to the uid/gid requested by the caller so files
written to bind mounts match the host user. Any other account already
holding the requested uid is first relocated to a free uid at or above
``uid_floor``.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Final, Protocol

from .errors import CommandError, PreconditionError, ReconcileError
from .process import CommandRunner

logger: Final[logging.Logger] = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class ServiceAccount:
    name: str
    uid: int
    gid: int
    home_dir: Path


class AccountDirectory(Protocol):
    """The account database operations reconciliation relies on."""

    def lookup_user(self, name: str) -> ServiceAccount | None: ...

    def user_by_uid(self, uid: int) -> str | None: ...

    def group_exists_by_gid(self, gid: int) -> bool: ...

    def group_exists_by_name(self, name: str) -> bool: ...

    def create_group(self, name: str, gid: int) -> None: ...

    def set_group_gid(self, name: str, gid: int) -> None: ...

    def set_user_uid(self, name: str, uid: int) -> None: ...

    def set_user_primary_group(self, name: str, gid: int) -> None: ...


def parse_passwd_line(line: str) -> ServiceAccount:
    """Parse one ``name:x:uid:gid:gecos:home:shell`` record."""
    parts = line.strip().split(":")
    if len(parts) < 7:
        raise ValueError(f"Malformed passwd entry: {line!r}")
    return ServiceAccount(
        name=parts[0], uid=int(parts[2]), gid=int(parts[3]), home_dir=Path(parts[5])
    )


class SystemAccountDirectory:
    """AccountDirectory backed by getent and the shadow-utils commands."""

    def __init__(self, runner: CommandRunner | None = None) -> None:
        self._runner = runner or CommandRunner()

    def _getent(self, database: str, key: str) -> str | None:
        completed = self._runner.run(["getent", database, key], check=False)
        if completed.returncode != 0:
            return None
        output = completed.stdout.strip()
        return output.splitlines()[0] if output else None

    def lookup_user(self, name: str) -> ServiceAccount | None:
        line = self._getent("passwd", name)
        return parse_passwd_line(line) if line else None

    def user_by_uid(self, uid: int) -> str | None:
        line = self._getent("passwd", str(uid))
        return line.split(":", 1)[0] if line else None

    def group_exists_by_gid(self, gid: int) -> bool:
        return self._getent("group", str(gid)) is not None

    def group_exists_by_name(self, name: str) -> bool:
        return self._getent("group", name) is not None

    def create_group(self, name: str, gid: int) -> None:
        self._runner.run(["groupadd", "-g", str(gid), name])

    def set_group_gid(self, name: str, gid: int) -> None:
        self._runner.run(["groupmod", "-g", str(gid), name])

    def set_user_uid(self, name: str, uid: int) -> None:
        self._runner.run(["usermod", "-u", str(uid), name])

    def set_user_primary_group(self, name: str, gid: int) -> None:
        self._runner.run(["usermod", "-g", str(gid), name])


def find_free_uid(directory: AccountDirectory, floor: int = 2000) -> int:
    """Return the lowest uid >= ``floor`` that no account holds."""
    uid = floor
    while directory.user_by_uid(uid) is not None:
        uid += 1
    return uid


class IdentityReconciler:
    """Move the fixed account onto the requested uid/gid."""

    def __init__(self, directory: AccountDirectory, user_name: str, uid_floor: int = 2000) -> None:
        self._directory = directory
        self._user_name = user_name
        self._uid_floor = uid_floor

    def reconcile(self, uid: int, gid: int) -> ServiceAccount:
        """Return the account holding exactly ``uid``/``gid`` or raise.

        Raises:
            PreconditionError: The account is missing from the image.
            ReconcileError: The OS rejected a required id change.
        """
        name = self._user_name
        account = self._directory.lookup_user(name)
        if account is None:
            raise PreconditionError(f"user '{name}' does not exist in image. Fix Dockerfile.")

        self._ensure_group(gid)
        self._vacate_uid(uid)

        account = self._require(name)
        if account.uid != uid:
            logger.info("Changing %s UID %d -> %d", name, account.uid, uid)
            self._fatal(self._directory.set_user_uid, name, uid)
        account = self._require(name)
        if account.gid != gid:
            logger.info("Changing %s GID %d -> %d", name, account.gid, gid)
            self._fatal(self._directory.set_user_primary_group, name, gid)

        account = self._require(name)
        if (account.uid, account.gid) != (uid, gid):
            raise ReconcileError(
                f"{name} ended with {account.uid}:{account.gid}, expected {uid}:{gid}"
            )
        return account

    def _ensure_group(self, gid: int) -> None:
        name = self._user_name
        if not self._directory.group_exists_by_gid(gid):
            if self._directory.group_exists_by_name(name):
                self._best_effort(self._directory.set_group_gid, name, gid)
            else:
                self._fatal(self._directory.create_group, name, gid)
        self._best_effort(self._directory.set_user_primary_group, name, gid)

    def _vacate_uid(self, uid: int) -> None:
        owner = self._directory.user_by_uid(uid)
        if owner is None or owner == self._user_name:
            return
        new_uid = find_free_uid(self._directory, self._uid_floor)
        logger.info("UID %d is taken by '%s'. Moving '%s' -> UID %d", uid, owner, owner, new_uid)
        self._best_effort(self._directory.set_user_uid, owner, new_uid)

    def _require(self, name: str) -> ServiceAccount:
        account = self._directory.lookup_user(name)
        if account is None:
            raise ReconcileError(f"user '{name}' disappeared during reconciliation")
        return account

    @staticmethod
    def _best_effort(operation, *args) -> None:
        try:
            operation(*args)
        except CommandError as exc:
            logger.warning("%s", exc)

    @staticmethod
    def _fatal(operation, *args) -> None:
        try:
            operation(*args)
        except CommandError as exc:
            raise ReconcileError(str(exc)) from exc
