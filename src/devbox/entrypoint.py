#!/usr/bin/env python3
"""Container entrypoint: reconcile identity and secrets, then hand off.

Runs as root under tini on every container start:

1. clear the readiness marker
2. move the ``dev`` account onto ``USER_ID``/``GROUP_ID``
3. relink ``~/.gnupg``, ``~/.password-store``, ``~/.zsh_history`` into the volume
4. generate the per-machine GPG key and initialize ``pass`` if needed
5. publish the readiness marker
6. pre-seed Gerrit credentials when configured
7. exec a login shell (or the given command) as ``dev``
"""

from __future__ import annotations

import logging
import os
import sys
from collections.abc import Callable, Sequence
from dataclasses import dataclass
from pathlib import Path
from typing import Final

from .accounts import AccountDirectory, IdentityReconciler, ServiceAccount, SystemAccountDirectory
from .bootstrap import BootstrapResult, SecretBootstrapper
from .config import DevboxConfig
from .credentials import seed_gerrit_credentials
from .errors import DevboxError, PreconditionError
from .fsops import FileOps, OsFileOps
from .keys import DEFAULT_BATCH_FILE, GpgKeyManager, KeyGenSpec, KeyManager
from .log import configure_logging
from .persistence import PersistentLayout, StateLinker
from .process import CommandRunner
from .readiness import ReadinessMarker
from .store import PassStore, SecretStore

logger: Final[logging.Logger] = logging.getLogger(__name__)


def _is_root() -> bool:
    return os.geteuid() == 0


@dataclass(frozen=True, slots=True)
class StartupResult:
    account: ServiceAccount
    bootstrap: BootstrapResult


class Entrypoint:
    """Start-up sequence with every OS-facing collaborator injectable."""

    def __init__(
        self,
        cfg: DevboxConfig,
        *,
        accounts: AccountDirectory | None = None,
        fs: FileOps | None = None,
        runner: CommandRunner | None = None,
        keys: KeyManager | None = None,
        store: SecretStore | None = None,
        is_root: Callable[[], bool] | None = None,
        batch_file: Path = DEFAULT_BATCH_FILE,
    ) -> None:
        self._cfg = cfg
        self._runner = runner or CommandRunner()
        self._accounts = accounts or SystemAccountDirectory(self._runner)
        self._fs = fs or OsFileOps()
        self._keys = keys
        self._store = store
        self._is_root = is_root or _is_root
        self._batch_file = batch_file
        self._layout = PersistentLayout.from_config(cfg)
        self._marker = ReadinessMarker(cfg.ready_file, self._fs)

    @property
    def marker(self) -> ReadinessMarker:
        return self._marker

    def account_env(self) -> dict[str, str]:
        cfg = self._cfg
        return {
            "HOME": str(cfg.home_dir),
            "USER": cfg.user_name,
            "GNUPGHOME": str(cfg.gnupg_home),
            "PASSWORD_STORE_DIR": str(cfg.store_dir),
        }

    def account_runner(self) -> CommandRunner:
        return self._runner.as_user(self._cfg.user_name, self.account_env())

    def reconcile(self) -> StartupResult:
        """Run steps 1-6; the marker exists afterwards only if all succeeded.

        Raises:
            PreconditionError: Not root, or the account is missing.
            ReconcileError: A fatal reconciliation step failed.
            OSError: The volume or home directory cannot be written.
        """
        cfg = self._cfg
        if not self._is_root():
            raise PreconditionError(
                "entrypoint must run as root. Do not use --user or compose 'user:'."
            )

        self._marker.clear()
        self._layout.ensure_dirs()

        account = IdentityReconciler(self._accounts, cfg.user_name, cfg.uid_floor).reconcile(
            cfg.user_id, cfg.group_id
        )

        linker = StateLinker(self._layout, cfg.home_dir, self._fs)
        linker.link(account)
        linker.write_agent_config(account)

        user_runner = self.account_runner()
        keys = self._keys or GpgKeyManager(
            user_runner,
            cfg.gnupg_dir,
            self._batch_file,
            owner=(account.uid, account.gid),
            fs=self._fs,
        )
        store = self._store or PassStore(user_runner, cfg.store_dir)
        spec = KeyGenSpec(name=cfg.gpg_name, email=cfg.gpg_email, passphrase=cfg.gpg_passphrase)
        bootstrap = SecretBootstrapper(keys, store, spec, stale_batch_file=self._batch_file).run()

        self._marker.publish(account.uid, account.gid)

        seed_gerrit_credentials(user_runner, cfg.gerrit_host, cfg.gerrit_username, cfg.gerrit_pat)
        return StartupResult(account=account, bootstrap=bootstrap)

    def handoff_command(self, argv: Sequence[str]) -> list[str]:
        if argv:
            return list(argv)
        return [self._cfg.shell, "-l"]

    def handoff(self, argv: Sequence[str]) -> None:
        """Replace this process with the shell or ``argv`` running as the account."""
        self.account_runner().exec(self.handoff_command(argv))

    def run(self, argv: Sequence[str]) -> None:
        self.reconcile()
        self.handoff(argv)


def main(argv: list[str] | None = None) -> None:
    """Entry point for ``devbox-entrypoint``."""
    configure_logging("entrypoint")
    args = sys.argv[1:] if argv is None else argv
    try:
        Entrypoint(DevboxConfig.from_env()).run(args)
    except (DevboxError, OSError) as exc:
        print(f"[entrypoint] ERROR: {exc}", file=sys.stderr, flush=True)
        sys.exit(1)


if __name__ == "__main__":
    main()
