"""Subprocess helpers shared by the reconciliation, audit and launcher code."""

from __future__ import annotations

import logging
import os
import subprocess
from collections.abc import Iterable, Mapping
from typing import Final

from .errors import CommandError

logger: Final[logging.Logger] = logging.getLogger(__name__)


class CommandRunner:
    """Run external commands, optionally as another account.

    When ``user`` is set every command is wrapped in
    ``runuser -u <user> -- env K=V ... <argv>`` so the command sees the
    given environment and runs with that account's identity; without a
    user, ``env`` is layered over the current environment instead. Only
    the unwrapped argv is ever logged since ``env`` may carry a passphrase.
    """

    def __init__(
        self,
        user: str | None = None,
        env: Mapping[str, str] | None = None,
    ) -> None:
        self._user = user
        self._env = dict(env or {})

    @property
    def user(self) -> str | None:
        return self._user

    def as_user(self, user: str, env: Mapping[str, str] | None = None) -> CommandRunner:
        """Return a runner that executes every command as ``user``."""
        return CommandRunner(user=user, env=env)

    def wrap(self, argv: Iterable[str]) -> list[str]:
        cmd = list(argv)
        if self._user is None:
            return cmd
        prefix = ["runuser", "-u", self._user, "--"]
        if self._env:
            prefix += ["env", *(f"{key}={value}" for key, value in self._env.items())]
        return prefix + cmd

    def _child_env(self) -> dict[str, str] | None:
        if self._user is not None or not self._env:
            return None
        return {**os.environ, **self._env}

    def run(
        self,
        argv: Iterable[str],
        *,
        input: str | None = None,
        check: bool = True,
        cwd: str | os.PathLike[str] | None = None,
        capture: bool = True,
    ) -> subprocess.CompletedProcess[str]:
        """Run ``argv``; with ``capture=False`` output goes straight to the terminal."""
        cmd = list(argv)
        logger.debug("→ %s", " ".join(cmd))
        pipe = subprocess.PIPE if capture else None
        try:
            completed = subprocess.run(
                self.wrap(cmd),
                input=input,
                cwd=cwd,
                env=self._child_env(),
                check=False,
                stdout=pipe,
                stderr=pipe,
                text=True,
            )
        except FileNotFoundError as exc:
            raise CommandError(cmd, 127, str(exc)) from exc
        if check and completed.returncode != 0:
            raise CommandError(cmd, completed.returncode, completed.stderr or "")
        return completed

    def capture(self, argv: Iterable[str]) -> str:
        """Return stdout of a command that must succeed, stripped."""
        return self.run(argv).stdout.strip()

    def succeeds(self, argv: Iterable[str]) -> bool:
        return self.run(argv, check=False).returncode == 0

    def exec(self, argv: Iterable[str]) -> None:
        """Replace the current process with ``argv``."""
        requested = list(argv)
        logger.debug("exec %s", " ".join(requested))
        cmd = self.wrap(requested)
        env = self._child_env()
        if env is None:
            os.execvp(cmd[0], cmd)
        else:
            os.execvpe(cmd[0], cmd, env)
