"""Error types raised by the devbox start-up and launcher code."""

from __future__ import annotations

from collections.abc import Sequence


class DevboxError(Exception):
    """Base error for devbox tooling."""


class PreconditionError(DevboxError):
    """Raised before any mutation when the environment cannot be reconciled."""


class ReconcileError(DevboxError):
    """Raised when a reconciliation step fails and start-up must abort."""


class LauncherError(DevboxError):
    """Raised by the host launcher for unusable compose setups or commands."""


class CommandError(DevboxError):
    """An external command exited non-zero."""

    def __init__(self, argv: Sequence[str], returncode: int, stderr: str = "") -> None:
        self.argv = list(argv)
        self.returncode = returncode
        self.stderr = stderr
        detail = stderr.strip().splitlines()[-1] if stderr.strip() else "no output"
        super().__init__(f"{' '.join(self.argv)} exited {returncode}: {detail}")
