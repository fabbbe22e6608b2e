"""devbox - start-up reconciliation and validation for the dev container.

Console scripts:
- devbox-entrypoint: runs as root on container start, reconciles the ``dev``
  account ids, relinks durable state, bootstraps GPG + pass, publishes the
  readiness marker and hands off to a login shell
- validate-dev: read-only health audit run inside the container
- devbox: host-side ``docker compose`` lifecycle launcher

Quick Start:
    >>> from devbox import DevboxConfig, Entrypoint
    >>> Entrypoint(DevboxConfig.from_env()).reconcile()
"""

from __future__ import annotations

from importlib import metadata

from .accounts import IdentityReconciler, ServiceAccount, SystemAccountDirectory, find_free_uid
from .audit import AuditReport, Auditor, Finding, Status
from .bootstrap import (
    BootstrapAction,
    BootstrapFacts,
    BootstrapResult,
    BootstrapState,
    SecretBootstrapper,
    transition,
)
from .config import DevboxConfig
from .entrypoint import Entrypoint, StartupResult
from .errors import CommandError, DevboxError, LauncherError, PreconditionError, ReconcileError
from .keys import GpgKeyManager, KeyGenSpec, parse_secret_fingerprint
from .persistence import PersistentLayout, StateLinker
from .readiness import ReadinessMarker
from .store import PassStore

try:
    __version__ = metadata.version("devbox")
except metadata.PackageNotFoundError:
    __version__ = "0.0.0"

__all__ = [
    # Configuration
    "DevboxConfig",
    # Reconciliation
    "Entrypoint",
    "StartupResult",
    "IdentityReconciler",
    "ServiceAccount",
    "SystemAccountDirectory",
    "find_free_uid",
    "PersistentLayout",
    "StateLinker",
    "ReadinessMarker",
    # Secrets
    "BootstrapAction",
    "BootstrapFacts",
    "BootstrapResult",
    "BootstrapState",
    "SecretBootstrapper",
    "transition",
    "GpgKeyManager",
    "KeyGenSpec",
    "parse_secret_fingerprint",
    "PassStore",
    # Audit
    "Auditor",
    "AuditReport",
    "Finding",
    "Status",
    # Errors
    "DevboxError",
    "PreconditionError",
    "ReconcileError",
    "CommandError",
    "LauncherError",
]
