"""One-time creation of the per-machine key and the secret store bound to it.

The sequence is an explicit state machine so every transition can be
exercised without real cryptographic tooling::

    NO_KEY --(generate if absent)--> HAS_KEY --(derive fingerprint)-->
        STORE_UNINITIALIZED --(pass init)--> STORE_READY
        or straight to STORE_READY when .gpg-id already exists

Only ``GENERATE_KEY`` and ``INIT_STORE`` have side effects and both are
guarded by an observation, so repeated runs are no-ops once the first run
has succeeded.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum, auto
from pathlib import Path
from typing import Final

from .errors import CommandError, ReconcileError
from .keys import KeyGenSpec, KeyManager, has_secret_record, parse_secret_fingerprint
from .store import SecretStore

logger: Final[logging.Logger] = logging.getLogger(__name__)


class BootstrapState(Enum):
    NO_KEY = auto()
    HAS_KEY = auto()
    STORE_UNINITIALIZED = auto()
    STORE_READY = auto()


class BootstrapAction(Enum):
    NONE = auto()
    GENERATE_KEY = auto()
    DERIVE_FINGERPRINT = auto()
    INIT_STORE = auto()


@dataclass(frozen=True, slots=True)
class BootstrapFacts:
    """What was observed about the key ring and store before a step."""

    has_secret_key: bool
    store_initialized: bool


def transition(
    state: BootstrapState, facts: BootstrapFacts
) -> tuple[BootstrapAction, BootstrapState]:
    """Pure transition function: ``(state, facts) -> (action, next_state)``."""
    if state is BootstrapState.NO_KEY:
        if facts.has_secret_key:
            return BootstrapAction.NONE, BootstrapState.HAS_KEY
        return BootstrapAction.GENERATE_KEY, BootstrapState.HAS_KEY
    if state is BootstrapState.HAS_KEY:
        if facts.store_initialized:
            return BootstrapAction.DERIVE_FINGERPRINT, BootstrapState.STORE_READY
        return BootstrapAction.DERIVE_FINGERPRINT, BootstrapState.STORE_UNINITIALIZED
    if state is BootstrapState.STORE_UNINITIALIZED:
        return BootstrapAction.INIT_STORE, BootstrapState.STORE_READY
    return BootstrapAction.NONE, BootstrapState.STORE_READY


@dataclass(slots=True)
class BootstrapResult:
    fingerprint: str = ""
    generated_key: bool = False
    initialized_store: bool = False
    visited: list[BootstrapState] = field(default_factory=list)


class SecretBootstrapper:
    """Drive the bootstrap state machine against real adapters."""

    def __init__(
        self,
        keys: KeyManager,
        store: SecretStore,
        spec: KeyGenSpec,
        stale_batch_file: Path | None = None,
    ) -> None:
        self._keys = keys
        self._store = store
        self._spec = spec
        self._stale_batch_file = stale_batch_file

    def observe(self) -> BootstrapFacts:
        return BootstrapFacts(
            has_secret_key=has_secret_record(self._keys.list_secret_keys()),
            store_initialized=self._store.is_initialized(),
        )

    def run(self) -> BootstrapResult:
        """Run every step up to ``STORE_READY``.

        Raises:
            ReconcileError: Key generation, fingerprint derivation or store
                initialization failed.
        """
        self._discard_stale_batch()
        self._keys.restart_agent()

        result = BootstrapResult()
        state = BootstrapState.NO_KEY
        result.visited.append(state)
        while True:
            action, next_state = transition(state, self.observe())
            self._perform(action, result)
            if next_state is state:
                return result
            state = next_state
            result.visited.append(state)

    def _perform(self, action: BootstrapAction, result: BootstrapResult) -> None:
        if action is BootstrapAction.GENERATE_KEY:
            logger.info("No secret key found. Generating per-machine GPG key...")
            try:
                self._keys.generate_key(self._spec)
            except CommandError as exc:
                raise ReconcileError(f"GPG key generation failed: {exc}") from exc
            result.generated_key = True
        elif action is BootstrapAction.DERIVE_FINGERPRINT:
            listing = self._keys.list_secret_keys()
            fingerprint = parse_secret_fingerprint(listing)
            if not fingerprint:
                logger.error("Secret key listing:\n%s", listing.rstrip() or "<empty>")
                raise ReconcileError("Could not determine secret key fingerprint.")
            result.fingerprint = fingerprint
        elif action is BootstrapAction.INIT_STORE:
            logger.info("Initializing pass store for %s...", result.fingerprint)
            try:
                self._store.init(result.fingerprint)
            except CommandError as exc:
                raise ReconcileError(f"pass init failed: {exc}") from exc
            if not self._store.is_initialized():
                raise ReconcileError("pass init reported success but .gpg-id is missing")
            result.initialized_store = True

    def _discard_stale_batch(self) -> None:
        path = self._stale_batch_file
        if path is None or not path.exists():
            return
        logger.warning("Removing key-generation batch file left by an interrupted start: %s", path)
        path.unlink()
