"""Tests for the key/store bootstrap state machine."""

from __future__ import annotations

from pathlib import Path

import pytest

from devbox.bootstrap import (
    BootstrapAction,
    BootstrapFacts,
    BootstrapState,
    SecretBootstrapper,
    transition,
)
from devbox.errors import ReconcileError
from devbox.keys import KeyGenSpec
from fakes import FakeKeyManager, FakeSecretStore

SPEC = KeyGenSpec(name="Dev User", email="dev@example.com")
FPR = "ABCDEF0123456789ABCDEF0123456789ABCDEF01"


@pytest.mark.parametrize(
    ("state", "facts", "expected"),
    [
        (
            BootstrapState.NO_KEY,
            BootstrapFacts(has_secret_key=False, store_initialized=False),
            (BootstrapAction.GENERATE_KEY, BootstrapState.HAS_KEY),
        ),
        (
            BootstrapState.NO_KEY,
            BootstrapFacts(has_secret_key=True, store_initialized=False),
            (BootstrapAction.NONE, BootstrapState.HAS_KEY),
        ),
        (
            BootstrapState.HAS_KEY,
            BootstrapFacts(has_secret_key=True, store_initialized=False),
            (BootstrapAction.DERIVE_FINGERPRINT, BootstrapState.STORE_UNINITIALIZED),
        ),
        (
            BootstrapState.HAS_KEY,
            BootstrapFacts(has_secret_key=True, store_initialized=True),
            (BootstrapAction.DERIVE_FINGERPRINT, BootstrapState.STORE_READY),
        ),
        (
            BootstrapState.STORE_UNINITIALIZED,
            BootstrapFacts(has_secret_key=True, store_initialized=False),
            (BootstrapAction.INIT_STORE, BootstrapState.STORE_READY),
        ),
        (
            BootstrapState.STORE_READY,
            BootstrapFacts(has_secret_key=True, store_initialized=True),
            (BootstrapAction.NONE, BootstrapState.STORE_READY),
        ),
    ],
)
def test_transition_table(state, facts, expected) -> None:
    assert transition(state, facts) == expected


def test_fresh_volume_generates_key_and_initializes_store(tmp_path: Path) -> None:
    keys = FakeKeyManager()
    store = FakeSecretStore(tmp_path / "store")

    result = SecretBootstrapper(keys, store, SPEC).run()

    assert result.generated_key
    assert result.initialized_store
    assert result.fingerprint == keys.fingerprints[0]
    assert store.gpg_id() == result.fingerprint
    assert result.visited == [
        BootstrapState.NO_KEY,
        BootstrapState.HAS_KEY,
        BootstrapState.STORE_UNINITIALIZED,
        BootstrapState.STORE_READY,
    ]
    assert keys.restarts == 1


def test_second_run_has_no_side_effects(tmp_path: Path) -> None:
    keys = FakeKeyManager()
    store = FakeSecretStore(tmp_path / "store")
    first = SecretBootstrapper(keys, store, SPEC).run()

    second = SecretBootstrapper(keys, store, SPEC).run()

    assert not second.generated_key
    assert not second.initialized_store
    assert second.fingerprint == first.fingerprint
    assert len(keys.generated) == 1
    assert store.inits == [first.fingerprint]
    assert second.visited == [
        BootstrapState.NO_KEY,
        BootstrapState.HAS_KEY,
        BootstrapState.STORE_READY,
    ]


def test_existing_key_uninitialized_store(tmp_path: Path) -> None:
    keys = FakeKeyManager([FPR])
    store = FakeSecretStore(tmp_path / "store")

    result = SecretBootstrapper(keys, store, SPEC).run()

    assert not result.generated_key
    assert store.inits == [FPR]


def test_generation_failure_is_fatal(tmp_path: Path) -> None:
    keys = FakeKeyManager()
    keys.fail_generate = True
    store = FakeSecretStore(tmp_path / "store")

    with pytest.raises(ReconcileError, match="key generation failed"):
        SecretBootstrapper(keys, store, SPEC).run()
    assert not store.is_initialized()


def test_missing_fingerprint_after_generation_is_fatal(tmp_path: Path) -> None:
    keys = FakeKeyManager()
    keys.silent_generate = True

    with pytest.raises(ReconcileError, match="Could not determine secret key fingerprint"):
        SecretBootstrapper(keys, FakeSecretStore(tmp_path / "store"), SPEC).run()


def test_store_init_failure_is_fatal(tmp_path: Path) -> None:
    store = FakeSecretStore(tmp_path / "store")
    store.fail_init = True

    with pytest.raises(ReconcileError, match="pass init failed"):
        SecretBootstrapper(FakeKeyManager([FPR]), store, SPEC).run()


def test_stale_batch_file_is_swept(tmp_path: Path) -> None:
    stale = tmp_path / "devbox-gpg-batch"
    stale.write_text("Passphrase: leaked\n", encoding="utf-8")

    SecretBootstrapper(
        FakeKeyManager([FPR]), FakeSecretStore(tmp_path / "store"), SPEC, stale_batch_file=stale
    ).run()

    assert not stale.exists()
