"""Pytest configuration for devbox tests.

Provides fixtures for:
- A DevboxConfig rooted in a per-test temporary directory
- In-memory account, file-ownership, key and store fakes
- An Entrypoint wired to those fakes (never touches the real system)
"""

from __future__ import annotations

import sys
from pathlib import Path
from typing import Final

import pytest

# ============================================================================
# Path Configuration
# ============================================================================

REPO_ROOT: Final[Path] = Path(__file__).resolve().parents[1]
SRC_ROOT: Final[Path] = REPO_ROOT / "src"

if str(SRC_ROOT) not in sys.path:
    sys.path.insert(0, str(SRC_ROOT))

from devbox.config import DevboxConfig  # noqa: E402
from devbox.entrypoint import Entrypoint  # noqa: E402
from fakes import (  # noqa: E402
    FakeAccountDirectory,
    FakeFileOps,
    FakeKeyManager,
    FakeSecretStore,
    RecordingRunner,
)

# ============================================================================
# Configuration Fixtures
# ============================================================================


@pytest.fixture
def cfg(tmp_path: Path) -> DevboxConfig:
    """Configuration with every path under tmp_path and no tool requirements."""
    home = tmp_path / "home" / "dev"
    home.mkdir(parents=True)
    work = tmp_path / "work"
    work.mkdir()
    return DevboxConfig(
        home_dir=home,
        persist_dir=tmp_path / "persist",
        work_dir=work,
        required_tools=(),
    )


# ============================================================================
# Collaborator Fakes
# ============================================================================


@pytest.fixture
def fs() -> FakeFileOps:
    return FakeFileOps()


@pytest.fixture
def accounts(tmp_path: Path) -> FakeAccountDirectory:
    """Image defaults: ``dev`` at 1000:1000 and nothing else."""
    return FakeAccountDirectory(
        users={"dev": (1000, 1000)},
        groups={"dev": 1000},
        home_root=tmp_path / "home",
    )


@pytest.fixture
def keys() -> FakeKeyManager:
    return FakeKeyManager()


@pytest.fixture
def store(cfg: DevboxConfig) -> FakeSecretStore:
    return FakeSecretStore(cfg.store_dir)


@pytest.fixture
def runner() -> RecordingRunner:
    return RecordingRunner()


@pytest.fixture
def make_entrypoint(tmp_path, cfg, accounts, fs, keys, store, runner):
    """Factory building an Entrypoint on the fakes; keyword args override."""

    def _factory(**overrides) -> Entrypoint:
        options = {
            "accounts": accounts,
            "fs": fs,
            "runner": runner,
            "keys": keys,
            "store": store,
            "is_root": lambda: True,
            "batch_file": tmp_path / "tmp" / "devbox-gpg-batch",
        }
        config = overrides.pop("cfg", cfg)
        options.update(overrides)
        return Entrypoint(config, **options)

    return _factory
