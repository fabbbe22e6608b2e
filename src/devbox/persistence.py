"""Durable-volume layout and the home-directory links into it.

Every start re-applies the same state: the three volume directories exist,
``~/.gnupg``, ``~/.password-store`` and ``~/.zsh_history`` are fresh
symlinks into the volume, and the gnupg tree is owned by the account with
directories at 700 and files at 600. Ownership and permission repairs are
best-effort: a failure is logged and start-up continues, leaving the
auditor to report the drift.
"""

from __future__ import annotations

import logging
import os
import shutil
from collections.abc import Iterator
from dataclasses import dataclass
from pathlib import Path
from typing import Final

from .accounts import ServiceAccount
from .config import DevboxConfig
from .fsops import FileOps, OsFileOps

logger: Final[logging.Logger] = logging.getLogger(__name__)

GNUPG_DIR_MODE: Final[int] = 0o700
GNUPG_FILE_MODE: Final[int] = 0o600
AGENT_CONF_NAME: Final[str] = "gpg-agent.conf"
AGENT_CONF_BODY: Final[str] = "allow-loopback-pinentry\n"


@dataclass(frozen=True, slots=True)
class HomeLink:
    """A conventional in-home path that must resolve into the volume."""

    link: Path
    target: Path


@dataclass(frozen=True, slots=True)
class PersistentLayout:
    root: Path
    gnupg: Path
    password_store: Path
    state: Path
    history_file: Path
    ready_file: Path
    home_links: tuple[HomeLink, ...]

    @classmethod
    def from_config(cls, cfg: DevboxConfig) -> PersistentLayout:
        return cls(
            root=cfg.persist_dir,
            gnupg=cfg.gnupg_dir,
            password_store=cfg.store_dir,
            state=cfg.state_dir,
            history_file=cfg.history_file,
            ready_file=cfg.ready_file,
            home_links=(
                HomeLink(cfg.home_dir / ".gnupg", cfg.gnupg_dir),
                HomeLink(cfg.home_dir / ".password-store", cfg.store_dir),
                HomeLink(cfg.home_dir / ".zsh_history", cfg.history_file),
            ),
        )

    @property
    def volume_dirs(self) -> tuple[Path, Path, Path]:
        return (self.gnupg, self.password_store, self.state)

    def ensure_dirs(self) -> None:
        for directory in self.volume_dirs:
            directory.mkdir(parents=True, exist_ok=True)


def _walk(root: Path) -> Iterator[tuple[Path, bool]]:
    """Yield ``(path, is_dir)`` for root and everything below it, no symlink follow."""
    yield root, root.is_dir() and not root.is_symlink()
    for dirpath, dirnames, filenames in os.walk(root):
        base = Path(dirpath)
        for name in dirnames:
            yield base / name, not (base / name).is_symlink()
        for name in filenames:
            yield base / name, False


def _remove_path(path: Path) -> None:
    if path.is_symlink() or path.is_file():
        path.unlink()
    elif path.is_dir():
        shutil.rmtree(path)


class StateLinker:
    """Apply the durable-volume layout for a reconciled account."""

    def __init__(self, layout: PersistentLayout, home_dir: Path, fs: FileOps | None = None) -> None:
        self._layout = layout
        self._home_dir = home_dir
        self._fs = fs or OsFileOps()

    @property
    def layout(self) -> PersistentLayout:
        return self._layout

    def link(self, account: ServiceAccount) -> None:
        """Create volume dirs, repair ownership, relink home paths, lock gnupg."""
        self._layout.ensure_dirs()
        for path in (*self._layout.volume_dirs, self._home_dir):
            self.fix_owner_if_needed(path, account)

        self._layout.history_file.touch(exist_ok=True)
        for home_link in self._layout.home_links:
            self._relink(home_link, account)

        self.lock_down_gnupg(account)

    def fix_owner_if_needed(self, path: Path, account: ServiceAccount) -> None:
        if not path.exists():
            return
        want = (account.uid, account.gid)
        try:
            current = self._fs.owner(path)
        except OSError as exc:
            logger.warning("Cannot stat %s: %s", path, exc)
            return
        if current == want:
            return
        logger.info(
            "Fixing ownership on %s (was %d:%d, want %d:%d)", path, *current, *want
        )
        self._chown_tree(path, account)

    def lock_down_gnupg(self, account: ServiceAccount) -> None:
        gnupg = self._layout.gnupg
        gnupg.mkdir(parents=True, exist_ok=True)
        self._chown_tree(gnupg, account)
        for path, is_dir in _walk(gnupg):
            if path.is_symlink():
                continue
            try:
                self._fs.chmod(path, GNUPG_DIR_MODE if is_dir else GNUPG_FILE_MODE)
            except OSError as exc:
                logger.warning("chmod failed on %s: %s", path, exc)

    def write_agent_config(self, account: ServiceAccount) -> Path:
        """Write gpg-agent.conf enabling loopback pinentry for batch use."""
        conf = self._layout.gnupg / AGENT_CONF_NAME
        conf.write_text(AGENT_CONF_BODY, encoding="utf-8")
        try:
            self._fs.chown(conf, account.uid, account.gid)
            self._fs.chmod(conf, GNUPG_FILE_MODE)
        except OSError as exc:
            logger.warning("Cannot secure %s: %s", conf, exc)
        return conf

    def _relink(self, home_link: HomeLink, account: ServiceAccount) -> None:
        link = home_link.link
        if link.is_symlink() or link.exists():
            _remove_path(link)
        link.parent.mkdir(parents=True, exist_ok=True)
        link.symlink_to(home_link.target)
        try:
            self._fs.chown(link, account.uid, account.gid, follow_symlinks=False)
        except OSError as exc:
            logger.warning("Cannot chown link %s: %s", link, exc)

    def _chown_tree(self, root: Path, account: ServiceAccount) -> None:
        for path, _ in _walk(root):
            try:
                self._fs.chown(path, account.uid, account.gid, follow_symlinks=False)
            except OSError as exc:
                logger.warning("chown failed on %s: %s", path, exc)
