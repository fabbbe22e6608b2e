"""Ownership and permission operations behind a small injectable seam."""

from __future__ import annotations

import os
from pathlib import Path
from typing import Protocol


class FileOps(Protocol):
    """Privileged filesystem mutations used during reconciliation."""

    def chown(self, path: Path, uid: int, gid: int, *, follow_symlinks: bool = True) -> None: ...

    def chmod(self, path: Path, mode: int) -> None: ...

    def owner(self, path: Path) -> tuple[int, int]: ...


class OsFileOps:
    """FileOps backed by the running kernel."""

    def chown(self, path: Path, uid: int, gid: int, *, follow_symlinks: bool = True) -> None:
        if follow_symlinks:
            os.chown(path, uid, gid)
        else:
            os.lchown(path, uid, gid)

    def chmod(self, path: Path, mode: int) -> None:
        os.chmod(path, mode)

    def owner(self, path: Path) -> tuple[int, int]:
        st = path.lstat()
        return st.st_uid, st.st_gid
