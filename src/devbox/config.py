"""Immutable start-up configuration for the devbox container.

Values come from three layers, lowest precedence first:

- the dataclass defaults below,
- an optional YAML file named by ``DEVBOX_CONFIG`` (keys mirror the field
  names, e.g. ``user_id: 1500``),
- the container environment (``USER_ID``, ``GROUP_ID``, ``PERSIST_DIR``,
  ``PASSWORD_STORE_DIR``, ``GPG_NAME``, ``GPG_EMAIL``, ``GPG_PASSPHRASE``,
  ``GERRIT_HOST``, ``GERRIT_USERNAME``, ``GERRIT_PAT``).

Environment Variables:
- DEVBOX_CONFIG: Path to the YAML defaults file (optional)
- DEVBOX_LOG_LEVEL: Log level for the console scripts (default: INFO)
"""

from __future__ import annotations

import os
from collections.abc import Mapping
from dataclasses import dataclass, field, fields, replace
from pathlib import Path
from typing import Any, Final, cast

import yaml

from .errors import PreconditionError

DEFAULT_USER: Final[str] = "dev"
DEFAULT_UID: Final[int] = 1000
DEFAULT_GID: Final[int] = 1000
DEFAULT_PERSIST_DIR: Final[Path] = Path("/persist")
RELOCATION_UID_FLOOR: Final[int] = 2000
READY_FILE_NAME: Final[str] = "devbox_ready"
HISTORY_FILE_NAME: Final[str] = "zsh_history"

# Environment variable -> dataclass field
_ENV_FIELDS: Final[dict[str, str]] = {
    "USER_ID": "user_id",
    "GROUP_ID": "group_id",
    "PERSIST_DIR": "persist_dir",
    "PASSWORD_STORE_DIR": "password_store_dir",
    "GPG_NAME": "gpg_name",
    "GPG_EMAIL": "gpg_email",
    "GPG_PASSPHRASE": "gpg_passphrase",
    "GERRIT_HOST": "gerrit_host",
    "GERRIT_USERNAME": "gerrit_username",
    "GERRIT_PAT": "gerrit_pat",
}

_INT_FIELDS: Final[frozenset[str]] = frozenset({"user_id", "group_id", "uid_floor"})
_PATH_FIELDS: Final[frozenset[str]] = frozenset(
    {"home_dir", "persist_dir", "password_store_dir", "work_dir"}
)


def _parse_id(name: str, raw: Any) -> int:
    try:
        value = int(str(raw).strip(), 10)
    except ValueError as exc:
        raise PreconditionError(f"{name} must be a non-negative integer, got {raw!r}") from exc
    if value < 0:
        raise PreconditionError(f"{name} must be a non-negative integer, got {raw!r}")
    return value


def _load_yaml(path: Path) -> dict[str, Any]:
    raw_data = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
    if not isinstance(raw_data, dict):
        raise PreconditionError(f"devbox config root must be a mapping: {path}")
    return cast("dict[str, Any]", raw_data)


@dataclass(frozen=True, slots=True)
class DevboxConfig:
    """Everything the entrypoint and auditor need to know about the box.

    Attributes:
        user_name: Fixed service account baked into the image
        home_dir: Home directory of the service account
        user_id: Requested uid for the service account
        group_id: Requested primary gid for the service account
        persist_dir: Root of the durable volume
        password_store_dir: Secret store root (defaults under persist_dir)
        gpg_name: Real name used when a key has to be generated
        gpg_email: Email used when a key has to be generated
        gpg_passphrase: Key passphrase; empty means an unprotected key
        gerrit_host: Code-review host to pre-seed git credentials for
        gerrit_username: Username for the pre-seeded credential
        gerrit_pat: Access token for the pre-seeded credential
        work_dir: Bind-mounted working directory
        shell: Login shell used when no command is given
        uid_floor: Lowest uid considered when relocating a colliding account
        required_tools: Commands the auditor expects on PATH
    """

    user_name: str = DEFAULT_USER
    home_dir: Path = Path("/home") / DEFAULT_USER
    user_id: int = DEFAULT_UID
    group_id: int = DEFAULT_GID
    persist_dir: Path = DEFAULT_PERSIST_DIR
    password_store_dir: Path | None = None
    gpg_name: str = "Dev User"
    gpg_email: str = "dev@example.com"
    gpg_passphrase: str = field(default="", repr=False)
    gerrit_host: str = ""
    gerrit_username: str = ""
    gerrit_pat: str = field(default="", repr=False)
    work_dir: Path = Path("/work")
    shell: str = "zsh"
    uid_floor: int = RELOCATION_UID_FLOOR
    required_tools: tuple[str, ...] = (
        "git", "zsh", "tmux", "nvim", "rg", "fzf", "cargo", "pass", "gpg", "ssh",
        "curl", "exa", "starship", "zoxide", "bat", "fd", "delta",
    )

    @property
    def store_dir(self) -> Path:
        return self.password_store_dir or self.persist_dir / "password-store"

    @property
    def gnupg_dir(self) -> Path:
        return self.persist_dir / "gnupg"

    @property
    def state_dir(self) -> Path:
        return self.persist_dir / "state"

    @property
    def ready_file(self) -> Path:
        return self.state_dir / READY_FILE_NAME

    @property
    def history_file(self) -> Path:
        return self.state_dir / HISTORY_FILE_NAME

    @property
    def gnupg_home(self) -> Path:
        """GNUPGHOME as seen by the account (the home-directory link)."""
        return self.home_dir / ".gnupg"

    def with_overrides(self, values: Mapping[str, Any]) -> DevboxConfig:
        """Return a copy with the given field values coerced and applied."""
        known = {f.name for f in fields(self)}
        changes: dict[str, Any] = {}
        for key, raw in values.items():
            if key not in known:
                raise PreconditionError(f"Unknown devbox config key: {key}")
            if raw is None:
                continue
            if key in _INT_FIELDS:
                changes[key] = _parse_id(key, raw)
            elif key in _PATH_FIELDS:
                changes[key] = Path(str(raw))
            elif key == "required_tools":
                changes[key] = tuple(str(tool) for tool in raw)
            else:
                changes[key] = str(raw)
        return replace(self, **changes)

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> DevboxConfig:
        """Build the configuration from the YAML defaults file and environment.

        Empty environment values are ignored except for ``GPG_PASSPHRASE``,
        where empty is meaningful but identical to the default.
        """
        env = os.environ if environ is None else environ
        cfg = cls()

        config_path = env.get("DEVBOX_CONFIG", "").strip()
        if config_path:
            path = Path(config_path)
            if not path.is_file():
                raise PreconditionError(f"DEVBOX_CONFIG points at a missing file: {path}")
            cfg = cfg.with_overrides(_load_yaml(path))

        overrides = {
            name: env[var] for var, name in _ENV_FIELDS.items() if env.get(var, "") != ""
        }
        return cfg.with_overrides(overrides)
