#!/usr/bin/env python3
"""In-container health audit (``validate-dev``).

Re-derives every start-up invariant from first principles: account ids,
shell wiring, volume links and gnupg permissions, writability, the secret key and its
fingerprint, a full ``pass`` round trip, git credential wiring and the
readiness marker. Each check ends as pass, warn or fail; the process exits
1 if and only if at least one check failed.
"""

from __future__ import annotations

import getpass
import logging
import os
import shutil
import time
import uuid
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Final

import typer
from rich.console import Console
from rich.markup import escape

from .config import DevboxConfig
from .errors import CommandError, DevboxError
from .keys import GpgKeyManager, KeyManager, has_secret_record, parse_secret_fingerprint
from .log import configure_logging
from .persistence import GNUPG_DIR_MODE, PersistentLayout
from .process import CommandRunner
from .store import PassStore, SecretStore

logger: Final[logging.Logger] = logging.getLogger(__name__)

GCM_BINARY: Final[Path] = Path("/usr/local/bin/git-credential-manager")
ROUNDTRIP_PREFIX: Final[str] = "validate/roundtrip_"
VERSION_TOOLS: Final[tuple[str, ...]] = (
    "git", "zsh", "gpg", "pass", "starship", "zoxide", "exa", "rg", "fzf", "delta",
)


class Status(Enum):
    PASS = "pass"
    WARN = "warn"
    FAIL = "fail"


_BADGES: Final[dict[Status, str]] = {
    Status.PASS: "[green]✅ OK[/green]  ",
    Status.WARN: "[yellow]⚠️ WARN[/yellow]",
    Status.FAIL: "[red]❌ FAIL[/red]",
}


@dataclass(frozen=True, slots=True)
class Finding:
    section: str
    status: Status
    message: str


@dataclass(slots=True)
class AuditReport:
    findings: list[Finding] = field(default_factory=list)

    def count(self, status: Status) -> int:
        return sum(1 for finding in self.findings if finding.status is status)

    @property
    def passed(self) -> int:
        return self.count(Status.PASS)

    @property
    def warned(self) -> int:
        return self.count(Status.WARN)

    @property
    def failed(self) -> int:
        return self.count(Status.FAIL)

    @property
    def exit_code(self) -> int:
        return 1 if self.failed else 0

    def by_section(self, section: str) -> list[Finding]:
        return [finding for finding in self.findings if finding.section == section]


class SystemInspector:
    """Read-only view of the running process and host used by the checks."""

    def __init__(self, runner: CommandRunner | None = None) -> None:
        self._runner = runner or CommandRunner()

    def user_name(self) -> str:
        return getpass.getuser()

    def uid(self) -> int:
        return os.getuid()

    def gid(self) -> int:
        return os.getgid()

    def cwd(self) -> Path:
        return Path.cwd()

    def pid1(self) -> str:
        try:
            return Path("/proc/1/cmdline").read_bytes().replace(b"\0", b" ").decode().strip()
        except OSError:
            return ""

    def which(self, tool: str) -> str | None:
        return shutil.which(tool)

    def _first_line(self, argv: list[str]) -> str:
        try:
            completed = self._runner.run(argv, check=False)
        except CommandError:
            return ""
        if completed.returncode != 0:
            return ""
        lines = completed.stdout.strip().splitlines()
        return lines[0] if lines else ""

    def git_system_config(self, key: str) -> str:
        return self._first_line(["git", "config", "--system", "--get", key])

    def tool_version(self, tool: str) -> str:
        return self._first_line([tool, "--version"])


class Auditor:
    """Run every check and collect findings; never raises."""

    def __init__(
        self,
        cfg: DevboxConfig,
        *,
        keys: KeyManager,
        store: SecretStore,
        inspector: SystemInspector | None = None,
        environ: Mapping[str, str] | None = None,
        etc_dir: Path = Path("/etc"),
        gcm_binary: Path = GCM_BINARY,
        console: Console | None = None,
    ) -> None:
        self._cfg = cfg
        self._layout = PersistentLayout.from_config(cfg)
        self._keys = keys
        self._store = store
        self._inspector = inspector or SystemInspector()
        self._environ = os.environ if environ is None else environ
        self._etc_dir = etc_dir
        self._gcm_binary = gcm_binary
        self._console = console
        self._report = AuditReport()
        self._section = ""

    # -- recording ---------------------------------------------------------

    def _record(self, status: Status, message: str) -> None:
        finding = Finding(self._section, status, message)
        self._report.findings.append(finding)
        if self._console is not None:
            self._console.print(f"{_BADGES[status]} - {escape(message)}", highlight=False)

    def _ok(self, message: str) -> None:
        self._record(Status.PASS, message)

    def _warn(self, message: str) -> None:
        self._record(Status.WARN, message)

    def _fail(self, message: str) -> None:
        self._record(Status.FAIL, message)

    def _checks(self) -> list[tuple[str, Callable[[], None]]]:
        return [
            ("Identity / Environment", self.check_identity),
            ("PID 1 / tini", self.check_init_process),
            ("Tools present", self.check_tools),
            ("Tool versions (informational)", self.check_tool_versions),
            ("Shell wiring", self.check_shell_wiring),
            ("Persistence wiring", self.check_persistence),
            ("Write tests", self.check_writable),
            ("Timezone sanity", self.check_timezone),
            ("GPG checks", self.check_keys),
            ("pass checks", self.check_store),
            ("Git credential checks", self.check_git_credentials),
            ("Ready marker", self.check_ready_marker),
        ]

    def run(self) -> AuditReport:
        for section, check in self._checks():
            self._section = section
            if self._console is not None:
                self._console.print()
                self._console.print(f"[blue]== {section} ==[/blue]")
            try:
                check()
            except Exception as exc:  # a broken check is a finding, not a crash
                logger.debug("check %s raised", section, exc_info=True)
                self._fail(f"check crashed: {exc}")
        self._summarize()
        return self._report

    def _summarize(self) -> None:
        if self._console is None:
            return
        report = self._report
        self._console.print()
        self._console.print("[blue]== Summary ==[/blue]")
        self._console.print(
            f"Passed: {report.passed} | Warnings: {report.warned} | Failed: {report.failed}"
        )
        if report.failed:
            self._console.print("[red]Validation FAILED[/red] (exit code 1)")
        else:
            self._console.print("[green]Validation PASSED[/green] (exit code 0)")

    # -- checks ------------------------------------------------------------

    def check_identity(self) -> None:
        cfg = self._cfg
        inspector = self._inspector
        user = inspector.user_name()
        if user == cfg.user_name:
            self._ok(f"Running as user '{cfg.user_name}'")
        else:
            self._fail(f"Expected user '{cfg.user_name}', got '{user}'")

        uid, gid = inspector.uid(), inspector.gid()
        self._ok(f"uid={uid} gid={gid}")
        for var, actual in (("USER_ID", uid), ("GROUP_ID", gid)):
            wanted = self._environ.get(var, "")
            if not wanted:
                self._warn(f"{var} not set in environment (skipping strict check)")
            elif wanted == str(actual):
                self._ok(f"{var} matches ({wanted})")
            else:
                self._fail(f"{var} mismatch: env={wanted} actual={actual}")

        cwd = inspector.cwd()
        if cwd == cfg.work_dir:
            self._ok(f"Working directory is {cfg.work_dir}")
        else:
            self._warn(f"Working directory is '{cwd}' (expected {cfg.work_dir})")

        home = self._environ.get("HOME", "")
        if home == str(cfg.home_dir):
            self._ok(f"HOME is {cfg.home_dir}")
        else:
            self._warn(f"HOME is '{home}' (expected {cfg.home_dir})")

        shell = self._environ.get("SHELL", "")
        if shell:
            self._ok(f"SHELL env is '{shell}'")
        else:
            self._warn("SHELL env is unset (not fatal)")

    def check_init_process(self) -> None:
        pid1 = self._inspector.pid1()
        if "tini" in pid1:
            self._ok(f"PID 1 is tini ({pid1})")
        else:
            self._warn(f"PID 1 is '{pid1}' (expected tini)")

    def check_tools(self) -> None:
        for tool in self._cfg.required_tools:
            location = self._inspector.which(tool)
            if location:
                self._ok(f"Found {tool} at {location}")
            else:
                self._fail(f"Missing tool: {tool}")

    def check_tool_versions(self) -> None:
        """Print tool versions; never records a finding."""
        if self._console is None:
            return
        for tool in VERSION_TOOLS:
            version = self._inspector.tool_version(tool) or "unavailable"
            self._console.print(f"• {tool}: {escape(version)}", highlight=False)

    def check_shell_wiring(self) -> None:
        zshrc = self._cfg.home_dir / ".zshrc"
        if zshrc.is_file():
            self._ok(f"{zshrc} exists")
        else:
            self._warn(f"{zshrc} missing")
        for tool in ("starship", "zoxide"):
            if self._inspector.which(tool):
                self._ok(f"{tool} available")

    def check_persistence(self) -> None:
        for home_link in self._layout.home_links:
            link, target = home_link.link, home_link.target
            if not link.is_symlink():
                self._fail(f"{link} is not a symlink")
                continue
            resolved = os.readlink(link)
            if Path(resolved) == target:
                self._ok(f"{link} -> {target}")
            else:
                self._warn(f"{link} points to '{resolved}' (expected '{target}')")

        gnupg = self._layout.gnupg
        if not gnupg.is_dir():
            self._fail(f"{gnupg} directory missing")
            return
        st = gnupg.stat()
        mode = st.st_mode & 0o777
        if mode == GNUPG_DIR_MODE:
            self._ok(f"{gnupg} perms are 700")
        else:
            self._warn(f"{gnupg} perms are {mode:o} (expected 700)")
        want = (self._inspector.uid(), self._inspector.gid())
        if (st.st_uid, st.st_gid) == want:
            self._ok(f"{gnupg} owned by {want[0]}:{want[1]}")
        else:
            self._warn(f"{gnupg} owned by {st.st_uid}:{st.st_gid} (expected {want[0]}:{want[1]})")

    def check_writable(self) -> None:
        token = uuid.uuid4().hex[:12]
        targets = (
            (self._cfg.work_dir / f".container_write_test.{token}", "bind mount permissions?"),
            (self._layout.state / f".persist_write_test.{token}", "volume permissions?"),
        )
        for path, hint in targets:
            try:
                path.touch(exist_ok=False)
            except OSError:
                self._fail(f"Cannot write to {path.parent} ({hint})")
                continue
            path.unlink(missing_ok=True)
            self._ok(f"Write OK: {path}")

    def check_timezone(self) -> None:
        if (self._etc_dir / "localtime").exists():
            self._ok(f"{self._etc_dir / 'localtime'} exists")
        else:
            self._warn(f"{self._etc_dir / 'localtime'} missing (tzdata not installed?)")

        timezone = self._etc_dir / "timezone"
        if timezone.is_file():
            self._ok(f"{timezone} exists: {timezone.read_text(encoding='utf-8').strip()}")
        else:
            self._warn(f"{timezone} missing (not fatal)")

        tz = self._environ.get("TZ", "")
        if tz:
            self._ok(f"TZ env set: {tz}")
        else:
            self._warn("TZ env not set (not fatal)")

    def check_keys(self) -> None:
        gnupg_home = str(self._cfg.gnupg_home)
        self._ok(f"GNUPGHOME is '{gnupg_home}' (effective)")
        inherited = self._environ.get("GNUPGHOME", "")
        if inherited and inherited != gnupg_home:
            self._warn(f"GNUPGHOME from the environment ('{inherited}') is overridden")

        listing = self._keys.list_secret_keys()
        if has_secret_record(listing):
            self._ok("GPG secret key exists")
        else:
            self._fail("No GPG secret key found (no 'sec' records)")

        fingerprint = parse_secret_fingerprint(listing)
        if fingerprint:
            self._ok(f"Extracted secret key fingerprint: {fingerprint}")
        else:
            self._fail("Could not extract secret key fingerprint")

    def check_store(self) -> None:
        self._ok(f"PASSWORD_STORE_DIR is '{self._cfg.store_dir}'")
        if self._store.is_initialized():
            self._ok("pass initialized (.gpg-id exists)")
        else:
            self._fail(".gpg-id missing (pass store not initialized)")

        gpg_id = self._store.gpg_id()
        if gpg_id:
            self._ok(f".gpg-id content: {gpg_id}")
            fingerprint = parse_secret_fingerprint(self._keys.list_secret_keys())
            if fingerprint and fingerprint != gpg_id:
                self._warn(f".gpg-id names {gpg_id} but the first secret key is {fingerprint}")
        else:
            self._fail(".gpg-id is empty")

        self._roundtrip()

    def _roundtrip(self) -> None:
        token = uuid.uuid4().hex[:8]
        name = f"{ROUNDTRIP_PREFIX}{int(time.time())}_{token}"
        value = f"ok-{datetime.now().astimezone().isoformat(timespec='seconds')}-{token}"
        try:
            self._store.insert(name, value)
        except CommandError:
            self._fail("pass insert failed (cannot encrypt?)")
            return
        try:
            self._ok(f"pass insert OK ({name})")
            try:
                read_back = self._store.show(name)
            except CommandError:
                read_back = ""
            if read_back == value:
                self._ok("pass decrypt OK (roundtrip matches)")
            else:
                self._fail(f"pass decrypt mismatch (expected '{value}', got '{read_back}')")
        finally:
            try:
                self._store.remove(name)
            except CommandError as exc:
                self._warn(f"pass rm failed for {name}: {exc}")

    def check_git_credentials(self) -> None:
        for key in ("credential.helper", "credential.credentialStore"):
            value = self._inspector.git_system_config(key)
            if value:
                self._ok(f"git system {key} = {value}")
            else:
                self._warn(f"git system {key} not set")

        if self._gcm_binary.is_file() and os.access(self._gcm_binary, os.X_OK):
            self._ok("git-credential-manager binary exists")
        else:
            self._warn("git-credential-manager binary missing or not executable")

    def check_ready_marker(self) -> None:
        ready = self._layout.ready_file
        if ready.is_file():
            self._ok(f"Ready marker exists ({ready})")
        else:
            self._warn("Ready marker missing (container may still be initializing)")


app = typer.Typer(add_completion=False, help="Validate the running devbox container")


@app.command()
def validate(
    no_color: bool = typer.Option(False, "--no-color", help="Disable colored output"),
) -> None:
    """Run every container check and exit 1 if any failed."""
    configure_logging("validate")
    console = Console(no_color=no_color, highlight=False)
    try:
        cfg = DevboxConfig.from_env()
    except DevboxError as exc:
        console.print(f"[red]❌ FAIL[/red] - {exc}")
        raise typer.Exit(code=1) from exc

    runner = CommandRunner(
        env={"GNUPGHOME": str(cfg.gnupg_home), "PASSWORD_STORE_DIR": str(cfg.store_dir)}
    )
    keys = GpgKeyManager(runner, cfg.gnupg_dir)
    store = PassStore(runner, cfg.store_dir)
    report = Auditor(cfg, keys=keys, store=store, console=console).run()
    raise typer.Exit(code=report.exit_code)


def main() -> None:
    app()


if __name__ == "__main__":
    main()
