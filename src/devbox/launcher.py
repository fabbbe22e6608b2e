#!/usr/bin/env python3
"""Host-side lifecycle launcher for the devbox container.

Usage::

    devbox <command> [workdir]

Every invocation writes a throw-away env file with the caller's UID/GID,
timezone and working directory, then drives ``docker compose`` with it.
"""

from __future__ import annotations

import logging
import os
import shutil
import sys
import tempfile
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Final

import typer
from rich.console import Console

from .errors import CommandError, LauncherError
from .log import configure_logging
from .process import CommandRunner

logger: Final[logging.Logger] = logging.getLogger(__name__)

COMPOSE_FILE_NAMES: Final[tuple[str, ...]] = ("compose.yaml", "compose.yml")
DEFAULT_TZ: Final[str] = "Etc/UTC"

USAGE: Final[str] = """\
Usage:
  devbox <command> [workdir]

Commands:
  up                Build + start devbox (always does --build)
  work              Start devbox for workdir and enter shell (build only if image missing)
  shell             Enter devbox shell as dev user
  status            Print container state + health
  validate          Run validate-dev inside the container
  down              Stop devbox (keeps named volume)
  rebuild           Build --pull + recreate
  rebuild-nocache   Build --no-cache --pull + recreate

Examples:
  devbox work /tmp/unici
  devbox up ~/repo/project
  devbox shell
"""


@dataclass(frozen=True, slots=True)
class LauncherConfig:
    project_dir: Path
    container: str = "devbox"
    image: str = "dev_container:latest"
    user: str = "dev"
    home_dir: str = "/home/dev"
    shell: str = "/bin/zsh"

    @classmethod
    def from_env(cls) -> LauncherConfig:
        raw = os.environ.get("DEVBOX_PROJECT_DIR", "")
        return cls(project_dir=Path(raw).resolve() if raw else Path.cwd())


def detect_compose_file(project_dir: Path) -> Path | None:
    for name in COMPOSE_FILE_NAMES:
        candidate = project_dir / name
        if candidate.is_file():
            return candidate
    return None


def detect_tz(etc_dir: Path = Path("/etc")) -> str:
    try:
        tz = "".join((etc_dir / "timezone").read_text(encoding="utf-8").split())
    except OSError:
        return DEFAULT_TZ
    return tz or DEFAULT_TZ


def resolve_workdir(raw: str | None) -> Path:
    if not raw:
        return Path.cwd()
    return Path(raw).expanduser().resolve()


def render_env_file(uid: int, gid: int, tz: str, workdir: Path) -> str:
    return f"UID={uid}\nGID={gid}\nTZ={tz}\nDEVBOX_WORKDIR={workdir}\n"


class Launcher:
    """Dispatch lifecycle commands to ``docker compose`` and ``docker exec``."""

    def __init__(
        self,
        cfg: LauncherConfig,
        *,
        runner: CommandRunner | None = None,
        which: Callable[[str], str | None] = shutil.which,
        etc_dir: Path = Path("/etc"),
    ) -> None:
        self._cfg = cfg
        self._runner = runner or CommandRunner()
        self._which = which
        self._etc_dir = etc_dir
        self._compose_file: Path | None = None
        self._env_file: Path | None = None
        self._workdir: Path | None = None

    # -- preflight ----------------------------------------------------------

    def preflight(self) -> Path:
        """Return the compose file, or raise when docker/compose are unusable."""
        if self._which("docker") is None:
            raise LauncherError("Missing required command: docker")
        if not self._runner.succeeds(["docker", "compose", "version"]):
            raise LauncherError("'docker compose' not available. Install Docker Compose v2.")
        compose_file = detect_compose_file(self._cfg.project_dir)
        if compose_file is None:
            raise LauncherError(f"No compose.yaml/compose.yml found in: {self._cfg.project_dir}")
        self._compose_file = compose_file
        return compose_file

    @contextmanager
    def env_file(self, workdir: Path) -> Iterator[Path]:
        """Write the per-invocation env file; it is removed when the block exits."""
        uid, gid, tz = os.getuid(), os.getgid(), detect_tz(self._etc_dir)
        fd, name = tempfile.mkstemp(prefix="devbox.env.")
        path = Path(name)
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                handle.write(render_env_file(uid, gid, tz, workdir))
            logger.info("Env: UID=%d GID=%d TZ=%s WORKDIR=%s (envfile=%s)", uid, gid, tz, workdir, path)
            self._env_file = path
            yield path
        finally:
            self._env_file = None
            path.unlink(missing_ok=True)

    # -- docker helpers -----------------------------------------------------

    def compose(self, *args: str) -> None:
        if self._compose_file is None or self._env_file is None:
            raise LauncherError("compose called before preflight/env_file")
        self._runner.run(
            [
                "docker",
                "compose",
                "--env-file",
                str(self._env_file),
                "-f",
                str(self._compose_file),
                "--project-directory",
                str(self._cfg.project_dir),
                *args,
            ],
            capture=False,
        )

    def image_exists(self) -> bool:
        return self._runner.succeeds(["docker", "image", "inspect", self._cfg.image])

    def container_exists(self) -> bool:
        return self._runner.succeeds(["docker", "container", "inspect", self._cfg.container])

    def _inspect(self, template: str) -> str:
        completed = self._runner.run(
            ["docker", "container", "inspect", "-f", template, self._cfg.container], check=False
        )
        return completed.stdout.strip() if completed.returncode == 0 else ""

    def status(self) -> str | None:
        """Return a one-line status summary, or None when the container is absent."""
        if not self.container_exists():
            logger.warning("Container '%s' does not exist yet.", self._cfg.container)
            return None
        state = self._inspect("{{.State.Status}}") or "unknown"
        health = (
            self._inspect("{{if .State.Health}}{{.State.Health.Status}}{{else}}none{{end}}")
            or "none"
        )
        image = self._inspect("{{.Image}}") or "unknown"
        started = self._inspect("{{.State.StartedAt}}") or "unknown"
        line = f"Status: state={state} health={health} image={image} started={started}"
        logger.info("%s", line)
        return line

    def shell_command(self) -> list[str]:
        cfg = self._cfg
        return [
            "docker", "exec", "-it",
            "-u", cfg.user,
            "-e", f"HOME={cfg.home_dir}",
            "-e", f"USER={cfg.user}",
            "-e", f"SHELL={cfg.shell}",
            cfg.container, "zsh", "-l",
        ]

    def validate_command(self) -> list[str]:
        return ["docker", "exec", "-it", self._cfg.container, "validate-dev"]

    # -- commands -----------------------------------------------------------

    def dispatch(self, command: str, workdir: Path) -> list[str] | None:
        """Run ``command``; return an argv to exec afterwards, if any.

        Raises:
            LauncherError: Unknown command or unusable compose setup.
            CommandError: A docker command failed.
        """
        handlers: dict[str, Callable[[], list[str] | None]] = {
            "up": self._up,
            "work": self._work,
            "shell": self.shell_command,
            "status": self._status,
            "validate": self.validate_command,
            "down": lambda: self._compose_only("down"),
            "rebuild": lambda: self._rebuild(no_cache=False),
            "rebuild-nocache": lambda: self._rebuild(no_cache=True),
        }
        handler = handlers.get(command)
        if handler is None:
            raise LauncherError(f"Unknown command: {command} (try --help)")

        self.preflight()
        workdir.mkdir(parents=True, exist_ok=True)
        self._workdir = workdir
        with self.env_file(workdir):
            return handler()

    def _up(self) -> None:
        logger.info("Starting devbox (build+up); mounting: %s -> /work", self._workdir)
        self.compose("up", "-d", "--build")

    def _work(self) -> list[str]:
        logger.info("Starting devbox + entering shell; mounting: %s -> /work", self._workdir)
        if self.image_exists():
            self.compose("up", "-d")
        else:
            logger.warning("Image %s missing; building...", self._cfg.image)
            self.compose("up", "-d", "--build")
        return self.shell_command()

    def _status(self) -> None:
        self.status()

    def _compose_only(self, *args: str) -> None:
        self.compose(*args)

    def _rebuild(self, no_cache: bool) -> None:
        self.status()
        build = ["build", "--no-cache", "--pull"] if no_cache else ["build", "--pull"]
        self.compose(*build)
        self.compose("up", "-d", "--force-recreate")


app = typer.Typer(add_completion=False, help="Drive the devbox container lifecycle")
err_console = Console(stderr=True, highlight=False)


@app.command(context_settings={"help_option_names": []})
def run(
    command: str = typer.Argument("", help="up|work|shell|status|validate|down|rebuild|rebuild-nocache"),
    workdir: str = typer.Argument("", help="Directory mounted at /work (default: cwd)"),
    show_help: bool = typer.Option(False, "-h", "--help", is_eager=True, help="Show usage and exit"),
) -> None:
    """Run a devbox lifecycle command."""
    configure_logging("devbox")
    if show_help or command in ("", "help"):
        typer.echo(USAGE)
        raise typer.Exit(code=0 if show_help or command else 1)

    launcher = Launcher(LauncherConfig.from_env())
    try:
        follow_up = launcher.dispatch(command, resolve_workdir(workdir))
    except LauncherError as exc:
        err_console.print(f"[devbox] ERROR: {exc}", markup=False)
        raise typer.Exit(code=1) from exc
    except CommandError as exc:
        err_console.print(f"[devbox] ERROR: {exc}", markup=False)
        raise typer.Exit(code=exc.returncode or 1) from exc

    if follow_up:
        sys.stdout.flush()
        CommandRunner().exec(follow_up)


def main() -> None:
    app()


if __name__ == "__main__":
    main()
