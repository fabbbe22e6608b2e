"""End-to-end start-up scenarios on in-memory fakes."""

from __future__ import annotations

import os
from dataclasses import replace
from pathlib import Path

import pytest

import devbox.entrypoint as entrypoint_module
from devbox.bootstrap import BootstrapState
from devbox.errors import PreconditionError, ReconcileError
from devbox.readiness import ReadinessMarker


def test_fresh_volume(make_entrypoint, cfg, keys, store) -> None:
    result = make_entrypoint().reconcile()

    assert (result.account.uid, result.account.gid) == (1000, 1000)
    assert result.bootstrap.generated_key
    assert result.bootstrap.initialized_store
    assert store.gpg_id() == keys.fingerprints[0]
    assert cfg.ready_file.is_file()
    assert Path(os.readlink(cfg.home_dir / ".gnupg")) == cfg.gnupg_dir
    assert (cfg.gnupg_dir / "gpg-agent.conf").is_file()


def test_restart_is_idempotent(make_entrypoint, cfg, keys, store) -> None:
    entrypoint = make_entrypoint()
    first = entrypoint.reconcile()

    second = entrypoint.reconcile()

    assert len(keys.generated) == 1
    assert store.inits == [first.bootstrap.fingerprint]
    assert second.bootstrap.fingerprint == first.bootstrap.fingerprint
    assert second.bootstrap.visited[-1] is BootstrapState.STORE_READY
    assert cfg.ready_file.is_file()


def test_remap_with_collision(make_entrypoint, cfg, accounts, fs, keys) -> None:
    first = make_entrypoint().reconcile()
    accounts.users["svc"] = (1500, 1500)
    accounts.groups["svc"] = 1500
    remapped = replace(cfg, user_id=1500, group_id=1500)

    result = make_entrypoint(cfg=remapped).reconcile()

    assert (result.account.uid, result.account.gid) == (1500, 1500)
    assert accounts.users["svc"][0] >= 2000
    assert fs.owners[remapped.gnupg_dir] == (1500, 1500)
    assert len(keys.generated) == 1
    assert result.bootstrap.fingerprint == first.bootstrap.fingerprint
    assert remapped.ready_file.is_file()


def test_not_root_is_rejected_before_any_change(make_entrypoint, cfg, accounts) -> None:
    entrypoint = make_entrypoint(is_root=lambda: False)

    with pytest.raises(PreconditionError, match="must run as root"):
        entrypoint.reconcile()

    assert accounts.calls == []
    assert not cfg.persist_dir.exists()


def test_stale_marker_is_cleared_on_failure(make_entrypoint, cfg, keys) -> None:
    cfg.state_dir.mkdir(parents=True)
    cfg.ready_file.touch()
    keys.fail_generate = True

    with pytest.raises(ReconcileError):
        make_entrypoint().reconcile()

    assert not cfg.ready_file.exists()


def test_marker_absent_while_bootstrapping(make_entrypoint, cfg, keys) -> None:
    cfg.state_dir.mkdir(parents=True)
    cfg.ready_file.touch()
    seen: list[bool] = []
    keys.on_generate = lambda: seen.append(cfg.ready_file.exists())

    make_entrypoint().reconcile()

    assert seen == [False]
    assert cfg.ready_file.is_file()


def test_missing_account_leaves_no_marker(make_entrypoint, cfg, accounts) -> None:
    del accounts.users["dev"]

    with pytest.raises(PreconditionError):
        make_entrypoint().reconcile()

    assert not cfg.ready_file.exists()


def test_gerrit_seeding_runs_as_account_after_marker(make_entrypoint, cfg, runner) -> None:
    seeded = replace(cfg, gerrit_host="review.example.com", gerrit_username="me", gerrit_pat="tok")
    recorded: list[str] = []

    class AccountRunner(type(runner)):
        def run(self, argv, **kwargs):
            recorded.append(f"{argv[0]}:{seeded.ready_file.exists()}")
            return super().run(argv, **kwargs)

    account_runner = AccountRunner()
    runner.as_user = lambda user, env=None: account_runner

    make_entrypoint(cfg=seeded).reconcile()

    assert recorded == ["git:True", "git:True"]
    assert account_runner.inputs[-1].startswith("protocol=https\nhost=review.example.com\n")


def test_handoff_command_defaults_to_login_shell(make_entrypoint) -> None:
    entrypoint = make_entrypoint()

    assert entrypoint.handoff_command([]) == ["zsh", "-l"]
    assert entrypoint.handoff_command(["tmux", "new"]) == ["tmux", "new"]


def test_account_env_points_into_home(make_entrypoint, cfg) -> None:
    env = make_entrypoint().account_env()

    assert env == {
        "HOME": str(cfg.home_dir),
        "USER": "dev",
        "GNUPGHOME": str(cfg.home_dir / ".gnupg"),
        "PASSWORD_STORE_DIR": str(cfg.store_dir),
    }


def test_readiness_marker_roundtrip(tmp_path, fs) -> None:
    marker = ReadinessMarker(tmp_path / "state" / "devbox_ready", fs)
    assert not marker.is_ready()

    marker.publish(1500, 1500)
    assert marker.is_ready()
    assert fs.owners[marker.path] == (1500, 1500)

    marker.clear()
    marker.clear()
    assert not marker.is_ready()


def test_run_hands_off_to_login_shell_as_account(make_entrypoint, runner) -> None:
    users: list[str] = []
    execs: list[list[str]] = []

    class ExecRecorder(type(runner)):
        def exec(self, argv) -> None:
            execs.append(list(argv))

    recorder = ExecRecorder()

    def as_user(user, env=None):
        users.append(user)
        return recorder

    runner.as_user = as_user

    make_entrypoint().run([])

    assert execs == [["zsh", "-l"]]
    assert set(users) == {"dev"}


def test_marker_is_cleared_before_volume_dirs_are_created(make_entrypoint, cfg) -> None:
    cfg.state_dir.mkdir(parents=True)
    cfg.ready_file.touch()
    cfg.gnupg_dir.write_text("not a directory", encoding="utf-8")

    with pytest.raises(OSError):
        make_entrypoint().reconcile()

    assert not cfg.ready_file.exists()


@pytest.fixture
def entrypoint_env(monkeypatch, tmp_path):
    monkeypatch.delenv("DEVBOX_CONFIG", raising=False)
    monkeypatch.setenv("PERSIST_DIR", str(tmp_path / "persist"))
    return monkeypatch


def _error_lines(stderr: str) -> list[str]:
    return [line for line in stderr.splitlines() if "[entrypoint] ERROR:" in line]


def test_main_reports_precondition_as_one_line(entrypoint_env, capsys) -> None:
    entrypoint_env.setattr(entrypoint_module, "_is_root", lambda: False)

    with pytest.raises(SystemExit) as excinfo:
        entrypoint_module.main([])

    assert excinfo.value.code == 1
    err = capsys.readouterr().err
    assert _error_lines(err) == [
        "[entrypoint] ERROR: entrypoint must run as root. Do not use --user or compose 'user:'."
    ]
    assert "Traceback" not in err


def test_main_reports_filesystem_error_as_one_line(entrypoint_env, capsys, tmp_path) -> None:
    blocked = tmp_path / "persist-file"
    blocked.write_text("", encoding="utf-8")
    entrypoint_env.setenv("PERSIST_DIR", str(blocked))
    entrypoint_env.setattr(entrypoint_module, "_is_root", lambda: True)

    with pytest.raises(SystemExit) as excinfo:
        entrypoint_module.main([])

    assert excinfo.value.code == 1
    err = capsys.readouterr().err
    (line,) = _error_lines(err)
    assert str(blocked) in line
    assert "Traceback" not in err
