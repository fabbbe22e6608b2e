#!/usr/bin/env python3
"""Image and compose wiring checks for the devbox container."""

from __future__ import annotations

from pathlib import Path

import yaml

REPO_ROOT = Path(__file__).resolve().parents[1]


def _instructions() -> list[str]:
    contents = (REPO_ROOT / "Dockerfile").read_text(encoding="utf-8").splitlines()
    return [line.strip() for line in contents if line.strip() and not line.lstrip().startswith("#")]


def test_dockerfile_declares_base_image() -> None:
    lines = _instructions()
    assert any(line.upper().startswith("FROM ") for line in lines), "Dockerfile missing FROM"


def test_entrypoint_runs_under_tini() -> None:
    entrypoints = [line for line in _instructions() if line.startswith("ENTRYPOINT")]
    assert entrypoints == ['ENTRYPOINT ["/usr/bin/tini", "--", "/usr/local/bin/devbox-entrypoint"]']


def test_healthcheck_polls_ready_marker() -> None:
    text = (REPO_ROOT / "Dockerfile").read_text(encoding="utf-8")
    assert "HEALTHCHECK" in text
    assert "/persist/state/devbox_ready" in text


def test_compose_mounts_work_and_volume() -> None:
    compose = yaml.safe_load((REPO_ROOT / "compose.yaml").read_text(encoding="utf-8"))
    service = compose["services"]["devbox"]

    assert any(str(volume).startswith("${DEVBOX_WORKDIR") and str(volume).endswith(":/work") for volume in service["volumes"])
    assert any(str(volume).endswith(":/persist") for volume in service["volumes"])
    assert "user" not in service
