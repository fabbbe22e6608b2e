"""Tests for Gerrit credential pre-seeding."""

from __future__ import annotations

from devbox.credentials import credential_payload, seed_gerrit_credentials
from fakes import RecordingRunner


def test_payload_format() -> None:
    assert credential_payload("review.example.com", "me", "tok") == (
        "protocol=https\nhost=review.example.com\nusername=me\npassword=tok\n\n"
    )


def test_no_host_is_a_noop() -> None:
    runner = RecordingRunner()

    assert seed_gerrit_credentials(runner, "", "me", "tok") is False
    assert runner.calls == []


def test_host_without_token_only_configures_path() -> None:
    runner = RecordingRunner()

    assert seed_gerrit_credentials(runner, "review.example.com", "me", "") is False
    assert runner.calls == [
        ["git", "config", "--global", "credential.https://review.example.com.useHttpPath", "true"]
    ]


def test_full_seed() -> None:
    runner = RecordingRunner()

    assert seed_gerrit_credentials(runner, "review.example.com", "me", "tok") is True
    assert runner.calls[-1] == ["git", "credential", "approve"]
    assert runner.inputs[-1] == credential_payload("review.example.com", "me", "tok")


def test_failures_never_propagate() -> None:
    runner = RecordingRunner(returncodes={("git",): 128})

    assert seed_gerrit_credentials(runner, "review.example.com", "me", "tok") is False
    assert len(runner.calls) == 2
