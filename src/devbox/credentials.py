"""Optional git credential pre-seeding for a single code-review host."""

from __future__ import annotations

import logging
from typing import Final

from .errors import CommandError
from .process import CommandRunner

logger: Final[logging.Logger] = logging.getLogger(__name__)


def credential_payload(host: str, username: str, token: str) -> str:
    """Render the ``git credential approve`` stdin block."""
    return f"protocol=https\nhost={host}\nusername={username}\npassword={token}\n\n"


def seed_gerrit_credentials(runner: CommandRunner, host: str, username: str, token: str) -> bool:
    """Configure per-path credentials for ``host`` and store the token if given.

    Returns True when a credential was handed to git. Failures are logged
    and never propagate.
    """
    if not host:
        return False
    try:
        runner.run(["git", "config", "--global", f"credential.https://{host}.useHttpPath", "true"])
        logger.info("Configured useHttpPath for https://%s", host)
    except CommandError as exc:
        logger.warning("Cannot configure useHttpPath for %s: %s", host, exc)

    if not (username and token):
        return False
    logger.info("Seeding Gerrit HTTPS credentials for %s (%s)", host, username)
    try:
        runner.run(["git", "credential", "approve"], input=credential_payload(host, username, token))
    except CommandError as exc:
        logger.warning("git credential approve failed for %s: %s", host, exc.returncode)
        return False
    return True
