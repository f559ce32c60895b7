"""Run a command with the agent container's secrets injected into its env."""

from __future__ import annotations

import subprocess
from typing import Any

from .executors import LAUNCH_FAILURE_EXIT_CODE, build_subprocess_env
from .logging_utils import AgentLogger, mask_secret


def run_with_secrets(client: Any, agent_id: str, command: list[str], *, logger: AgentLogger) -> int:
    """Fetch secrets, launch ``command`` with them and return its exit code.

    Secrets only ever live in the child's environment; nothing touches disk.
    Raises ``APIError`` when the secrets cannot be fetched.
    """
    if not command:
        raise ValueError("no command given")
    secrets = client.fetch_secrets(agent_id, command[0]).env
    for name in sorted(secrets):
        logger.debug("injecting secret", name=name, value=mask_secret(secrets[name]))
    logger.info("launching command with secrets", command=command[0], secrets=len(secrets))
    logger.flush()
    try:
        completed = subprocess.run(command, env=build_subprocess_env(secrets), check=False)
    except FileNotFoundError:
        logger.error("command not found", command=command[0])
        return LAUNCH_FAILURE_EXIT_CODE
    if completed.returncode < 0:
        return 128 - completed.returncode
    return completed.returncode
