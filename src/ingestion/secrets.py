"""
Secret resolution for adapters.

Secrets are looked up by name through an external command configured in
``SECRET_COMMAND`` (invoked as ``<command> <name>``), or, when no command is
configured, from ``INGEST_SECRET_<NAME>`` environment variables.

The command runs as an asyncio subprocess so a slow secret store never
stalls the event loop that serves every other source.
"""

import asyncio
import logging
import os
import re
import shlex

from src.config.settings import get_settings
from src.ingestion.errors import SecretNotFoundError

logger = logging.getLogger(__name__)


def _env_var_name(name: str) -> str:
    return "INGEST_SECRET_" + re.sub(r"[^A-Za-z0-9]", "_", name).upper()


async def _run_secret_command(command: str, name: str, timeout: float) -> str:
    cmd = shlex.split(command) + [name]
    try:
        proc = await asyncio.create_subprocess_exec(
            *cmd,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
    except OSError as e:
        raise SecretNotFoundError(f'Failed to get secret "{name}": {e}') from e

    try:
        stdout, stderr = await asyncio.wait_for(proc.communicate(), timeout=timeout)
    except asyncio.TimeoutError as e:
        proc.kill()
        await proc.wait()
        raise SecretNotFoundError(
            f'Failed to get secret "{name}": command timed out after {timeout}s'
        ) from e

    if proc.returncode != 0:
        detail = stderr.decode(errors="replace").strip()
        logger.warning(f"Secret command exited with {proc.returncode} for {name}: {detail}")
        raise SecretNotFoundError(
            f'Failed to get secret "{name}": command exited with {proc.returncode}'
        )
    return stdout.decode(errors="replace").strip()


async def get_secret(name: str) -> str:
    """
    Resolve a named secret.

    Raises:
        SecretNotFoundError: When the secret is missing or empty
    """
    settings = get_settings()

    if settings.secret_command:
        value = await _run_secret_command(
            settings.secret_command, name, settings.secret_command_timeout_seconds
        )
    else:
        value = os.environ.get(_env_var_name(name), "").strip()

    if not value:
        raise SecretNotFoundError(
            f'Secret "{name}" is not configured (set {_env_var_name(name)} or SECRET_COMMAND)'
        )
    return value
