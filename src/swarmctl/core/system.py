"""Local command execution.

Commands are tokenized with ``shlex`` and executed without a shell; wrap a
pipeline in ``sh -c '...'`` when shell features are needed.
"""

from __future__ import annotations

import asyncio
import logging
import os
import shlex
from collections.abc import Mapping
from dataclasses import dataclass
from pathlib import Path

from swarmctl.core.result import Err, Ok, Result, SystemResourceError

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class CommandResult:
    """Result of a command execution."""

    returncode: int
    stdout: str
    stderr: str

    @property
    def ok(self) -> bool:
        return self.returncode == 0

    def tail(self, lines: int = 20) -> str:
        """Last lines of combined output, for failure details."""
        combined = "\n".join(part for part in (self.stdout.strip(), self.stderr.strip()) if part)
        return "\n".join(combined.splitlines()[-lines:])


async def run_command(
    command: str,
    cwd: Path,
    *,
    env: Mapping[str, str] | None = None,
    timeout: float | None = None,
) -> Result[CommandResult, SystemResourceError]:
    """Run ``command`` in ``cwd`` and capture its output.

    Args:
        command: Command line, split with shlex
        cwd: Working directory
        env: Extra environment variables layered over the current environment
        timeout: Seconds before the process is killed

    Returns:
        Ok(CommandResult) whenever the process ran, whatever its exit code;
        Err(SystemResourceError) if it could not start or timed out
    """
    try:
        tokens = shlex.split(command)
    except ValueError as exc:
        return Err(
            SystemResourceError(
                "Failed to parse command", context={"command": command, "error": str(exc)}
            )
        )
    if not tokens:
        return Err(SystemResourceError("Invalid command", context={"command": command}))

    full_env = {**os.environ, **env} if env is not None else None
    try:
        proc = await asyncio.create_subprocess_exec(
            *tokens,
            cwd=cwd,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            stdin=asyncio.subprocess.DEVNULL,
            env=full_env,
        )
    except FileNotFoundError as exc:
        return Err(SystemResourceError("Command not found", context={"error": str(exc), "cmd": tokens[0]}))
    except OSError as exc:
        return Err(
            SystemResourceError("Failed to start command", context={"error": str(exc), "cmd": tokens[0]})
        )

    try:
        stdout_bytes, stderr_bytes = await asyncio.wait_for(proc.communicate(), timeout=timeout)
    except TimeoutError:
        proc.kill()
        await proc.communicate()
        logger.warning("Command timed out after %ss: %s", timeout, command)
        return Err(
            SystemResourceError(
                f"Command timed out after {timeout}s", context={"cmd": tokens[0]}
            )
        )

    return Ok(
        CommandResult(
            returncode=proc.returncode or 0,
            stdout=stdout_bytes.decode(errors="replace"),
            stderr=stderr_bytes.decode(errors="replace"),
        )
    )


__all__ = ["CommandResult", "run_command"]
