"""Async wrappers for running external commands (docker, kurtosis, forge)."""

from __future__ import annotations

import asyncio
import os
from dataclasses import dataclass
from pathlib import Path

from bridgenet.exceptions import CommandError
from bridgenet.logging import get_logger

logger = get_logger("shell")


@dataclass
class CommandResult:
    """Captured output of a finished command."""

    command: list[str]
    returncode: int
    stdout: str
    stderr: str

    @property
    def ok(self) -> bool:
        return self.returncode == 0


async def run_command(
    cmd: list[str],
    timeout: float | None = 120.0,
    check: bool = True,
    cwd: str | Path | None = None,
    env: dict[str, str] | None = None,
) -> CommandResult:
    """Run a command and capture its output.

    Args:
        cmd: Command and arguments
        timeout: Seconds before the command is killed, ``None`` for no limit
        check: Raise on non-zero exit
        cwd: Working directory
        env: Extra environment variables layered over the current environment

    Returns:
        CommandResult with decoded stdout and stderr

    Raises:
        CommandError: If the command cannot be started, times out, or exits
            non-zero while ``check`` is set
    """
    logger.debug(f"Running: {' '.join(cmd)}")
    full_env = {**os.environ, **env} if env else None

    try:
        proc = await asyncio.create_subprocess_exec(
            *cmd,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            cwd=str(cwd) if cwd else None,
            env=full_env,
        )
    except FileNotFoundError as e:
        raise CommandError(f"Command not found: {cmd[0]}", cmd, None, str(e)) from e

    try:
        stdout, stderr = await asyncio.wait_for(proc.communicate(), timeout=timeout)
    except TimeoutError as e:
        await _kill(proc)
        raise CommandError(f"Command timed out after {timeout}s: {' '.join(cmd)}", cmd, None) from e
    except asyncio.CancelledError:
        await _kill(proc)
        raise

    result = CommandResult(
        command=cmd,
        returncode=proc.returncode if proc.returncode is not None else -1,
        stdout=stdout.decode(errors="replace"),
        stderr=stderr.decode(errors="replace"),
    )

    if check and not result.ok:
        raise CommandError(
            f"Command failed with exit code {result.returncode}: {' '.join(cmd)}",
            cmd,
            result.returncode,
            result.stderr.strip(),
        )
    return result


async def _kill(proc: asyncio.subprocess.Process) -> None:
    if proc.returncode is None:
        logger.debug(f"Killing pid {proc.pid}")
        proc.kill()
    await proc.wait()
