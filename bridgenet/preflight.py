"""Checks for the external tools a launch needs."""

from __future__ import annotations

from bridgenet.exceptions import CommandError, DependencyError
from bridgenet.logging import get_logger
from bridgenet.shell import run_command

logger = get_logger("preflight")

KURTOSIS_HINT = "Install from: https://docs.kurtosis.com/install"
DOCKER_HINT = "Start the Docker daemon."
FORGE_HINT = "Install from: https://book.getfoundry.sh/getting-started/installation"


async def _probe(cmd: list[str]) -> bool:
    try:
        result = await run_command(cmd, timeout=30, check=False)
    except CommandError as e:
        logger.debug(f"{cmd[0]} check failed: {e}")
        return False
    if not result.ok:
        logger.debug(f"{cmd[0]} check failed: {result.stderr.strip()}")
        return False
    logger.debug(f"{cmd[0]}: {result.stdout.strip().splitlines()[0] if result.stdout.strip() else 'ok'}")
    return True


async def kurtosis_installed() -> bool:
    return await _probe(["kurtosis", "version"])


async def docker_running() -> bool:
    return await _probe(["docker", "system", "info"])


async def forge_installed() -> bool:
    return await _probe(["forge", "--version"])


async def check_dependencies(
    skip_docker: bool = False,
    skip_kurtosis: bool = False,
    skip_forge: bool = False,
) -> None:
    """Verify every required tool is available.

    Raises:
        DependencyError: For the first missing tool, with an install hint
    """
    if not skip_kurtosis and not await kurtosis_installed():
        raise DependencyError(f"Kurtosis CLI not found. {KURTOSIS_HINT}", "kurtosis", KURTOSIS_HINT)

    if not skip_docker and not await docker_running():
        raise DependencyError(f"Docker is not running. {DOCKER_HINT}", "docker", DOCKER_HINT)

    if not skip_forge and not await forge_installed():
        raise DependencyError(f"Forge binary not found. {FORGE_HINT}", "forge", FORGE_HINT)
