"""Kurtosis CLI helpers for the chain-B enclave."""

from __future__ import annotations

from pydantic import BaseModel, Field

from bridgenet.launcher_types import Conflict
from bridgenet.logging import get_logger
from bridgenet.shell import run_command

logger = get_logger("kurtosis")

EL_SERVICE = "el-1-reth-lodestar"
CL_SERVICE = "cl-1-lodestar-reth"


class PortInfo(BaseModel):
    number: int
    transport: str = "TCP"


class ServiceInfo(BaseModel):
    """Subset of ``kurtosis service inspect -o json`` output."""

    name: str = ""
    public_ports: dict[str, PortInfo] = Field(default_factory=dict)


def enclave_name(env_id: str) -> str:
    return f"eth-{env_id}"


async def list_enclaves() -> list[str]:
    """Return enclave names from ``kurtosis enclave ls``."""
    result = await run_command(["kurtosis", "enclave", "ls"], timeout=30)
    names = []
    for line in result.stdout.splitlines()[1:]:
        parts = line.split()
        if len(parts) >= 2:
            names.append(parts[1])
    return names


async def enclave_exists(name: str) -> bool:
    return name in await list_enclaves()


async def run_enclave(name: str, package: str, args_file: str, timeout: float = 900.0) -> None:
    logger.info(f"Starting kurtosis enclave {name}")
    await run_command(
        ["kurtosis", "run", "--enclave", name, package, "--args-file", args_file],
        timeout=timeout,
    )


async def remove_enclave(name: str) -> None:
    result = await run_command(["kurtosis", "enclave", "rm", "-f", name], timeout=120, check=False)
    if not result.ok:
        logger.debug(f"Enclave {name} not removed: {result.stderr.strip()}")


async def inspect_service(enclave: str, service: str) -> ServiceInfo:
    result = await run_command(["kurtosis", "service", "inspect", enclave, service, "-o", "json"], timeout=30)
    return ServiceInfo.model_validate_json(result.stdout)


async def service_port(enclave: str, service: str, port_name: str) -> int:
    info = await inspect_service(enclave, service)
    try:
        return info.public_ports[port_name].number
    except KeyError:
        raise ValueError(f"Service {service} in {enclave} has no public port {port_name!r}") from None


class EnclaveProbe:
    """Reports an existing kurtosis enclave for the environment."""

    kind = "enclave"

    async def find_conflicts(self, env_id: str) -> list[Conflict]:
        name = enclave_name(env_id)
        if await enclave_exists(name):
            return [Conflict(self.kind, name, f"kurtosis enclave rm -f {name}")]
        return []
