"""Docker CLI helpers and resource probes.

All calls shell out to the ``docker`` binary through
:func:`bridgenet.shell.run_command`.
"""

from __future__ import annotations

import json
from collections.abc import Callable

from bridgenet.launcher_types import Conflict
from bridgenet.logging import get_logger
from bridgenet.shell import run_command

logger = get_logger("docker")


def chain_a_prefix(env_id: str) -> str:
    return f"bridgenet-{env_id}-"


def relayer_prefix(env_id: str) -> str:
    return f"relayer-{env_id}-"


def network_name(env_id: str) -> str:
    return f"bridgenet-net-{env_id}"


def _label_args(labels: dict[str, str] | None) -> list[str]:
    args: list[str] = []
    for key, value in (labels or {}).items():
        args.extend(["--label", f"{key}={value}"])
    return args


async def list_containers(
    name_prefix: str | None = None,
    labels: dict[str, str] | None = None,
    include_stopped: bool = True,
) -> list[str]:
    """List container names filtered by name prefix and/or labels."""
    cmd = ["docker", "ps", "--format", "{{.Names}}"]
    if include_stopped:
        cmd.insert(2, "-a")
    if name_prefix:
        cmd.extend(["--filter", f"name=^{name_prefix}"])
    for key, value in (labels or {}).items():
        cmd.extend(["--filter", f"label={key}={value}"])

    result = await run_command(cmd, timeout=30)
    return [line.strip() for line in result.stdout.splitlines() if line.strip()]


async def remove_containers(names: list[str]) -> None:
    if not names:
        return
    logger.info(f"Removing containers: {', '.join(names)}")
    await run_command(["docker", "rm", "-f", *names], timeout=60)


async def remove_matching(name_prefix: str | None = None, labels: dict[str, str] | None = None) -> list[str]:
    """Force-remove every container matching the filters. Returns the removed names."""
    names = await list_containers(name_prefix=name_prefix, labels=labels)
    await remove_containers(names)
    return names


async def run_container(
    name: str,
    image: str,
    args: list[str] | None = None,
    network: str | None = None,
    ports: dict[int, int] | None = None,
    labels: dict[str, str] | None = None,
    volumes: dict[str, str] | None = None,
    env: dict[str, str] | None = None,
) -> str:
    """Start a detached container and return its id.

    Args:
        name: Container name
        image: Image tag
        args: Arguments passed to the image entrypoint
        network: Docker network to attach to
        ports: Host port to container port mappings; host port 0 lets docker pick
        labels: Container labels
        volumes: Host path to container path mounts
        env: Environment variables
    """
    cmd = ["docker", "run", "-d", "--name", name]
    if network:
        cmd.extend(["--network", network])
    for host_port, container_port in (ports or {}).items():
        mapping = f"{host_port}:{container_port}" if host_port else str(container_port)
        cmd.extend(["-p", mapping])
    for host_path, container_path in (volumes or {}).items():
        cmd.extend(["-v", f"{host_path}:{container_path}"])
    for key, value in (env or {}).items():
        cmd.extend(["-e", f"{key}={value}"])
    cmd.extend(_label_args(labels))
    cmd.append(image)
    cmd.extend(args or [])

    result = await run_command(cmd, timeout=120)
    container_id = result.stdout.strip()
    logger.debug(f"Started container {name} ({container_id[:12]})")
    return container_id


async def container_running(name: str) -> bool:
    result = await run_command(
        ["docker", "inspect", "-f", "{{.State.Running}}", name],
        timeout=10,
        check=False,
    )
    return result.ok and result.stdout.strip() == "true"


async def container_labels(name: str) -> dict[str, str]:
    result = await run_command(["docker", "inspect", "-f", "{{json .Config.Labels}}", name], timeout=10)
    return json.loads(result.stdout.strip() or "{}") or {}


async def host_port(name: str, container_port: int) -> int:
    """Return the host port bound to ``container_port`` of a running container."""
    result = await run_command(["docker", "port", name, f"{container_port}/tcp"], timeout=10)
    # e.g. "0.0.0.0:32768\n[::]:32768"
    first = result.stdout.strip().splitlines()[0]
    return int(first.rsplit(":", 1)[1])


async def image_exists(tag: str) -> bool:
    result = await run_command(["docker", "images", "-q", tag], timeout=30, check=False)
    return result.ok and bool(result.stdout.strip())


async def network_exists(name: str) -> bool:
    result = await run_command(["docker", "network", "inspect", name], timeout=10, check=False)
    return result.ok


async def create_network(name: str, labels: dict[str, str] | None = None) -> None:
    logger.info(f"Creating docker network {name}")
    await run_command(["docker", "network", "create", *_label_args(labels), name], timeout=30)


async def remove_network(name: str) -> None:
    result = await run_command(["docker", "network", "rm", name], timeout=30, check=False)
    if not result.ok:
        logger.debug(f"Network {name} not removed: {result.stderr.strip()}")


class ContainerProbe:
    """Reports containers whose names start with the environment's prefix.

    The match is a docker ``name=^<prefix>`` filter, so the prefix of
    ``shared-test`` (``bridgenet-shared-test-``) also matches containers of
    longer ids such as ``shared-test-2``.
    """

    kind = "container"

    def __init__(self, prefix_for: Callable[[str], str] = chain_a_prefix) -> None:
        self._prefix_for = prefix_for

    async def find_conflicts(self, env_id: str) -> list[Conflict]:
        names = await list_containers(name_prefix=self._prefix_for(env_id))
        return [Conflict(self.kind, name, f"docker rm -f {name}") for name in names]


class NetworkProbe:
    """Reports an existing docker network for the environment."""

    kind = "network"

    async def find_conflicts(self, env_id: str) -> list[Conflict]:
        name = network_name(env_id)
        if await network_exists(name):
            return [Conflict(self.kind, name, f"docker network rm {name}")]
        return []
