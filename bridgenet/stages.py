"""Concrete launch stages for the two-chain bridge environment.

Each stage shells out to docker, kurtosis or forge and records what it
started on the descriptor. A stage that fails part-way returns its own
cleanup with the failure so the pipeline can remove partial resources.
"""

from __future__ import annotations

import asyncio
from pathlib import Path

from bridgenet.config import HarnessConfig, NetworkConfig
from bridgenet.constants import (
    CHAIN_A_AUTHORITIES,
    CHAIN_A_RPC_PORT,
    ENDPOINT_CHAIN_A,
    ENDPOINT_CHAIN_A_HTTP,
    ENDPOINT_CHAIN_B,
    ENDPOINT_CHAIN_B_CL,
    ENDPOINT_CHAIN_B_WS,
    LABEL_ENV,
    LABEL_ROLE,
    LABEL_RUN,
    RELAYER_KINDS,
    REQUIRED_ENDPOINTS,
    ResourceKind,
)
from bridgenet.docker import (
    ContainerProbe,
    NetworkProbe,
    chain_a_prefix,
    create_network,
    host_port,
    image_exists,
    list_containers,
    network_name,
    relayer_prefix,
    remove_matching,
    remove_network,
    run_container,
)
from bridgenet.exceptions import CommandError, ConfigurationError
from bridgenet.kurtosis import (
    CL_SERVICE,
    EL_SERVICE,
    EnclaveProbe,
    enclave_exists,
    enclave_name,
    remove_enclave,
    run_enclave,
    service_port,
)
from bridgenet.launcher_types import EnvironmentDescriptor, StageResult
from bridgenet.logging import get_stage_logger
from bridgenet.pipeline import LaunchPipeline, ResourceProbe, Stage
from bridgenet.shell import run_command
from bridgenet.waits import poll_until

NODE_ARGS = [
    "--tmp",
    "--dev",
    f"--rpc-port={CHAIN_A_RPC_PORT}",
    "--unsafe-rpc-external",
    "--rpc-cors=all",
    "--force-authoring",
    "--no-telemetry",
    "--no-prometheus",
]


async def port_open(port: int, host: str = "127.0.0.1") -> bool:
    """True if a TCP connection to ``host:port`` succeeds."""
    try:
        _reader, writer = await asyncio.wait_for(asyncio.open_connection(host, port), timeout=2.0)
    except (OSError, TimeoutError):
        return False
    writer.close()
    await writer.wait_closed()
    return True


class LabelledStage(Stage):
    """Stage whose containers carry the environment (and run) labels."""

    role = "stage"

    def __init__(self, run_id: str | None = None) -> None:
        self.run_id = run_id

    def labels(self, env_id: str) -> dict[str, str]:
        labels = {LABEL_ENV: env_id, LABEL_ROLE: self.role}
        if self.run_id:
            labels[LABEL_RUN] = self.run_id
        return labels


class ChainANodesStage(LabelledStage):
    """Validator node containers for chain A on a dedicated docker network."""

    name = "chain-a"
    role = "chain-a"

    def __init__(self, run_id: str | None = None, ready_attempts: int = 30, ready_delay: float = 2.0) -> None:
        super().__init__(run_id)
        self.ready_attempts = ready_attempts
        self.ready_delay = ready_delay

    async def run(self, config: NetworkConfig, descriptor: EnvironmentDescriptor) -> StageResult:
        log = get_stage_logger(self.name)
        env_id = descriptor.env_id
        prefix = chain_a_prefix(env_id)
        network = network_name(env_id)

        async def cleanup() -> None:
            await remove_matching(name_prefix=prefix)
            await remove_network(network)

        try:
            await create_network(network, self.labels(env_id))
            descriptor.add_resource(network, ResourceKind.NETWORK)

            if config.build_chain_a:
                log.info(f"Building image {config.chain_a_image}")
                await run_command(
                    ["docker", "build", "-t", config.chain_a_image, "-f", config.chain_a_dockerfile,
                     config.chain_a_build_context],
                    timeout=None,
                )
            if not await image_exists(config.chain_a_image):
                raise ConfigurationError(
                    f"Docker image {config.chain_a_image} not found. Build or pull it first.",
                )

            for index, authority in enumerate(CHAIN_A_AUTHORITIES):
                container = f"{prefix}{authority}"
                log.info(f"Starting {container}")
                await run_container(
                    container,
                    config.chain_a_image,
                    args=[f"--{authority}", *NODE_ARGS],
                    network=network,
                    ports={0: CHAIN_A_RPC_PORT} if index == 0 else None,
                    labels=self.labels(env_id),
                )
                descriptor.add_resource(container, internal_ports={"rpc": CHAIN_A_RPC_PORT})

            primary = f"{prefix}{CHAIN_A_AUTHORITIES[0]}"
            port = await host_port(primary, CHAIN_A_RPC_PORT)
            descriptor.resources[primary].public_ports["rpc"] = port

            await poll_until(
                lambda: port_open(port),
                attempts=self.ready_attempts,
                delay=self.ready_delay,
                error_message=f"chain A node {primary} did not open port {port}",
            )
        except Exception as e:
            return StageResult.failed(e, cleanup)

        descriptor.set_endpoint(ENDPOINT_CHAIN_A, f"ws://127.0.0.1:{port}")
        descriptor.set_endpoint(ENDPOINT_CHAIN_A_HTTP, f"http://127.0.0.1:{port}")
        log.info(f"Chain A ready on port {port}")
        return StageResult.ok(cleanup)


class ChainBStage(Stage):
    """EVM test network run as a kurtosis enclave."""

    name = "chain-b"

    async def run(self, config: NetworkConfig, descriptor: EnvironmentDescriptor) -> StageResult:
        enclave = enclave_name(descriptor.env_id)

        async def cleanup() -> None:
            await remove_enclave(enclave)

        try:
            await run_enclave(enclave, config.kurtosis_package, config.kurtosis_args_file)
            rpc_port = await service_port(enclave, EL_SERVICE, "rpc")
            ws_port = await service_port(enclave, EL_SERVICE, "ws")
            cl_port = await service_port(enclave, CL_SERVICE, "http")
        except Exception as e:
            return StageResult.failed(e, cleanup)

        descriptor.add_resource(
            enclave,
            ResourceKind.ENCLAVE,
            public_ports={"rpc": rpc_port, "ws": ws_port, "cl": cl_port},
        )
        descriptor.set_endpoint(ENDPOINT_CHAIN_B, f"http://127.0.0.1:{rpc_port}")
        descriptor.set_endpoint(ENDPOINT_CHAIN_B_WS, f"ws://127.0.0.1:{ws_port}")
        descriptor.set_endpoint(ENDPOINT_CHAIN_B_CL, f"http://127.0.0.1:{cl_port}")
        return StageResult.ok(cleanup)


class ForgeScriptStage(Stage):
    """Runs a ``forge script`` against chain B. Leaves nothing to clean up."""

    name = "forge"

    def __init__(self, name: str, script_field: str) -> None:
        self.name = name
        self.script_field = script_field

    async def run(self, config: NetworkConfig, descriptor: EnvironmentDescriptor) -> StageResult:
        script = getattr(config, self.script_field)
        rpc_url = descriptor.require_endpoint(ENDPOINT_CHAIN_B)
        get_stage_logger(self.name).info(f"forge script {script}")
        await run_command(
            ["forge", "script", script, "--rpc-url", rpc_url, "--broadcast"],
            timeout=None,
            cwd=config.contracts_dir,
        )
        return StageResult.ok()


class ContractsStage(ForgeScriptStage):
    def __init__(self) -> None:
        super().__init__("contracts", "deploy_script")


class ValidatorsStage(ForgeScriptStage):
    def __init__(self) -> None:
        super().__init__("validators", "validators_script")


class RelayersStage(LabelledStage):
    """Relayer containers, one per relay kind.

    Relay configs are read from ``<relayer_config_dir>/<env_id>/<kind>-relay.json``.
    """

    name = "relayers"
    role = "relayer"

    async def run(self, config: NetworkConfig, descriptor: EnvironmentDescriptor) -> StageResult:
        env_id = descriptor.env_id
        prefix = relayer_prefix(env_id)
        config_dir = Path(config.relayer_config_dir, env_id).resolve()

        async def cleanup() -> None:
            await remove_matching(name_prefix=prefix)

        try:
            for kind in RELAYER_KINDS:
                container = f"{prefix}{kind}"
                await run_container(
                    container,
                    config.relayer_image,
                    args=["run", kind, "--config", f"/configs/{kind}-relay.json"],
                    network=network_name(env_id),
                    labels=self.labels(env_id),
                    volumes={str(config_dir): "/configs"},
                )
                descriptor.add_resource(container)
        except Exception as e:
            return StageResult.failed(e, cleanup)

        return StageResult.ok(cleanup)


def default_stages(config: HarnessConfig) -> list[Stage]:
    run_id = config.batch.run_id
    return [
        ChainANodesStage(run_id),
        ChainBStage(),
        ContractsStage(),
        ValidatorsStage(),
        RelayersStage(run_id),
    ]


def default_probes() -> list[ResourceProbe]:
    return [ContainerProbe(chain_a_prefix), ContainerProbe(relayer_prefix), NetworkProbe(), EnclaveProbe()]


def build_pipeline(config: HarnessConfig) -> LaunchPipeline:
    return LaunchPipeline.from_config(config, default_stages(config), default_probes())


async def destroy_environment(env_id: str) -> list[str]:
    """Remove every resource of ``env_id`` regardless of who launched it.

    Name-prefix removal also catches unlabelled containers, and with them
    those of longer ids sharing the prefix (``shared-test`` takes
    ``shared-test-2``).

    Returns the names of removed containers.
    """
    removed = await remove_matching(labels={LABEL_ENV: env_id})
    for prefix in (chain_a_prefix(env_id), relayer_prefix(env_id)):
        removed.extend(await remove_matching(name_prefix=prefix))
    await remove_network(network_name(env_id))
    await remove_enclave(enclave_name(env_id))
    return removed


async def attach_existing(env_id: str) -> EnvironmentDescriptor | None:
    """Rebuild a descriptor for an environment another process launched.

    Returns None while the environment is not (yet) complete.
    """
    try:
        containers = await list_containers(labels={LABEL_ENV: env_id}, include_stopped=False)
        primary = f"{chain_a_prefix(env_id)}{CHAIN_A_AUTHORITIES[0]}"
        if primary not in containers:
            return None

        descriptor = EnvironmentDescriptor(env_id=env_id)
        for container in containers:
            descriptor.add_resource(container)
        port = await host_port(primary, CHAIN_A_RPC_PORT)
        descriptor.set_endpoint(ENDPOINT_CHAIN_A, f"ws://127.0.0.1:{port}")
        descriptor.set_endpoint(ENDPOINT_CHAIN_A_HTTP, f"http://127.0.0.1:{port}")

        enclave = enclave_name(env_id)
        if await enclave_exists(enclave):
            descriptor.add_resource(enclave, ResourceKind.ENCLAVE)
            rpc_port = await service_port(enclave, EL_SERVICE, "rpc")
            descriptor.set_endpoint(ENDPOINT_CHAIN_B, f"http://127.0.0.1:{rpc_port}")
    except (CommandError, ValueError):
        return None

    if descriptor.missing_endpoints(REQUIRED_ENDPOINTS):
        return None
    return descriptor
