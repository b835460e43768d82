"""Bridgenet launcher data types.

Pure data types shared by the launch pipeline, the shared environment
manager, the reuse lock and the batch runner.
"""

from __future__ import annotations

from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path

from bridgenet.constants import (
    ENDPOINT_CHAIN_A,
    ENDPOINT_CHAIN_B,
    ResourceKind,
)
from bridgenet.exceptions import ConfigurationError

__all__ = [
    "Cleanup",
    "Conflict",
    "EnvironmentDescriptor",
    "LaunchedEnvironment",
    "ResourceSpec",
    "StageResult",
    "BatchTask",
    "TaskResult",
    "BatchSummary",
]

Cleanup = Callable[[], Awaitable[None]]


@dataclass
class ResourceSpec:
    """A named sub-resource of an environment (container, enclave, network)."""

    name: str
    kind: ResourceKind = ResourceKind.CONTAINER
    public_ports: dict[str, int] = field(default_factory=dict)
    internal_ports: dict[str, int] = field(default_factory=dict)


@dataclass
class EnvironmentDescriptor:
    """Identity, resources and endpoints of one launched environment.

    Stage collaborators mutate it during launch; afterwards it is only read.
    """

    env_id: str
    resources: dict[str, ResourceSpec] = field(default_factory=dict)
    endpoints: dict[str, str] = field(default_factory=dict)
    created_at: datetime = field(default_factory=datetime.now)

    def add_resource(
        self,
        name: str,
        kind: ResourceKind = ResourceKind.CONTAINER,
        public_ports: dict[str, int] | None = None,
        internal_ports: dict[str, int] | None = None,
    ) -> ResourceSpec:
        spec = ResourceSpec(
            name=name,
            kind=kind,
            public_ports=dict(public_ports or {}),
            internal_ports=dict(internal_ports or {}),
        )
        self.resources[name] = spec
        return spec

    def set_endpoint(self, key: str, url: str) -> None:
        if not url.strip():
            raise ConfigurationError(f"Endpoint {key!r} cannot be empty", {"env_id": self.env_id})
        self.endpoints[key] = url.strip()

    def require_endpoint(self, key: str) -> str:
        """Return an endpoint URL or raise if the launch never produced it."""
        url = self.endpoints.get(key)
        if not url:
            raise ConfigurationError(
                f"Endpoint {key!r} not available for environment {self.env_id}",
                {"available": sorted(self.endpoints)},
            )
        return url

    def missing_endpoints(self, keys: tuple[str, ...] | list[str]) -> list[str]:
        return [k for k in keys if not self.endpoints.get(k)]

    @property
    def chain_a_ws_url(self) -> str:
        return self.require_endpoint(ENDPOINT_CHAIN_A)

    @property
    def chain_b_rpc_url(self) -> str:
        return self.require_endpoint(ENDPOINT_CHAIN_B)


@dataclass(frozen=True)
class StageResult:
    """Outcome of one launch stage."""

    success: bool
    error: BaseException | None = None
    cleanup: Cleanup | None = None

    @classmethod
    def ok(cls, cleanup: Cleanup | None = None) -> StageResult:
        return cls(success=True, cleanup=cleanup)

    @classmethod
    def failed(cls, error: BaseException | None = None, cleanup: Cleanup | None = None) -> StageResult:
        return cls(success=False, error=error, cleanup=cleanup)


@dataclass
class LaunchedEnvironment:
    """A running environment together with its composed teardown."""

    descriptor: EnvironmentDescriptor
    cleanup: Cleanup

    @property
    def env_id(self) -> str:
        return self.descriptor.env_id


@dataclass(frozen=True)
class Conflict:
    """An existing resource that clashes with a requested environment id."""

    kind: str
    name: str
    remediation: str


@dataclass
class BatchTask:
    """One isolated test-file run."""

    name: str
    path: Path
    command: list[str]


@dataclass
class TaskResult:
    """Result of running one batch task."""

    task: BatchTask
    success: bool
    exit_code: int | None
    duration_seconds: float
    log_file: Path
    error: str | None = None


@dataclass
class BatchSummary:
    """Aggregated outcome of a batch run."""

    results: list[TaskResult] = field(default_factory=list)
    cancelled: bool = False

    @property
    def passed(self) -> int:
        return sum(1 for r in self.results if r.success)

    @property
    def failed(self) -> int:
        return sum(1 for r in self.results if not r.success)

    @property
    def success(self) -> bool:
        """True when every task passed and the run was not cancelled."""
        return self.failed == 0 and not self.cancelled
