"""Bridgenet configuration management using Pydantic."""

import os
import re
import time
from pathlib import Path
from typing import Any

import yaml  # type: ignore[import-untyped]
from pydantic import BaseModel, Field

from bridgenet.constants import (
    BATCH_LOG_DIR,
    CONFIG_FILE,
    DEFAULT_LOCK_DEADLINE_SECONDS,
    DEFAULT_LOCK_POLL_SECONDS,
    DEFAULT_MAX_CONCURRENCY,
    DEFAULT_SUITES_DIR,
    DEFAULT_TASK_PATTERN,
    DEFAULT_TASK_TIMEOUT_SECONDS,
    DEFAULT_TERMINATE_GRACE_SECONDS,
    DEFAULT_WAIT_TIMEOUT_SECONDS,
    ENV_ENVIRONMENT_ID,
    ENV_REUSE_ENVIRONMENT,
    ENV_RUN_ID,
    LOGS_DIR,
    REQUIRED_ENDPOINTS,
    TMP_DIR,
)

_UNSAFE_ID_CHARS = re.compile(r"[^a-z0-9-]")
_TRUTHY = {"1", "true", "yes", "on"}


def sanitize_env_id(raw: str) -> str:
    """Lower-case an environment id and replace anything outside ``[a-z0-9-]``.

    The result is used in container, network and enclave names.
    """
    return _UNSAFE_ID_CHARS.sub("-", raw.strip().lower())


def default_env_id(prefix: str = "shared-test") -> str:
    return f"{prefix}-{int(time.time() * 1000)}"


def env_flag(name: str) -> bool:
    return os.environ.get(name, "").strip().lower() in _TRUTHY


class NetworkConfig(BaseModel):
    """What to bring up for one environment."""

    env_id: str | None = None
    chain_a_image: str = "bridgenet/chain-a-node:local"
    relayer_image: str = "bridgenet/relayer:latest"
    build_chain_a: bool = False
    chain_a_dockerfile: str = "docker/chain-a-node.dockerfile"
    chain_a_build_context: str = ".."
    relayer_config_dir: str = "tmp/configs"
    kurtosis_package: str = "github.com/ethpandaops/ethereum-package"
    kurtosis_args_file: str = "configs/kurtosis/minimal.yaml"
    contracts_dir: str = "../contracts"
    deploy_script: str = "script/deploy/DeployLocal.s.sol"
    validators_script: str = "script/transact/SetupValidators.s.sol"

    def resolved_env_id(self) -> str:
        """Return the configured id (sanitized) or a time-derived one."""
        return sanitize_env_id(self.env_id) if self.env_id else default_env_id()


class LaunchConfig(BaseModel):
    """Launch pipeline behaviour."""

    required_endpoints: list[str] = Field(default_factory=lambda: list(REQUIRED_ENDPOINTS))
    atomic_claim: bool = False
    claim_dir: str = TMP_DIR
    stage_timeout_seconds: float = Field(default=900.0, gt=0)


class WaitConfig(BaseModel):
    """Defaults for wait primitives."""

    default_timeout_seconds: float = Field(default=DEFAULT_WAIT_TIMEOUT_SECONDS, gt=0)


class ReuseConfig(BaseModel):
    """Cross-process reuse of a named environment."""

    enabled: bool = False
    lock_dir: str = TMP_DIR
    poll_interval_seconds: float = Field(default=DEFAULT_LOCK_POLL_SECONDS, gt=0)
    deadline_seconds: float = Field(default=DEFAULT_LOCK_DEADLINE_SECONDS, gt=0)


class BatchConfig(BaseModel):
    """Bounded batch runner settings."""

    max_concurrency: int = Field(default=DEFAULT_MAX_CONCURRENCY, ge=1, le=64)
    suites_dir: str = DEFAULT_SUITES_DIR
    pattern: str = DEFAULT_TASK_PATTERN
    log_dir: str = BATCH_LOG_DIR
    task_timeout_seconds: float = Field(default=DEFAULT_TASK_TIMEOUT_SECONDS, gt=0)
    grace_seconds: float = Field(default=DEFAULT_TERMINATE_GRACE_SECONDS, ge=0)
    run_id: str | None = None


class LoggingConfig(BaseModel):
    """Logging configuration."""

    level: str = Field(default="info", pattern="^(debug|info|warning|error)$")
    directory: str = LOGS_DIR
    structured_output: bool = True


class HarnessConfig(BaseModel):
    """Complete harness configuration."""

    network: NetworkConfig = Field(default_factory=NetworkConfig)
    launch: LaunchConfig = Field(default_factory=LaunchConfig)
    waits: WaitConfig = Field(default_factory=WaitConfig)
    reuse: ReuseConfig = Field(default_factory=ReuseConfig)
    batch: BatchConfig = Field(default_factory=BatchConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    @classmethod
    def load(cls, config_path: str | Path | None = None) -> "HarnessConfig":
        """Load configuration from YAML file.

        Args:
            config_path: Path to config file. Defaults to .bridgenet/config.yaml

        Returns:
            HarnessConfig instance
        """
        config_path = Path(CONFIG_FILE) if config_path is None else Path(config_path)

        if not config_path.exists():
            return cls()

        with open(config_path) as f:
            data = yaml.safe_load(f) or {}

        return cls.from_dict(data)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "HarnessConfig":
        return cls(**data)

    def save(self, config_path: str | Path | None = None) -> None:
        """Save configuration to YAML file.

        Args:
            config_path: Path to save config. Defaults to .bridgenet/config.yaml
        """
        config_path = Path(CONFIG_FILE) if config_path is None else Path(config_path)

        config_path.parent.mkdir(parents=True, exist_ok=True)

        with open(config_path, "w") as f:
            yaml.dump(self.to_dict(), f, default_flow_style=False, sort_keys=False)

    def to_dict(self) -> dict[str, Any]:
        return self.model_dump()

    def with_env_overrides(self) -> "HarnessConfig":
        """Return a copy with environment-variable overrides applied.

        ``BRIDGENET_REUSE_ENVIRONMENT`` turns on cross-process reuse,
        ``BRIDGENET_ENVIRONMENT_ID`` replaces the environment id (sanitized)
        and ``BRIDGENET_RUN_ID`` sets the batch run id.
        """
        updated = self.model_copy(deep=True)

        if env_flag(ENV_REUSE_ENVIRONMENT):
            updated.reuse.enabled = True

        raw_id = os.environ.get(ENV_ENVIRONMENT_ID, "").strip()
        if raw_id:
            updated.network.env_id = sanitize_env_id(raw_id)

        run_id = os.environ.get(ENV_RUN_ID, "").strip()
        if run_id:
            updated.batch.run_id = sanitize_env_id(run_id)

        return updated
