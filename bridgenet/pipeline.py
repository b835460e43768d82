"""Ordered, rollback-safe launch of a bridge environment.

Stages run strictly in sequence. Every stage that succeeds contributes a
cleanup callback to a LIFO stack; when a stage fails the stack is unwound
in reverse so that nothing started by this launch is left running.
"""

from __future__ import annotations

import asyncio
import time
from abc import ABC, abstractmethod
from collections.abc import Awaitable, Callable, Iterable, Sequence
from pathlib import Path
from typing import Protocol

from bridgenet.config import HarnessConfig, NetworkConfig
from bridgenet.constants import REQUIRED_ENDPOINTS
from bridgenet.exceptions import ConfigurationError, StageFailureError, UniquenessConflictError
from bridgenet.launcher_types import (
    Cleanup,
    Conflict,
    EnvironmentDescriptor,
    LaunchedEnvironment,
    StageResult,
)
from bridgenet.logging import get_logger, get_stage_logger
from bridgenet.reuse_lock import LockFile

logger = get_logger("pipeline")

ENDPOINTS_STAGE = "endpoints"


class Stage(ABC):
    """One step of an environment launch."""

    name: str = "stage"

    @abstractmethod
    async def run(self, config: NetworkConfig, descriptor: EnvironmentDescriptor) -> StageResult:
        """Bring up this stage's resources, recording them on ``descriptor``.

        Return :meth:`StageResult.failed` or raise to abort the launch.
        """


class FunctionStage(Stage):
    """Adapts a plain coroutine function into a :class:`Stage`."""

    def __init__(
        self,
        name: str,
        fn: Callable[[NetworkConfig, EnvironmentDescriptor], Awaitable[StageResult]],
    ) -> None:
        self.name = name
        self._fn = fn

    async def run(self, config: NetworkConfig, descriptor: EnvironmentDescriptor) -> StageResult:
        return await self._fn(config, descriptor)


class ResourceProbe(Protocol):
    """Finds existing resources that would collide with a new environment id."""

    async def find_conflicts(self, env_id: str) -> list[Conflict]: ...


class CleanupStack:
    """LIFO stack of cleanup callbacks.

    Each callback is popped before it runs, so it runs at most once even if
    ``unwind`` is re-entered. Failures are logged and never re-raised.
    """

    def __init__(self) -> None:
        self._callbacks: list[tuple[str, Cleanup]] = []

    def __len__(self) -> int:
        return len(self._callbacks)

    def push(self, cleanup: Cleanup, label: str = "cleanup") -> None:
        self._callbacks.append((label, cleanup))

    async def unwind(self) -> bool:
        """Run every callback, newest first. Returns True if all succeeded."""
        all_ok = True
        while self._callbacks:
            label, callback = self._callbacks.pop()
            try:
                await callback()
            except Exception as e:
                all_ok = False
                logger.warning(f"Cleanup for {label} failed: {e}", exc_info=True)
            else:
                logger.debug(f"Cleanup for {label} done")
        return all_ok


class LaunchPipeline:
    """Runs stages in order and rolls back on failure.

    Args:
        stages: Ordered stages to run
        probes: Uniqueness probes consulted before any stage runs
        required_endpoints: Endpoint keys the descriptor must carry at the end
        claim_dir: When set, hold an exclusive claim file for the env id
            while launching so two launches of the same id cannot overlap
        stage_timeout: Per-stage limit in seconds, ``None`` for no limit
    """

    def __init__(
        self,
        stages: Sequence[Stage],
        probes: Iterable[ResourceProbe] = (),
        required_endpoints: Sequence[str] = REQUIRED_ENDPOINTS,
        claim_dir: str | Path | None = None,
        stage_timeout: float | None = None,
    ) -> None:
        self.stages = list(stages)
        self.probes = list(probes)
        self.required_endpoints = tuple(required_endpoints)
        self.claim_dir = Path(claim_dir) if claim_dir is not None else None
        self.stage_timeout = stage_timeout

    @classmethod
    def from_config(
        cls,
        config: HarnessConfig,
        stages: Sequence[Stage],
        probes: Iterable[ResourceProbe] = (),
    ) -> LaunchPipeline:
        return cls(
            stages,
            probes,
            required_endpoints=config.launch.required_endpoints,
            claim_dir=config.launch.claim_dir if config.launch.atomic_claim else None,
            stage_timeout=config.launch.stage_timeout_seconds,
        )

    async def check_unique(self, env_id: str) -> None:
        """Fail if any probe reports an existing resource for ``env_id``.

        This is a scan, not a reservation: two launches started at nearly the
        same moment can both pass it. Use ``claim_dir`` to close that window
        within one host.

        Raises:
            UniquenessConflictError: On the first probe reporting conflicts
        """
        for probe in self.probes:
            conflicts = await probe.find_conflicts(env_id)
            if conflicts:
                first = conflicts[0]
                names = ", ".join(c.name for c in conflicts)
                raise UniquenessConflictError(
                    f"Environment {env_id!r} already has a {first.kind} ({names}). "
                    f"Choose another id or remove it: {first.remediation}",
                    env_id,
                    first.name,
                    first.remediation,
                )

    async def launch(self, config: NetworkConfig) -> LaunchedEnvironment:
        """Launch a complete environment.

        Returns:
            LaunchedEnvironment whose ``cleanup`` tears down every stage in
            reverse order

        Raises:
            UniquenessConflictError: If the env id is already in use
            StageFailureError: If a stage failed; rollback has already run
        """
        env_id = config.resolved_env_id()
        config = config.model_copy(update={"env_id": env_id})

        claim = None
        if self.claim_dir is not None:
            claim = LockFile(self.claim_dir / f"bridgenet-claim-{env_id}.lock")
            if not claim.try_acquire():
                raise UniquenessConflictError(
                    f"Environment {env_id!r} is being launched by pid {claim.owner_pid()}",
                    env_id,
                    str(claim.path),
                    f"wait for the other launch or remove {claim.path}",
                )

        try:
            await self.check_unique(env_id)
            return await self._run_stages(config, env_id)
        finally:
            if claim is not None:
                claim.release()

    async def _run_stage(self, stage: Stage, config: NetworkConfig, descriptor: EnvironmentDescriptor) -> StageResult:
        if self.stage_timeout is None:
            try:
                return await stage.run(config, descriptor)
            except Exception as e:
                return StageResult.failed(e)

        try:
            return await asyncio.wait_for(stage.run(config, descriptor), timeout=self.stage_timeout)
        except TimeoutError as e:
            return StageResult.failed(e if str(e) else TimeoutError(f"timed out after {self.stage_timeout:g}s"))
        except Exception as e:
            return StageResult.failed(e)

    async def _run_stages(self, config: NetworkConfig, env_id: str) -> LaunchedEnvironment:
        descriptor = EnvironmentDescriptor(env_id=env_id)
        stack = CleanupStack()
        started = time.monotonic()
        logger.info(f"Launching environment {env_id} ({len(self.stages)} stages)")

        for stage in self.stages:
            stage_log = get_stage_logger(stage.name)
            stage_log.info("Starting")
            stage_started = time.monotonic()
            try:
                result = await self._run_stage(stage, config, descriptor)
            except asyncio.CancelledError:
                stage_log.warning("Launch cancelled, rolling back")
                await stack.unwind()
                raise

            if not result.success:
                await self._fail(env_id, stage.name, result, stack)

            if result.cleanup is not None:
                stack.push(result.cleanup, stage.name)
            stage_log.info(f"Done in {time.monotonic() - stage_started:.1f}s")

        missing = descriptor.missing_endpoints(self.required_endpoints)
        if missing:
            error = ConfigurationError(f"Launch finished without endpoints: {', '.join(missing)}")
            await self._fail(env_id, ENDPOINTS_STAGE, StageResult.failed(error), stack)

        logger.info(f"Environment {env_id} launched in {time.monotonic() - started:.1f}s")

        async def cleanup() -> None:
            logger.info(f"Tearing down environment {env_id}")
            await stack.unwind()

        return LaunchedEnvironment(descriptor=descriptor, cleanup=cleanup)

    async def _fail(self, env_id: str, stage: str, result: StageResult, stack: CleanupStack) -> None:
        error = result.error
        logger.error(f"Stage {stage} failed for {env_id}: {error}")

        rollback_ok = True
        if result.cleanup is not None:
            try:
                await result.cleanup()
            except Exception as e:
                rollback_ok = False
                logger.warning(f"Cleanup for failed stage {stage} failed: {e}")
        rollback_ok = await stack.unwind() and rollback_ok

        status = "complete" if rollback_ok else "incomplete"
        raise StageFailureError(
            f"Launch of {env_id!r} failed at stage {stage!r}: {error or 'stage reported failure'} "
            f"(rollback {status})",
            env_id,
            stage,
            error,
            rollback_ok,
        ) from error
