"""Suite-level helpers for using a shared environment from test code."""

from __future__ import annotations

from collections.abc import Awaitable, Callable

from bridgenet.config import HarnessConfig
from bridgenet.constants import DEFAULT_SHARED_ENV_ID, EnvironmentState
from bridgenet.environment import SharedEnvironmentManager
from bridgenet.exceptions import ConfigurationError
from bridgenet.launcher_types import EnvironmentDescriptor
from bridgenet.logging import get_logger
from bridgenet.reuse_lock import ReuseLock, acquire_shared
from bridgenet.stages import attach_existing

logger = get_logger("suite")

Attach = Callable[[str], Awaitable[EnvironmentDescriptor | None]]


async def environment_for_suite(
    config: HarnessConfig,
    manager: SharedEnvironmentManager,
    attach: Attach = attach_existing,
) -> EnvironmentDescriptor:
    """Get an environment for a suite.

    Without reuse this is ``manager.acquire()``. With reuse enabled
    (``BRIDGENET_REUSE_ENVIRONMENT``) independent processes coordinate
    through a :class:`ReuseLock` on the environment id: one launches, the
    others attach to what it launched.
    """
    if not config.reuse.enabled:
        return await manager.acquire()

    env_id = config.network.resolved_env_id() if config.network.env_id else DEFAULT_SHARED_ENV_ID
    if manager.state is EnvironmentState.IDLE and manager.options.env_id != env_id:
        manager.configure(env_id=env_id)

    lock = ReuseLock(
        env_id,
        lock_dir=config.reuse.lock_dir,
        poll_interval=config.reuse.poll_interval_seconds,
        deadline=config.reuse.deadline_seconds,
    )

    async def _attach() -> EnvironmentDescriptor | None:
        if manager.environment is not None:
            return await manager.acquire()
        return await attach(env_id)

    return await acquire_shared(lock, _attach, manager.acquire)


class SharedSuite:
    """Base for test suites that share one environment.

    ``setup()`` acquires the environment and runs ``on_setup``;
    ``teardown()`` runs ``on_teardown`` and releases. The environment itself
    is never torn down here.
    """

    def __init__(
        self,
        name: str,
        manager: SharedEnvironmentManager,
        config: HarnessConfig | None = None,
    ) -> None:
        self.name = name
        self.manager = manager
        self.config = config
        self._environment: EnvironmentDescriptor | None = None

    @property
    def environment(self) -> EnvironmentDescriptor:
        if self._environment is None:
            raise ConfigurationError(f"Suite {self.name!r} has no environment. Did setup() run?")
        return self._environment

    async def setup(self) -> EnvironmentDescriptor:
        logger.info(f"Setting up suite {self.name}")
        try:
            if self.config is None:
                self._environment = await self.manager.acquire()
            else:
                self._environment = await environment_for_suite(self.config, self.manager)
        except Exception as e:
            logger.error(f"Failed to set up suite {self.name}: {e}")
            raise

        try:
            await self.on_setup(self._environment)
        except Exception:
            self._release()
            raise

        logger.info(f"Suite {self.name} ready on environment {self._environment.env_id}")
        return self._environment

    async def teardown(self) -> None:
        logger.info(f"Tearing down suite {self.name}")
        try:
            await self.on_teardown()
        except Exception as e:
            logger.error(f"Error during teardown of suite {self.name}: {e}", exc_info=True)
        finally:
            self._release()

    def _release(self) -> None:
        # Environments attached from another process were never counted here.
        if self._environment is not None and self._environment is self.manager.environment:
            self.manager.release()
        self._environment = None

    async def on_setup(self, environment: EnvironmentDescriptor) -> None:
        """Hook for suite-specific setup once the environment is up."""

    async def on_teardown(self) -> None:
        """Hook for suite-specific cleanup; the environment stays up."""
