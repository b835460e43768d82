"""Shared environment manager.

One manager owns at most one running environment per process. Concurrent
``acquire()`` calls coalesce onto a single in-flight launch; reference
counting tracks how many suites currently use the environment.
"""

from __future__ import annotations

import asyncio
import signal
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from typing import Any, Protocol

from pydantic import ValidationError

from bridgenet.config import NetworkConfig
from bridgenet.constants import EnvironmentState
from bridgenet.exceptions import BridgenetError, ConfigurationError
from bridgenet.launcher_types import EnvironmentDescriptor, LaunchedEnvironment
from bridgenet.logging import get_logger

logger = get_logger("environment")


class Launcher(Protocol):
    async def launch(self, config: NetworkConfig) -> LaunchedEnvironment: ...


def _consume_result(future: asyncio.Future[Any]) -> None:
    # Mark a failed launch as retrieved even if every waiter went away.
    if not future.cancelled():
        future.exception()


class SharedEnvironmentManager:
    """Coalesces launches and reference-counts users of one environment.

    States:
        IDLE: nothing running; the next ``acquire`` starts a launch
        LAUNCHING: a launch is in flight; ``acquire`` joins it
        RUNNING: the environment is up; ``acquire`` returns it at once

    A failed launch puts the manager back to IDLE and every waiter sees the
    launch error. ``release`` never tears down; call ``teardown`` for that.
    """

    def __init__(self, launcher: Launcher, options: NetworkConfig | None = None) -> None:
        self._launcher = launcher
        self._options = options or NetworkConfig()
        self._state = EnvironmentState.IDLE
        self._environment: LaunchedEnvironment | None = None
        self._launch_future: asyncio.Future[LaunchedEnvironment] | None = None
        self._teardown_future: asyncio.Future[None] | None = None
        self._references = 0
        self._signal_task: asyncio.Task[None] | None = None
        self.interrupted_by: str | None = None

    @property
    def state(self) -> EnvironmentState:
        return self._state

    @property
    def reference_count(self) -> int:
        return self._references

    @property
    def is_running(self) -> bool:
        return self._state is EnvironmentState.RUNNING

    @property
    def environment(self) -> EnvironmentDescriptor | None:
        return self._environment.descriptor if self._environment else None

    @property
    def options(self) -> NetworkConfig:
        return self._options

    def configure(self, **options: Any) -> None:
        """Replace launch options. Only allowed while IDLE.

        Raises:
            ConfigurationError: If an environment is launching or running, or
                an option is unknown or invalid
        """
        if self._state is not EnvironmentState.IDLE:
            raise ConfigurationError(
                f"Cannot configure while environment is {self._state.value}",
                {"state": self._state.value},
            )

        unknown = sorted(set(options) - set(NetworkConfig.model_fields))
        if unknown:
            raise ConfigurationError(f"Unknown network options: {', '.join(unknown)}")

        try:
            self._options = NetworkConfig(**{**self._options.model_dump(), **options})
        except ValidationError as e:
            raise ConfigurationError(f"Invalid network options: {e}") from e

    async def acquire(self) -> EnvironmentDescriptor:
        """Return the running environment, launching it if needed.

        Raises:
            StageFailureError: If the launch this call started or joined failed
            UniquenessConflictError: If the env id is already taken
        """
        if self._teardown_future is not None:
            await asyncio.shield(self._teardown_future)

        if self._state is EnvironmentState.RUNNING and self._environment is not None:
            self._references += 1
            logger.debug(f"Reusing environment {self._environment.env_id} (refs={self._references})")
            return self._environment.descriptor

        if self._launch_future is None:
            self._state = EnvironmentState.LAUNCHING
            self._launch_future = asyncio.ensure_future(self._launch())
            self._launch_future.add_done_callback(_consume_result)
        else:
            logger.debug("Joining in-flight launch")

        environment = await asyncio.shield(self._launch_future)
        if self._environment is not environment:
            raise BridgenetError(
                f"Environment {environment.env_id} was torn down before it could be acquired",
            )
        self._references += 1
        return environment.descriptor

    async def _launch(self) -> LaunchedEnvironment:
        try:
            environment = await self._launcher.launch(self._options)
        except BaseException as e:
            self._state = EnvironmentState.IDLE
            self._launch_future = None
            logger.error(f"Environment launch failed: {e}")
            raise

        self._environment = environment
        self._state = EnvironmentState.RUNNING
        self._launch_future = None
        logger.info(f"Environment {environment.env_id} is running")
        return environment

    def release(self) -> None:
        """Drop one reference. Never goes below zero and never tears down."""
        if self._references == 0:
            logger.warning("release() called with no outstanding references")
            return
        self._references -= 1
        logger.debug(f"Released environment (refs={self._references})")

    async def teardown(self) -> None:
        """Tear down the environment, if any, and reset to IDLE.

        An in-flight launch is allowed to finish first. Cleanup errors are
        logged, not raised. Concurrent calls share one teardown.
        """
        if self._teardown_future is None:
            self._teardown_future = asyncio.ensure_future(self._teardown())
        await asyncio.shield(self._teardown_future)

    async def _teardown(self) -> None:
        try:
            pending = self._launch_future
            if pending is not None:
                logger.info("Waiting for in-flight launch before teardown")
                try:
                    await asyncio.shield(pending)
                except Exception as e:  # noqa: BLE001
                    logger.debug(f"In-flight launch failed, nothing to tear down: {e}")

            environment = self._environment
            self._environment = None
            self._state = EnvironmentState.IDLE
            if self._references:
                logger.warning(f"Tearing down with {self._references} outstanding references")
            self._references = 0

            if environment is None:
                return
            try:
                await environment.cleanup()
            except Exception as e:
                logger.error(f"Teardown of {environment.env_id} failed: {e}", exc_info=True)
        finally:
            self._teardown_future = None

    @asynccontextmanager
    async def lease(self) -> AsyncIterator[EnvironmentDescriptor]:
        """``async with manager.lease() as env:`` acquire/release pair."""
        descriptor = await self.acquire()
        try:
            yield descriptor
        finally:
            self.release()

    def install_signal_handlers(
        self,
        loop: asyncio.AbstractEventLoop | None = None,
        main_task: asyncio.Task[Any] | None = None,
    ) -> None:
        """Tear down on SIGINT/SIGTERM, then cancel ``main_task``.

        ``main_task`` defaults to the task calling this method. Under
        ``asyncio.run`` its cancellation ends the process with a non-zero
        exit once the environment is gone. Later signals are ignored while
        the teardown runs. Unix event loops only.
        """
        loop = loop or asyncio.get_running_loop()
        target = main_task or asyncio.current_task(loop)

        async def _shutdown() -> None:
            try:
                await self.teardown()
            finally:
                if target is not None and not target.done():
                    target.cancel()

        def _on_signal(signame: str) -> None:
            if self._signal_task is not None:
                logger.warning(f"Received {signame}, teardown already in progress")
                return
            logger.warning(f"Received {signame}, tearing down environment")
            self.interrupted_by = signame
            self._signal_task = loop.create_task(_shutdown())

        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.add_signal_handler(sig, _on_signal, sig.name)

    def remove_signal_handlers(self, loop: asyncio.AbstractEventLoop | None = None) -> None:
        loop = loop or asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.remove_signal_handler(sig)
