"""Cross-process reuse of a named environment via an exclusive lock file.

Independent test-runner processes on one host coordinate through a single
file: whoever creates it (``O_CREAT | O_EXCL``) is the leader and either
attaches to an existing environment or launches one; everyone else polls
``attach`` until the environment shows up or the deadline passes.
"""

from __future__ import annotations

import asyncio
import os
import time
from collections.abc import Awaitable, Callable
from pathlib import Path
from typing import TypeVar

from bridgenet.constants import DEFAULT_LOCK_DEADLINE_SECONDS, DEFAULT_LOCK_POLL_SECONDS
from bridgenet.exceptions import LockTimeoutError
from bridgenet.logging import get_logger

logger = get_logger("reuse_lock")

T = TypeVar("T")


class LockFile:
    """A pid file created with exclusive-create semantics.

    The file exists if and only if some process holds the lock. Only the
    creator removes it, and only once.
    """

    def __init__(self, path: Path) -> None:
        self.path = Path(path)
        self._held = False

    @property
    def held(self) -> bool:
        return self._held

    def try_acquire(self) -> bool:
        """Create the lock file. Returns False if it already exists."""
        self.path.parent.mkdir(parents=True, exist_ok=True)
        try:
            fd = os.open(str(self.path), os.O_CREAT | os.O_EXCL | os.O_WRONLY)
        except FileExistsError:
            return False
        try:
            os.write(fd, str(os.getpid()).encode())
        finally:
            os.close(fd)

        self._held = True
        logger.debug(f"Acquired lock {self.path}")
        return True

    def release(self) -> None:
        """Remove the lock file if this instance created it."""
        if not self._held:
            return
        self._held = False
        try:
            self.path.unlink()
        except FileNotFoundError:
            logger.warning(f"Lock file {self.path} was already removed by someone else")
        else:
            logger.debug(f"Released lock {self.path}")

    def owner_pid(self) -> int | None:
        """Pid recorded in the lock file, or None when absent or unreadable."""
        try:
            return int(self.path.read_text().strip())
        except (OSError, ValueError):
            return None


class ReuseLock(LockFile):
    """Leadership lock for one reusable environment id."""

    def __init__(
        self,
        env_id: str,
        lock_dir: str | Path = "tmp",
        poll_interval: float = DEFAULT_LOCK_POLL_SECONDS,
        deadline: float = DEFAULT_LOCK_DEADLINE_SECONDS,
    ) -> None:
        super().__init__(Path(lock_dir) / f"bridgenet-reuse-{env_id}.lock")
        self.env_id = env_id
        self.poll_interval = poll_interval
        self.deadline = deadline

    def timeout_error(self) -> LockTimeoutError:
        owner = self.owner_pid()
        owner_text = f" (held by pid {owner})" if owner else ""
        return LockTimeoutError(
            f"Timed out after {self.deadline:g}s waiting for environment {self.env_id!r} "
            f"behind lock {self.path}{owner_text}. If no other test process is running, "
            f"remove the lock manually: rm {self.path}",
            self.path,
            self.deadline,
        )


async def _lead(lock: ReuseLock, attach: Callable[[], Awaitable[T | None]], launch: Callable[[], Awaitable[T]]) -> T:
    try:
        try:
            existing = await attach()
        except Exception as e:  # noqa: BLE001
            logger.debug(f"Attach to {lock.env_id} failed, launching: {e}")
            existing = None
        if existing is not None:
            logger.info(f"Attached to existing environment {lock.env_id}")
            return existing

        logger.info(f"Leading launch of environment {lock.env_id}")
        return await launch()
    finally:
        lock.release()


async def acquire_shared(
    lock: ReuseLock,
    attach: Callable[[], Awaitable[T | None]],
    launch: Callable[[], Awaitable[T]],
) -> T:
    """Get the environment guarded by ``lock``, as leader or follower.

    ``attach`` returns the running environment or ``None``. Followers poll it
    every ``lock.poll_interval`` seconds; attach errors count as "not yet".
    A follower that finds the lock gone without an environment to attach to
    takes over leadership.

    Raises:
        LockTimeoutError: If a follower cannot attach before ``lock.deadline``
    """
    if lock.try_acquire():
        return await _lead(lock, attach, launch)

    logger.info(f"Environment {lock.env_id} is being prepared by pid {lock.owner_pid()}, waiting")
    give_up_at = time.monotonic() + lock.deadline

    while True:
        try:
            existing = await attach()
        except Exception as e:  # noqa: BLE001
            logger.debug(f"Attach to {lock.env_id} not ready: {e}")
            existing = None
        if existing is not None:
            logger.info(f"Attached to environment {lock.env_id}")
            return existing

        if lock.try_acquire():
            return await _lead(lock, attach, launch)

        remaining = give_up_at - time.monotonic()
        if remaining <= 0:
            raise lock.timeout_error()
        await asyncio.sleep(min(lock.poll_interval, remaining))
