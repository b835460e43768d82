"""Bounded-concurrency runner for isolated test files.

Every test file runs in its own OS process with stdout and stderr streamed to
a per-task log file. At most ``max_concurrency`` processes run at once; the
runner waits for every task before it reports.
"""

from __future__ import annotations

import asyncio
import os
import sys
import time
from collections import deque
from collections.abc import Callable, Iterable
from pathlib import Path
from typing import BinaryIO

from bridgenet.config import BatchConfig
from bridgenet.constants import DEFAULT_TASK_PATTERN, ENV_RUN_ID
from bridgenet.exceptions import ConfigurationError
from bridgenet.launcher_types import BatchSummary, BatchTask, TaskResult
from bridgenet.logging import get_logger, get_task_logger
from bridgenet.supervisor import ProcessSupervisor, TerminationReport

logger = get_logger("batch")

CommandFactory = Callable[[Path], list[str]]

# How long to keep draining output after a task's process has exited
_DRAIN_SECONDS = 5.0


def pytest_command(path: Path) -> list[str]:
    return [sys.executable, "-m", "pytest", str(path)]


def _task_name(path: Path, root: Path) -> str:
    relative = path.relative_to(root).with_suffix("")
    return "__".join(relative.parts)


def _log_files(tasks: list[BatchTask], log_dir: Path) -> list[Path]:
    """One log path per task; repeated names get a ``-2``, ``-3`` suffix."""
    used: set[str] = set()
    paths = []
    for task in tasks:
        stem, n = task.name, 1
        while stem in used:
            n += 1
            stem = f"{task.name}-{n}"
        used.add(stem)
        paths.append(log_dir / f"{stem}.log")
    return paths


def discover_tasks(
    suites_dir: str | Path,
    pattern: str = DEFAULT_TASK_PATTERN,
    command: CommandFactory = pytest_command,
) -> list[BatchTask]:
    """Find test files under ``suites_dir`` matching ``pattern``, sorted by path.

    Raises:
        ConfigurationError: If ``suites_dir`` is not a directory
    """
    root = Path(suites_dir)
    if not root.is_dir():
        raise ConfigurationError(f"Suites directory not found: {root}")

    paths = sorted(p for p in root.rglob(pattern) if p.is_file())
    return [BatchTask(name=_task_name(p, root), path=p, command=command(p)) for p in paths]


async def _pump(stream: asyncio.StreamReader | None, sink: BinaryIO) -> None:
    if stream is None:
        return
    while True:
        chunk = await stream.read(65536)
        if not chunk:
            return
        sink.write(chunk)
        sink.flush()


class BatchRunner:
    """Runs :class:`BatchTask` processes with bounded parallelism.

    Args:
        config: Batch settings (concurrency, timeouts, log directory)
        supervisor: Tracks spawned process trees for termination
        run_id: Id exported to every task as ``BRIDGENET_RUN_ID`` and used
            to sweep labelled containers on cancel
    """

    def __init__(
        self,
        config: BatchConfig | None = None,
        supervisor: ProcessSupervisor | None = None,
        run_id: str | None = None,
    ) -> None:
        self.config = config or BatchConfig()
        self.supervisor = supervisor or ProcessSupervisor(self.config.grace_seconds)
        self.run_id = run_id or self.config.run_id or f"run-{int(time.time() * 1000)}"
        self.log_dir = Path(self.config.log_dir)
        self.peak_concurrency = 0
        self._running = 0
        self._cancelled = False

    @property
    def running(self) -> int:
        return self._running

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    async def run(self, tasks: Iterable[BatchTask]) -> BatchSummary:
        """Run every task and return the summary, in input order."""
        ordered = list(tasks)
        log_files = _log_files(ordered, self.log_dir)
        self.log_dir.mkdir(parents=True, exist_ok=True)
        logger.info(
            f"Running {len(ordered)} tasks (max {self.config.max_concurrency} at once), "
            f"logs in {self.log_dir}/"
        )

        queue: deque[int] = deque(range(len(ordered)))
        in_flight: dict[asyncio.Future[TaskResult], int] = {}
        results: list[TaskResult | None] = [None] * len(ordered)

        while queue or in_flight:
            while queue and len(in_flight) < self.config.max_concurrency and not self._cancelled:
                index = queue.popleft()
                in_flight[asyncio.ensure_future(self._run_task(ordered[index], log_files[index]))] = index

            if not in_flight:
                break

            done, _pending = await asyncio.wait(in_flight, return_when=asyncio.FIRST_COMPLETED)
            for future in done:
                results[in_flight.pop(future)] = future.result()

        for index in queue:
            results[index] = TaskResult(
                task=ordered[index],
                success=False,
                exit_code=None,
                duration_seconds=0.0,
                log_file=log_files[index],
                error="cancelled before start",
            )

        summary = BatchSummary(results=[r for r in results if r is not None], cancelled=self._cancelled)
        logger.info(f"Total: {summary.passed} passed, {summary.failed} failed")
        return summary

    async def _run_task(self, task: BatchTask, log_file: Path) -> TaskResult:
        log = get_task_logger(task.name)
        env = {**os.environ, ENV_RUN_ID: self.run_id}
        started = time.monotonic()
        timed_out = False
        killed_on_cancel = False
        log.info(f"Starting {task.path}")

        with open(log_file, "wb") as sink:
            sink.write(f"$ {' '.join(task.command)}\n".encode())
            try:
                proc = await asyncio.create_subprocess_exec(
                    *task.command,
                    stdout=asyncio.subprocess.PIPE,
                    stderr=asyncio.subprocess.PIPE,
                    env=env,
                )
            except OSError as e:
                sink.write(f"Task crashed with error:\n{e}\n".encode())
                log.error(f"Could not start: {e}")
                return TaskResult(task, False, None, time.monotonic() - started, log_file, str(e))

            self.supervisor.track(proc.pid, task.name)
            self._running += 1
            self.peak_concurrency = max(self.peak_concurrency, self._running)
            try:
                pumps = asyncio.gather(_pump(proc.stdout, sink), _pump(proc.stderr, sink))
                if self._cancelled:
                    # Spawned after cancel() swept the registry
                    killed_on_cancel = True
                    log.warning("Started after cancel, killing process tree")
                    await self.supervisor.terminate_tree(proc.pid, self.config.grace_seconds)
                try:
                    await asyncio.wait_for(proc.wait(), timeout=self.config.task_timeout_seconds)
                except TimeoutError:
                    timed_out = True
                    log.error(f"Timed out after {self.config.task_timeout_seconds:g}s, killing process tree")
                    await self.supervisor.terminate_tree(proc.pid, self.config.grace_seconds)
                    await proc.wait()

                try:
                    await asyncio.wait_for(pumps, timeout=_DRAIN_SECONDS)
                except TimeoutError:
                    log.warning("Output still open after exit, log may be truncated")
            finally:
                self._running -= 1
                self.supervisor.untrack(proc.pid)

        duration = time.monotonic() - started
        exit_code = proc.returncode
        error = None
        if timed_out:
            error = f"timed out after {self.config.task_timeout_seconds:g}s"
        elif killed_on_cancel or (self._cancelled and exit_code != 0):
            error = "cancelled"

        success = exit_code == 0 and error is None
        if success:
            log.info(f"Passed ({duration:.1f}s) - Log: {log_file}")
        else:
            log.error(f"Failed ({duration:.1f}s, exit {exit_code}) - Log: {log_file}")
        return TaskResult(task, success, exit_code, duration, log_file, error)

    async def cancel(self) -> TerminationReport:
        """Stop scheduling, kill every running tree and sweep run containers."""
        if not self._cancelled:
            logger.warning("Batch run cancelled, terminating running tasks")
        self._cancelled = True
        report = await self.supervisor.terminate_all(self.config.grace_seconds)
        await self.supervisor.sweep_containers(self.run_id)
        return report
