"""Process-tree supervision for batch runs.

Tracks the root pid of every spawned task and, on shutdown, terminates each
whole tree deepest-first: SIGTERM, a grace period, then SIGKILL for
survivors. Failures are logged and never abort the shutdown.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field

import psutil

from bridgenet.constants import DEFAULT_TERMINATE_GRACE_SECONDS, LABEL_RUN
from bridgenet.docker import remove_matching
from bridgenet.exceptions import CommandError, ProcessTerminationError
from bridgenet.logging import get_logger

logger = get_logger("supervisor")


@dataclass
class TerminationReport:
    """Which pids went away on SIGTERM, which needed SIGKILL, which survived."""

    terminated: list[int] = field(default_factory=list)
    killed: list[int] = field(default_factory=list)
    failed: list[int] = field(default_factory=list)

    @property
    def clean(self) -> bool:
        return not self.failed

    def merge(self, other: TerminationReport) -> None:
        self.terminated.extend(other.terminated)
        self.killed.extend(other.killed)
        self.failed.extend(other.failed)


def descendants(pid: int) -> list[psutil.Process]:
    """All descendants of ``pid``, deepest first. Empty if ``pid`` is gone."""
    try:
        root = psutil.Process(pid)
    except psutil.NoSuchProcess:
        return []

    ordered: list[psutil.Process] = []

    def visit(proc: psutil.Process) -> None:
        try:
            children = proc.children()
        except (psutil.NoSuchProcess, psutil.AccessDenied):
            return
        for child in children:
            visit(child)
            ordered.append(child)

    visit(root)
    return ordered


def _log_failure(proc: psutil.Process, reason: str) -> None:
    error = ProcessTerminationError(f"Could not terminate pid {proc.pid}: {reason}", proc.pid)
    logger.error(str(error))


def _signal_all(procs: list[psutil.Process], kill: bool, report: TerminationReport) -> list[psutil.Process]:
    signalled = []
    for proc in procs:
        try:
            if kill:
                proc.kill()
            else:
                proc.terminate()
            signalled.append(proc)
        except psutil.NoSuchProcess:
            report.terminated.append(proc.pid)
        except psutil.AccessDenied as e:
            _log_failure(proc, f"access denied ({e})")
            report.failed.append(proc.pid)
    return signalled


async def terminate_tree(pid: int, grace: float = DEFAULT_TERMINATE_GRACE_SECONDS) -> TerminationReport:
    """Terminate ``pid`` and every descendant.

    Children are collected before the root is signalled so that orphans
    re-parented to init are still reached.
    """
    report = TerminationReport()
    procs = descendants(pid)
    try:
        procs.append(psutil.Process(pid))
    except psutil.NoSuchProcess:
        pass
    if not procs:
        return report

    logger.debug(f"Terminating tree of pid {pid} ({len(procs)} processes)")
    signalled = _signal_all(procs, kill=False, report=report)
    gone, alive = await asyncio.to_thread(psutil.wait_procs, signalled, timeout=grace)
    report.terminated.extend(p.pid for p in gone)

    if alive:
        logger.warning(f"{len(alive)} processes under pid {pid} ignored SIGTERM, sending SIGKILL")
        killed = _signal_all(alive, kill=True, report=report)
        gone, alive = await asyncio.to_thread(psutil.wait_procs, killed, timeout=max(grace, 1.0))
        report.killed.extend(p.pid for p in gone)
        for proc in alive:
            _log_failure(proc, "still alive after SIGKILL")
            report.failed.append(proc.pid)

    return report


class ProcessSupervisor:
    """Registry of spawned task processes, each the root of a tree."""

    def __init__(self, grace: float = DEFAULT_TERMINATE_GRACE_SECONDS) -> None:
        self.grace = grace
        self._tracked: dict[int, str] = {}

    @property
    def tracked(self) -> dict[int, str]:
        return dict(self._tracked)

    def track(self, pid: int, label: str = "") -> None:
        self._tracked[pid] = label or str(pid)

    def untrack(self, pid: int) -> None:
        self._tracked.pop(pid, None)

    async def terminate_tree(self, pid: int, grace: float | None = None) -> TerminationReport:
        report = await terminate_tree(pid, self.grace if grace is None else grace)
        self.untrack(pid)
        return report

    async def terminate_all(self, grace: float | None = None) -> TerminationReport:
        """Terminate every tracked tree concurrently and clear the registry."""
        pids = list(self._tracked)
        report = TerminationReport()
        if not pids:
            return report

        logger.info(f"Terminating {len(pids)} tracked process trees")
        reports = await asyncio.gather(*(self.terminate_tree(pid, grace) for pid in pids))
        for r in reports:
            report.merge(r)

        if report.failed:
            logger.error(f"Failed to terminate pids: {report.failed}")
        return report

    async def sweep_containers(self, run_id: str) -> list[str]:
        """Force-remove containers labelled with ``run_id``."""
        try:
            removed = await remove_matching(labels={LABEL_RUN: run_id})
        except CommandError as e:
            logger.warning(f"Container sweep for run {run_id} failed: {e}")
            return []
        if removed:
            logger.info(f"Removed {len(removed)} containers from run {run_id}")
        return removed
