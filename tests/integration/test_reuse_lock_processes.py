"""Reuse-lock election across real OS processes."""

import json
import os
import subprocess
import sys
from pathlib import Path

import pytest

from bridgenet.reuse_lock import LockFile

pytestmark = pytest.mark.integration

PROJECT_ROOT = Path(__file__).resolve().parents[2]

# Each worker runs acquire_shared against a marker file standing in for a
# running environment: attach reads it, launch writes it.
WORKER = """
import asyncio, json, os, sys
from pathlib import Path
from bridgenet.reuse_lock import ReuseLock, acquire_shared

lock_dir, marker = Path(sys.argv[1]), Path(sys.argv[2])

async def attach():
    if marker.exists():
        return json.loads(marker.read_text())
    return None

async def launch():
    await asyncio.sleep(0.5)
    value = {"env": "shared", "launched_by": os.getpid()}
    marker.write_text(json.dumps(value))
    return value

lock = ReuseLock("race", lock_dir=lock_dir, poll_interval=0.05, deadline=30)
result = asyncio.run(acquire_shared(lock, attach, launch))
print(json.dumps({"pid": os.getpid(), "result": result}))
"""

TRY_ACQUIRE = """
import sys, time
from pathlib import Path
from bridgenet.reuse_lock import LockFile

lock = LockFile(Path(sys.argv[1]))
print("leader" if lock.try_acquire() else "follower", flush=True)
time.sleep(0.5)
lock.release()
"""


def _env() -> dict[str, str]:
    path = os.environ.get("PYTHONPATH", "")
    return {**os.environ, "PYTHONPATH": os.pathsep.join(p for p in (str(PROJECT_ROOT), path) if p)}


def _spawn(code: str, *args: str) -> subprocess.Popen:
    return subprocess.Popen(
        [sys.executable, "-c", code, *args],
        stdout=subprocess.PIPE,
        stderr=subprocess.PIPE,
        text=True,
        cwd=PROJECT_ROOT,
        env=_env(),
    )


def _collect(procs: list[subprocess.Popen]) -> list[str]:
    outputs = []
    for proc in procs:
        stdout, stderr = proc.communicate(timeout=60)
        assert proc.returncode == 0, stderr
        outputs.append(stdout.strip())
    return outputs


class TestProcessElection:
    def test_exactly_one_leader(self, tmp_path: Path) -> None:
        lock_path = tmp_path / "election.lock"

        outputs = _collect([_spawn(TRY_ACQUIRE, str(lock_path)) for _ in range(6)])

        assert outputs.count("leader") == 1
        assert outputs.count("follower") == 5
        assert not lock_path.exists()

    def test_new_leader_after_release(self, tmp_path: Path) -> None:
        lock_path = tmp_path / "election.lock"
        assert _collect([_spawn(TRY_ACQUIRE, str(lock_path))]) == ["leader"]
        assert _collect([_spawn(TRY_ACQUIRE, str(lock_path))]) == ["leader"]

    def test_held_lock_blocks_other_processes(self, tmp_path: Path) -> None:
        held = LockFile(tmp_path / "election.lock")
        assert held.try_acquire()

        assert _collect([_spawn(TRY_ACQUIRE, str(held.path))]) == ["follower"]
        held.release()


class TestSharedLaunch:
    def test_one_launch_many_attach(self, tmp_path: Path) -> None:
        marker = tmp_path / "environment.json"

        outputs = _collect([_spawn(WORKER, str(tmp_path / "locks"), str(marker)) for _ in range(5)])

        reports = [json.loads(line) for line in outputs]
        launchers = {r["result"]["launched_by"] for r in reports}
        assert len(launchers) == 1
        assert all(r["result"]["env"] == "shared" for r in reports)
        assert not (tmp_path / "locks" / "bridgenet-reuse-race.lock").exists()
