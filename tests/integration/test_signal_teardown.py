"""Signal-driven teardown of a shared environment in a real process."""

import os
import signal
import subprocess
import sys
from pathlib import Path

import pytest

pytestmark = pytest.mark.integration

PROJECT_ROOT = Path(__file__).resolve().parents[2]

HOLDER = """
import asyncio
from bridgenet.environment import SharedEnvironmentManager
from bridgenet.launcher_types import EnvironmentDescriptor, LaunchedEnvironment

class Launcher:
    async def launch(self, config):
        async def cleanup():
            print("cleaned", flush=True)
        return LaunchedEnvironment(descriptor=EnvironmentDescriptor(env_id="held"), cleanup=cleanup)

async def main():
    manager = SharedEnvironmentManager(Launcher())
    await manager.acquire()
    manager.install_signal_handlers()
    print("ready", flush=True)
    await asyncio.sleep(30)
    print("survived", flush=True)

asyncio.run(main())
"""


class TestSignalTeardown:
    @pytest.mark.parametrize("sig", [signal.SIGINT, signal.SIGTERM])
    def test_signal_cleans_up_and_exits(self, sig: signal.Signals) -> None:
        proc = subprocess.Popen(
            [sys.executable, "-c", HOLDER],
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            text=True,
            cwd=PROJECT_ROOT,
            env={**os.environ, "PYTHONPATH": str(PROJECT_ROOT)},
        )
        try:
            assert proc.stdout.readline().strip() == "ready"
            proc.send_signal(sig)
            stdout, stderr = proc.communicate(timeout=20)
        finally:
            if proc.poll() is None:
                proc.kill()
                proc.wait()

        assert proc.returncode != 0, stderr
        assert "cleaned" in stdout
        assert "survived" not in stdout
