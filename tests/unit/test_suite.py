"""Unit tests for suite helpers."""

import pytest

from bridgenet.config import HarnessConfig
from bridgenet.environment import SharedEnvironmentManager
from bridgenet.exceptions import ConfigurationError
from bridgenet.launcher_types import EnvironmentDescriptor
from bridgenet.reuse_lock import LockFile
from bridgenet.suite import SharedSuite, environment_for_suite
from tests.mocks.fakes import FakeLauncher


class RecordingSuite(SharedSuite):
    def __init__(self, *args, fail_setup: bool = False, fail_teardown: bool = False, **kwargs) -> None:
        super().__init__(*args, **kwargs)
        self.fail_setup = fail_setup
        self.fail_teardown = fail_teardown
        self.hooks: list[str] = []

    async def on_setup(self, environment: EnvironmentDescriptor) -> None:
        self.hooks.append(f"setup:{environment.env_id}")
        if self.fail_setup:
            raise RuntimeError("fund accounts failed")

    async def on_teardown(self) -> None:
        self.hooks.append("teardown")
        if self.fail_teardown:
            raise RuntimeError("cleanup failed")


class TestEnvironmentForSuite:
    async def test_without_reuse_acquires(self, harness_config: HarnessConfig, fake_launcher: FakeLauncher) -> None:
        manager = SharedEnvironmentManager(fake_launcher)

        descriptor = await environment_for_suite(harness_config, manager)

        assert descriptor is manager.environment
        assert manager.reference_count == 1

    async def test_reuse_leader_launches_named_env(
        self, harness_config: HarnessConfig, fake_launcher: FakeLauncher
    ) -> None:
        harness_config.reuse.enabled = True
        manager = SharedEnvironmentManager(fake_launcher)
        attached: list[str] = []

        async def attach(env_id: str):
            attached.append(env_id)
            return None

        descriptor = await environment_for_suite(harness_config, manager, attach=attach)

        assert descriptor.env_id == "unit-env"
        assert attached == ["unit-env"]
        assert fake_launcher.launches == 1

    async def test_reuse_default_id(self, harness_config: HarnessConfig, fake_launcher: FakeLauncher) -> None:
        harness_config.reuse.enabled = True
        harness_config.network.env_id = None
        manager = SharedEnvironmentManager(fake_launcher)

        async def attach(env_id: str):
            return None

        descriptor = await environment_for_suite(harness_config, manager, attach=attach)
        assert descriptor.env_id == "shared-test"

    async def test_reuse_follower_attaches(self, harness_config: HarnessConfig, fake_launcher: FakeLauncher) -> None:
        harness_config.reuse.enabled = True
        holder = LockFile(f"{harness_config.reuse.lock_dir}/bridgenet-reuse-unit-env.lock")
        assert holder.try_acquire()
        existing = EnvironmentDescriptor(env_id="unit-env")

        async def attach(env_id: str):
            return existing

        manager = SharedEnvironmentManager(fake_launcher)
        assert await environment_for_suite(harness_config, manager, attach=attach) is existing
        assert fake_launcher.launches == 0
        holder.release()

    async def test_second_call_reuses_local_environment(
        self, harness_config: HarnessConfig, fake_launcher: FakeLauncher
    ) -> None:
        harness_config.reuse.enabled = True
        manager = SharedEnvironmentManager(fake_launcher)

        async def attach(env_id: str):
            return None

        first = await environment_for_suite(harness_config, manager, attach=attach)
        second = await environment_for_suite(harness_config, manager, attach=attach)

        assert first is second
        assert fake_launcher.launches == 1
        assert manager.reference_count == 2


class TestSharedSuite:
    async def test_lifecycle(self, fake_launcher: FakeLauncher) -> None:
        manager = SharedEnvironmentManager(fake_launcher)
        suite = RecordingSuite("transfers", manager)

        environment = await suite.setup()
        assert suite.environment is environment
        assert manager.reference_count == 1

        await suite.teardown()
        assert suite.hooks == [f"setup:{environment.env_id}", "teardown"]
        assert manager.reference_count == 0
        assert manager.is_running
        assert fake_launcher.cleanups == 0

    async def test_environment_before_setup(self, fake_launcher: FakeLauncher) -> None:
        suite = SharedSuite("early", SharedEnvironmentManager(fake_launcher))
        with pytest.raises(ConfigurationError, match="setup"):
            _ = suite.environment

    async def test_failed_hook_releases(self, fake_launcher: FakeLauncher) -> None:
        manager = SharedEnvironmentManager(fake_launcher)
        suite = RecordingSuite("bad", manager, fail_setup=True)

        with pytest.raises(RuntimeError, match="fund accounts"):
            await suite.setup()
        assert manager.reference_count == 0

    async def test_teardown_error_logged(self, fake_launcher: FakeLauncher) -> None:
        manager = SharedEnvironmentManager(fake_launcher)
        suite = RecordingSuite("noisy", manager, fail_teardown=True)
        await suite.setup()

        await suite.teardown()

        assert manager.reference_count == 0

    async def test_two_suites_share(self, fake_launcher: FakeLauncher) -> None:
        manager = SharedEnvironmentManager(fake_launcher)
        first = RecordingSuite("a", manager)
        second = RecordingSuite("b", manager)

        assert await first.setup() is await second.setup()
        assert fake_launcher.launches == 1
        assert manager.reference_count == 2
