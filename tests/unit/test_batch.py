"""Unit tests for the bounded batch runner."""

import asyncio
import sys
import time
from pathlib import Path
from unittest.mock import AsyncMock, patch

import pytest

from bridgenet.batch import BatchRunner, discover_tasks, pytest_command
from bridgenet.config import BatchConfig
from bridgenet.exceptions import ConfigurationError


def script_command(path: Path) -> list[str]:
    return [sys.executable, str(path)]


def write_suite(root: Path, files: dict[str, str]) -> Path:
    for relative, body in files.items():
        path = root / relative
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(body)
    return root


@pytest.fixture
def batch_config(tmp_path: Path) -> BatchConfig:
    return BatchConfig(log_dir=str(tmp_path / "logs"), max_concurrency=2, task_timeout_seconds=20, grace_seconds=1.0)


@pytest.fixture(autouse=True)
def no_docker():
    with patch("bridgenet.supervisor.remove_matching", new=AsyncMock(return_value=[])) as mock:
        yield mock


class TestDiscoverTasks:
    def test_sorted_and_named(self, tmp_path: Path) -> None:
        root = write_suite(
            tmp_path / "suites",
            {"test_b.py": "", "nested/test_a.py": "", "helpers.py": "", "test_c.txt": ""},
        )

        tasks = discover_tasks(root)

        assert [t.name for t in tasks] == ["nested__test_a", "test_b"]
        assert tasks[1].command == pytest_command(root / "test_b.py")

    def test_custom_command(self, tmp_path: Path) -> None:
        root = write_suite(tmp_path, {"test_x.py": ""})
        tasks = discover_tasks(root, command=script_command)
        assert tasks[0].command == [sys.executable, str(root / "test_x.py")]

    def test_missing_directory(self, tmp_path: Path) -> None:
        with pytest.raises(ConfigurationError, match="not found"):
            discover_tasks(tmp_path / "nope")


class TestBatchRunner:
    @pytest.mark.smoke
    async def test_pass_and_fail(self, tmp_path: Path, batch_config: BatchConfig) -> None:
        root = write_suite(
            tmp_path / "suites",
            {
                "test_ok.py": "print('all good')",
                "test_bad.py": "import sys; print('broken', file=sys.stderr); sys.exit(1)",
            },
        )
        runner = BatchRunner(batch_config, run_id="run-unit")

        summary = await runner.run(discover_tasks(root, command=script_command))

        assert [r.task.name for r in summary.results] == ["test_bad", "test_ok"]
        bad, ok = summary.results
        assert ok.success and ok.exit_code == 0
        assert not bad.success and bad.exit_code == 1
        assert summary.passed == 1 and summary.failed == 1
        assert not summary.success

        log = ok.log_file.read_text()
        assert log.startswith("$ ")
        assert "all good" in log
        assert "broken" in bad.log_file.read_text()

    async def test_run_id_exported(self, tmp_path: Path, batch_config: BatchConfig) -> None:
        root = write_suite(tmp_path, {"test_env.py": "import os; print(os.environ['BRIDGENET_RUN_ID'])"})
        summary = await BatchRunner(batch_config, run_id="run-42").run(discover_tasks(root, command=script_command))
        assert "run-42" in summary.results[0].log_file.read_text()

    async def test_bounded_concurrency(self, tmp_path: Path, batch_config: BatchConfig) -> None:
        root = write_suite(tmp_path, {f"test_{i}.py": "import time; time.sleep(0.3)" for i in range(5)})
        runner = BatchRunner(batch_config)

        summary = await runner.run(discover_tasks(root, command=script_command))

        assert runner.peak_concurrency == 2
        assert runner.running == 0
        assert len(summary.results) == 5
        assert len({r.task.name for r in summary.results}) == 5
        assert summary.success

    async def test_timeout_kills_tree(self, tmp_path: Path, batch_config: BatchConfig) -> None:
        batch_config.task_timeout_seconds = 0.5
        root = write_suite(
            tmp_path,
            {
                "test_hang.py": (
                    "import signal, subprocess, sys\n"
                    "signal.signal(signal.SIGTERM, lambda *a: None)\n"
                    "subprocess.Popen([sys.executable, '-c', 'import time; time.sleep(60)']).wait()\n"
                ),
            },
        )
        started = time.monotonic()

        summary = await BatchRunner(batch_config).run(discover_tasks(root, command=script_command))

        result = summary.results[0]
        assert not result.success
        assert result.error == "timed out after 0.5s"
        assert time.monotonic() - started < 15

    async def test_unstartable_command(self, tmp_path: Path, batch_config: BatchConfig) -> None:
        root = write_suite(tmp_path, {"test_x.py": ""})
        tasks = discover_tasks(root, command=lambda p: [str(tmp_path / "missing-binary")])

        summary = await BatchRunner(batch_config).run(tasks)

        assert not summary.results[0].success
        assert summary.results[0].exit_code is None
        assert "crashed" in summary.results[0].log_file.read_text()

    async def test_cancel(self, tmp_path: Path, batch_config: BatchConfig, no_docker: AsyncMock) -> None:
        batch_config.max_concurrency = 1
        root = write_suite(tmp_path, {f"test_{i}.py": "import time; time.sleep(30)" for i in range(3)})
        runner = BatchRunner(batch_config, run_id="run-cancel")
        running = asyncio.ensure_future(runner.run(discover_tasks(root, command=script_command)))

        for _ in range(200):
            if runner.running:
                break
            await asyncio.sleep(0.05)
        report = await runner.cancel()
        summary = await asyncio.wait_for(running, timeout=10)

        assert runner.cancelled
        assert summary.cancelled
        assert not summary.success
        assert report.clean
        assert [r.error for r in summary.results] == ["cancelled", "cancelled before start", "cancelled before start"]
        no_docker.assert_awaited_once()

    async def test_cancel_while_spawning(self, tmp_path: Path, batch_config: BatchConfig) -> None:
        root = write_suite(tmp_path, {"test_slow.py": "import time; time.sleep(30)"})
        real_exec = asyncio.create_subprocess_exec

        async def slow_exec(*args, **kwargs):
            await asyncio.sleep(0.3)
            return await real_exec(*args, **kwargs)

        runner = BatchRunner(batch_config)
        with patch("bridgenet.batch.asyncio.create_subprocess_exec", new=slow_exec):
            running = asyncio.ensure_future(runner.run(discover_tasks(root, command=script_command)))
            await asyncio.sleep(0.05)
            assert runner.running == 0
            await runner.cancel()
            cancelled_at = time.monotonic()
            summary = await asyncio.wait_for(running, timeout=15)

        assert time.monotonic() - cancelled_at < 10
        result = summary.results[0]
        assert not result.success
        assert result.error == "cancelled"
        assert runner.supervisor.tracked == {}

    async def test_duplicate_names_kept_apart(self, tmp_path: Path, batch_config: BatchConfig) -> None:
        root = write_suite(
            tmp_path / "suites",
            {"a/b__c.py": "print('from a/b__c')", "a__b/c.py": "print('from a__b/c')"},
        )
        tasks = discover_tasks(root, pattern="*.py", command=script_command)
        assert tasks[0].name == tasks[1].name == "a__b__c"

        summary = await BatchRunner(batch_config).run(tasks)

        assert len(summary.results) == 2
        assert [r.task.path for r in summary.results] == [t.path for t in tasks]
        assert {r.log_file.name for r in summary.results} == {"a__b__c.log", "a__b__c-2.log"}
        for result in summary.results:
            expected = result.task.path.relative_to(root).as_posix().removesuffix(".py")
            assert f"from {expected}" in result.log_file.read_text()
