"""Unit tests for dependency checks."""

from unittest.mock import AsyncMock, patch

import pytest

from bridgenet.exceptions import CommandError, DependencyError
from bridgenet.preflight import check_dependencies, docker_running, kurtosis_installed
from bridgenet.shell import CommandResult


def _by_tool(missing: set[str]):
    async def fake(cmd, **kwargs):
        if cmd[0] in missing:
            raise CommandError(f"Command not found: {cmd[0]}", cmd, None)
        return CommandResult(cmd, 0, f"{cmd[0]} 1.0\n", "")

    return AsyncMock(side_effect=fake)


class TestProbes:
    async def test_installed(self) -> None:
        with patch("bridgenet.preflight.run_command", new=_by_tool(set())):
            assert await kurtosis_installed()

    async def test_not_running(self) -> None:
        result = CommandResult(["docker"], 1, "", "Cannot connect to the Docker daemon")
        with patch("bridgenet.preflight.run_command", new=AsyncMock(return_value=result)):
            assert not await docker_running()


class TestCheckDependencies:
    async def test_all_present(self) -> None:
        with patch("bridgenet.preflight.run_command", new=_by_tool(set())) as run:
            await check_dependencies()
        checked = [c.args[0][0] for c in run.await_args_list]
        assert checked == ["kurtosis", "docker", "forge"]

    @pytest.mark.parametrize("tool", ["kurtosis", "docker", "forge"])
    async def test_missing_tool(self, tool: str) -> None:
        with patch("bridgenet.preflight.run_command", new=_by_tool({tool})):
            with pytest.raises(DependencyError) as exc_info:
                await check_dependencies()
        assert exc_info.value.tool == tool
        assert exc_info.value.hint

    async def test_skips(self) -> None:
        with patch("bridgenet.preflight.run_command", new=_by_tool({"kurtosis", "forge"})):
            await check_dependencies(skip_kurtosis=True, skip_forge=True)
