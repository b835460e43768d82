"""Pytest configuration and fixtures for bridgenet tests."""

import os
from collections.abc import Generator
from pathlib import Path

import pytest

from bridgenet.config import HarnessConfig
from bridgenet.constants import ENV_ENVIRONMENT_ID, ENV_REUSE_ENVIRONMENT, ENV_RUN_ID
from tests.mocks.fakes import CallLog, FakeLauncher


@pytest.fixture(autouse=True)
def clean_env(monkeypatch: pytest.MonkeyPatch) -> None:
    """Keep harness environment variables from leaking into tests."""
    for name in (ENV_REUSE_ENVIRONMENT, ENV_ENVIRONMENT_ID, ENV_RUN_ID):
        monkeypatch.delenv(name, raising=False)


@pytest.fixture
def in_tmp(tmp_path: Path) -> Generator[Path, None, None]:
    """Run the test with ``tmp_path`` as working directory.

    Yields:
        The temporary directory
    """
    orig_dir = os.getcwd()
    os.chdir(tmp_path)
    yield tmp_path
    os.chdir(orig_dir)


@pytest.fixture
def harness_config(tmp_path: Path) -> HarnessConfig:
    """Configuration with every directory under ``tmp_path``.

    Returns:
        HarnessConfig instance
    """
    config = HarnessConfig()
    config.network.env_id = "unit-env"
    config.launch.claim_dir = str(tmp_path / "claims")
    config.reuse.lock_dir = str(tmp_path / "locks")
    config.reuse.poll_interval_seconds = 0.05
    config.reuse.deadline_seconds = 2.0
    config.batch.suites_dir = str(tmp_path / "suites")
    config.batch.log_dir = str(tmp_path / "logs")
    config.batch.grace_seconds = 1.0
    config.logging.directory = str(tmp_path / "bridgenet-logs")
    return config


@pytest.fixture
def call_log() -> CallLog:
    return CallLog()


@pytest.fixture
def fake_launcher() -> FakeLauncher:
    return FakeLauncher()
