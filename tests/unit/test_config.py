"""Unit tests for bridgenet configuration."""

from pathlib import Path

import pytest
from pydantic import ValidationError

from bridgenet.config import (
    BatchConfig,
    HarnessConfig,
    NetworkConfig,
    default_env_id,
    env_flag,
    sanitize_env_id,
)
from bridgenet.constants import ENV_ENVIRONMENT_ID, ENV_REUSE_ENVIRONMENT, ENV_RUN_ID, REQUIRED_ENDPOINTS


class TestEnvIds:
    @pytest.mark.smoke
    def test_sanitize(self) -> None:
        assert sanitize_env_id("My_Suite 1") == "my-suite-1"
        assert sanitize_env_id("  abc-DEF  ") == "abc-def"

    def test_default_env_id_is_prefixed(self) -> None:
        env_id = default_env_id("suite")
        assert env_id.startswith("suite-")
        assert env_id.split("-")[-1].isdigit()

    def test_resolved_env_id(self) -> None:
        assert NetworkConfig(env_id="A.B").resolved_env_id() == "a-b"
        assert NetworkConfig().resolved_env_id().startswith("shared-test-")


class TestEnvFlag:
    @pytest.mark.parametrize("value", ["1", "true", "YES", "on"])
    def test_truthy(self, monkeypatch: pytest.MonkeyPatch, value: str) -> None:
        monkeypatch.setenv("SOME_FLAG", value)
        assert env_flag("SOME_FLAG") is True

    @pytest.mark.parametrize("value", ["", "0", "false", "nope"])
    def test_falsy(self, monkeypatch: pytest.MonkeyPatch, value: str) -> None:
        monkeypatch.setenv("SOME_FLAG", value)
        assert env_flag("SOME_FLAG") is False


class TestHarnessConfig:
    @pytest.mark.smoke
    def test_defaults(self) -> None:
        config = HarnessConfig()
        assert config.waits.default_timeout_seconds == 30.0
        assert config.reuse.enabled is False
        assert config.reuse.poll_interval_seconds == 2.0
        assert config.reuse.deadline_seconds == 1200.0
        assert config.batch.max_concurrency == 4
        assert config.launch.required_endpoints == list(REQUIRED_ENDPOINTS)
        assert config.launch.atomic_claim is False

    def test_load_missing_file_gives_defaults(self, tmp_path: Path) -> None:
        config = HarnessConfig.load(tmp_path / "nope.yaml")
        assert config == HarnessConfig()

    def test_save_and_load(self, tmp_path: Path) -> None:
        path = tmp_path / "cfg" / "config.yaml"
        config = HarnessConfig()
        config.network.env_id = "saved"
        config.batch.max_concurrency = 2
        config.save(path)

        loaded = HarnessConfig.load(path)
        assert loaded.network.env_id == "saved"
        assert loaded.batch.max_concurrency == 2

    def test_load_yaml(self, tmp_path: Path) -> None:
        path = tmp_path / "config.yaml"
        path.write_text("batch:\n  max_concurrency: 3\nreuse:\n  enabled: true\n")

        config = HarnessConfig.load(path)
        assert config.batch.max_concurrency == 3
        assert config.reuse.enabled is True

    def test_rejects_bad_values(self) -> None:
        with pytest.raises(ValidationError):
            BatchConfig(max_concurrency=0)
        with pytest.raises(ValidationError):
            HarnessConfig.from_dict({"logging": {"level": "loud"}})


class TestEnvOverrides:
    def test_overrides_applied(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv(ENV_REUSE_ENVIRONMENT, "true")
        monkeypatch.setenv(ENV_ENVIRONMENT_ID, "Shared Env")
        monkeypatch.setenv(ENV_RUN_ID, "Run_7")

        original = HarnessConfig()
        config = original.with_env_overrides()

        assert config.reuse.enabled is True
        assert config.network.env_id == "shared-env"
        assert config.batch.run_id == "run-7"
        assert original.reuse.enabled is False
        assert original.network.env_id is None

    def test_no_overrides(self) -> None:
        assert HarnessConfig().with_env_overrides() == HarnessConfig()
