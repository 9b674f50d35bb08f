"""Tests for environment settings and system configuration."""

import pytest
from pydantic import ValidationError

from terminus_runner.core.config import EnvSettings, SystemConfig

ENV_VARS = [
    "TERMINUS_URL",
    "TERMINUS_PORT",
    "DEVICE_ID",
    "PLUGINS_DIR",
    "EXECUTION_MODE",
    "START_FAILURE_POLICY",
    "SAFETY_MARGIN",
    "RECOVERY_REFRESH_RATE",
    "LOG_LEVEL",
]


@pytest.fixture(autouse=True)
def clean_env(monkeypatch, tmp_path):
    for name in ENV_VARS:
        monkeypatch.delenv(name, raising=False)
    # Keep a developer's .env out of the tests
    monkeypatch.chdir(tmp_path)


class TestEnvSettings:
    def test_terminus_url_required(self):
        with pytest.raises(ValidationError):
            EnvSettings()

    def test_defaults(self, monkeypatch):
        monkeypatch.setenv("TERMINUS_URL", "terminus.local")

        env = EnvSettings()

        assert env.terminus_port == 2300
        assert env.device_id == 1
        assert env.plugins_dir is None
        assert env.execution_mode == "thread"
        assert env.safety_margin == 60.0
        assert env.poll_interval == 600.0
        assert env.recovery_refresh_rate == 60
        assert env.log_level == "INFO"

    def test_reads_dotenv_file(self, tmp_path):
        (tmp_path / ".env").write_text("TERMINUS_URL=192.168.1.20\nDEVICE_ID=3\n")

        env = EnvSettings()

        assert env.terminus_url == "192.168.1.20"
        assert env.device_id == 3

    def test_invalid_number(self, monkeypatch):
        monkeypatch.setenv("TERMINUS_URL", "terminus.local")
        monkeypatch.setenv("TERMINUS_PORT", "http")

        with pytest.raises(ValidationError):
            EnvSettings()


class TestSystemConfig:
    def test_from_env(self, monkeypatch):
        monkeypatch.setenv("TERMINUS_URL", "terminus.local")
        monkeypatch.setenv("TERMINUS_PORT", "8080")
        monkeypatch.setenv("DEVICE_ID", "4")
        monkeypatch.setenv("EXECUTION_MODE", "PROCESS")
        monkeypatch.setenv("START_FAILURE_POLICY", "Degrade")
        monkeypatch.setenv("SAFETY_MARGIN", "90")

        config = SystemConfig.from_env()

        assert config.device_id == 4
        assert config.client.base_url == "http://terminus.local:8080"
        assert config.sandbox.execution_mode == "process"
        assert config.start_failure_policy == "degrade"
        assert config.coordinator.safety_margin == 90.0

    def test_zero_recovery_rate_disables_override(self, monkeypatch):
        monkeypatch.setenv("TERMINUS_URL", "terminus.local")
        monkeypatch.setenv("RECOVERY_REFRESH_RATE", "0")

        config = SystemConfig.from_env()

        assert config.coordinator.recovery_refresh_rate is None

    def test_dataclass_defaults(self):
        config = SystemConfig()

        assert config.client.base_url == "http://localhost:2300"
        assert config.sandbox.render_timeout == 120.0
        assert config.coordinator.restore_attempts == 3
