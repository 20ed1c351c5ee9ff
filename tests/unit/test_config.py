"""
Unit tests for lxc_common.config.

Tests defaults, environment variable parsing and validation.
"""

import pytest

from lxc_common.config import EngineConfig, RetryConfig


class TestRetryConfig:
    """Test suite for RetryConfig."""

    def test_defaults_are_valid(self):
        config = RetryConfig()
        config.validate()

        assert config.base_delay == 0.5
        assert config.multiplier == 2.0
        assert config.max_delay == 10.0
        assert config.max_attempts == 4

    @pytest.mark.parametrize(
        "kwargs",
        [
            {"base_delay": -1},
            {"multiplier": 0.5},
            {"base_delay": 5.0, "max_delay": 1.0},
            {"max_attempts": 0},
        ],
    )
    def test_invalid_values(self, kwargs):
        with pytest.raises(ValueError):
            RetryConfig(**kwargs).validate()

    def test_from_env(self):
        config = RetryConfig.from_env(
            {
                "LXC_CONSOLE_RETRY_BASE_DELAY": "0.1",
                "LXC_CONSOLE_RETRY_MAX_ATTEMPTS": "7",
            }
        )

        assert config.base_delay == 0.1
        assert config.max_attempts == 7
        assert config.multiplier == 2.0


class TestEngineConfig:
    """Test suite for EngineConfig."""

    def test_defaults(self):
        config = EngineConfig()
        config.validate()

        assert config.refresh_interval == 10.0
        assert config.operation_retention == 30.0
        assert config.operation_timeout == 180.0
        assert config.history_limit == 50
        assert config.status_source == "poll"
        assert config.endpoint is None

    def test_from_env(self):
        config = EngineConfig.from_env(
            {
                "LXC_CONSOLE_ENDPOINT": "https://lxd.example.com:8443",
                "LXC_CONSOLE_REFRESH_INTERVAL": "2.5",
                "LXC_CONSOLE_HISTORY_LIMIT": "10",
                "LXC_CONSOLE_STATUS_SOURCE": "wait",
            }
        )

        assert config.endpoint == "https://lxd.example.com:8443"
        assert config.refresh_interval == 2.5
        assert config.history_limit == 10
        assert config.status_source == "wait"

    def test_from_empty_env_uses_defaults(self):
        assert EngineConfig.from_env({}) == EngineConfig()

    @pytest.mark.parametrize("value", ["abc", "0", "-3"])
    def test_invalid_env_value_falls_back(self, value, caplog):
        config = EngineConfig.from_env({"LXC_CONSOLE_POLL_INTERVAL": value})

        assert config.poll_interval == 0.5
        assert "LXC_CONSOLE_POLL_INTERVAL" in caplog.text

    def test_invalid_status_source_falls_back(self):
        config = EngineConfig.from_env({"LXC_CONSOLE_STATUS_SOURCE": "websocket"})
        assert config.status_source == "poll"

    @pytest.mark.parametrize(
        "kwargs",
        [
            {"refresh_interval": 0},
            {"operation_retention": -1},
            {"history_limit": 0},
            {"status_source": "push"},
        ],
    )
    def test_validate_rejects(self, kwargs):
        with pytest.raises(ValueError):
            EngineConfig(**kwargs).validate()
