"""
Tests for loading OrchestratorConfig from the environment.
"""

import pytest

from runner_orchestrator.config import OrchestratorConfig

ENV_VARS = [
    "WATCH_NAMESPACE",
    "MAX_CONCURRENT_RECONCILES",
    "RESYNC_INTERVAL_SEC",
    "BACKOFF_INITIAL_SEC",
    "BACKOFF_MAX_SEC",
    "BACKOFF_FACTOR",
    "ACTIONS_REQUEST_TIMEOUT_SEC",
    "KUBE_IN_CLUSTER",
    "LOG_LEVEL",
]


@pytest.fixture
def clean_env(monkeypatch):
    for name in ENV_VARS:
        monkeypatch.delenv(name, raising=False)
    return monkeypatch


class TestFromEnv:

    def test_defaults(self, clean_env):
        config = OrchestratorConfig.from_env()

        assert config.watch_namespace == ""
        assert config.max_concurrent_reconciles == 4
        assert config.resync_interval_sec == 300.0
        assert config.backoff_initial_sec == 0.5
        assert config.backoff_max_sec == 300.0
        assert config.backoff_factor == 2.0
        assert config.actions_request_timeout_sec == 30.0
        assert config.kube_in_cluster is False
        assert config.log_level == "INFO"

    def test_overrides(self, clean_env):
        clean_env.setenv("WATCH_NAMESPACE", "arc-runners")
        clean_env.setenv("MAX_CONCURRENT_RECONCILES", "8")
        clean_env.setenv("KUBE_IN_CLUSTER", "True")
        clean_env.setenv("LOG_LEVEL", "debug")

        config = OrchestratorConfig.from_env()

        assert config.watch_namespace == "arc-runners"
        assert config.max_concurrent_reconciles == 8
        assert config.kube_in_cluster is True
        assert config.log_level == "DEBUG"

    @pytest.mark.parametrize("name, value, attr, expected", [
        ("MAX_CONCURRENT_RECONCILES", "0", "max_concurrent_reconciles", 1),
        ("BACKOFF_FACTOR", "0.5", "backoff_factor", 1.0),
        ("BACKOFF_MAX_SEC", "0.1", "backoff_max_sec", 0.5),
    ])
    def test_invalid_values_are_clamped(self, clean_env, name, value, attr, expected):
        clean_env.setenv(name, value)

        config = OrchestratorConfig.from_env()

        assert getattr(config, attr) == expected

    def test_non_numeric_value_raises(self, clean_env):
        clean_env.setenv("RESYNC_INTERVAL_SEC", "soon")

        with pytest.raises(ValueError):
            OrchestratorConfig.from_env()
