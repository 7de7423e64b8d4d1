from __future__ import annotations

import pytest
from pydantic import ValidationError

from shared.config import ApprovalConfig, OrchestratorConfig, load_settings

_ENV_NAMES = (
    "AGENT_MAX_RETRIES",
    "AGENT_MAX_ITERATIONS",
    "AGENT_ENABLE_LEARNING",
    "AGENT_ENABLE_AUTO_FIX",
    "AGENT_CONFIRM_BEFORE_WRITE",
    "APPROVAL_TIMEOUT_SECONDS",
    "APPROVAL_BATCH_THRESHOLD",
    "APPROVAL_CONFIRM_MEDIUM_RISK",
    "APPROVAL_CONFIRMATION_PREFIX",
    "APPROVAL_AUDIT_DB_PATH",
    "MEMORY_MAX_EPISODES",
    "MEMORY_ENABLE_PERSISTENCE",
    "MEMORY_DB_PATH",
    "LOG_LEVEL",
)


def _clear_env(monkeypatch):
    for name in _ENV_NAMES:
        monkeypatch.delenv(name, raising=False)


def test_defaults(monkeypatch):
    _clear_env(monkeypatch)

    settings = load_settings(dotenv=False)

    assert settings.orchestrator.max_retries == 3
    assert settings.orchestrator.max_iterations == 10
    assert settings.orchestrator.enable_learning is True
    assert settings.orchestrator.confirm_before_write is False
    assert settings.approval.approval_timeout == 300.0
    assert settings.approval.batch_threshold == 200
    assert settings.approval.confirmation_prefix == "确认执行"
    assert settings.memory.max_episodes == 100
    assert settings.memory.db_path == "memory.db"
    assert settings.log_level == "INFO"


def test_environment_overrides(monkeypatch):
    _clear_env(monkeypatch)
    monkeypatch.setenv("AGENT_MAX_RETRIES", "5")
    monkeypatch.setenv("AGENT_ENABLE_LEARNING", "off")
    monkeypatch.setenv("AGENT_CONFIRM_BEFORE_WRITE", "Yes")
    monkeypatch.setenv("APPROVAL_BATCH_THRESHOLD", "50")
    monkeypatch.setenv("APPROVAL_CONFIRM_MEDIUM_RISK", "1")
    monkeypatch.setenv("APPROVAL_AUDIT_DB_PATH", "/tmp/audit-test.db")
    monkeypatch.setenv("MEMORY_ENABLE_PERSISTENCE", "false")
    monkeypatch.setenv("LOG_LEVEL", "debug")

    settings = load_settings(dotenv=False)

    assert settings.orchestrator.max_retries == 5
    assert settings.orchestrator.enable_learning is False
    assert settings.orchestrator.confirm_before_write is True
    assert settings.approval.batch_threshold == 50
    assert settings.approval.confirm_medium_risk is True
    assert settings.approval.audit_db_path == "/tmp/audit-test.db"
    assert settings.memory.enable_persistence is False
    assert settings.log_level == "DEBUG"


def test_invalid_numbers_fall_back_and_are_clamped(monkeypatch):
    _clear_env(monkeypatch)
    monkeypatch.setenv("AGENT_MAX_RETRIES", "many")
    monkeypatch.setenv("AGENT_MAX_ITERATIONS", "0")
    monkeypatch.setenv("APPROVAL_TIMEOUT_SECONDS", "-5")
    monkeypatch.setenv("MEMORY_MAX_EPISODES", "")

    settings = load_settings(dotenv=False)

    assert settings.orchestrator.max_retries == 3
    assert settings.orchestrator.max_iterations == 1
    assert settings.approval.approval_timeout == 1.0
    assert settings.memory.max_episodes == 100


def test_configs_are_validated_and_frozen():
    with pytest.raises(ValidationError):
        OrchestratorConfig(max_iterations=0)
    with pytest.raises(ValidationError):
        ApprovalConfig(batch_threshold=0)

    config = ApprovalConfig()
    with pytest.raises(ValidationError):
        config.batch_threshold = 10
    assert config.model_copy(update={"batch_threshold": 10}).batch_threshold == 10
