"""
Runtime configuration.

Options are read from the environment after loading a local `.env`, using
the same truthy convention everywhere ("1", "true", "yes", "on").
Invalid numeric values fall back to defaults with a warning.
"""

from __future__ import annotations

import logging
import os

from dotenv import load_dotenv
from pydantic import BaseModel, Field

logger = logging.getLogger(__name__)

_TRUTHY = ("1", "true", "yes", "on")


class OrchestratorConfig(BaseModel):
    """Closed-loop controller options."""
    model_config = {"frozen": True}

    max_retries: int = Field(default=3, ge=0)
    max_iterations: int = Field(default=10, ge=1)
    enable_learning: bool = True
    enable_auto_fix: bool = True
    verification_timeout: float = Field(
        default=5.0,
        gt=0.0,
        description="Seconds. Carried for callers wrapping verification; not enforced by the loop.",
    )
    confirm_before_write: bool = False


class ApprovalConfig(BaseModel):
    """Risk & approval gate options."""
    model_config = {"frozen": True}

    approval_timeout: float = Field(default=300.0, gt=0.0, description="Seconds until a pending request expires")
    batch_threshold: int = Field(default=200, ge=1, description="Row/cell count above which an operation escalates")
    enable_audit: bool = True
    confirm_high_risk: bool = True
    confirm_medium_risk: bool = False
    confirmation_prefix: str = "确认执行"
    audit_db_path: str = "audit.db"


class MemoryConfig(BaseModel):
    """Episodic memory options."""
    model_config = {"frozen": True}

    max_episodes: int = Field(default=100, ge=1)
    expiration_seconds: float = Field(default=7 * 24 * 3600.0, gt=0.0)
    recency_window_seconds: float = Field(default=10 * 24 * 3600.0, gt=0.0)
    enable_persistence: bool = True
    db_path: str = "memory.db"


class Settings(BaseModel):
    model_config = {"frozen": True}

    orchestrator: OrchestratorConfig = Field(default_factory=OrchestratorConfig)
    approval: ApprovalConfig = Field(default_factory=ApprovalConfig)
    memory: MemoryConfig = Field(default_factory=MemoryConfig)
    log_level: str = "INFO"


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    return raw.strip().lower() in _TRUTHY


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name, "").strip()
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError:
        logger.warning("Invalid integer for %s=%r, using default %s", name, raw, default)
        return default


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name, "").strip()
    if not raw:
        return default
    try:
        return float(raw)
    except ValueError:
        logger.warning("Invalid number for %s=%r, using default %s", name, raw, default)
        return default


def load_settings(dotenv: bool = True) -> Settings:
    """Build the settings bundle from environment variables."""
    if dotenv:
        load_dotenv(override=False)

    orchestrator = OrchestratorConfig(
        max_retries=max(0, _env_int("AGENT_MAX_RETRIES", 3)),
        max_iterations=max(1, _env_int("AGENT_MAX_ITERATIONS", 10)),
        enable_learning=_env_bool("AGENT_ENABLE_LEARNING", True),
        enable_auto_fix=_env_bool("AGENT_ENABLE_AUTO_FIX", True),
        verification_timeout=max(0.1, _env_float("AGENT_VERIFICATION_TIMEOUT_SECONDS", 5.0)),
        confirm_before_write=_env_bool("AGENT_CONFIRM_BEFORE_WRITE", False),
    )
    approval = ApprovalConfig(
        approval_timeout=max(1.0, _env_float("APPROVAL_TIMEOUT_SECONDS", 300.0)),
        batch_threshold=max(1, _env_int("APPROVAL_BATCH_THRESHOLD", 200)),
        enable_audit=_env_bool("APPROVAL_ENABLE_AUDIT", True),
        confirm_high_risk=_env_bool("APPROVAL_CONFIRM_HIGH_RISK", True),
        confirm_medium_risk=_env_bool("APPROVAL_CONFIRM_MEDIUM_RISK", False),
        confirmation_prefix=os.getenv("APPROVAL_CONFIRMATION_PREFIX", "").strip() or "确认执行",
        audit_db_path=os.getenv("APPROVAL_AUDIT_DB_PATH", "audit.db").strip() or "audit.db",
    )
    memory = MemoryConfig(
        max_episodes=max(1, _env_int("MEMORY_MAX_EPISODES", 100)),
        expiration_seconds=max(1.0, _env_float("MEMORY_EXPIRATION_SECONDS", 7 * 24 * 3600.0)),
        recency_window_seconds=max(1.0, _env_float("MEMORY_RECENCY_WINDOW_SECONDS", 10 * 24 * 3600.0)),
        enable_persistence=_env_bool("MEMORY_ENABLE_PERSISTENCE", True),
        db_path=os.getenv("MEMORY_DB_PATH", "memory.db").strip() or "memory.db",
    )
    return Settings(
        orchestrator=orchestrator,
        approval=approval,
        memory=memory,
        log_level=os.getenv("LOG_LEVEL", "INFO").strip().upper() or "INFO",
    )
