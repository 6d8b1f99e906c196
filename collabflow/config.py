from __future__ import annotations

import logging
import os
from typing import Dict, List, Optional

import yaml
from pydantic import BaseModel, Field

from .constants import (
    DEFAULT_DELAY_SECONDS,
    DEFAULT_ROLE_CODE,
    DEFAULT_STAFF_WINDOW_SECONDS,
    MAX_FLOW_STEPS,
    MONITOR_DEFAULT_DURATION,
    MONITOR_MAX_DURATION,
    MONITOR_MIN_DURATION,
    POLL_INTERVAL_SECONDS,
    STAFF_TYPE_CACHE_TTL,
)
from .contracts import BusinessRole, ReplyMode


class MonitorSettings(BaseModel):
    """Polling bounds shared by monitor nodes and alert monitors."""

    poll_interval: float = POLL_INTERVAL_SECONDS
    min_duration: float = MONITOR_MIN_DURATION
    max_duration: float = MONITOR_MAX_DURATION
    default_duration: float = MONITOR_DEFAULT_DURATION


class DecisionSettings(BaseModel):
    """Defaults for the collaboration decision engine."""

    staff_window_seconds: int = DEFAULT_STAFF_WINDOW_SECONDS
    reply_mode_when_staff_online: ReplyMode = "low_priority"
    delay_seconds: int = DEFAULT_DELAY_SECONDS
    default_role: str = DEFAULT_ROLE_CODE


class PresenceSettings(BaseModel):
    staff_type_cache_ttl: float = STAFF_TYPE_CACHE_TTL
    satisfaction_keywords: List[str] = Field(
        default_factory=lambda: ["thanks", "thank you", "solved", "谢谢", "解决了", "好的"]
    )
    escalation_keywords: List[str] = Field(
        default_factory=lambda: ["complaint", "manager", "refund", "投诉", "经理", "退款"]
    )


class ExecutorSettings(BaseModel):
    max_steps: int = MAX_FLOW_STEPS


class EngineConfig(BaseModel):
    """Top-level configuration model."""

    database_url: Optional[str] = None
    log_level: str = "INFO"
    monitor: MonitorSettings = MonitorSettings()
    decision: DecisionSettings = DecisionSettings()
    presence: PresenceSettings = PresenceSettings()
    executor: ExecutorSettings = ExecutorSettings()
    roles: List[BusinessRole] = Field(default_factory=list)
    robot_roles: Dict[str, str] = Field(default_factory=dict)


def load_config(path: Optional[str] = None) -> EngineConfig:
    """Load configuration from YAML file.

    Args:
        path: Optional path to config file. Falls back to COLLABFLOW_CONFIG env
            variable or 'collabflow.yaml' in the current directory.
    """

    config_path = path or os.getenv("COLLABFLOW_CONFIG", "collabflow.yaml")
    if os.path.exists(config_path):
        with open(config_path) as f:
            data = yaml.safe_load(f) or {}
        config = EngineConfig(**data)
    else:
        config = EngineConfig()

    env_db_url = os.getenv("COLLABFLOW_DATABASE_URL") or os.getenv("DATABASE_URL")
    if env_db_url:
        config.database_url = env_db_url
    env_level = os.getenv("COLLABFLOW_LOG_LEVEL")
    if env_level:
        config.log_level = env_level
    return config


def configure_logging(level: str = "INFO") -> None:
    """Install a basic root handler for command line use."""
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
