"""
Configuration for agentswarm.

Read from ``<home>/config/config.yaml`` where home is ``$AGENTSWARM_HOME``
(default ``~/.agentswarm``). Every field has a default, so a missing or
broken file still yields a usable config.

Example config.yaml::

    region: us-west-2
    credentials_ref: ci-deployer
    credit_mode: standard
    default_instance_type: m5.large
    controller_url: https://jenkins.example.com/
    teardown_mode: terminate
"""

from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Optional

import yaml
from pydantic import BaseModel, Field

from . import SWARM_HOME
from .models import AgentPlatform, CreditMode, TeardownMode

logger = logging.getLogger(__name__)


class SwarmConfig(BaseModel):
    """Settings consumed by the services, orchestrator and CLI."""

    region: Optional[str] = None
    credentials_ref: Optional[str] = None
    credit_mode: CreditMode = CreditMode.STANDARD
    default_instance_type: str = "m5.large"
    agent_binary_path: str = "C:\\Swarm"
    agent_platform: AgentPlatform = AgentPlatform.WINDOWS
    controller_url: str = Field(
        default_factory=lambda: os.environ.get("JENKINS_URL", ""),
        description="CI controller the swarm client connects to",
    )
    registration_timeout: float = Field(default=600.0, gt=0)
    teardown_mode: TeardownMode = TeardownMode.TERMINATE
    aws_cli: str = "aws"
    command_timeout: float = Field(default=300.0, gt=0)
    trigger_poll_interval: float = Field(default=10.0, gt=0)
    trigger_timeout: float = Field(default=120.0, gt=0)
    workspace: Optional[Path] = None


def config_path(home: Optional[Path] = None) -> Path:
    """Location of config.yaml for the given home directory."""
    return (home or Path(SWARM_HOME)).expanduser() / "config" / "config.yaml"


def load_config(home: Optional[Path] = None) -> SwarmConfig:
    """Load configuration from disk.

    Args:
        home: Override the agentswarm home directory.

    Returns:
        SwarmConfig loaded from config.yaml, or defaults.
    """
    config_file = config_path(home)
    if config_file.exists():
        try:
            data = yaml.safe_load(config_file.read_text(encoding="utf-8")) or {}
            return SwarmConfig(**data)
        except (yaml.YAMLError, ValueError, TypeError) as exc:
            logger.warning("Failed to load config: %s, using defaults", exc)
    return SwarmConfig()
