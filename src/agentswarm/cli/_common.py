"""Shared helpers for all CLI command modules.

Provides the Rich console, config loading, service construction from
CLI options, and uniform error reporting.
"""

from __future__ import annotations

import sys
from pathlib import Path
from typing import NoReturn, Optional

import click
from rich.console import Console
from rich.markup import escape

from .. import SWARM_HOME
from ..config import SwarmConfig, load_config
from ..control_plane import ControlPlaneClient
from ..errors import AgentSwarmError

console = Console()

home_option = click.option(
    "--home", default=SWARM_HOME, type=click.Path(), help="agentswarm home directory.",
)
region_option = click.option("--region", default=None, help="AWS region (default: config).")
profile_option = click.option(
    "--credentials", "credentials_ref", default=None,
    help="AWS CLI profile to run as (default: config).",
)


def get_config(home: str) -> SwarmConfig:
    """Load the config for a --home value."""
    return load_config(Path(home).expanduser())


def get_client(config: SwarmConfig) -> ControlPlaneClient:
    """Control-plane client configured from SwarmConfig."""
    return ControlPlaneClient(aws_cli=config.aws_cli, timeout=config.command_timeout)


def resolve_scope(
    config: SwarmConfig,
    region: Optional[str],
    credentials_ref: Optional[str],
) -> tuple[str, str]:
    """Pick region/credentials from options, falling back to config."""
    return (region or config.region or "", credentials_ref or config.credentials_ref or "")


def fail(exc: BaseException) -> NoReturn:
    """Print an error and exit with status 1."""
    console.print(f"\n  [red]{escape(str(exc))}[/]\n")
    teardown_error = getattr(exc, "teardown_error", None)
    if teardown_error is not None:
        console.print(f"  [yellow]Teardown also failed:[/] {escape(str(teardown_error))}\n")
    sys.exit(1)


def parse_tags(values: tuple[str, ...]) -> dict[str, str]:
    """Turn repeated KEY=VALUE options into a dict."""
    tags: dict[str, str] = {}
    for item in values:
        key, sep, value = item.partition("=")
        if not sep or not key:
            raise click.BadParameter(f"expected KEY=VALUE, got '{item}'", param_hint="--tag")
        tags[key] = value
    return tags


__all__ = [
    "AgentSwarmError",
    "console",
    "fail",
    "get_client",
    "get_config",
    "home_option",
    "parse_tags",
    "profile_option",
    "region_option",
    "resolve_scope",
]
