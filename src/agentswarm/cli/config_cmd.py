"""Configuration commands: show."""

from __future__ import annotations

from pathlib import Path

import click
from rich.table import Table

from ._common import console, get_config, home_option


def register_config_commands(main: click.Group) -> None:
    """Register the config command group."""

    @main.group()
    def config():
        """Inspect agentswarm configuration."""

    @config.command("show")
    @home_option
    def config_show(home):
        """Show the effective configuration."""
        from ..config import config_path

        cfg = get_config(home)
        table = Table(show_header=True, header_style="bold", box=None, padding=(0, 2))
        table.add_column("Setting", style="cyan")
        table.add_column("Value")
        for key, value in cfg.model_dump(mode="json").items():
            table.add_row(key, "" if value is None else str(value))

        console.print()
        console.print(f"  [dim]{config_path(Path(home))}[/]")
        console.print(table)
        console.print()
