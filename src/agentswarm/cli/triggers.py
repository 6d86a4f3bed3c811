"""Lambda trigger commands: list, enable, disable, set-all."""

from __future__ import annotations

import click
from rich.table import Table
from rich.text import Text

from ._common import (
    AgentSwarmError,
    console,
    fail,
    get_client,
    get_config,
    home_option,
    profile_option,
    region_option,
    resolve_scope,
)

_STATE_COLORS = {
    "Enabled": "green",
    "Disabled": "red",
    "Transitioning": "yellow",
    "Unknown": "dim",
}


def _reconciler(home, region, credentials_ref):
    """Build a TriggerReconciler from CLI options and config."""
    from ..triggers import TriggerReconciler

    config = get_config(home)
    region, credentials_ref = resolve_scope(config, region, credentials_ref)
    return TriggerReconciler.create(
        region,
        credentials_ref,
        client=get_client(config),
        poll_interval=config.trigger_poll_interval,
        timeout=config.trigger_timeout,
    )


def register_triggers_commands(main: click.Group) -> None:
    """Register the triggers command group."""

    @main.group()
    def triggers():
        """Lambda event-source mappings (triggers).

        State changes wait until the mapping actually reports the new
        state, or fail once the configured timeout has passed.
        """

    @triggers.command("list")
    @home_option
    @region_option
    @profile_option
    @click.option("--function", "function_ref", default=None, help="Function name or ARN.")
    @click.option("--source-arn", "event_source_arn", default=None, help="Event source ARN.")
    def triggers_list(home, region, credentials_ref, function_ref, event_source_arn):
        """List event-source mappings."""
        try:
            mappings = _reconciler(home, region, credentials_ref).list_mappings(
                function_ref, event_source_arn,
            )
        except AgentSwarmError as exc:
            fail(exc)

        if not mappings:
            console.print("\n  [dim]No event source mappings found.[/]\n")
            return

        table = Table(show_header=True, header_style="bold", box=None, padding=(0, 2))
        table.add_column("UUID", style="cyan")
        table.add_column("State")
        table.add_column("Function", style="bold")
        table.add_column("Event source", style="dim")
        for m in mappings:
            table.add_row(
                m.uuid,
                Text(m.remote_state or m.state.value,
                     style=_STATE_COLORS.get(m.state.value, "dim")),
                m.function_ref,
                m.event_source_arn,
            )
        console.print()
        console.print(table)
        console.print()

    def _set_one(home, region, credentials_ref, uuid, enabled):
        try:
            mapping = _reconciler(home, region, credentials_ref).set_trigger_state(
                uuid, enabled,
            )
        except AgentSwarmError as exc:
            fail(exc)
        console.print(f"\n  [green]Trigger {mapping.uuid}:[/] {mapping.state.value}\n")

    @triggers.command("enable")
    @home_option
    @region_option
    @profile_option
    @click.argument("uuid")
    def triggers_enable(home, region, credentials_ref, uuid):
        """Enable a trigger and wait until it is Enabled."""
        _set_one(home, region, credentials_ref, uuid, True)

    @triggers.command("disable")
    @home_option
    @region_option
    @profile_option
    @click.argument("uuid")
    def triggers_disable(home, region, credentials_ref, uuid):
        """Disable a trigger and wait until it is Disabled."""
        _set_one(home, region, credentials_ref, uuid, False)

    @triggers.command("set-all")
    @home_option
    @region_option
    @profile_option
    @click.option("--function", "function_ref", default=None, help="Function name or ARN.")
    @click.option("--source-arn", "event_source_arn", default=None, help="Event source ARN.")
    @click.option("--enable/--disable", "enabled", required=True)
    def triggers_set_all(home, region, credentials_ref, function_ref, event_source_arn, enabled):
        """Enable or disable every trigger matching the filters.

        At least one of --function / --source-arn is required. Stops at
        the first trigger that fails.
        """
        try:
            converged = _reconciler(home, region, credentials_ref).set_triggers_state(
                function_ref, event_source_arn, enabled,
            )
        except AgentSwarmError as exc:
            fail(exc)
        state = "Enabled" if enabled else "Disabled"
        console.print(f"\n  [green]{len(converged)} trigger(s) {state}[/]\n")
