"""Free-form AWS CLI command: agentswarm aws REGION CREDENTIALS COMMAND..."""

from __future__ import annotations

import shlex

import click

from ._common import AgentSwarmError, console, fail, get_client, get_config, home_option


def register_aws_commands(main: click.Group) -> None:
    """Register the aws command."""

    @main.command("aws", context_settings={"ignore_unknown_options": True})
    @home_option
    @click.argument("region")
    @click.argument("credentials_ref")
    @click.argument("command", nargs=-1, type=click.UNPROCESSED, required=True)
    def aws(home, region, credentials_ref, command):
        """Run `aws COMMAND...` scoped to REGION and the CREDENTIALS profile.

        Example: agentswarm aws us-west-2 ci-deployer ec2 describe-instances
        """
        from ..control_plane import run_cli

        config = get_config(home)
        try:
            result = run_cli(
                region, credentials_ref, shlex.join(command), client=get_client(config),
            )
        except AgentSwarmError as exc:
            fail(exc)
        console.print(result.raw_output, end="", markup=False, highlight=False)
