"""EC2 commands: launch, launch-swarm, stop, terminate, reboot, tag, screenshot."""

from __future__ import annotations

from pathlib import Path

import click

from ._common import (
    AgentSwarmError,
    console,
    fail,
    get_client,
    get_config,
    home_option,
    parse_tags,
    profile_option,
    region_option,
    resolve_scope,
)


def _compute(home, region, credentials_ref):
    """Build a ComputeService from CLI options and config."""
    from ..compute import ComputeService

    config = get_config(home)
    region, credentials_ref = resolve_scope(config, region, credentials_ref)
    return ComputeService.create(
        region,
        credentials_ref,
        client=get_client(config),
        credit_mode=config.credit_mode,
        controller_url=config.controller_url,
        workspace=config.workspace,
    ), config


def register_ec2_commands(main: click.Group) -> None:
    """Register the ec2 command group."""

    @main.group()
    def ec2():
        """Launch and manage EC2 instances.

        Every command runs through the AWS CLI in the configured region
        with the configured credentials profile, unless overridden.
        """

    @ec2.command("launch")
    @home_option
    @region_option
    @profile_option
    @click.option("--ami", "ami_id", required=True, help="AMI id to launch.")
    @click.option("--key-pair", required=True, help="EC2 key pair name.")
    @click.option("--type", "instance_type", default=None, help="Instance type.")
    @click.option("--name", required=True, help="Instance name (Name tag).")
    @click.option("--tag", multiple=True, help="KEY=VALUE tag (repeatable).")
    @click.option("--security-group", "security_groups", multiple=True, required=True,
                  help="Security group id (repeatable).")
    @click.option("--user-data", "user_data_file", type=click.Path(exists=True, dir_okay=False),
                  default=None, help="File with user data for the instance.")
    def ec2_launch(home, region, credentials_ref, ami_id, key_pair, instance_type, name,
                   tag, security_groups, user_data_file):
        """Launch a single EC2 instance."""
        tags = parse_tags(tag)
        try:
            compute, config = _compute(home, region, credentials_ref)
            payload = (
                Path(user_data_file).read_text(encoding="utf-8") if user_data_file else None
            )
            instance_id = compute.launch_instance(
                ami_id, key_pair, instance_type or config.default_instance_type, name,
                tags, list(security_groups), payload,
            )
        except AgentSwarmError as exc:
            fail(exc)
        console.print(f"\n  [green]Launched:[/] [bold]{instance_id}[/] ({name})\n")

    @ec2.command("launch-swarm")
    @home_option
    @region_option
    @profile_option
    @click.option("--ami", "ami_id", required=True, help="AMI id with swarm-client.jar.")
    @click.option("--key-pair", required=True, help="EC2 key pair name.")
    @click.option("--type", "instance_type", default=None, help="Instance type.")
    @click.option("--name", required=True, help="Agent name and label (no whitespace).")
    @click.option("--tag", multiple=True, help="KEY=VALUE tag (repeatable).")
    @click.option("--security-group", "security_groups", multiple=True, required=True,
                  help="Security group id (repeatable).")
    @click.option("--agent-credentials", required=True,
                  help="Credential handle for the swarm client.")
    @click.option("--agent-path", default=None, help="Folder holding swarm-client.jar.")
    @click.option("--platform", type=click.Choice(["windows", "linux"]), default=None)
    def ec2_launch_swarm(home, region, credentials_ref, ami_id, key_pair, instance_type,
                         name, tag, security_groups, agent_credentials, agent_path, platform):
        """Launch an instance that joins the CI controller as a swarm agent."""
        tags = parse_tags(tag)
        try:
            compute, config = _compute(home, region, credentials_ref)
            instance_id = compute.launch_swarm_instance(
                ami_id, key_pair, instance_type or config.default_instance_type, name,
                tags, list(security_groups), agent_credentials,
                agent_path or config.agent_binary_path,
                platform or config.agent_platform,
            )
        except AgentSwarmError as exc:
            fail(exc)
        console.print(f"\n  [green]Launched swarm agent:[/] [bold]{instance_id}[/] ({name})\n")

    def _batch_command(action: str, method_name: str, past: str):
        @ec2.command(action, help=f"{action.capitalize()} instances in one request.")
        @home_option
        @region_option
        @profile_option
        @click.argument("instance_ids", nargs=-1, required=True)
        def command(home, region, credentials_ref, instance_ids):
            try:
                compute, _ = _compute(home, region, credentials_ref)
                getattr(compute, method_name)(list(instance_ids))
            except AgentSwarmError as exc:
                fail(exc)
            console.print(f"\n  [green]{past}:[/] {', '.join(instance_ids)}\n")

        return command

    _batch_command("stop", "stop_instances", "Stopping")
    _batch_command("terminate", "terminate_instances", "Terminating")
    _batch_command("reboot", "reboot_instances", "Rebooting")

    @ec2.command("tag")
    @home_option
    @region_option
    @profile_option
    @click.argument("resource_id")
    @click.option("--tag", multiple=True, required=True, help="KEY=VALUE tag (repeatable).")
    def ec2_tag(home, region, credentials_ref, resource_id, tag):
        """Add or overwrite tags on a resource."""
        tags = parse_tags(tag)
        try:
            compute, _ = _compute(home, region, credentials_ref)
            compute.tag_resource(resource_id, tags)
        except AgentSwarmError as exc:
            fail(exc)
        console.print(f"\n  [green]Tagged[/] {resource_id} with {len(tags)} tag(s)\n")

    @ec2.command("screenshot")
    @home_option
    @region_option
    @profile_option
    @click.argument("instance_id")
    @click.option("--out", "file_name", default=None, help="Output file name.")
    def ec2_screenshot(home, region, credentials_ref, instance_id, file_name):
        """Save a console screenshot of a running instance."""
        try:
            compute, _ = _compute(home, region, credentials_ref)
            path = compute.get_screenshot(instance_id, file_name)
        except AgentSwarmError as exc:
            fail(exc)
        console.print(f"\n  [green]Screenshot saved:[/] {path}\n")
