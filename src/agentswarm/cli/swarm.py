"""Swarm commands: run a command on a throwaway swarm agent."""

from __future__ import annotations

import os
import subprocess

import click
from rich.panel import Panel

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


def register_swarm_commands(main: click.Group) -> None:
    """Register the swarm command group."""

    @main.group()
    def swarm():
        """Ephemeral swarm agents.

        Launch an agent, wait for it to join the CI controller, run work,
        and tear the instance down however the work ended.
        """

    @swarm.command("run", context_settings={"ignore_unknown_options": True})
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
    @click.option("--timeout", "registration_timeout", type=float, default=None,
                  help="Seconds to wait for the agent to connect.")
    @click.option("--agent-path", default=None, help="Folder holding swarm-client.jar.")
    @click.option("--platform", type=click.Choice(["windows", "linux"]), default=None)
    @click.option("--teardown", type=click.Choice(["stop", "terminate"]), default=None)
    @click.argument("command", nargs=-1, type=click.UNPROCESSED, required=True)
    def swarm_run(home, region, credentials_ref, ami_id, key_pair, instance_type, name,
                  tag, security_groups, agent_credentials, registration_timeout,
                  agent_path, platform, teardown, command):
        """Run COMMAND locally once agent NAME has connected.

        The agent label is exported as AGENT_LABEL so COMMAND can schedule
        work on it (e.g. trigger a Jenkins job pinned to that label).
        """
        from ..collaborators import JenkinsRegistrationWatcher
        from ..compute import ComputeService
        from ..orchestrator import EphemeralAgentOrchestrator, SwarmLaunchRequest

        config = get_config(home)
        region, credentials_ref = resolve_scope(config, region, credentials_ref)
        tags = parse_tags(tag)

        def workload(agent_label):
            env = dict(os.environ, AGENT_LABEL=agent_label)
            try:
                proc = subprocess.run(list(command), env=env)
            except OSError as exc:
                raise click.ClickException(f"could not run {command[0]}: {exc}") from exc
            if proc.returncode != 0:
                raise click.ClickException(
                    f"command exited with status {proc.returncode}"
                )
            return proc.returncode

        try:
            compute = ComputeService.create(
                region,
                credentials_ref,
                client=get_client(config),
                credit_mode=config.credit_mode,
                controller_url=config.controller_url,
                workspace=config.workspace,
            )
            orchestrator = EphemeralAgentOrchestrator(
                compute,
                JenkinsRegistrationWatcher(config.controller_url),
                teardown_mode=teardown or config.teardown_mode,
                registration_timeout=registration_timeout or config.registration_timeout,
            )
            request = SwarmLaunchRequest(
                ami_id=ami_id,
                key_pair=key_pair,
                instance_type=instance_type or config.default_instance_type,
                name=name,
                tags=tags,
                security_groups=list(security_groups),
                agent_credentials_ref=agent_credentials,
                agent_binary_path=agent_path or config.agent_binary_path,
                platform=platform or config.agent_platform,
            )
            console.print(f"\n  Launching swarm agent [bold]{name}[/] in [cyan]{region}[/]...")
            orchestrator.run(request, workload)
        except (AgentSwarmError, click.ClickException) as exc:
            fail(exc)

        console.print(Panel(
            f"[bold]Agent:[/] {name}\n"
            f"[bold]Phases:[/] {' -> '.join(p.value for p in orchestrator.history)}",
            title="Swarm run complete", border_style="green",
        ))
