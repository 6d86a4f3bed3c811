"""
agentswarm CLI.

Each command group lives in its own module and is attached to the main
Click group through a register function.

Entry point: agentswarm.cli:main
"""

from __future__ import annotations

import logging

import click

from .. import __version__


@click.group()
@click.version_option(version=__version__, prog_name="agentswarm")
@click.option("-v", "--verbose", count=True, help="Log more (-v info, -vv debug).")
def main(verbose):
    """agentswarm: ephemeral EC2 CI agents and Lambda trigger control."""
    level = logging.WARNING
    if verbose == 1:
        level = logging.INFO
    elif verbose >= 2:
        level = logging.DEBUG
    logging.basicConfig(level=level, format="%(name)s: %(message)s")


# ---------------------------------------------------------------------------
# Register all command groups/commands from modular files
# ---------------------------------------------------------------------------

from .aws_cmd import register_aws_commands
from .config_cmd import register_config_commands
from .ec2 import register_ec2_commands
from .swarm import register_swarm_commands
from .triggers import register_triggers_commands

register_aws_commands(main)
register_config_commands(main)
register_ec2_commands(main)
register_triggers_commands(main)
register_swarm_commands(main)
