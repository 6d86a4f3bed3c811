"""
agentswarm: ephemeral CI agents on EC2, Lambda trigger reconciliation.

Launch a throwaway instance, wait for it to join the CI controller as a
swarm agent, run work on it, and tear it down no matter how the work
ended. Also flips Lambda event-source mappings on and off and waits until
the control plane agrees.
"""

import os

__version__ = "0.1.0"

SWARM_HOME = os.environ.get("AGENTSWARM_HOME", "~/.agentswarm")
