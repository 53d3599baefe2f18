"""Declarative fleet management for Letta agents.

A YAML fleet document describes agents and the resources they use (memory
blocks, tools, folders, archives, external tool servers). `apply_fleet`
reconciles a Letta server with that document:

- shared resources are provisioned once per run and referenced by id
- each agent is created, or diffed against its remote snapshot and updated
- removals of undeclared attachments only run under `force`
- one agent's failure is recorded and the run continues
"""

from __future__ import annotations

from .apply import ApplyOptions, ApplyResult, apply_fleet
from .client import LettaClient, LettaClientConfig, create_letta_client
from .diff import AgentDiff, compute_agent_diff
from .fleet import parse_fleet_file
from .models import AgentConfig, FleetSpec

__version__ = "0.1.0"

__all__ = [
    "AgentConfig",
    "AgentDiff",
    "ApplyOptions",
    "ApplyResult",
    "FleetSpec",
    "LettaClient",
    "LettaClientConfig",
    "apply_fleet",
    "compute_agent_diff",
    "create_letta_client",
    "parse_fleet_file",
]
