"""Canary deployments: a prefixed shadow copy of the fleet.

    normal --(deploy)--> shadow (PREFIX + name, canary metadata)
    shadow --(cleanup)--> deleted
    shadow --(promote)--> production and shadow coexist
    shadow --(promote + cleanup)--> production only
"""

from __future__ import annotations

import logging
from dataclasses import replace
from datetime import datetime, timezone
from typing import Any

from .cleanup import CleanupResult, delete_agents
from .client import LettaClient
from .errors import PreconditionError
from .executor import Executor
from .models import AgentConfig
from .validators import DEFAULT_CANARY_PREFIX


logger = logging.getLogger(__name__)

CANARY_KEY = "lettafleet.canary"
CANARY_PRODUCTION_NAME_KEY = "lettafleet.canary.productionName"
CANARY_PREFIX_KEY = "lettafleet.canary.prefix"
CANARY_CREATED_AT_KEY = "lettafleet.canary.createdAt"

__all__ = [
    "DEFAULT_CANARY_PREFIX",
    "build_canary_metadata",
    "canary_name",
    "check_canary_flags",
    "cleanup_canary_agents",
    "is_canary_name",
    "production_name",
    "rewrite_for_canary",
]


def canary_name(agent_name: str, prefix: str = DEFAULT_CANARY_PREFIX) -> str:
    return f"{prefix}{agent_name}"


def production_name(name: str, prefix: str = DEFAULT_CANARY_PREFIX) -> str:
    return name[len(prefix):] if name.startswith(prefix) else name


def is_canary_name(name: str, prefix: str = DEFAULT_CANARY_PREFIX) -> bool:
    # an empty prefix would claim every agent on the server
    return bool(prefix) and name.startswith(prefix)


def build_canary_metadata(original_name: str, prefix: str, *, now: datetime | None = None) -> dict[str, Any]:
    created = (now or datetime.now(timezone.utc)).isoformat()
    return {
        CANARY_KEY: True,
        CANARY_PRODUCTION_NAME_KEY: original_name,
        CANARY_PREFIX_KEY: prefix,
        CANARY_CREATED_AT_KEY: created,
    }


def rewrite_for_canary(
    agents: list[AgentConfig],
    prefix: str = DEFAULT_CANARY_PREFIX,
) -> tuple[list[AgentConfig], dict[str, str]]:
    """Rename every agent to its canary name; all other fields are untouched.

    Returns the renamed agents and the `{original name: canary name}` map.
    """

    name_map: dict[str, str] = {}
    rewritten: list[AgentConfig] = []
    for agent in agents:
        cname = canary_name(agent.name, prefix)
        name_map[agent.name] = cname
        rewritten.append(replace(agent, name=cname, original_name=agent.name))
    return rewritten, name_map


def check_canary_flags(
    *, canary: bool, promote: bool, cleanup: bool, match: str | None, prefix: str = DEFAULT_CANARY_PREFIX
) -> None:
    """Reject invalid flag combinations before any network call."""

    if promote and not canary:
        raise PreconditionError("--promote requires --canary flag")
    if cleanup and not canary:
        raise PreconditionError("--cleanup requires --canary flag")
    if canary and match:
        raise PreconditionError("--canary cannot be combined with --match (template mode)")
    if canary and not prefix:
        raise PreconditionError("--canary-prefix must not be empty")


async def cleanup_canary_agents(
    client: LettaClient,
    executor: Executor,
    prefix: str = DEFAULT_CANARY_PREFIX,
    name_filter: str | None = None,
) -> CleanupResult:
    """Delete every agent whose name carries `prefix`.

    `name_filter` further scopes the set to canaries whose production name
    contains that substring.
    """

    agents = [a for a in await client.list_agents() if is_canary_name(a.name, prefix)]
    if name_filter:
        agents = [a for a in agents if name_filter in production_name(a.name, prefix)]
    if not agents:
        logger.info("no canary agents found")
        return CleanupResult(dry_run=executor.dry_run)

    logger.info("found %d canary agent%s", len(agents), "" if len(agents) == 1 else "s")
    return await delete_agents(client, executor, agents)
