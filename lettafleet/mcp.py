"""External tool-server (MCP) registration and tool expansion."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field

from .client import LettaClient
from .executor import Executor
from .models import FleetSpec, McpServerSpec
from .registry import RemoteState


logger = logging.getLogger(__name__)


@dataclass
class McpSyncResult:
    registered: list[str] = field(default_factory=list)
    updated: list[str] = field(default_factory=list)
    unchanged: list[str] = field(default_factory=list)
    # agent name -> tool names contributed by its mcp_tools selections
    agent_tools: dict[str, list[str]] = field(default_factory=dict)
    tool_ids: dict[str, str] = field(default_factory=dict)


async def register_mcp_servers(
    specs: list[McpServerSpec],
    state: RemoteState,
    executor: Executor,
    result: McpSyncResult,
) -> None:
    for spec in specs:
        existing = state.mcp_servers.get(spec.name)
        if existing is not None and existing.matches(spec):
            result.unchanged.append(spec.name)
            continue
        await executor.register_mcp_server(spec, exists=existing is not None)
        (result.updated if existing is not None else result.registered).append(spec.name)
        logger.info("%s mcp server %s", "updated" if existing is not None else "registered", spec.name)


async def sync_mcp(fleet: FleetSpec, state: RemoteState, client: LettaClient, executor: Executor) -> McpSyncResult:
    """Register servers, then resolve every selected server tool to a tool id.

    A server registered in this same dry run cannot be enumerated yet;
    `tools: all` selections on it expand to nothing in the preview.
    """

    result = McpSyncResult()
    await register_mcp_servers(fleet.mcp_servers, state, executor, result)

    listings: dict[str, list[str]] = {}
    for agent in fleet.agents:
        names: list[str] = []
        for selection in agent.mcp_tools:
            if selection.tools is not None:
                selected = list(selection.tools)
            else:
                if selection.server not in listings:
                    if executor.dry_run and selection.server in result.registered:
                        logger.info("dry run: cannot list tools of unregistered mcp server %s", selection.server)
                        listings[selection.server] = []
                    else:
                        listings[selection.server] = await client.list_mcp_server_tools(selection.server)
                selected = listings[selection.server]
            for tool_name in selected:
                if tool_name not in result.tool_ids:
                    existing_id = state.tools.id_of(tool_name)
                    result.tool_ids[tool_name] = existing_id or await executor.add_mcp_tool(selection.server, tool_name)
                names.append(tool_name)
        if names:
            result.agent_tools[agent.name] = list(dict.fromkeys(names))
    return result
