"""Deletion paths driven by live attachment counts.

Reference counts are always queried from the server at the moment of the
decision; nothing is cached across runs.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field

from .client import LettaClient, LettaClientError
from .executor import Executor
from .models import RemoteAgent


logger = logging.getLogger(__name__)

ORPHAN_KINDS = ("blocks", "folders", "archives")


@dataclass(frozen=True)
class CleanupFailure:
    name: str
    error: str


@dataclass
class CleanupResult:
    deleted: list[str] = field(default_factory=list)
    failed: list[CleanupFailure] = field(default_factory=list)
    dry_run: bool = False

    @property
    def ok(self) -> bool:
        return not self.failed


@dataclass
class AgentCleanup:
    agent: str
    blocks: list[str] = field(default_factory=list)
    folders: list[str] = field(default_factory=list)


def _only_user(attached: list[str], agent_id: str) -> bool:
    return all(a == agent_id for a in attached)


async def delete_agent_with_cleanup(client: LettaClient, executor: Executor, agent: RemoteAgent) -> AgentCleanup:
    """Delete the agent's unshared blocks and folders, then the agent.

    A block or folder is kept when another agent still attaches it, and
    blocks tagged as shared are always kept.
    """

    removed = AgentCleanup(agent=agent.name)

    for block in await client.list_agent_blocks(agent.id):
        if block.is_shared:
            continue
        if not _only_user(await client.list_block_agents(block.id), agent.id):
            logger.debug("keeping block %s: attached to other agents", block.label)
            continue
        await executor.detach("block", agent.id, block.id, block.label)
        await executor.delete_block(block.id, block.label)
        removed.blocks.append(block.label)

    for folder in await client.list_agent_folders(agent.id):
        if not _only_user(await client.list_folder_agents(folder.id), agent.id):
            logger.debug("keeping folder %s: attached to other agents", folder.name)
            continue
        await executor.detach("folder", agent.id, folder.id, folder.name)
        await executor.delete_folder(folder.id, folder.name)
        removed.folders.append(folder.name)

    await executor.delete_agent(agent.id, agent.name)
    logger.info(
        "deleted agent %s (%d blocks, %d folders)", agent.name, len(removed.blocks), len(removed.folders)
    )
    return removed


async def delete_agents(client: LettaClient, executor: Executor, agents: list[RemoteAgent]) -> CleanupResult:
    """Delete each agent with cleanup, continuing past individual failures."""

    result = CleanupResult(dry_run=executor.dry_run)
    for agent in agents:
        try:
            await delete_agent_with_cleanup(client, executor, agent)
        except Exception as e:
            # one agent's failure never stops the remaining deletions
            logger.warning("failed to delete %s: %s", agent.name, e)
            logger.debug("delete %s failure detail", agent.name, exc_info=True)
            result.failed.append(CleanupFailure(agent.name, str(e)))
            continue
        result.deleted.append(agent.name)
    return result


async def cleanup_orphans(client: LettaClient, executor: Executor, kind: str) -> CleanupResult:
    """Delete every resource of `kind` that no agent attaches."""

    if kind not in ORPHAN_KINDS:
        raise ValueError(f"unknown resource kind: {kind!r}")

    result = CleanupResult(dry_run=executor.dry_run)
    if kind == "blocks":
        candidates = [(b.id, b.label) for b in await client.list_blocks()]
        count, delete = client.list_block_agents, executor.delete_block
    elif kind == "folders":
        candidates = [(f.id, f.name) for f in await client.list_folders()]
        count, delete = client.list_folder_agents, executor.delete_folder
    else:
        candidates = [(a.id, a.name) for a in await client.list_archives()]
        count, delete = client.list_archive_agents, executor.delete_archive

    for item_id, name in candidates:
        try:
            if await count(item_id):
                continue
            await delete(item_id, name)
        except LettaClientError as e:
            logger.warning("failed to delete %s %s: %s", kind[:-1], name, e)
            result.failed.append(CleanupFailure(name, str(e)))
            continue
        result.deleted.append(name)

    logger.info("%s orphaned %s: %d", "found" if executor.dry_run else "deleted", kind, len(result.deleted))
    return result
