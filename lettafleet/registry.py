"""Run-scoped name -> resource indexes over existing remote state.

`RemoteState.load` reads every resource collection once, concurrently, and
returns only after all reads complete: no per-agent diff starts before the
whole state is known. The registries never refresh themselves; resources
created during a run are routed to consumers by the orchestrator.
"""

from __future__ import annotations

import asyncio
import fnmatch
import logging
from dataclasses import dataclass, field
from typing import Generic, Iterable, TypeVar

from .client import LettaClient
from .models import (
    AgentSnapshot,
    RemoteAgent,
    RemoteArchive,
    RemoteBlock,
    RemoteFolder,
    RemoteMcpServer,
    RemoteTool,
)


logger = logging.getLogger(__name__)

T = TypeVar("T")


class NameIndex(Generic[T]):
    """Index resources by name; first occurrence wins on duplicates."""

    kind = "resource"

    def __init__(self, items: Iterable[T] = ()):
        self._by_name: dict[str, T] = {}
        for item in items:
            name = self._name(item)
            if name in self._by_name:
                logger.warning("duplicate remote %s name %r; using the first one", self.kind, name)
                continue
            self._by_name[name] = item

    @staticmethod
    def _name(item: T) -> str:
        return item.name  # type: ignore[attr-defined]

    def get(self, name: str) -> T | None:
        return self._by_name.get(name)

    def id_of(self, name: str) -> str | None:
        item = self._by_name.get(name)
        return item.id if item is not None else None  # type: ignore[attr-defined]

    def names(self) -> list[str]:
        return sorted(self._by_name)

    def __contains__(self, name: object) -> bool:
        return name in self._by_name

    def __len__(self) -> int:
        return len(self._by_name)

    def __iter__(self):
        return iter(self._by_name.values())


class BlockRegistry(NameIndex[RemoteBlock]):
    """Shared blocks by label.

    Private blocks of different agents routinely share labels (`persona`),
    so only blocks tagged as shared are indexed by name. `all_blocks` keeps
    everything for orphan cleanup.
    """

    kind = "block"

    def __init__(self, blocks: Iterable[RemoteBlock] = ()):
        self.all_blocks = list(blocks)
        super().__init__(b for b in self.all_blocks if b.is_shared)

    @staticmethod
    def _name(item: RemoteBlock) -> str:
        return item.label

    def by_id(self, block_id: str) -> RemoteBlock | None:
        return next((b for b in self.all_blocks if b.id == block_id), None)


class ArchiveRegistry(NameIndex[RemoteArchive]):
    kind = "archive"


class ToolRegistry(NameIndex[RemoteTool]):
    kind = "tool"


class FolderRegistry(NameIndex[RemoteFolder]):
    kind = "folder"


class McpServerRegistry(NameIndex[RemoteMcpServer]):
    kind = "mcp server"


@dataclass(frozen=True)
class AgentLookup:
    exists: bool
    id: str | None = None


class AgentRegistry(NameIndex[RemoteAgent]):
    kind = "agent"

    def get_or_create_agent_id(self, name: str) -> AgentLookup:
        """Branch point for create-vs-update: `exists=False` means create."""

        agent = self.get(name)
        if agent is None:
            return AgentLookup(exists=False)
        return AgentLookup(exists=True, id=agent.id)

    def with_prefix(self, prefix: str) -> list[RemoteAgent]:
        return [a for a in self if a.name.startswith(prefix)]

    def matching(self, pattern: str) -> list[RemoteAgent]:
        return [a for a in self if fnmatch.fnmatchcase(a.name, pattern)]


@dataclass
class RemoteState:
    agents: AgentRegistry = field(default_factory=AgentRegistry)
    blocks: BlockRegistry = field(default_factory=BlockRegistry)
    archives: ArchiveRegistry = field(default_factory=ArchiveRegistry)
    tools: ToolRegistry = field(default_factory=ToolRegistry)
    folders: FolderRegistry = field(default_factory=FolderRegistry)
    mcp_servers: McpServerRegistry = field(default_factory=McpServerRegistry)

    @classmethod
    async def load(cls, client: LettaClient) -> "RemoteState":
        agents, blocks, archives, tools, folders, servers = await asyncio.gather(
            client.list_agents(),
            client.list_blocks(),
            client.list_archives(),
            client.list_tools(),
            client.list_folders(),
            client.list_mcp_servers(),
        )
        state = cls(
            agents=AgentRegistry(agents),
            blocks=BlockRegistry(blocks),
            archives=ArchiveRegistry(archives),
            tools=ToolRegistry(tools),
            folders=FolderRegistry(folders),
            mcp_servers=McpServerRegistry(servers),
        )
        logger.info(
            "loaded remote state: %d agents, %d blocks, %d archives, %d tools, %d folders",
            len(agents),
            len(blocks),
            len(archives),
            len(tools),
            len(folders),
        )
        return state


async def fetch_snapshot(client: LettaClient, agent: RemoteAgent) -> AgentSnapshot:
    """Load one existing agent's attachments.

    Remote file listings are fetched only for folders with no persisted hash
    baseline in the agent's metadata.
    """

    blocks, tools, folders, archives = await asyncio.gather(
        client.list_agent_blocks(agent.id),
        client.list_agent_tools(agent.id),
        client.list_agent_folders(agent.id),
        client.list_agent_archives(agent.id),
    )
    snapshot = AgentSnapshot(agent=agent, blocks=blocks, tools=tools, folders=folders, archives=archives)

    baseline = snapshot.folder_file_hashes
    missing = [f for f in folders if f.name not in baseline]
    if missing:
        listings = await asyncio.gather(*(client.list_folder_files(f.id) for f in missing))
        for folder, files in zip(missing, listings):
            snapshot.folder_files[folder.name] = [f.file_name for f in files]
    return snapshot
