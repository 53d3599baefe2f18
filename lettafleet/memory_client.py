"""In-process Letta client.

Keeps all remote state in dictionaries, so a full apply can run without a
server: offline runs (`--offline`) and the test-suite both use it.

Every mutating call is appended to `calls` as `(method, key)` so callers can
assert exactly which remote mutations a run issued.
"""

from __future__ import annotations

import itertools
import re
from dataclasses import replace
from typing import Any

from .client import LettaClient, LettaClientConfig, LettaNotFoundError, LettaApiError
from .models import (
    RemoteAgent,
    RemoteArchive,
    RemoteBlock,
    RemoteFile,
    RemoteFolder,
    RemoteMcpServer,
    RemoteTool,
)


_DEF_RE = re.compile(r"^\s*(?:async\s+)?def\s+([A-Za-z_][A-Za-z0-9_]*)\s*\(", re.MULTILINE)


def tool_name_from_source(source_code: str) -> str:
    m = _DEF_RE.search(source_code)
    if m is None:
        raise LettaApiError("tool source must define a function", status_code=400)
    return m.group(1)


class InMemoryLettaClient(LettaClient):
    """Complete in-memory implementation of the client contract."""

    def __init__(self, config: LettaClientConfig | None = None):
        self._config = config or LettaClientConfig()
        self._ids = itertools.count(1)

        self.agents: dict[str, RemoteAgent] = {}
        self.blocks: dict[str, RemoteBlock] = {}
        self.tools: dict[str, RemoteTool] = {}
        self.folders: dict[str, RemoteFolder] = {}
        self.files: dict[str, list[RemoteFile]] = {}
        self.file_contents: dict[str, bytes] = {}
        self.archives: dict[str, RemoteArchive] = {}
        self.mcp_servers: dict[str, RemoteMcpServer] = {}
        self.server_tools: dict[str, list[str]] = {}
        self.runs: dict[str, dict[str, Any]] = {}
        self.messages: list[tuple[str, str]] = []

        self.agent_blocks: dict[str, list[str]] = {}
        self.agent_tools: dict[str, list[str]] = {}
        self.agent_folders: dict[str, list[str]] = {}
        self.agent_archives: dict[str, list[str]] = {}

        self.calls: list[tuple[str, str]] = []

    @property
    def config(self) -> LettaClientConfig:
        return self._config

    def _new_id(self, kind: str) -> str:
        return f"{kind}-{next(self._ids)}"

    def _record(self, method: str, key: str) -> None:
        self.calls.append((method, key))

    def calls_to(self, method: str) -> list[str]:
        return [key for m, key in self.calls if m == method]

    def _agent(self, agent_id: str) -> RemoteAgent:
        agent = self.agents.get(agent_id)
        if agent is None:
            raise LettaNotFoundError(f"agent {agent_id} not found")
        return replace(
            agent,
            tool_ids=list(self.agent_tools.get(agent_id, [])),
            block_ids=list(self.agent_blocks.get(agent_id, [])),
        )

    @staticmethod
    def _lookup(table: dict[str, Any], key: str, kind: str) -> Any:
        if key not in table:
            raise LettaNotFoundError(f"{kind} {key} not found")
        return table[key]

    @staticmethod
    def _attach(table: dict[str, list[str]], agent_id: str, item_id: str) -> None:
        ids = table.setdefault(agent_id, [])
        if item_id not in ids:
            ids.append(item_id)

    @staticmethod
    def _detach(table: dict[str, list[str]], agent_id: str, item_id: str) -> None:
        ids = table.get(agent_id, [])
        if item_id in ids:
            ids.remove(item_id)

    def _attached_to(self, table: dict[str, list[str]], item_id: str) -> list[str]:
        return sorted(agent_id for agent_id, ids in table.items() if item_id in ids and agent_id in self.agents)

    # --- seeding helpers (used by tests to describe pre-existing state) ---

    def seed_tool(self, name: str, source_code: str | None = None, tool_type: str = "letta_core") -> RemoteTool:
        tool = RemoteTool(id=self._new_id("tool"), name=name, source_code=source_code, tool_type=tool_type)
        self.tools[tool.id] = tool
        return tool

    # --- Agents ---

    async def list_agents(self) -> list[RemoteAgent]:
        return [self._agent(agent_id) for agent_id in self.agents]

    async def get_agent(self, agent_id: str) -> RemoteAgent:
        return self._agent(agent_id)

    async def create_agent(self, payload: dict[str, Any]) -> RemoteAgent:
        name = payload["name"]
        self._record("create_agent", name)
        agent = RemoteAgent(
            id=self._new_id("agent"),
            name=name,
            description=payload.get("description") or "",
            system=payload.get("system") or "",
            model=payload.get("model"),
            embedding=payload.get("embedding"),
            context_window=payload.get("context_window"),
            tags=list(payload.get("tags") or []),
            metadata=dict(payload.get("metadata") or {}),
        )
        self.agents[agent.id] = agent
        for block_id in payload.get("block_ids") or []:
            self._lookup(self.blocks, block_id, "block")
            self._attach(self.agent_blocks, agent.id, block_id)
        for tool_id in payload.get("tool_ids") or []:
            self._lookup(self.tools, tool_id, "tool")
            self._attach(self.agent_tools, agent.id, tool_id)
        return self._agent(agent.id)

    async def update_agent(self, agent_id: str, fields: dict[str, Any]) -> RemoteAgent:
        agent = self._lookup(self.agents, agent_id, "agent")
        self._record("update_agent", agent.name)
        allowed = {"name", "description", "system", "model", "embedding", "context_window", "tags", "metadata"}
        unknown = set(fields) - allowed
        if unknown:
            raise LettaApiError(f"unsupported agent fields: {sorted(unknown)}", status_code=422)
        self.agents[agent_id] = replace(agent, **fields)
        return self._agent(agent_id)

    async def delete_agent(self, agent_id: str) -> None:
        agent = self._lookup(self.agents, agent_id, "agent")
        self._record("delete_agent", agent.name)
        del self.agents[agent_id]
        for table in (self.agent_blocks, self.agent_tools, self.agent_folders, self.agent_archives):
            table.pop(agent_id, None)

    # --- Agent attachments ---

    async def list_agent_blocks(self, agent_id: str) -> list[RemoteBlock]:
        self._lookup(self.agents, agent_id, "agent")
        return [self.blocks[b] for b in self.agent_blocks.get(agent_id, []) if b in self.blocks]

    async def list_agent_tools(self, agent_id: str) -> list[RemoteTool]:
        self._lookup(self.agents, agent_id, "agent")
        return [self.tools[t] for t in self.agent_tools.get(agent_id, []) if t in self.tools]

    async def list_agent_folders(self, agent_id: str) -> list[RemoteFolder]:
        self._lookup(self.agents, agent_id, "agent")
        return [self.folders[f] for f in self.agent_folders.get(agent_id, []) if f in self.folders]

    async def list_agent_archives(self, agent_id: str) -> list[RemoteArchive]:
        self._lookup(self.agents, agent_id, "agent")
        return [self.archives[a] for a in self.agent_archives.get(agent_id, []) if a in self.archives]

    async def attach_block(self, agent_id: str, block_id: str) -> None:
        self._lookup(self.agents, agent_id, "agent")
        self._lookup(self.blocks, block_id, "block")
        self._record("attach_block", block_id)
        self._attach(self.agent_blocks, agent_id, block_id)

    async def detach_block(self, agent_id: str, block_id: str) -> None:
        self._record("detach_block", block_id)
        self._detach(self.agent_blocks, agent_id, block_id)

    async def attach_tool(self, agent_id: str, tool_id: str) -> None:
        self._lookup(self.agents, agent_id, "agent")
        self._lookup(self.tools, tool_id, "tool")
        self._record("attach_tool", tool_id)
        self._attach(self.agent_tools, agent_id, tool_id)

    async def detach_tool(self, agent_id: str, tool_id: str) -> None:
        self._record("detach_tool", tool_id)
        self._detach(self.agent_tools, agent_id, tool_id)

    async def attach_folder(self, agent_id: str, folder_id: str) -> None:
        self._lookup(self.agents, agent_id, "agent")
        self._lookup(self.folders, folder_id, "folder")
        self._record("attach_folder", folder_id)
        self._attach(self.agent_folders, agent_id, folder_id)

    async def detach_folder(self, agent_id: str, folder_id: str) -> None:
        self._record("detach_folder", folder_id)
        self._detach(self.agent_folders, agent_id, folder_id)

    async def attach_archive(self, agent_id: str, archive_id: str) -> None:
        self._lookup(self.agents, agent_id, "agent")
        self._lookup(self.archives, archive_id, "archive")
        self._record("attach_archive", archive_id)
        self._attach(self.agent_archives, agent_id, archive_id)

    async def detach_archive(self, agent_id: str, archive_id: str) -> None:
        self._record("detach_archive", archive_id)
        self._detach(self.agent_archives, agent_id, archive_id)

    # --- Blocks ---

    async def list_blocks(self) -> list[RemoteBlock]:
        return list(self.blocks.values())

    async def create_block(
        self,
        label: str,
        value: str,
        *,
        description: str | None = None,
        limit: int | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> RemoteBlock:
        self._record("create_block", label)
        if limit is not None and len(value) > limit:
            raise LettaApiError(
                f"Exceeds {limit} character limit (requested {len(value)})", status_code=400
            )
        block = RemoteBlock(
            id=self._new_id("block"),
            label=label,
            value=value,
            description=description,
            limit=limit,
            metadata=dict(metadata or {}),
        )
        self.blocks[block.id] = block
        return block

    async def update_block(self, block_id: str, *, value: str) -> RemoteBlock:
        block = self._lookup(self.blocks, block_id, "block")
        self._record("update_block", block.label)
        if block.limit is not None and len(value) > block.limit:
            raise LettaApiError(
                f"Exceeds {block.limit} character limit (requested {len(value)})", status_code=400
            )
        self.blocks[block_id] = replace(block, value=value)
        return self.blocks[block_id]

    async def delete_block(self, block_id: str) -> None:
        block = self._lookup(self.blocks, block_id, "block")
        self._record("delete_block", block.label)
        del self.blocks[block_id]
        for ids in self.agent_blocks.values():
            if block_id in ids:
                ids.remove(block_id)

    async def list_block_agents(self, block_id: str) -> list[str]:
        self._lookup(self.blocks, block_id, "block")
        return self._attached_to(self.agent_blocks, block_id)

    # --- Tools ---

    async def list_tools(self) -> list[RemoteTool]:
        return list(self.tools.values())

    async def create_tool(self, source_code: str) -> RemoteTool:
        name = tool_name_from_source(source_code)
        self._record("create_tool", name)
        tool = RemoteTool(id=self._new_id("tool"), name=name, source_code=source_code, tool_type="custom")
        self.tools[tool.id] = tool
        return tool

    async def update_tool(self, tool_id: str, source_code: str) -> RemoteTool:
        tool = self._lookup(self.tools, tool_id, "tool")
        self._record("update_tool", tool.name)
        self.tools[tool_id] = replace(tool, source_code=source_code)
        return self.tools[tool_id]

    # --- Folders ---

    async def list_folders(self) -> list[RemoteFolder]:
        return list(self.folders.values())

    async def create_folder(self, name: str, *, embedding: str | None = None) -> RemoteFolder:
        self._record("create_folder", name)
        folder = RemoteFolder(id=self._new_id("folder"), name=name)
        self.folders[folder.id] = folder
        self.files[folder.id] = []
        return folder

    async def delete_folder(self, folder_id: str) -> None:
        folder = self._lookup(self.folders, folder_id, "folder")
        self._record("delete_folder", folder.name)
        del self.folders[folder_id]
        self.files.pop(folder_id, None)
        for ids in self.agent_folders.values():
            if folder_id in ids:
                ids.remove(folder_id)

    async def list_folder_files(self, folder_id: str) -> list[RemoteFile]:
        self._lookup(self.folders, folder_id, "folder")
        return list(self.files.get(folder_id, []))

    async def upload_file(self, folder_id: str, file_name: str, content: bytes) -> RemoteFile:
        self._lookup(self.folders, folder_id, "folder")
        self._record("upload_file", file_name)
        remote = RemoteFile(id=self._new_id("file"), file_name=file_name)
        self.files.setdefault(folder_id, []).append(remote)
        self.file_contents[remote.id] = content
        return remote

    async def delete_file(self, folder_id: str, file_id: str) -> None:
        files = self.files.get(folder_id, [])
        match = next((f for f in files if f.id == file_id), None)
        if match is None:
            raise LettaNotFoundError(f"file {file_id} not found")
        self._record("delete_file", match.file_name)
        files.remove(match)
        self.file_contents.pop(file_id, None)

    async def list_folder_agents(self, folder_id: str) -> list[str]:
        self._lookup(self.folders, folder_id, "folder")
        return self._attached_to(self.agent_folders, folder_id)

    # --- Archives ---

    async def list_archives(self) -> list[RemoteArchive]:
        return list(self.archives.values())

    async def create_archive(
        self,
        name: str,
        *,
        description: str | None = None,
        embedding: str | None = None,
        embedding_config: dict[str, Any] | None = None,
    ) -> RemoteArchive:
        self._record("create_archive", name)
        archive = RemoteArchive(id=self._new_id("archive"), name=name, description=description)
        self.archives[archive.id] = archive
        return archive

    async def delete_archive(self, archive_id: str) -> None:
        archive = self._lookup(self.archives, archive_id, "archive")
        self._record("delete_archive", archive.name)
        del self.archives[archive_id]
        for ids in self.agent_archives.values():
            if archive_id in ids:
                ids.remove(archive_id)

    async def list_archive_agents(self, archive_id: str) -> list[str]:
        self._lookup(self.archives, archive_id, "archive")
        return self._attached_to(self.agent_archives, archive_id)

    # --- External tool servers ---

    async def list_mcp_servers(self) -> list[RemoteMcpServer]:
        return list(self.mcp_servers.values())

    async def create_mcp_server(self, payload: dict[str, Any]) -> RemoteMcpServer:
        server = RemoteMcpServer.from_api({"id": self._new_id("mcp"), **payload})
        self._record("create_mcp_server", server.name)
        self.mcp_servers[server.name] = server
        self.server_tools.setdefault(server.name, [])
        return server

    async def update_mcp_server(self, name: str, payload: dict[str, Any]) -> RemoteMcpServer:
        existing = self._lookup(self.mcp_servers, name, "mcp server")
        self._record("update_mcp_server", name)
        server = RemoteMcpServer.from_api({"id": existing.id, **payload})
        self.mcp_servers[name] = server
        return server

    async def list_mcp_server_tools(self, server_name: str) -> list[str]:
        self._lookup(self.mcp_servers, server_name, "mcp server")
        return list(self.server_tools.get(server_name, []))

    async def add_mcp_tool(self, server_name: str, tool_name: str) -> RemoteTool:
        self._lookup(self.mcp_servers, server_name, "mcp server")
        if tool_name not in self.server_tools.get(server_name, []):
            raise LettaNotFoundError(f"tool {tool_name} not exposed by {server_name}")
        for tool in self.tools.values():
            if tool.name == tool_name:
                return tool
        self._record("add_mcp_tool", tool_name)
        tool = RemoteTool(id=self._new_id("tool"), name=tool_name, tool_type="external_mcp", tags=[f"mcp:{server_name}"])
        self.tools[tool.id] = tool
        return tool

    # --- Messages ---

    async def create_message_run(self, agent_id: str, message: str) -> str:
        self._lookup(self.agents, agent_id, "agent")
        self._record("create_message_run", agent_id)
        run_id = self._new_id("run")
        self.messages.append((agent_id, message))
        self.runs[run_id] = {"id": run_id, "agent_id": agent_id, "status": "completed"}
        return run_id

    async def get_run(self, run_id: str) -> dict[str, Any]:
        return dict(self._lookup(self.runs, run_id, "run"))
