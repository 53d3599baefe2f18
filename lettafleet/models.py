"""Data structures for desired fleet state and observed remote state.

Desired state is the normalized form of a fleet document: one AgentConfig per
agent, with file-sourced values already resolved and hashed.

Observed state is what the Letta server reports. Raw API payloads are
converted into the typed Remote* classes exactly once, via `from_api`, so the
rest of the package never handles loosely shaped dicts.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any


# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

DEFAULT_MODEL = "google_ai/gemini-2.5-pro"
DEFAULT_EMBEDDING = "openai/text-embedding-3-small"
DEFAULT_CONTEXT_WINDOW = 28000
DEFAULT_REASONING = True

# Built-in tools the server provides for searching attached folders.
FILE_SEARCH_TOOLS = ("open_files", "grep_files", "semantic_search_files")

# Keys written into remote `metadata` maps.
FOLDER_HASHES_KEY = "lettafleet.folderFileHashes"
SHARED_BLOCK_KEY = "lettafleet.shared"


# ---------------------------------------------------------------------------
# Desired state (normalized fleet document)
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class MemoryBlockConfig:
    """A memory block as declared in the document.

    Attributes:
        name: Block label, unique within one agent
        description: Human-readable purpose of the block
        limit: Character limit enforced by the server
        value: Resolved block content (file content for `from_file` blocks)
        agent_owned: When True the agent owns the value after creation and
            content drift is never synced back from the document
        from_file: Relative path the value was loaded from, if any
        value_hash: Digest of the value bytes (file bytes when file-sourced)
    """

    name: str
    description: str
    limit: int
    value: str = ""
    agent_owned: bool = True
    from_file: str | None = None
    value_hash: str = ""


@dataclass(frozen=True)
class FolderConfig:
    name: str
    files: list[str] = field(default_factory=list)
    file_content_hashes: dict[str, str] = field(default_factory=dict)
    shared: bool = False


@dataclass(frozen=True)
class ArchiveConfig:
    name: str
    description: str | None = None
    embedding: str | None = None
    embedding_config: dict[str, Any] | None = None


@dataclass(frozen=True)
class McpToolSelection:
    """Tools to take from one external tool server (`tools=None` means all)."""

    server: str
    tools: list[str] | None = None


@dataclass(frozen=True)
class McpServerSpec:
    name: str
    server_type: str
    server_url: str | None = None
    command: str | None = None
    args: list[str] = field(default_factory=list)
    env: dict[str, str] = field(default_factory=dict)
    auth_header: str | None = None
    auth_token: str | None = None

    def to_payload(self) -> dict[str, Any]:
        out: dict[str, Any] = {"server_name": self.name, "type": self.server_type}
        if self.server_url is not None:
            out["server_url"] = self.server_url
        if self.command is not None:
            out["command"] = self.command
            out["args"] = list(self.args)
        if self.env:
            out["env"] = dict(self.env)
        if self.auth_header is not None:
            out["auth_header"] = self.auth_header
        if self.auth_token is not None:
            out["auth_token"] = self.auth_token
        return out


@dataclass(frozen=True)
class AgentConfig:
    """The canonical, diff-ready form of one agent.

    `tools` is fully expanded and de-duplicated, with the built-in file-search
    tools present iff the agent has at least one folder. `original_name` is
    set only on canary-renamed copies.
    """

    name: str
    system_prompt: str = ""
    description: str = ""
    model: str | None = None
    embedding: str | None = None
    embedding_config: dict[str, Any] | None = None
    context_window: int | None = None
    reasoning: bool | None = None
    tools: list[str] = field(default_factory=list)
    tool_source_hashes: dict[str, str] = field(default_factory=dict)
    mcp_tools: list[McpToolSelection] = field(default_factory=list)
    memory_blocks: list[MemoryBlockConfig] = field(default_factory=list)
    memory_block_file_hashes: dict[str, str] = field(default_factory=dict)
    archives: list[ArchiveConfig] = field(default_factory=list)
    folders: list[FolderConfig] = field(default_factory=list)
    shared_block_refs: list[str] = field(default_factory=list)
    tags: list[str] = field(default_factory=list)
    first_message: str | None = None
    original_name: str | None = None

    @property
    def production_name(self) -> str:
        return self.original_name or self.name

    def block_hash(self, block: MemoryBlockConfig) -> str:
        return self.memory_block_file_hashes.get(block.name) or block.value_hash

    def folder_hashes(self) -> dict[str, dict[str, str]]:
        return {f.name: dict(f.file_content_hashes) for f in self.folders}


@dataclass(frozen=True)
class FleetSpec:
    """Root of a normalized fleet document."""

    agents: list[AgentConfig] = field(default_factory=list)
    shared_blocks: list[MemoryBlockConfig] = field(default_factory=list)
    shared_folders: list[FolderConfig] = field(default_factory=list)
    mcp_servers: list[McpServerSpec] = field(default_factory=list)
    base_path: Path = Path(".")
    tool_sources: dict[str, Path] = field(default_factory=dict)

    @property
    def is_empty(self) -> bool:
        return not any([self.agents, self.shared_blocks, self.shared_folders, self.mcp_servers])

    def agent(self, name: str) -> AgentConfig | None:
        return next((a for a in self.agents if a.name == name), None)

    def all_folders(self) -> list[FolderConfig]:
        """Every distinct folder, shared folders first."""

        seen: dict[str, FolderConfig] = {f.name: f for f in self.shared_folders}
        for agent in self.agents:
            for folder in agent.folders:
                seen.setdefault(folder.name, folder)
        return list(seen.values())


# ---------------------------------------------------------------------------
# Observed state (typed views over API payloads)
# ---------------------------------------------------------------------------


def _str(value: Any) -> str | None:
    return value if isinstance(value, str) else None


def _ids(items: Any) -> list[str]:
    if not isinstance(items, list):
        return []
    out: list[str] = []
    for item in items:
        if isinstance(item, str):
            out.append(item)
        elif isinstance(item, dict) and isinstance(item.get("id"), str):
            out.append(item["id"])
    return out


def _handle(config: Any, *keys: str) -> str | None:
    if not isinstance(config, dict):
        return None
    if isinstance(config.get("handle"), str):
        return config["handle"]
    for key in keys:
        if isinstance(config.get(key), str):
            return config[key]
    return None


@dataclass(frozen=True)
class RemoteAgent:
    id: str
    name: str
    description: str = ""
    system: str = ""
    model: str | None = None
    embedding: str | None = None
    context_window: int | None = None
    tags: list[str] = field(default_factory=list)
    metadata: dict[str, Any] = field(default_factory=dict)
    tool_ids: list[str] = field(default_factory=list)
    block_ids: list[str] = field(default_factory=list)

    @classmethod
    def from_api(cls, data: dict[str, Any]) -> "RemoteAgent":
        llm = data.get("llm_config") or {}
        emb = data.get("embedding_config") or {}
        memory = data.get("memory") or {}
        context_window = data.get("context_window")
        if context_window is None and isinstance(llm, dict):
            context_window = llm.get("context_window")
        return cls(
            id=str(data["id"]),
            name=str(data.get("name") or ""),
            description=_str(data.get("description")) or "",
            system=_str(data.get("system")) or "",
            model=_str(data.get("model")) or _handle(llm, "model"),
            embedding=_str(data.get("embedding")) or _handle(emb, "embedding_model"),
            context_window=context_window if isinstance(context_window, int) else None,
            tags=[t for t in (data.get("tags") or []) if isinstance(t, str)],
            metadata=dict(data.get("metadata") or {}),
            tool_ids=_ids(data.get("tools") or data.get("tool_ids")),
            block_ids=_ids((memory.get("blocks") if isinstance(memory, dict) else None) or data.get("block_ids")),
        )


@dataclass(frozen=True)
class RemoteBlock:
    id: str
    label: str
    value: str = ""
    description: str | None = None
    limit: int | None = None
    metadata: dict[str, Any] = field(default_factory=dict)

    @property
    def is_shared(self) -> bool:
        return bool(self.metadata.get(SHARED_BLOCK_KEY))

    @classmethod
    def from_api(cls, data: dict[str, Any]) -> "RemoteBlock":
        limit = data.get("limit")
        return cls(
            id=str(data["id"]),
            label=str(data.get("label") or data.get("name") or ""),
            value=_str(data.get("value")) or "",
            description=_str(data.get("description")),
            limit=limit if isinstance(limit, int) else None,
            metadata=dict(data.get("metadata") or {}),
        )


@dataclass(frozen=True)
class RemoteTool:
    id: str
    name: str
    source_code: str | None = None
    description: str | None = None
    tool_type: str | None = None
    tags: list[str] = field(default_factory=list)

    @classmethod
    def from_api(cls, data: dict[str, Any]) -> "RemoteTool":
        return cls(
            id=str(data["id"]),
            name=str(data.get("name") or ""),
            source_code=_str(data.get("source_code")),
            description=_str(data.get("description")),
            tool_type=_str(data.get("tool_type")),
            tags=[t for t in (data.get("tags") or []) if isinstance(t, str)],
        )


@dataclass(frozen=True)
class RemoteFolder:
    id: str
    name: str
    description: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_api(cls, data: dict[str, Any]) -> "RemoteFolder":
        return cls(
            id=str(data["id"]),
            name=str(data.get("name") or ""),
            description=_str(data.get("description")),
            metadata=dict(data.get("metadata") or {}),
        )


@dataclass(frozen=True)
class RemoteFile:
    id: str
    file_name: str

    @classmethod
    def from_api(cls, data: dict[str, Any]) -> "RemoteFile":
        name = data.get("original_file_name") or data.get("file_name") or ""
        return cls(id=str(data["id"]), file_name=str(name))


@dataclass(frozen=True)
class RemoteArchive:
    id: str
    name: str
    description: str | None = None

    @classmethod
    def from_api(cls, data: dict[str, Any]) -> "RemoteArchive":
        return cls(
            id=str(data["id"]),
            name=str(data.get("name") or ""),
            description=_str(data.get("description")),
        )


@dataclass(frozen=True)
class RemoteMcpServer:
    id: str
    name: str
    server_type: str | None = None
    server_url: str | None = None
    command: str | None = None
    args: list[str] = field(default_factory=list)

    @classmethod
    def from_api(cls, data: dict[str, Any]) -> "RemoteMcpServer":
        return cls(
            id=str(data.get("id") or data.get("server_name") or ""),
            name=str(data.get("server_name") or data.get("name") or ""),
            server_type=_str(data.get("type") or data.get("server_type")),
            server_url=_str(data.get("server_url")),
            command=_str(data.get("command")),
            args=[a for a in (data.get("args") or []) if isinstance(a, str)],
        )

    def matches(self, spec: McpServerSpec) -> bool:
        return (
            self.server_type == spec.server_type
            and self.server_url == spec.server_url
            and self.command == spec.command
            and list(self.args) == list(spec.args)
        )


@dataclass(frozen=True)
class AgentSnapshot:
    """Everything the diff engine needs to know about one existing agent.

    `folder_files` maps each attached folder name to the file names currently
    stored in it; it is only consulted when no persisted hash baseline exists.
    """

    agent: RemoteAgent
    blocks: list[RemoteBlock] = field(default_factory=list)
    tools: list[RemoteTool] = field(default_factory=list)
    folders: list[RemoteFolder] = field(default_factory=list)
    archives: list[RemoteArchive] = field(default_factory=list)
    folder_files: dict[str, list[str]] = field(default_factory=dict)

    @property
    def id(self) -> str:
        return self.agent.id

    @property
    def name(self) -> str:
        return self.agent.name

    @property
    def folder_file_hashes(self) -> dict[str, dict[str, str]]:
        raw = self.agent.metadata.get(FOLDER_HASHES_KEY)
        if not isinstance(raw, dict):
            return {}
        out: dict[str, dict[str, str]] = {}
        for folder, hashes in raw.items():
            if isinstance(hashes, dict):
                out[str(folder)] = {str(k): str(v) for k, v in hashes.items()}
        return out
