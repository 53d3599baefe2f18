"""Fleet document loading and normalization.

`parse_fleet_file` turns a YAML fleet document into a FleetSpec whose agents
are fully normalized AgentConfig values:

- `from_file` values are read once and hashed from their bytes
- tool wildcards (`tools/*`) and folder globs (`docs/*.md`) expand sorted
- shared block / shared folder references are resolved by name
- the built-in file-search tools are present iff an agent has folders

Any validation failure raises before a FleetSpec is returned; callers never
see a partially normalized document.
"""

from __future__ import annotations

import glob
import logging
from dataclasses import replace
from pathlib import Path
from typing import Any

import yaml

from .errors import ConfigParseError, ConfigValidationError
from .hashing import content_hash, file_hash, hash_files
from .models import (
    AgentConfig,
    ArchiveConfig,
    FILE_SEARCH_TOOLS,
    FleetSpec,
    FolderConfig,
    McpServerSpec,
    McpToolSelection,
    MemoryBlockConfig,
)
from .validators import (
    MCP_SERVER_TYPES,
    check_keys,
    optional_bool,
    optional_list,
    optional_positive_int,
    optional_str,
    optional_str_list,
    optional_table,
    require_positive_int,
    require_str,
    require_str_list,
    require_table,
    validate_agent_name,
    validate_tags,
)


logger = logging.getLogger(__name__)

BASE_PROMPT_PATH = Path("config") / "base-letta-system.md"
TOOLS_DIR = "tools"

_TOP_KEYS = {"agents", "shared_blocks", "shared_folders", "mcp_servers"}
_BLOCK_KEYS = {"name", "description", "limit", "value", "from_file", "agent_owned"}
_FOLDER_KEYS = {"name", "files"}
_ARCHIVE_KEYS = {"name", "description", "embedding", "embedding_config"}
_MCP_SERVER_KEYS = {"name", "type", "server_url", "command", "args", "env", "auth_header", "auth_token"}
_MCP_TOOLS_KEYS = {"server", "tools"}
_PROMPT_KEYS = {"value", "from_file", "disable_base_prompt"}
_LLM_KEYS = {"model", "context_window"}
_AGENT_KEYS = {
    "name",
    "description",
    "system_prompt",
    "llm_config",
    "embedding",
    "embedding_config",
    "reasoning",
    "tools",
    "mcp_tools",
    "memory_blocks",
    "folders",
    "archives",
    "tags",
    "shared_blocks",
    "shared_folders",
    "first_message",
}


def load_yaml(path: Path) -> dict[str, Any]:
    try:
        text = path.read_text(encoding="utf-8")
    except FileNotFoundError as e:
        raise ConfigValidationError(path=path, message="file not found") from e
    except OSError as e:
        raise ConfigValidationError(path=path, message=f"unable to read file: {e}") from e

    try:
        data = yaml.safe_load(text)
    except yaml.YAMLError as e:
        mark = getattr(e, "problem_mark", None)
        lineno = mark.line + 1 if mark is not None else None
        colno = mark.column + 1 if mark is not None else None
        message = getattr(e, "problem", None) or str(e)
        raise ConfigParseError(path=path, message=str(message), lineno=lineno, colno=colno) from e

    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ConfigValidationError(path=path, message="top-level document must be a mapping")
    return data


def parse_fleet_file(path: Path, root: Path | None = None) -> FleetSpec:
    """Load + normalize a fleet document.

    Relative file references resolve against `root`, defaulting to the
    directory containing `path`.
    """

    data = load_yaml(path)
    base = root if root is not None else path.resolve().parent
    return FleetParser(path, base).parse(data)


class FleetParser:
    """Normalizes one parsed document; `path` is used only for error messages."""

    def __init__(self, path: Path, base: Path):
        self.path = path
        self.base = base
        self.tool_sources: dict[str, Path] = {}

    # --- helpers ---

    def _fail(self, message: str) -> ConfigValidationError:
        return ConfigValidationError(path=self.path, message=message)

    def _read_bytes(self, rel: str, where: str) -> bytes:
        p = self.base / rel
        try:
            return p.read_bytes()
        except FileNotFoundError as e:
            raise self._fail(f"{where}: file not found: {rel}") from e
        except OSError as e:
            raise self._fail(f"{where}: unable to read {rel}: {e}") from e

    def _decode(self, raw: bytes, rel: str, where: str) -> str:
        try:
            return raw.decode("utf-8")
        except UnicodeDecodeError as e:
            raise self._fail(f"{where}: {rel} is not valid UTF-8") from e

    # --- document ---

    def parse(self, data: dict[str, Any]) -> FleetSpec:
        check_keys(self.path, data, _TOP_KEYS)

        shared_blocks = [
            self._parse_block(require_table(self.path, raw, f"shared_blocks[{i}]"), f"shared_blocks[{i}]")
            for i, raw in enumerate(optional_list(self.path, data.get("shared_blocks"), "shared_blocks"))
        ]
        _check_unique(self, [b.name for b in shared_blocks], "Duplicate shared block name")

        shared_folders = [
            self._parse_folder(require_table(self.path, raw, f"shared_folders[{i}]"), f"shared_folders[{i}]", shared=True)
            for i, raw in enumerate(optional_list(self.path, data.get("shared_folders"), "shared_folders"))
        ]
        _check_unique(self, [f.name for f in shared_folders], "Duplicate shared folder name")

        mcp_servers = [
            self._parse_mcp_server(require_table(self.path, raw, f"mcp_servers[{i}]"), f"mcp_servers[{i}]")
            for i, raw in enumerate(optional_list(self.path, data.get("mcp_servers"), "mcp_servers"))
        ]
        _check_unique(self, [s.name for s in mcp_servers], "Duplicate mcp server name")

        shared_block_names = {b.name for b in shared_blocks}
        shared_folder_map = {f.name: f for f in shared_folders}
        server_names = {s.name for s in mcp_servers}

        agents: list[AgentConfig] = []
        for i, raw in enumerate(optional_list(self.path, data.get("agents"), "agents")):
            tbl = require_table(self.path, raw, f"agents[{i}]")
            agents.append(self._parse_agent(tbl, i, shared_block_names, shared_folder_map, server_names))

        _check_unique(self, [a.name for a in agents], "Duplicate agent name")
        self._check_folder_ownership(agents, set(shared_folder_map))

        return FleetSpec(
            agents=agents,
            shared_blocks=shared_blocks,
            shared_folders=shared_folders,
            mcp_servers=mcp_servers,
            base_path=self.base,
            tool_sources=dict(self.tool_sources),
        )

    def _check_folder_ownership(self, agents: list[AgentConfig], shared: set[str]) -> None:
        owner: dict[str, str] = {}
        for agent in agents:
            for folder in agent.folders:
                if folder.shared:
                    continue
                if folder.name in shared:
                    raise self._fail(
                        f"agent '{agent.name}': folder '{folder.name}' collides with a shared folder; "
                        "reference it via shared_folders instead"
                    )
                prev = owner.setdefault(folder.name, agent.name)
                if prev != agent.name:
                    raise self._fail(
                        f"folder '{folder.name}' is declared by both '{prev}' and '{agent.name}'; "
                        "declare it once under shared_folders"
                    )

    # --- sections ---

    def _parse_block(self, tbl: dict[str, Any], where: str) -> MemoryBlockConfig:
        check_keys(self.path, tbl, _BLOCK_KEYS, where)
        name = require_str(self.path, tbl.get("name"), f"{where}.name")
        description = require_str(self.path, tbl.get("description"), f"{where}.description")
        limit = require_positive_int(self.path, tbl.get("limit"), f"{where}.limit")
        agent_owned = optional_bool(self.path, tbl.get("agent_owned"), f"{where}.agent_owned")

        has_value = "value" in tbl
        from_file = optional_str(self.path, tbl.get("from_file"), f"{where}.from_file")
        if has_value == (from_file is not None):
            raise self._fail(f"{where}: exactly one of 'value' or 'from_file' is required")

        if from_file is not None:
            raw = self._read_bytes(from_file, where)
            value = self._decode(raw, from_file, where)
            digest = content_hash(raw)
        else:
            value = require_str(self.path, tbl.get("value"), f"{where}.value")
            digest = content_hash(value)

        return MemoryBlockConfig(
            name=name,
            description=description,
            limit=limit,
            value=value,
            agent_owned=True if agent_owned is None else agent_owned,
            from_file=from_file,
            value_hash=digest,
        )

    def _parse_folder(self, tbl: dict[str, Any], where: str, *, shared: bool = False) -> FolderConfig:
        check_keys(self.path, tbl, _FOLDER_KEYS, where)
        name = require_str(self.path, tbl.get("name"), f"{where}.name")
        entries = require_str_list(self.path, tbl.get("files"), f"{where}.files") if "files" in tbl else None
        if not entries:
            raise self._fail(f"{where}: folder '{name}' must have a files array")
        files = self._expand_files(entries, where)
        return FolderConfig(name=name, files=files, file_content_hashes=hash_files(self.base, files), shared=shared)

    def _expand_files(self, entries: list[str], where: str) -> list[str]:
        out: list[str] = []
        for entry in entries:
            if glob.has_magic(entry):
                matches = sorted(
                    Path(p).relative_to(self.base).as_posix()
                    for p in glob.glob(str(self.base / entry))
                    if Path(p).is_file()
                )
                logger.debug("%s: %s matched %d file(s)", where, entry, len(matches))
                out.extend(matches)
                continue
            if not (self.base / entry).is_file():
                raise self._fail(f"{where}: file not found: {entry}")
            out.append(entry)
        return list(dict.fromkeys(out))

    def _parse_mcp_server(self, tbl: dict[str, Any], where: str) -> McpServerSpec:
        check_keys(self.path, tbl, _MCP_SERVER_KEYS, where)
        name = require_str(self.path, tbl.get("name"), f"{where}.name")
        server_type = require_str(self.path, tbl.get("type"), f"{where}.type")
        if server_type not in MCP_SERVER_TYPES:
            raise self._fail(f"{where}.type: expected one of {sorted(MCP_SERVER_TYPES)}, got {server_type!r}")
        server_url = optional_str(self.path, tbl.get("server_url"), f"{where}.server_url")
        command = optional_str(self.path, tbl.get("command"), f"{where}.command")
        if server_type == "stdio" and command is None:
            raise self._fail(f"{where}: stdio server '{name}' requires 'command'")
        if server_type != "stdio" and server_url is None:
            raise self._fail(f"{where}: {server_type} server '{name}' requires 'server_url'")

        env_tbl = optional_table(self.path, tbl.get("env"), f"{where}.env") or {}
        env = {str(k): require_str(self.path, v, f"{where}.env.{k}") for k, v in env_tbl.items()}
        return McpServerSpec(
            name=name,
            server_type=server_type,
            server_url=server_url,
            command=command,
            args=optional_str_list(self.path, tbl.get("args"), f"{where}.args"),
            env=env,
            auth_header=optional_str(self.path, tbl.get("auth_header"), f"{where}.auth_header"),
            auth_token=optional_str(self.path, tbl.get("auth_token"), f"{where}.auth_token"),
        )

    def _parse_archive(self, tbl: dict[str, Any], where: str, agent_embedding: str | None) -> ArchiveConfig:
        check_keys(self.path, tbl, _ARCHIVE_KEYS, where)
        embedding = optional_str(self.path, tbl.get("embedding"), f"{where}.embedding")
        embedding_config = optional_table(self.path, tbl.get("embedding_config"), f"{where}.embedding_config")
        if embedding is None and embedding_config is None:
            # archives without their own embedding use the agent's
            embedding = agent_embedding
        return ArchiveConfig(
            name=require_str(self.path, tbl.get("name"), f"{where}.name"),
            description=optional_str(self.path, tbl.get("description"), f"{where}.description"),
            embedding=embedding,
            embedding_config=embedding_config,
        )

    def _parse_system_prompt(self, raw: Any, where: str) -> str:
        if raw is None:
            return ""
        if isinstance(raw, str):
            prompt, disable_base = raw, False
        else:
            tbl = require_table(self.path, raw, where)
            check_keys(self.path, tbl, _PROMPT_KEYS, where)
            disable_base = bool(optional_bool(self.path, tbl.get("disable_base_prompt"), f"{where}.disable_base_prompt"))
            from_file = optional_str(self.path, tbl.get("from_file"), f"{where}.from_file")
            if from_file is not None:
                prompt = self._decode(self._read_bytes(from_file, where), from_file, where)
            else:
                prompt = require_str(self.path, tbl.get("value"), f"{where}.value")

        base_prompt = self.base / BASE_PROMPT_PATH
        if not disable_base and base_prompt.is_file():
            return f"{base_prompt.read_text(encoding='utf-8').strip()}\n\n{prompt.strip()}"
        return prompt.strip()

    def _expand_tools(self, entries: list[str], where: str) -> tuple[list[str], dict[str, str]]:
        names: list[str] = []
        hashes: dict[str, str] = {}
        for entry in entries:
            if "*" in entry:
                tool_dir = self.base / entry.split("*", 1)[0]
                if not tool_dir.is_dir():
                    raise self._fail(f"{where}: tool directory not found: {entry}")
                stems = sorted(p.stem for p in tool_dir.glob("*.py") if not p.name.startswith("_"))
                for stem in stems:
                    names.append(stem)
                    hashes[stem] = self._register_tool(tool_dir / f"{stem}.py", stem)
                continue
            names.append(entry)
            source = self.base / TOOLS_DIR / f"{entry}.py"
            if source.is_file():
                hashes[entry] = self._register_tool(source, entry)
        return list(dict.fromkeys(names)), hashes

    def _register_tool(self, source: Path, name: str) -> str:
        self.tool_sources.setdefault(name, source)
        return file_hash(source)

    def _parse_mcp_tools(self, raw: Any, where: str, server_names: set[str]) -> list[McpToolSelection]:
        out: list[McpToolSelection] = []
        for i, item in enumerate(optional_list(self.path, raw, where)):
            tbl = require_table(self.path, item, f"{where}[{i}]")
            check_keys(self.path, tbl, _MCP_TOOLS_KEYS, f"{where}[{i}]")
            server = require_str(self.path, tbl.get("server"), f"{where}[{i}].server")
            if server not in server_names:
                raise self._fail(f"{where}[{i}]: unknown mcp server '{server}'")
            tools = tbl.get("tools", "all")
            if tools == "all":
                out.append(McpToolSelection(server=server, tools=None))
            else:
                out.append(McpToolSelection(server=server, tools=require_str_list(self.path, tools, f"{where}[{i}].tools")))
        return out

    def _parse_agent(
        self,
        tbl: dict[str, Any],
        index: int,
        shared_block_names: set[str],
        shared_folders: dict[str, FolderConfig],
        server_names: set[str],
    ) -> AgentConfig:
        where = f"agents[{index}]"
        check_keys(self.path, tbl, _AGENT_KEYS, where)
        name = validate_agent_name(self.path, require_str(self.path, tbl.get("name"), f"{where}.name"), f"{where}.name")
        where = f"agent '{name}'"

        llm = optional_table(self.path, tbl.get("llm_config"), f"{where}.llm_config") or {}
        check_keys(self.path, llm, _LLM_KEYS, f"{where}.llm_config")

        blocks = [
            self._parse_block(require_table(self.path, raw, f"{where}.memory_blocks[{i}]"), f"{where}.memory_blocks[{i}]")
            for i, raw in enumerate(optional_list(self.path, tbl.get("memory_blocks"), f"{where}.memory_blocks"))
        ]
        _check_unique(self, [b.name for b in blocks], f"{where}: duplicate memory block name")

        shared_refs = optional_str_list(self.path, tbl.get("shared_blocks"), f"{where}.shared_blocks")
        for ref in shared_refs:
            if ref not in shared_block_names:
                raise self._fail(f"{where}: unknown shared_block '{ref}'")

        folders = [
            self._parse_folder(require_table(self.path, raw, f"{where}.folders[{i}]"), f"{where}.folders[{i}]")
            for i, raw in enumerate(optional_list(self.path, tbl.get("folders"), f"{where}.folders"))
        ]
        for ref in optional_str_list(self.path, tbl.get("shared_folders"), f"{where}.shared_folders"):
            if ref not in shared_folders:
                raise self._fail(f"{where}: unknown shared_folder '{ref}'")
            folders.append(shared_folders[ref])
        _check_unique(self, [f.name for f in folders], f"{where}: duplicate folder name")

        embedding = optional_str(self.path, tbl.get("embedding"), f"{where}.embedding")
        archives = [
            self._parse_archive(
                require_table(self.path, raw, f"{where}.archives[{i}]"), f"{where}.archives[{i}]", embedding
            )
            for i, raw in enumerate(optional_list(self.path, tbl.get("archives"), f"{where}.archives"))
        ]
        if len(archives) > 1:
            raise self._fail(f"{where}: Only one archive is supported per agent.")

        tools, tool_hashes = self._expand_tools(
            optional_str_list(self.path, tbl.get("tools"), f"{where}.tools"), f"{where}.tools"
        )

        return AgentConfig(
            name=name,
            system_prompt=self._parse_system_prompt(tbl.get("system_prompt"), f"{where}.system_prompt"),
            description=optional_str(self.path, tbl.get("description"), f"{where}.description") or "",
            model=optional_str(self.path, llm.get("model"), f"{where}.llm_config.model"),
            embedding=embedding,
            embedding_config=optional_table(self.path, tbl.get("embedding_config"), f"{where}.embedding_config"),
            context_window=optional_positive_int(self.path, llm.get("context_window"), f"{where}.llm_config.context_window"),
            reasoning=optional_bool(self.path, tbl.get("reasoning"), f"{where}.reasoning"),
            tools=manage_file_search_tools(tools, has_folders=bool(folders)),
            tool_source_hashes=tool_hashes,
            mcp_tools=self._parse_mcp_tools(tbl.get("mcp_tools"), f"{where}.mcp_tools", server_names),
            memory_blocks=blocks,
            memory_block_file_hashes={b.name: b.value_hash for b in blocks if b.from_file is not None},
            archives=archives,
            folders=folders,
            shared_block_refs=list(dict.fromkeys(shared_refs)),
            tags=validate_tags(self.path, optional_str_list(self.path, tbl.get("tags"), f"{where}.tags"), f"{where}.tags"),
            first_message=optional_str(self.path, tbl.get("first_message"), f"{where}.first_message"),
        )


def _check_unique(parser: FleetParser, names: list[str], message: str) -> None:
    seen: set[str] = set()
    for name in names:
        if name in seen:
            raise parser._fail(f"{message}: '{name}'")
        seen.add(name)


def manage_file_search_tools(tools: list[str], *, has_folders: bool) -> list[str]:
    """Add the built-in file-search tools iff the agent has folders.

    Applying this to its own output returns the same list.
    """

    if has_folders:
        return list(dict.fromkeys(tools + list(FILE_SEARCH_TOOLS)))
    return [t for t in dict.fromkeys(tools) if t not in FILE_SEARCH_TOOLS]


def with_tools(agent: AgentConfig, extra: list[str]) -> AgentConfig:
    """Return `agent` with `extra` tool names appended (de-duplicated)."""

    if not extra:
        return agent
    return replace(agent, tools=list(dict.fromkeys(agent.tools + extra)))
