"""Fleet document parsing and normalization tests."""

from __future__ import annotations

from pathlib import Path

import pytest

from lettafleet.errors import ConfigParseError, ConfigValidationError
from lettafleet.fleet import manage_file_search_tools, parse_fleet_file, with_tools
from lettafleet.hashing import content_hash
from lettafleet.models import FILE_SEARCH_TOOLS, AgentConfig
from lettafleet.validators import is_self_hosted, validate_embeddings


def _write(root: Path, text: str, name: str = "fleet.yaml") -> Path:
    p = root / name
    p.write_text(text, encoding="utf-8")
    return p


def _touch(root: Path, rel: str, content: str = "x") -> None:
    p = root / rel
    p.parent.mkdir(parents=True, exist_ok=True)
    p.write_text(content, encoding="utf-8")


# ---------------------------------------------------------------------------
# Document shape
# ---------------------------------------------------------------------------


class TestDocument:
    def test_empty_document(self, tmp_path: Path):
        fleet = parse_fleet_file(_write(tmp_path, ""))
        assert fleet.is_empty
        assert fleet.base_path == tmp_path.resolve()

    def test_minimal_agent(self, tmp_path: Path):
        path = _write(
            tmp_path,
            """
agents:
  - name: helper
    description: Answers questions
    system_prompt: "  You are helpful.  "
    llm_config:
      model: openai/gpt-4o
      context_window: 16000
    embedding: openai/text-embedding-3-small
    tags: [team:support, tier-1]
""",
        )
        fleet = parse_fleet_file(path)

        agent = fleet.agent("helper")
        assert agent is not None
        assert agent.description == "Answers questions"
        assert agent.system_prompt == "You are helpful."
        assert agent.model == "openai/gpt-4o"
        assert agent.context_window == 16000
        assert agent.tags == ["team:support", "tier-1"]
        assert agent.tools == []
        assert agent.reasoning is None

    def test_invalid_yaml_reports_location(self, tmp_path: Path):
        path = _write(tmp_path, "agents: [unclosed\n")
        with pytest.raises(ConfigParseError) as exc:
            parse_fleet_file(path)
        assert exc.value.lineno is not None
        assert "Invalid YAML" in str(exc.value)

    def test_top_level_must_be_mapping(self, tmp_path: Path):
        with pytest.raises(ConfigValidationError, match="top-level document must be a mapping"):
            parse_fleet_file(_write(tmp_path, "- a\n- b\n"))

    def test_missing_file(self, tmp_path: Path):
        with pytest.raises(ConfigValidationError, match="file not found"):
            parse_fleet_file(tmp_path / "nope.yaml")

    def test_unknown_top_level_key(self, tmp_path: Path):
        with pytest.raises(ConfigValidationError, match="unknown keys: agnets"):
            parse_fleet_file(_write(tmp_path, "agnets: []\n"))

    def test_unknown_agent_key(self, tmp_path: Path):
        path = _write(tmp_path, "agents:\n  - name: a\n    modle: x\n")
        with pytest.raises(ConfigValidationError, match=r"agents\[0\]: unknown keys: modle"):
            parse_fleet_file(path)

    def test_duplicate_agent_name(self, tmp_path: Path):
        path = _write(tmp_path, "agents:\n  - name: a\n  - name: a\n")
        with pytest.raises(ConfigValidationError, match="Duplicate agent name: 'a'"):
            parse_fleet_file(path)

    @pytest.mark.parametrize("name", ["all", "ALL", "CANARY-bot"])
    def test_reserved_agent_names(self, tmp_path: Path, name: str):
        path = _write(tmp_path, f"agents:\n  - name: {name}\n")
        with pytest.raises(ConfigValidationError, match="reserved"):
            parse_fleet_file(path)

    def test_invalid_tag(self, tmp_path: Path):
        path = _write(tmp_path, "agents:\n  - name: a\n    tags: ['-bad tag']\n")
        with pytest.raises(ConfigValidationError, match="invalid tag"):
            parse_fleet_file(path)

    def test_root_overrides_document_directory(self, tmp_path: Path):
        other = tmp_path / "assets"
        _touch(other, "persona.md", "I am a bot.")
        (tmp_path / "cfg").mkdir()
        path = _write(
            tmp_path / "cfg",
            """
agents:
  - name: a
    memory_blocks:
      - name: persona
        description: who
        limit: 100
        from_file: persona.md
""",
        )
        fleet = parse_fleet_file(path, root=other)
        assert fleet.agents[0].memory_blocks[0].value == "I am a bot."


# ---------------------------------------------------------------------------
# Memory blocks
# ---------------------------------------------------------------------------


class TestMemoryBlocks:
    def test_value_block(self, tmp_path: Path):
        path = _write(
            tmp_path,
            """
agents:
  - name: a
    memory_blocks:
      - name: persona
        description: who I am
        limit: 500
        value: I help.
""",
        )
        block = parse_fleet_file(path).agents[0].memory_blocks[0]
        assert block.value == "I help."
        assert block.value_hash == content_hash("I help.")
        assert block.agent_owned is True
        assert block.from_file is None

    def test_file_block_hashes_bytes(self, tmp_path: Path):
        _touch(tmp_path, "blocks/human.md", "Name: Ada\n")
        path = _write(
            tmp_path,
            """
agents:
  - name: a
    memory_blocks:
      - name: human
        description: the user
        limit: 500
        from_file: blocks/human.md
        agent_owned: false
""",
        )
        agent = parse_fleet_file(path).agents[0]
        block = agent.memory_blocks[0]
        assert block.value == "Name: Ada\n"
        assert block.agent_owned is False
        assert agent.memory_block_file_hashes == {"human": content_hash(b"Name: Ada\n")}
        assert agent.block_hash(block) == content_hash(b"Name: Ada\n")

    def test_value_and_from_file_are_exclusive(self, tmp_path: Path):
        _touch(tmp_path, "p.md")
        path = _write(
            tmp_path,
            """
shared_blocks:
  - name: p
    description: d
    limit: 10
    value: v
    from_file: p.md
""",
        )
        with pytest.raises(ConfigValidationError, match="exactly one of 'value' or 'from_file'"):
            parse_fleet_file(path)

    def test_limit_must_be_positive_int(self, tmp_path: Path):
        path = _write(tmp_path, "shared_blocks:\n  - {name: p, description: d, limit: true, value: v}\n")
        with pytest.raises(ConfigValidationError, match="expected positive integer"):
            parse_fleet_file(path)

    def test_missing_block_file(self, tmp_path: Path):
        path = _write(tmp_path, "shared_blocks:\n  - {name: p, description: d, limit: 5, from_file: gone.md}\n")
        with pytest.raises(ConfigValidationError, match="file not found: gone.md"):
            parse_fleet_file(path)

    def test_unknown_shared_block_reference(self, tmp_path: Path):
        path = _write(tmp_path, "agents:\n  - name: a\n    shared_blocks: [guidelines]\n")
        with pytest.raises(ConfigValidationError, match="unknown shared_block 'guidelines'"):
            parse_fleet_file(path)

    def test_shared_block_reference(self, tmp_path: Path):
        path = _write(
            tmp_path,
            """
shared_blocks:
  - {name: guidelines, description: rules, limit: 100, value: Be kind.}
agents:
  - name: a
    shared_blocks: [guidelines, guidelines]
""",
        )
        fleet = parse_fleet_file(path)
        assert fleet.shared_blocks[0].name == "guidelines"
        assert fleet.agents[0].shared_block_refs == ["guidelines"]


# ---------------------------------------------------------------------------
# Folders
# ---------------------------------------------------------------------------


class TestFolders:
    def test_glob_expands_sorted_and_adds_search_tools(self, tmp_path: Path):
        _touch(tmp_path, "docs/b.md", "b")
        _touch(tmp_path, "docs/a.md", "a")
        _touch(tmp_path, "docs/notes.txt", "n")
        path = _write(
            tmp_path,
            """
agents:
  - name: a
    tools: [send_message]
    folders:
      - name: docs
        files: ["docs/*.md"]
""",
        )
        agent = parse_fleet_file(path).agents[0]
        folder = agent.folders[0]
        assert folder.files == ["docs/a.md", "docs/b.md"]
        assert folder.file_content_hashes == {"docs/a.md": content_hash("a"), "docs/b.md": content_hash("b")}
        assert agent.tools == ["send_message", *FILE_SEARCH_TOOLS]

    def test_missing_literal_file(self, tmp_path: Path):
        path = _write(tmp_path, "agents:\n  - name: a\n    folders:\n      - {name: docs, files: [docs/x.md]}\n")
        with pytest.raises(ConfigValidationError, match="file not found: docs/x.md"):
            parse_fleet_file(path)

    def test_shared_folder_requires_files(self, tmp_path: Path):
        path = _write(tmp_path, "shared_folders:\n  - name: kb\n")
        with pytest.raises(ConfigValidationError, match="must have a files array"):
            parse_fleet_file(path)

    def test_duplicate_shared_folder(self, tmp_path: Path):
        _touch(tmp_path, "kb.md")
        path = _write(
            tmp_path,
            "shared_folders:\n  - {name: kb, files: [kb.md]}\n  - {name: kb, files: [kb.md]}\n",
        )
        with pytest.raises(ConfigValidationError, match="Duplicate shared folder name"):
            parse_fleet_file(path)

    def test_unknown_shared_folder_reference(self, tmp_path: Path):
        path = _write(tmp_path, "agents:\n  - name: a\n    shared_folders: [kb]\n")
        with pytest.raises(ConfigValidationError, match="unknown shared_folder 'kb'"):
            parse_fleet_file(path)

    def test_shared_folder_reference(self, tmp_path: Path):
        _touch(tmp_path, "kb.md")
        path = _write(
            tmp_path,
            """
shared_folders:
  - {name: kb, files: [kb.md]}
agents:
  - {name: a, shared_folders: [kb]}
  - {name: b, shared_folders: [kb]}
""",
        )
        fleet = parse_fleet_file(path)
        assert [f.name for f in fleet.all_folders()] == ["kb"]
        assert fleet.agents[0].folders[0].shared
        assert set(FILE_SEARCH_TOOLS) <= set(fleet.agents[1].tools)

    def test_private_folder_declared_twice(self, tmp_path: Path):
        _touch(tmp_path, "kb.md")
        path = _write(
            tmp_path,
            """
agents:
  - {name: a, folders: [{name: kb, files: [kb.md]}]}
  - {name: b, folders: [{name: kb, files: [kb.md]}]}
""",
        )
        with pytest.raises(ConfigValidationError, match="declared by both 'a' and 'b'"):
            parse_fleet_file(path)


# ---------------------------------------------------------------------------
# Tools, archives, prompts, external tool servers
# ---------------------------------------------------------------------------


class TestTools:
    def test_wildcard_enumerates_sorted_and_skips_private(self, tmp_path: Path):
        _touch(tmp_path, "tools/zeta.py", "def zeta():\n    return 1\n")
        _touch(tmp_path, "tools/alpha.py", "def alpha():\n    return 2\n")
        _touch(tmp_path, "tools/_helpers.py", "X = 1\n")
        path = _write(tmp_path, "agents:\n  - name: a\n    tools: ['tools/*']\n")

        fleet = parse_fleet_file(path)
        agent = fleet.agents[0]
        assert agent.tools == ["alpha", "zeta"]
        assert set(agent.tool_source_hashes) == {"alpha", "zeta"}
        assert fleet.tool_sources["alpha"] == tmp_path.resolve() / "tools" / "alpha.py"

    def test_bare_name_is_custom_when_source_exists(self, tmp_path: Path):
        _touch(tmp_path, "tools/lookup.py", "def lookup(q: str):\n    return q\n")
        path = _write(tmp_path, "agents:\n  - name: a\n    tools: [lookup, web_search]\n")

        fleet = parse_fleet_file(path)
        assert fleet.agents[0].tools == ["lookup", "web_search"]
        assert set(fleet.tool_sources) == {"lookup"}

    def test_search_tools_removed_without_folders(self, tmp_path: Path):
        path = _write(tmp_path, "agents:\n  - name: a\n    tools: [open_files, web_search]\n")
        assert parse_fleet_file(path).agents[0].tools == ["web_search"]

    def test_manage_file_search_tools_is_idempotent(self):
        once = manage_file_search_tools(["x", "grep_files"], has_folders=True)
        assert manage_file_search_tools(once, has_folders=True) == once
        off = manage_file_search_tools(once, has_folders=False)
        assert off == ["x"]
        assert manage_file_search_tools(off, has_folders=False) == off

    def test_with_tools_deduplicates(self):
        agent = AgentConfig(name="a", tools=["x"])
        assert with_tools(agent, ["x", "y"]).tools == ["x", "y"]
        assert with_tools(agent, []) is agent


class TestArchives:
    def test_single_archive(self, tmp_path: Path):
        path = _write(tmp_path, "agents:\n  - name: a\n    archives: [{name: notes, description: long-term}]\n")
        archive = parse_fleet_file(path).agents[0].archives[0]
        assert archive.name == "notes"
        assert archive.description == "long-term"

    def test_inherits_agent_embedding(self, tmp_path: Path):
        path = _write(tmp_path, "agents:\n  - name: a\n    embedding: ollama/nomic\n    archives: [{name: kb}]\n")
        archive = parse_fleet_file(path).agents[0].archives[0]
        assert archive.embedding == "ollama/nomic"
        assert archive.embedding_config is None

    def test_own_embedding_wins(self, tmp_path: Path):
        text = (
            "agents:\n  - name: a\n    embedding: ollama/nomic\n"
            "    archives:\n      - name: kb\n        embedding_config: {embedding_dim: 768}\n"
        )
        archive = parse_fleet_file(_write(tmp_path, text)).agents[0].archives[0]
        assert archive.embedding is None
        assert archive.embedding_config == {"embedding_dim": 768}

    def test_more_than_one_archive(self, tmp_path: Path):
        path = _write(tmp_path, "agents:\n  - name: a\n    archives: [{name: one}, {name: two}]\n")
        with pytest.raises(ConfigValidationError, match="Only one archive is supported per agent."):
            parse_fleet_file(path)


class TestSystemPrompt:
    def test_base_prompt_is_prepended(self, tmp_path: Path):
        _touch(tmp_path, "config/base-letta-system.md", "Base rules.\n")
        path = _write(tmp_path, "agents:\n  - name: a\n    system_prompt: Be brief.\n")
        assert parse_fleet_file(path).agents[0].system_prompt == "Base rules.\n\nBe brief."

    def test_disable_base_prompt(self, tmp_path: Path):
        _touch(tmp_path, "config/base-letta-system.md", "Base rules.\n")
        _touch(tmp_path, "prompts/a.md", "From file.\n")
        path = _write(
            tmp_path,
            """
agents:
  - name: a
    system_prompt:
      from_file: prompts/a.md
      disable_base_prompt: true
""",
        )
        assert parse_fleet_file(path).agents[0].system_prompt == "From file."


class TestMcp:
    def test_servers_and_selections(self, tmp_path: Path):
        path = _write(
            tmp_path,
            """
mcp_servers:
  - {name: search, type: sse, server_url: "http://localhost:9000/sse"}
  - {name: local, type: stdio, command: python, args: [server.py], env: {TOKEN: abc}}
agents:
  - name: a
    mcp_tools:
      - {server: search}
      - {server: local, tools: [ping]}
""",
        )
        fleet = parse_fleet_file(path)
        assert [s.name for s in fleet.mcp_servers] == ["search", "local"]
        assert fleet.mcp_servers[1].to_payload() == {
            "server_name": "local",
            "type": "stdio",
            "command": "python",
            "args": ["server.py"],
            "env": {"TOKEN": "abc"},
        }
        selections = fleet.agents[0].mcp_tools
        assert selections[0].tools is None
        assert selections[1].tools == ["ping"]

    def test_unknown_server(self, tmp_path: Path):
        path = _write(tmp_path, "agents:\n  - name: a\n    mcp_tools: [{server: nope}]\n")
        with pytest.raises(ConfigValidationError, match="unknown mcp server 'nope'"):
            parse_fleet_file(path)

    def test_stdio_requires_command(self, tmp_path: Path):
        path = _write(tmp_path, "mcp_servers:\n  - {name: local, type: stdio}\n")
        with pytest.raises(ConfigValidationError, match="requires 'command'"):
            parse_fleet_file(path)

    def test_unknown_server_type(self, tmp_path: Path):
        path = _write(tmp_path, "mcp_servers:\n  - {name: x, type: websocket, server_url: 'ws://x'}\n")
        with pytest.raises(ConfigValidationError, match="expected one of"):
            parse_fleet_file(path)


# ---------------------------------------------------------------------------
# Embedding requirement
# ---------------------------------------------------------------------------


class TestEmbeddings:
    def test_is_self_hosted(self):
        assert is_self_hosted("http://localhost:8283")
        assert is_self_hosted("https://letta.example.org")
        assert not is_self_hosted("https://api.letta.com")
        assert not is_self_hosted("https://letta.com")

    def test_self_hosted_requires_embedding(self, tmp_path: Path):
        agents = [AgentConfig(name="a", embedding="openai/x"), AgentConfig(name="b")]
        with pytest.raises(ConfigValidationError, match="missing for: b"):
            validate_embeddings(tmp_path / "f.yaml", agents, "http://localhost:8283")

    def test_embedding_config_counts(self, tmp_path: Path):
        agents = [AgentConfig(name="a", embedding_config={"embedding_model": "x"})]
        validate_embeddings(tmp_path / "f.yaml", agents, "http://localhost:8283")

    def test_cloud_has_default(self, tmp_path: Path):
        validate_embeddings(tmp_path / "f.yaml", [AgentConfig(name="a")], "https://api.letta.com")
