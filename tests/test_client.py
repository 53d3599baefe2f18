"""Client configuration, factory and in-process client tests."""

from __future__ import annotations

import asyncio
import json
from pathlib import Path

import pytest

from lettafleet.client import (
    DEFAULT_BASE_URL,
    LettaApiError,
    LettaClientConfig,
    LettaClientError,
    LettaNotFoundError,
    create_letta_client,
)
from lettafleet.errors import format_letta_error
from lettafleet.executor import DryRunExecutor, LiveExecutor
from lettafleet.http_client import HttpLettaClient
from lettafleet.memory_client import InMemoryLettaClient, tool_name_from_source
from lettafleet.models import MemoryBlockConfig


# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------


class TestLettaClientConfig:
    def test_defaults(self):
        config = LettaClientConfig()
        assert config.base_url == DEFAULT_BASE_URL
        assert config.api_key is None
        assert config.timeout == 60.0

    def test_from_env(self, monkeypatch):
        monkeypatch.setenv("LETTA_BASE_URL", "https://api.letta.com")
        monkeypatch.setenv("LETTA_API_KEY", "sk-env")
        monkeypatch.setenv("LETTA_TIMEOUT", "5")
        config = LettaClientConfig.from_env()
        assert (config.base_url, config.api_key, config.timeout) == ("https://api.letta.com", "sk-env", 5.0)

    def test_invalid_timeout_is_ignored(self, monkeypatch):
        monkeypatch.setenv("LETTA_TIMEOUT", "soon")
        assert LettaClientConfig.from_env().timeout == 60.0

    def test_settings_file_wins_over_env(self, tmp_path: Path, monkeypatch):
        monkeypatch.setenv("LETTA_API_KEY", "sk-env")
        settings = tmp_path / "settings.local.json"
        settings.write_text(json.dumps({"base_url": "http://letta.internal:8283"}), encoding="utf-8")

        config = LettaClientConfig.from_settings_file(settings)

        assert config.base_url == "http://letta.internal:8283"
        assert config.api_key == "sk-env"

    def test_unreadable_settings_fall_back_to_env(self, tmp_path: Path, monkeypatch):
        monkeypatch.setenv("LETTA_BASE_URL", "http://from-env")
        settings = tmp_path / "settings.local.json"
        settings.write_text("{not json", encoding="utf-8")
        assert LettaClientConfig.from_settings_file(settings).base_url == "http://from-env"

    def test_factory(self):
        config = LettaClientConfig()
        assert isinstance(create_letta_client(config), HttpLettaClient)
        offline = create_letta_client(config, offline=True)
        assert isinstance(offline, InMemoryLettaClient)
        assert offline.config is config


# ---------------------------------------------------------------------------
# Error formatting
# ---------------------------------------------------------------------------


class TestFormatLettaError:
    def test_block_limit(self):
        message = format_letta_error("Exceeds 5000 character limit (requested 7123)", block_name="persona")
        assert message.splitlines()[0] == "Memory block 'persona' exceeds character limit"
        assert "Limit: 5,000 characters" in message
        assert "Actual: 7,123 characters" in message

    def test_provider(self):
        message = format_letta_error("Provider anthropic is not supported")
        assert "ANTHROPIC_API_KEY" in message
        assert "https://docs.letta.com/guides/server/providers/anthropic" in message

    def test_unknown_provider_env_var(self):
        assert "MISTRAL_API_KEY" in format_letta_error("Provider mistral is not supported")

    def test_passthrough(self):
        assert format_letta_error("something else") == "something else"


# ---------------------------------------------------------------------------
# In-process client
# ---------------------------------------------------------------------------


class TestInMemoryLettaClient:
    def test_tool_name_from_source(self):
        assert tool_name_from_source("import os\n\nasync def fetch(url):\n    pass\n") == "fetch"
        with pytest.raises(LettaApiError):
            tool_name_from_source("x = 1\n")

    def test_block_limit_enforced(self):
        client = InMemoryLettaClient()
        with pytest.raises(LettaApiError, match="Exceeds 3 character limit \\(requested 5\\)"):
            asyncio.run(client.create_block("b", "hello", limit=3))

    def test_missing_agent(self):
        with pytest.raises(LettaNotFoundError):
            asyncio.run(InMemoryLettaClient().get_agent("agent-404"))

    def test_update_agent_rejects_unknown_fields(self):
        client = InMemoryLettaClient()

        async def _go():
            agent = await client.create_agent({"name": "bot"})
            await client.update_agent(agent.id, {"favorite_color": "blue"})

        with pytest.raises(LettaApiError, match="unsupported agent fields"):
            asyncio.run(_go())


# ---------------------------------------------------------------------------
# Executors
# ---------------------------------------------------------------------------


class StuckRunClient(InMemoryLettaClient):
    async def get_run(self, run_id: str) -> dict:
        return {"id": run_id, "status": "running"}


class FailedRunClient(InMemoryLettaClient):
    async def get_run(self, run_id: str) -> dict:
        return {"id": run_id, "status": "failed"}


class TestExecutors:
    def test_live_shared_block_metadata(self):
        client = InMemoryLettaClient()
        block = MemoryBlockConfig(name="g", description="d", limit=10, value="v")
        block_id = asyncio.run(LiveExecutor(client).create_block(block, shared=True))
        assert client.blocks[block_id].is_shared

    def test_dry_run_placeholders(self):
        executor = DryRunExecutor()
        block = MemoryBlockConfig(name="g", description="d", limit=10, value="v")

        assert asyncio.run(executor.create_block(block)) == "dry-run:block:g"
        assert asyncio.run(executor.create_agent({"name": "bot"})) == "dry-run:agent:bot"
        assert asyncio.run(executor.upsert_tool("t", "def t(): pass", "tool-1")) == "tool-1"
        assert executor.plan == ["create block g", "create agent bot", "update tool t"]

    def test_unknown_attach_kind(self):
        with pytest.raises(ValueError, match="unknown attachment kind"):
            asyncio.run(DryRunExecutor().attach("agent", "a1", "x", "x"))

    def test_detach_of_missing_is_tolerated(self):
        class Gone(InMemoryLettaClient):
            async def detach_tool(self, agent_id: str, tool_id: str) -> None:
                raise LettaNotFoundError("gone")

        asyncio.run(LiveExecutor(Gone()).detach("tool", "a1", "t1", "t"))

    @pytest.mark.parametrize(("cls", "match"), [(StuckRunClient, "did not complete"), (FailedRunClient, "status failed")])
    def test_first_message_failures(self, cls, match):
        client = cls()

        async def _go():
            agent = await client.create_agent({"name": "bot"})
            await LiveExecutor(client, poll_interval=0, max_polls=2).send_message(agent.id, "bot", "hello")

        with pytest.raises(LettaClientError, match=match):
            asyncio.run(_go())
