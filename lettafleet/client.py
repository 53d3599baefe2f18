"""Letta client interface consumed by the reconciliation core.

Every method is a coroutine and an independently failable remote call.
Implementations return typed resources (see `models.Remote*`); raw API
payloads never leave the client.

Usage:
    # HTTP client from environment / settings file
    client = create_letta_client()

    # In-process client (offline runs and tests)
    client = create_letta_client(offline=True)
"""

from __future__ import annotations

import json
import logging
import os
from abc import ABC, abstractmethod
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from .models import (
    RemoteAgent,
    RemoteArchive,
    RemoteBlock,
    RemoteFile,
    RemoteFolder,
    RemoteMcpServer,
    RemoteTool,
)


logger = logging.getLogger(__name__)

DEFAULT_BASE_URL = "http://localhost:8283"
DEFAULT_TIMEOUT = 60.0


# ---------------------------------------------------------------------------
# Client configuration
# ---------------------------------------------------------------------------


@dataclass
class LettaClientConfig:
    """Configuration for connecting to a Letta server.

    Authentication can be provided via:
    1. Explicit api_key parameter
    2. Environment variable LETTA_API_KEY
    3. Local settings file (.letta/settings.local.json)

    Attributes:
        base_url: Base URL for the Letta API
        api_key: API key for authentication (optional for self-hosted servers)
        timeout: Request timeout in seconds
    """

    base_url: str = DEFAULT_BASE_URL
    api_key: str | None = None
    timeout: float = DEFAULT_TIMEOUT

    @classmethod
    def from_env(cls) -> "LettaClientConfig":
        """Create config from LETTA_BASE_URL, LETTA_API_KEY and LETTA_TIMEOUT."""

        timeout_raw = os.environ.get("LETTA_TIMEOUT")
        try:
            timeout = float(timeout_raw) if timeout_raw else DEFAULT_TIMEOUT
        except ValueError:
            logger.warning("ignoring invalid LETTA_TIMEOUT=%r", timeout_raw)
            timeout = DEFAULT_TIMEOUT
        return cls(
            base_url=os.environ.get("LETTA_BASE_URL", DEFAULT_BASE_URL),
            api_key=os.environ.get("LETTA_API_KEY"),
            timeout=timeout,
        )

    @classmethod
    def from_settings_file(cls, path: Path | None = None) -> "LettaClientConfig":
        """Load config from a settings file, falling back to the environment.

        Checks in order:
        1. Provided path
        2. .letta/settings.local.json (project-local)
        3. ~/.letta/settings.local.json (user-level)
        """

        paths_to_check: list[Path] = []
        if path:
            paths_to_check.append(path)
        else:
            paths_to_check.append(Path.cwd() / ".letta" / "settings.local.json")
            paths_to_check.append(Path.home() / ".letta" / "settings.local.json")

        env = cls.from_env()
        for p in paths_to_check:
            if not p.exists():
                continue
            try:
                data = json.loads(p.read_text(encoding="utf-8"))
            except (json.JSONDecodeError, OSError) as e:
                logger.warning("skipping unreadable settings file %s: %s", p, e)
                continue
            if not isinstance(data, dict):
                continue
            return cls(
                base_url=data.get("base_url") or env.base_url,
                api_key=data.get("api_key") or env.api_key,
                timeout=float(data.get("timeout") or env.timeout),
            )

        return env


# ---------------------------------------------------------------------------
# Client errors
# ---------------------------------------------------------------------------


class LettaClientError(Exception):
    """Base exception for Letta client errors."""

    def __init__(self, message: str, cause: Exception | None = None):
        super().__init__(message)
        self.cause = cause


class LettaConnectionError(LettaClientError):
    """Raised when unable to connect to Letta server."""


class LettaAuthError(LettaClientError):
    """Raised when authentication fails."""


class LettaNotFoundError(LettaClientError):
    """Raised when a requested resource is not found."""


class LettaApiError(LettaClientError):
    """Raised for any other non-success response."""

    def __init__(self, message: str, status_code: int, cause: Exception | None = None):
        super().__init__(message, cause)
        self.status_code = status_code


# ---------------------------------------------------------------------------
# Client interface (abstract base class)
# ---------------------------------------------------------------------------


class LettaClient(ABC):
    """Abstract interface for Letta API operations."""

    @property
    @abstractmethod
    def config(self) -> LettaClientConfig:
        ...

    async def aclose(self) -> None:
        return None

    # --- Agents ---

    @abstractmethod
    async def list_agents(self) -> list[RemoteAgent]:
        ...

    @abstractmethod
    async def get_agent(self, agent_id: str) -> RemoteAgent:
        """Raises LettaNotFoundError when the agent does not exist."""
        ...

    @abstractmethod
    async def create_agent(self, payload: dict[str, Any]) -> RemoteAgent:
        """Create an agent.

        `payload` carries name, system, description, model, embedding,
        context_window, tags, metadata and the ids to attach at creation
        (`block_ids`, `tool_ids`).
        """
        ...

    @abstractmethod
    async def update_agent(self, agent_id: str, fields: dict[str, Any]) -> RemoteAgent:
        """Patch scalar fields (and `metadata`) of an existing agent in place."""
        ...

    @abstractmethod
    async def delete_agent(self, agent_id: str) -> None:
        ...

    # --- Agent attachments ---

    @abstractmethod
    async def list_agent_blocks(self, agent_id: str) -> list[RemoteBlock]:
        ...

    @abstractmethod
    async def list_agent_tools(self, agent_id: str) -> list[RemoteTool]:
        ...

    @abstractmethod
    async def list_agent_folders(self, agent_id: str) -> list[RemoteFolder]:
        ...

    @abstractmethod
    async def list_agent_archives(self, agent_id: str) -> list[RemoteArchive]:
        ...

    @abstractmethod
    async def attach_block(self, agent_id: str, block_id: str) -> None:
        ...

    @abstractmethod
    async def detach_block(self, agent_id: str, block_id: str) -> None:
        ...

    @abstractmethod
    async def attach_tool(self, agent_id: str, tool_id: str) -> None:
        ...

    @abstractmethod
    async def detach_tool(self, agent_id: str, tool_id: str) -> None:
        ...

    @abstractmethod
    async def attach_folder(self, agent_id: str, folder_id: str) -> None:
        ...

    @abstractmethod
    async def detach_folder(self, agent_id: str, folder_id: str) -> None:
        ...

    @abstractmethod
    async def attach_archive(self, agent_id: str, archive_id: str) -> None:
        ...

    @abstractmethod
    async def detach_archive(self, agent_id: str, archive_id: str) -> None:
        ...

    # --- Blocks ---

    @abstractmethod
    async def list_blocks(self) -> list[RemoteBlock]:
        ...

    @abstractmethod
    async def create_block(
        self,
        label: str,
        value: str,
        *,
        description: str | None = None,
        limit: int | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> RemoteBlock:
        ...

    @abstractmethod
    async def update_block(self, block_id: str, *, value: str) -> RemoteBlock:
        ...

    @abstractmethod
    async def delete_block(self, block_id: str) -> None:
        ...

    @abstractmethod
    async def list_block_agents(self, block_id: str) -> list[str]:
        """Ids of the agents that currently attach the block (live count)."""
        ...

    # --- Tools ---

    @abstractmethod
    async def list_tools(self) -> list[RemoteTool]:
        ...

    @abstractmethod
    async def create_tool(self, source_code: str) -> RemoteTool:
        ...

    @abstractmethod
    async def update_tool(self, tool_id: str, source_code: str) -> RemoteTool:
        ...

    # --- Folders ---

    @abstractmethod
    async def list_folders(self) -> list[RemoteFolder]:
        ...

    @abstractmethod
    async def create_folder(self, name: str, *, embedding: str | None = None) -> RemoteFolder:
        ...

    @abstractmethod
    async def delete_folder(self, folder_id: str) -> None:
        ...

    @abstractmethod
    async def list_folder_files(self, folder_id: str) -> list[RemoteFile]:
        ...

    @abstractmethod
    async def upload_file(self, folder_id: str, file_name: str, content: bytes) -> RemoteFile:
        ...

    @abstractmethod
    async def delete_file(self, folder_id: str, file_id: str) -> None:
        ...

    @abstractmethod
    async def list_folder_agents(self, folder_id: str) -> list[str]:
        ...

    # --- Archives ---

    @abstractmethod
    async def list_archives(self) -> list[RemoteArchive]:
        ...

    @abstractmethod
    async def create_archive(
        self,
        name: str,
        *,
        description: str | None = None,
        embedding: str | None = None,
        embedding_config: dict[str, Any] | None = None,
    ) -> RemoteArchive:
        ...

    @abstractmethod
    async def delete_archive(self, archive_id: str) -> None:
        ...

    @abstractmethod
    async def list_archive_agents(self, archive_id: str) -> list[str]:
        ...

    # --- External tool servers ---

    @abstractmethod
    async def list_mcp_servers(self) -> list[RemoteMcpServer]:
        ...

    @abstractmethod
    async def create_mcp_server(self, payload: dict[str, Any]) -> RemoteMcpServer:
        ...

    @abstractmethod
    async def update_mcp_server(self, name: str, payload: dict[str, Any]) -> RemoteMcpServer:
        ...

    @abstractmethod
    async def list_mcp_server_tools(self, server_name: str) -> list[str]:
        """Names of the tools the server exposes."""
        ...

    @abstractmethod
    async def add_mcp_tool(self, server_name: str, tool_name: str) -> RemoteTool:
        """Register one server tool as a Letta tool and return it."""
        ...

    # --- Messages ---

    @abstractmethod
    async def create_message_run(self, agent_id: str, message: str) -> str:
        """Send a user message asynchronously; returns the run id."""
        ...

    @abstractmethod
    async def get_run(self, run_id: str) -> dict[str, Any]:
        """Return the run record; `status` is one of created/running/completed/failed."""
        ...


# ---------------------------------------------------------------------------
# Factory function
# ---------------------------------------------------------------------------


def create_letta_client(
    config: LettaClientConfig | None = None,
    *,
    offline: bool = False,
) -> LettaClient:
    """Create a Letta client instance.

    Args:
        config: Client configuration (loads from settings file/env if not provided)
        offline: Return an in-process client that never touches the network
    """

    if config is None:
        config = LettaClientConfig.from_settings_file()

    if offline:
        from .memory_client import InMemoryLettaClient

        return InMemoryLettaClient(config)

    from .http_client import HttpLettaClient

    return HttpLettaClient(config)
