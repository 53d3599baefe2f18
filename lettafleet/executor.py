"""Mutation executors.

The orchestrator issues every remote mutation through an Executor. The live
executor forwards to the client; the dry-run executor records a plan entry
and returns a deterministic placeholder id, so a dry run walks exactly the
same code path as a real run without touching remote state.
"""

from __future__ import annotations

import asyncio
import logging
from abc import ABC, abstractmethod
from typing import Any

from .client import LettaClient, LettaClientError, LettaNotFoundError
from .models import ArchiveConfig, McpServerSpec, MemoryBlockConfig, SHARED_BLOCK_KEY


logger = logging.getLogger(__name__)

ATTACHABLE_KINDS = ("block", "tool", "folder", "archive")

RUN_TERMINAL_STATES = {"completed", "failed", "cancelled"}


class Executor(ABC):
    dry_run = False

    @abstractmethod
    async def create_block(self, block: MemoryBlockConfig, *, shared: bool = False) -> str:
        ...

    @abstractmethod
    async def update_block_value(self, block_id: str, name: str, value: str) -> None:
        ...

    @abstractmethod
    async def delete_block(self, block_id: str, name: str) -> None:
        ...

    @abstractmethod
    async def create_folder(self, name: str, *, embedding: str | None = None) -> str:
        ...

    @abstractmethod
    async def delete_folder(self, folder_id: str, name: str) -> None:
        ...

    @abstractmethod
    async def upload_file(self, folder_id: str, folder_name: str, file_name: str, content: bytes) -> None:
        ...

    @abstractmethod
    async def delete_file(self, folder_id: str, folder_name: str, file_name: str) -> None:
        ...

    @abstractmethod
    async def create_archive(self, archive: ArchiveConfig) -> str:
        ...

    @abstractmethod
    async def delete_archive(self, archive_id: str, name: str) -> None:
        ...

    @abstractmethod
    async def upsert_tool(self, name: str, source_code: str, existing_id: str | None = None) -> str:
        ...

    @abstractmethod
    async def register_mcp_server(self, spec: McpServerSpec, *, exists: bool) -> None:
        ...

    @abstractmethod
    async def add_mcp_tool(self, server: str, tool_name: str) -> str:
        ...

    @abstractmethod
    async def create_agent(self, payload: dict[str, Any]) -> str:
        ...

    @abstractmethod
    async def update_agent(self, agent_id: str, name: str, fields: dict[str, Any]) -> None:
        ...

    @abstractmethod
    async def delete_agent(self, agent_id: str, name: str) -> None:
        ...

    @abstractmethod
    async def attach(self, kind: str, agent_id: str, item_id: str, name: str) -> None:
        ...

    @abstractmethod
    async def detach(self, kind: str, agent_id: str, item_id: str, name: str) -> None:
        ...

    @abstractmethod
    async def send_message(self, agent_id: str, agent_name: str, message: str) -> None:
        ...


def _check_kind(kind: str) -> None:
    if kind not in ATTACHABLE_KINDS:
        raise ValueError(f"unknown attachment kind: {kind!r}")


class LiveExecutor(Executor):
    def __init__(self, client: LettaClient, *, poll_interval: float = 1.0, max_polls: int = 120):
        self.client = client
        self.poll_interval = poll_interval
        self.max_polls = max_polls

    async def create_block(self, block: MemoryBlockConfig, *, shared: bool = False) -> str:
        logger.debug("creating block %s", block.name)
        remote = await self.client.create_block(
            block.name,
            block.value,
            description=block.description,
            limit=block.limit,
            metadata={SHARED_BLOCK_KEY: True} if shared else None,
        )
        return remote.id

    async def update_block_value(self, block_id: str, name: str, value: str) -> None:
        logger.debug("syncing value of block %s", name)
        await self.client.update_block(block_id, value=value)

    async def delete_block(self, block_id: str, name: str) -> None:
        await self.client.delete_block(block_id)

    async def create_folder(self, name: str, *, embedding: str | None = None) -> str:
        logger.debug("creating folder %s", name)
        return (await self.client.create_folder(name, embedding=embedding)).id

    async def delete_folder(self, folder_id: str, name: str) -> None:
        await self.client.delete_folder(folder_id)

    async def upload_file(self, folder_id: str, folder_name: str, file_name: str, content: bytes) -> None:
        logger.debug("uploading %s to folder %s", file_name, folder_name)
        await self.client.upload_file(folder_id, file_name, content)

    async def delete_file(self, folder_id: str, folder_name: str, file_name: str) -> None:
        files = await self.client.list_folder_files(folder_id)
        matches = [f for f in files if f.file_name == file_name]
        if not matches:
            logger.debug("file %s already absent from folder %s", file_name, folder_name)
            return
        for f in matches:
            await self.client.delete_file(folder_id, f.id)

    async def create_archive(self, archive: ArchiveConfig) -> str:
        remote = await self.client.create_archive(
            archive.name,
            description=archive.description,
            embedding=archive.embedding,
            embedding_config=archive.embedding_config,
        )
        return remote.id

    async def delete_archive(self, archive_id: str, name: str) -> None:
        await self.client.delete_archive(archive_id)

    async def upsert_tool(self, name: str, source_code: str, existing_id: str | None = None) -> str:
        if existing_id is not None:
            logger.info("updating tool %s", name)
            return (await self.client.update_tool(existing_id, source_code)).id
        logger.info("creating tool %s", name)
        return (await self.client.create_tool(source_code)).id

    async def register_mcp_server(self, spec: McpServerSpec, *, exists: bool) -> None:
        if exists:
            await self.client.update_mcp_server(spec.name, spec.to_payload())
        else:
            await self.client.create_mcp_server(spec.to_payload())

    async def add_mcp_tool(self, server: str, tool_name: str) -> str:
        return (await self.client.add_mcp_tool(server, tool_name)).id

    async def create_agent(self, payload: dict[str, Any]) -> str:
        return (await self.client.create_agent(payload)).id

    async def update_agent(self, agent_id: str, name: str, fields: dict[str, Any]) -> None:
        await self.client.update_agent(agent_id, fields)

    async def delete_agent(self, agent_id: str, name: str) -> None:
        await self.client.delete_agent(agent_id)

    async def attach(self, kind: str, agent_id: str, item_id: str, name: str) -> None:
        _check_kind(kind)
        await getattr(self.client, f"attach_{kind}")(agent_id, item_id)

    async def detach(self, kind: str, agent_id: str, item_id: str, name: str) -> None:
        _check_kind(kind)
        try:
            await getattr(self.client, f"detach_{kind}")(agent_id, item_id)
        except LettaNotFoundError:
            logger.debug("%s %s already detached from %s", kind, name, agent_id)

    async def send_message(self, agent_id: str, agent_name: str, message: str) -> None:
        run_id = await self.client.create_message_run(agent_id, message)
        for _ in range(self.max_polls):
            run = await self.client.get_run(run_id)
            status = str(run.get("status", ""))
            if status in RUN_TERMINAL_STATES:
                if status != "completed":
                    raise LettaClientError(f"first message to {agent_name} ended with status {status}")
                return
            await asyncio.sleep(self.poll_interval)
        raise LettaClientError(f"first message to {agent_name} did not complete (run {run_id})")


class DryRunExecutor(Executor):
    """Records what would run and returns `dry-run:<kind>:<name>` ids."""

    dry_run = True

    def __init__(self) -> None:
        self.plan: list[str] = []

    def _note(self, entry: str) -> None:
        logger.debug("[dry-run] %s", entry)
        self.plan.append(entry)

    @staticmethod
    def placeholder(kind: str, name: str) -> str:
        return f"dry-run:{kind}:{name}"

    async def create_block(self, block: MemoryBlockConfig, *, shared: bool = False) -> str:
        self._note(f"create {'shared ' if shared else ''}block {block.name}")
        return self.placeholder("block", block.name)

    async def update_block_value(self, block_id: str, name: str, value: str) -> None:
        self._note(f"sync value of block {name}")

    async def delete_block(self, block_id: str, name: str) -> None:
        self._note(f"delete block {name}")

    async def create_folder(self, name: str, *, embedding: str | None = None) -> str:
        self._note(f"create folder {name}")
        return self.placeholder("folder", name)

    async def delete_folder(self, folder_id: str, name: str) -> None:
        self._note(f"delete folder {name}")

    async def upload_file(self, folder_id: str, folder_name: str, file_name: str, content: bytes) -> None:
        self._note(f"upload {file_name} to folder {folder_name}")

    async def delete_file(self, folder_id: str, folder_name: str, file_name: str) -> None:
        self._note(f"delete {file_name} from folder {folder_name}")

    async def create_archive(self, archive: ArchiveConfig) -> str:
        self._note(f"create archive {archive.name}")
        return self.placeholder("archive", archive.name)

    async def delete_archive(self, archive_id: str, name: str) -> None:
        self._note(f"delete archive {name}")

    async def upsert_tool(self, name: str, source_code: str, existing_id: str | None = None) -> str:
        if existing_id is not None:
            self._note(f"update tool {name}")
            return existing_id
        self._note(f"create tool {name}")
        return self.placeholder("tool", name)

    async def register_mcp_server(self, spec: McpServerSpec, *, exists: bool) -> None:
        self._note(f"{'update' if exists else 'register'} mcp server {spec.name}")

    async def add_mcp_tool(self, server: str, tool_name: str) -> str:
        self._note(f"add tool {tool_name} from mcp server {server}")
        return self.placeholder("tool", tool_name)

    async def create_agent(self, payload: dict[str, Any]) -> str:
        name = str(payload.get("name"))
        self._note(f"create agent {name}")
        return self.placeholder("agent", name)

    async def update_agent(self, agent_id: str, name: str, fields: dict[str, Any]) -> None:
        self._note(f"update agent {name}: {', '.join(sorted(fields))}")

    async def delete_agent(self, agent_id: str, name: str) -> None:
        self._note(f"delete agent {name}")

    async def attach(self, kind: str, agent_id: str, item_id: str, name: str) -> None:
        _check_kind(kind)
        self._note(f"attach {kind} {name}")

    async def detach(self, kind: str, agent_id: str, item_id: str, name: str) -> None:
        _check_kind(kind)
        self._note(f"detach {kind} {name}")

    async def send_message(self, agent_id: str, agent_name: str, message: str) -> None:
        self._note(f"send first message to {agent_name}")
