"""httpx implementation of the client contract against the Letta `/v1` REST API."""

from __future__ import annotations

import logging
from typing import Any

import httpx

from .client import (
    LettaApiError,
    LettaAuthError,
    LettaClient,
    LettaClientConfig,
    LettaConnectionError,
    LettaNotFoundError,
)
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

_LIST_LIMIT = 1000


class HttpLettaClient(LettaClient):
    def __init__(
        self,
        config: LettaClientConfig | None = None,
        *,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._config = config or LettaClientConfig()
        self._transport = transport
        self._client: httpx.AsyncClient | None = None

    @property
    def config(self) -> LettaClientConfig:
        return self._config

    def _headers(self) -> dict[str, str]:
        headers = {"Accept": "application/json"}
        if self._config.api_key:
            headers["Authorization"] = f"Bearer {self._config.api_key}"
        return headers

    def _http(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                base_url=self._config.base_url.rstrip("/") + "/v1",
                headers=self._headers(),
                timeout=self._config.timeout,
                transport=self._transport,
            )
        return self._client

    async def aclose(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    async def _request(self, method: str, path: str, **kwargs: Any) -> Any:
        logger.debug("%s %s", method, path)
        try:
            response = await self._http().request(method, path, **kwargs)
        except httpx.TimeoutException as e:
            raise LettaConnectionError(f"{method} {path} timed out", cause=e) from e
        except httpx.TransportError as e:
            raise LettaConnectionError(f"cannot reach Letta server at {self._config.base_url}: {e}", cause=e) from e

        if response.status_code in (401, 403):
            raise LettaAuthError(f"{method} {path}: authentication failed ({response.status_code})")
        if response.status_code == 404:
            raise LettaNotFoundError(f"{method} {path}: not found")
        if response.status_code >= 400:
            raise LettaApiError(
                f"{method} {path} failed ({response.status_code}): {_error_detail(response)}",
                status_code=response.status_code,
            )
        if not response.content:
            return None
        return response.json()

    async def _list(self, path: str, **params: Any) -> list[dict[str, Any]]:
        """Fetch every page of a list endpoint, following `after=<last id>` cursors."""

        items: list[dict[str, Any]] = []
        after: str | None = None
        while True:
            query = {"limit": _LIST_LIMIT, **params}
            if after is not None:
                query["after"] = after
            data = await self._request("GET", path, params=query)
            page = [item for item in (data or []) if isinstance(item, dict)]
            items.extend(page)
            if len(page) < _LIST_LIMIT:
                return items
            last = page[-1].get("id")
            if last is None or str(last) == after:
                logger.warning("%s: cannot page past %d items", path, len(items))
                return items
            after = str(last)

    # --- Agents ---

    async def list_agents(self) -> list[RemoteAgent]:
        return [RemoteAgent.from_api(a) for a in await self._list("/agents/")]

    async def get_agent(self, agent_id: str) -> RemoteAgent:
        return RemoteAgent.from_api(await self._request("GET", f"/agents/{agent_id}"))

    async def create_agent(self, payload: dict[str, Any]) -> RemoteAgent:
        return RemoteAgent.from_api(await self._request("POST", "/agents/", json=payload))

    async def update_agent(self, agent_id: str, fields: dict[str, Any]) -> RemoteAgent:
        return RemoteAgent.from_api(await self._request("PATCH", f"/agents/{agent_id}", json=fields))

    async def delete_agent(self, agent_id: str) -> None:
        await self._request("DELETE", f"/agents/{agent_id}")

    # --- Agent attachments ---

    async def list_agent_blocks(self, agent_id: str) -> list[RemoteBlock]:
        return [RemoteBlock.from_api(b) for b in await self._list(f"/agents/{agent_id}/core-memory/blocks")]

    async def list_agent_tools(self, agent_id: str) -> list[RemoteTool]:
        return [RemoteTool.from_api(t) for t in await self._list(f"/agents/{agent_id}/tools")]

    async def list_agent_folders(self, agent_id: str) -> list[RemoteFolder]:
        return [RemoteFolder.from_api(f) for f in await self._list(f"/agents/{agent_id}/folders")]

    async def list_agent_archives(self, agent_id: str) -> list[RemoteArchive]:
        return [RemoteArchive.from_api(a) for a in await self._list(f"/agents/{agent_id}/archives")]

    async def attach_block(self, agent_id: str, block_id: str) -> None:
        await self._request("PATCH", f"/agents/{agent_id}/core-memory/blocks/attach/{block_id}")

    async def detach_block(self, agent_id: str, block_id: str) -> None:
        await self._request("PATCH", f"/agents/{agent_id}/core-memory/blocks/detach/{block_id}")

    async def attach_tool(self, agent_id: str, tool_id: str) -> None:
        await self._request("PATCH", f"/agents/{agent_id}/tools/attach/{tool_id}")

    async def detach_tool(self, agent_id: str, tool_id: str) -> None:
        await self._request("PATCH", f"/agents/{agent_id}/tools/detach/{tool_id}")

    async def attach_folder(self, agent_id: str, folder_id: str) -> None:
        await self._request("PATCH", f"/agents/{agent_id}/folders/attach/{folder_id}")

    async def detach_folder(self, agent_id: str, folder_id: str) -> None:
        await self._request("PATCH", f"/agents/{agent_id}/folders/detach/{folder_id}")

    async def attach_archive(self, agent_id: str, archive_id: str) -> None:
        await self._request("PATCH", f"/agents/{agent_id}/archives/attach/{archive_id}")

    async def detach_archive(self, agent_id: str, archive_id: str) -> None:
        await self._request("PATCH", f"/agents/{agent_id}/archives/detach/{archive_id}")

    # --- Blocks ---

    async def list_blocks(self) -> list[RemoteBlock]:
        return [RemoteBlock.from_api(b) for b in await self._list("/blocks/")]

    async def create_block(
        self,
        label: str,
        value: str,
        *,
        description: str | None = None,
        limit: int | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> RemoteBlock:
        payload: dict[str, Any] = {"label": label, "value": value}
        if description is not None:
            payload["description"] = description
        if limit is not None:
            payload["limit"] = limit
        if metadata:
            payload["metadata"] = metadata
        return RemoteBlock.from_api(await self._request("POST", "/blocks/", json=payload))

    async def update_block(self, block_id: str, *, value: str) -> RemoteBlock:
        return RemoteBlock.from_api(await self._request("PATCH", f"/blocks/{block_id}", json={"value": value}))

    async def delete_block(self, block_id: str) -> None:
        await self._request("DELETE", f"/blocks/{block_id}")

    async def list_block_agents(self, block_id: str) -> list[str]:
        return [str(a["id"]) for a in await self._list(f"/blocks/{block_id}/agents") if "id" in a]

    # --- Tools ---

    async def list_tools(self) -> list[RemoteTool]:
        return [RemoteTool.from_api(t) for t in await self._list("/tools/")]

    async def create_tool(self, source_code: str) -> RemoteTool:
        return RemoteTool.from_api(await self._request("POST", "/tools/", json={"source_code": source_code}))

    async def update_tool(self, tool_id: str, source_code: str) -> RemoteTool:
        data = await self._request("PATCH", f"/tools/{tool_id}", json={"source_code": source_code})
        return RemoteTool.from_api(data)

    # --- Folders ---

    async def list_folders(self) -> list[RemoteFolder]:
        return [RemoteFolder.from_api(f) for f in await self._list("/folders/")]

    async def create_folder(self, name: str, *, embedding: str | None = None) -> RemoteFolder:
        payload: dict[str, Any] = {"name": name}
        if embedding is not None:
            payload["embedding"] = embedding
        return RemoteFolder.from_api(await self._request("POST", "/folders/", json=payload))

    async def delete_folder(self, folder_id: str) -> None:
        await self._request("DELETE", f"/folders/{folder_id}")

    async def list_folder_files(self, folder_id: str) -> list[RemoteFile]:
        return [RemoteFile.from_api(f) for f in await self._list(f"/folders/{folder_id}/files")]

    async def upload_file(self, folder_id: str, file_name: str, content: bytes) -> RemoteFile:
        data = await self._request(
            "POST",
            f"/folders/{folder_id}/upload",
            files={"file": (file_name, content)},
            params={"name": file_name},
        )
        return RemoteFile.from_api(data)

    async def delete_file(self, folder_id: str, file_id: str) -> None:
        await self._request("DELETE", f"/folders/{folder_id}/{file_id}")

    async def list_folder_agents(self, folder_id: str) -> list[str]:
        data = await self._request("GET", f"/folders/{folder_id}/agents")
        return [a if isinstance(a, str) else str(a["id"]) for a in (data or [])]

    # --- Archives ---

    async def list_archives(self) -> list[RemoteArchive]:
        return [RemoteArchive.from_api(a) for a in await self._list("/archives/")]

    async def create_archive(
        self,
        name: str,
        *,
        description: str | None = None,
        embedding: str | None = None,
        embedding_config: dict[str, Any] | None = None,
    ) -> RemoteArchive:
        payload: dict[str, Any] = {"name": name}
        if description is not None:
            payload["description"] = description
        if embedding is not None:
            payload["embedding"] = embedding
        if embedding_config is not None:
            payload["embedding_config"] = embedding_config
        return RemoteArchive.from_api(await self._request("POST", "/archives/", json=payload))

    async def delete_archive(self, archive_id: str) -> None:
        await self._request("DELETE", f"/archives/{archive_id}")

    async def list_archive_agents(self, archive_id: str) -> list[str]:
        data = await self._request("GET", f"/archives/{archive_id}/agents")
        return [a if isinstance(a, str) else str(a["id"]) for a in (data or [])]

    # --- External tool servers ---

    async def list_mcp_servers(self) -> list[RemoteMcpServer]:
        data = await self._request("GET", "/tools/mcp/servers")
        # the server returns a mapping of server name -> config
        if isinstance(data, dict):
            return [RemoteMcpServer.from_api({"server_name": k, **v}) for k, v in data.items() if isinstance(v, dict)]
        return [RemoteMcpServer.from_api(s) for s in (data or []) if isinstance(s, dict)]

    async def create_mcp_server(self, payload: dict[str, Any]) -> RemoteMcpServer:
        data = await self._request("PUT", "/tools/mcp/servers", json=payload)
        if isinstance(data, list):
            match = next((s for s in data if s.get("server_name") == payload["server_name"]), payload)
            return RemoteMcpServer.from_api(match)
        return RemoteMcpServer.from_api(data or payload)

    async def update_mcp_server(self, name: str, payload: dict[str, Any]) -> RemoteMcpServer:
        data = await self._request("PATCH", f"/tools/mcp/servers/{name}", json=payload)
        return RemoteMcpServer.from_api(data or payload)

    async def list_mcp_server_tools(self, server_name: str) -> list[str]:
        data = await self._request("GET", f"/tools/mcp/servers/{server_name}/tools")
        return [str(t["name"]) for t in (data or []) if isinstance(t, dict) and "name" in t]

    async def add_mcp_tool(self, server_name: str, tool_name: str) -> RemoteTool:
        return RemoteTool.from_api(await self._request("POST", f"/tools/mcp/servers/{server_name}/{tool_name}"))

    # --- Messages ---

    async def create_message_run(self, agent_id: str, message: str) -> str:
        payload = {"messages": [{"role": "user", "content": message}]}
        data = await self._request("POST", f"/agents/{agent_id}/messages/async", json=payload)
        return str(data["id"])

    async def get_run(self, run_id: str) -> dict[str, Any]:
        return dict(await self._request("GET", f"/runs/{run_id}") or {})


def _error_detail(response: httpx.Response) -> str:
    try:
        body = response.json()
    except ValueError:
        return response.text.strip() or response.reason_phrase
    if isinstance(body, dict):
        detail = body.get("detail") or body.get("message") or body.get("error")
        if detail is not None:
            return str(detail)
    return str(body)
