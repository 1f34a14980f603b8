"""MCP client session over streamable HTTP, used to reach upstream tool servers."""

from __future__ import annotations

import itertools
import json
import logging
from typing import Any, Dict, List, Optional

import httpx

from .constants import MCP_PROTOCOL_VERSION
from .errors import TransportError, UpstreamError

logger = logging.getLogger(__name__)

SESSION_HEADER = "mcp-session-id"
CLIENT_INFO = {"name": "x402-mcp-proxy", "version": "1.0.0"}


def _parse_sse(text: str) -> List[Dict[str, Any]]:
    """Collect JSON ``data:`` payloads from a text/event-stream body."""
    messages: List[Dict[str, Any]] = []
    data_lines: List[str] = []
    for line in text.splitlines() + [""]:
        if line.startswith("data:"):
            data_lines.append(line[5:].lstrip())
        elif not line.strip() and data_lines:
            try:
                message = json.loads("\n".join(data_lines))
            except ValueError:
                message = None
            if isinstance(message, dict):
                messages.append(message)
            data_lines = []
    return messages


class UpstreamConnection:
    """One initialized MCP session against one upstream URL.

    Requests are JSON-RPC POSTs; replies may be plain JSON or SSE.
    Connection failures raise ``TransportError``. A JSON-RPC error reply
    raises ``UpstreamError``.
    """

    def __init__(
        self,
        url: str,
        http_client: Optional[httpx.AsyncClient] = None,
        client_name: str = CLIENT_INFO["name"],
        timeout: float = 60.0,
    ) -> None:
        self.url = url
        self._owns_client = http_client is None
        self._client = http_client or httpx.AsyncClient(
            timeout=httpx.Timeout(timeout, connect=10.0), follow_redirects=True
        )
        self._client_name = client_name
        self._ids = itertools.count(1)
        self._session_id: Optional[str] = None
        self.server_info: Dict[str, Any] = {}
        self.initialized = False

    @property
    def session_id(self) -> Optional[str]:
        return self._session_id

    def _headers(self) -> Dict[str, str]:
        headers = {
            "Content-Type": "application/json",
            "Accept": "application/json, text/event-stream",
        }
        if self._session_id:
            headers[SESSION_HEADER] = self._session_id
        return headers

    async def _post(self, message: Dict[str, Any]) -> httpx.Response:
        try:
            response = await self._client.post(self.url, json=message, headers=self._headers())
        except httpx.HTTPError as exc:
            raise TransportError(f"Upstream {self.url} unreachable: {exc}") from exc
        if response.status_code >= 400:
            raise TransportError(
                f"Upstream {self.url} returned HTTP {response.status_code}: {response.text[:200]}"
            )
        session_id = response.headers.get(SESSION_HEADER)
        if session_id:
            self._session_id = session_id
        return response

    async def request(self, method: str, params: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        request_id = next(self._ids)
        message: Dict[str, Any] = {"jsonrpc": "2.0", "id": request_id, "method": method}
        if params is not None:
            message["params"] = params
        response = await self._post(message)
        reply = self._find_reply(response, request_id)
        if "error" in reply:
            error = reply["error"] or {}
            raise UpstreamError(str(error.get("message", "Upstream error")), code=error.get("code"))
        result = reply.get("result")
        return result if isinstance(result, dict) else {}

    async def notify(self, method: str, params: Optional[Dict[str, Any]] = None) -> None:
        message: Dict[str, Any] = {"jsonrpc": "2.0", "method": method}
        if params is not None:
            message["params"] = params
        await self._post(message)

    def _find_reply(self, response: httpx.Response, request_id: int) -> Dict[str, Any]:
        content_type = response.headers.get("content-type", "")
        if "text/event-stream" in content_type:
            candidates = _parse_sse(response.text)
        else:
            try:
                body = response.json()
            except ValueError as exc:
                raise TransportError(f"Upstream {self.url} sent invalid JSON: {exc}") from exc
            candidates = body if isinstance(body, list) else [body]
        for candidate in candidates:
            if isinstance(candidate, dict) and candidate.get("id") == request_id:
                return candidate
        raise TransportError(f"Upstream {self.url} sent no reply for request {request_id}")

    async def connect(self) -> "UpstreamConnection":
        result = await self.request(
            "initialize",
            {
                "protocolVersion": MCP_PROTOCOL_VERSION,
                "capabilities": {},
                "clientInfo": {"name": self._client_name, "version": CLIENT_INFO["version"]},
            },
        )
        self.server_info = result.get("serverInfo") or {}
        await self.notify("notifications/initialized")
        self.initialized = True
        logger.info("Connected to upstream %s (%s)", self.url, self.server_info.get("name", "?"))
        return self

    async def list_tools(self) -> List[Dict[str, Any]]:
        tools: List[Dict[str, Any]] = []
        cursor: Optional[str] = None
        while True:
            result = await self.request("tools/list", {"cursor": cursor} if cursor else None)
            tools.extend(result.get("tools") or [])
            cursor = result.get("nextCursor")
            if not cursor:
                return tools

    async def call_tool(
        self,
        name: str,
        arguments: Optional[Dict[str, Any]] = None,
        meta: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        params: Dict[str, Any] = {"name": name, "arguments": arguments or {}}
        if meta:
            params["_meta"] = meta
        return await self.request("tools/call", params)

    async def aclose(self) -> None:
        if self._session_id:
            try:
                await self._client.delete(self.url, headers=self._headers())
            except httpx.HTTPError:
                logger.debug("Session close for %s failed", self.url)
        if self._owns_client:
            await self._client.aclose()

    async def __aenter__(self) -> "UpstreamConnection":
        return await self.connect()

    async def __aexit__(self, *args: object) -> None:
        await self.aclose()


async def open_upstream(url: str, **kwargs: Any) -> UpstreamConnection:
    """Create and initialize a connection; closes it again if setup fails."""
    connection = UpstreamConnection(url, **kwargs)
    try:
        return await connection.connect()
    except BaseException:
        await connection.aclose()
        raise
