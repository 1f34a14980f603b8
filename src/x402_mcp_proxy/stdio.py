"""Stdio MCP server that forwards to a remote proxy and pays on the agent's behalf."""

from __future__ import annotations

import asyncio
import json
import logging
import sys
from typing import Any, Dict, List, Optional, TextIO

from .client import PaymentClient
from .constants import MCP_PROTOCOL_VERSION
from .errors import X402ProxyError, tool_error
from .handler import (
    INTERNAL_ERROR,
    INVALID_PARAMS,
    INVALID_REQUEST,
    METHOD_NOT_FOUND,
    PARSE_ERROR,
    rpc_error,
    rpc_result,
)
from .upstream import UpstreamConnection

logger = logging.getLogger(__name__)

SERVER_INFO = {"name": "x402-mcp-connect", "version": "1.0.0"}


class StdioBridge:
    def __init__(self, upstream: UpstreamConnection, payments: PaymentClient) -> None:
        self.upstream = upstream
        self.payments = payments
        self.tools: List[Dict[str, Any]] = []

    async def load_tools(self) -> List[Dict[str, Any]]:
        self.tools = await self.upstream.list_tools()
        logger.info("Available upstream tools: %s", [tool.get("name") for tool in self.tools])
        return self.tools

    async def handle(self, message: Any) -> Optional[Dict[str, Any]]:
        if not isinstance(message, dict) or not isinstance(message.get("method"), str):
            return rpc_error(None, INVALID_REQUEST, "Invalid Request")
        request_id = message.get("id")
        method = message["method"]
        if method.startswith("notifications/"):
            return None
        params = message.get("params") or {}

        if method == "initialize":
            return rpc_result(
                request_id,
                {
                    "protocolVersion": params.get("protocolVersion") or MCP_PROTOCOL_VERSION,
                    "capabilities": {"tools": {}},
                    "serverInfo": dict(SERVER_INFO),
                },
            )
        if method == "ping":
            return rpc_result(request_id, {})
        if method == "tools/list":
            return rpc_result(request_id, {"tools": self.tools})
        if method == "tools/call":
            name = params.get("name")
            if not isinstance(name, str) or not name:
                return rpc_error(request_id, INVALID_PARAMS, "tools/call requires a tool name")
            logger.info("[STDIO] Calling tool: %s", name)
            try:
                result = await self.payments.call_tool(name, params.get("arguments") or {})
            except X402ProxyError as exc:
                logger.warning("[STDIO] Tool %s failed: %s", name, exc)
                result = tool_error(exc.kind, exc.message)
            except Exception as exc:
                logger.exception("[STDIO] Tool %s failed", name)
                return rpc_error(request_id, INTERNAL_ERROR, str(exc))
            return rpc_result(request_id, result)
        return rpc_error(request_id, METHOD_NOT_FOUND, f"Unknown method: {method}")

    async def serve(self, reader: TextIO = sys.stdin, writer: TextIO = sys.stdout) -> None:
        """Read newline-delimited JSON-RPC from ``reader`` until EOF."""
        logger.info("x402 proxy MCP server running on stdio")
        while True:
            line = await asyncio.to_thread(reader.readline)
            if not line:
                return
            line = line.strip()
            if not line:
                continue
            try:
                message = json.loads(line)
            except ValueError:
                self._write(writer, rpc_error(None, PARSE_ERROR, "Parse error"))
                continue
            reply = await self.handle(message)
            if reply is not None:
                self._write(writer, reply)

    @staticmethod
    def _write(writer: TextIO, message: Dict[str, Any]) -> None:
        writer.write(json.dumps(message, separators=(",", ":")) + "\n")
        writer.flush()
