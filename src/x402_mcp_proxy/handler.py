"""Per-tenant MCP request handler with the x402 payment state machine.

A priced ``tools/call`` moves through five checkpoints: decode the token,
match it against freshly built requirements, verify with the facilitator,
settle with the facilitator, forward upstream. Each checkpoint returns its
value or a ``PaymentFailure``; the first failure ends the call. Settlement
always happens before the upstream call.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Protocol, Union

from x402.schemas import SettleResponse, VerifyResponse
from x402.schemas.v1 import PaymentPayloadV1, PaymentRequirementsV1

from .constants import (
    ERROR_META_KEY,
    MCP_PROTOCOL_VERSION,
    PAYMENT_META_KEY,
    SETTLEMENT_META_KEY,
    X402_VERSION,
)
from .errors import (
    ErrorKind,
    PaymentDecodeError,
    TransportError,
    UpstreamError,
    X402ProxyError,
    tool_error,
)
from .facilitator import decode_payment_token
from .requirements import build_accepts, build_payment_annotation, requirements_to_payload
from .tenants import TenantConfig, ToolConfig

logger = logging.getLogger(__name__)

SERVER_INFO = {"name": "x402-mcp-proxy", "version": "1.0.0"}

PARSE_ERROR = -32700
INVALID_REQUEST = -32600
METHOD_NOT_FOUND = -32601
INVALID_PARAMS = -32602
INTERNAL_ERROR = -32603

EMPTY_INPUT_SCHEMA: Dict[str, Any] = {
    "type": "object",
    "properties": {},
    "additionalProperties": False,
}


class Upstream(Protocol):
    async def list_tools(self) -> List[Dict[str, Any]]:
        ...

    async def call_tool(
        self,
        name: str,
        arguments: Optional[Dict[str, Any]] = None,
        meta: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        ...


class Facilitator(Protocol):
    async def verify(
        self, payload: PaymentPayloadV1, requirements: PaymentRequirementsV1
    ) -> VerifyResponse:
        ...

    async def settle(
        self, payload: PaymentPayloadV1, requirements: PaymentRequirementsV1
    ) -> SettleResponse:
        ...


@dataclass(frozen=True)
class SettlementReceipt:
    success: bool
    transaction: str
    network: str
    payer: Optional[str] = None

    @classmethod
    def from_settle_response(cls, response: SettleResponse) -> "SettlementReceipt":
        return cls(
            success=response.success,
            transaction=response.transaction,
            network=str(response.network),
            payer=response.payer,
        )

    def to_meta(self) -> Dict[str, Any]:
        return {
            "success": self.success,
            "transaction": self.transaction,
            "network": self.network,
            "payer": self.payer,
        }


@dataclass(frozen=True)
class PaymentFailure:
    kind: ErrorKind
    message: str
    extra: Optional[Dict[str, Any]] = None
    meta: Optional[Dict[str, Any]] = None

    def to_tool_result(self) -> Dict[str, Any]:
        return tool_error(self.kind, self.message, extra=self.extra, meta=self.meta)


@dataclass(frozen=True)
class PaidCall:
    result: Dict[str, Any]
    receipt: SettlementReceipt


@dataclass(frozen=True)
class _Settled:
    requirement: PaymentRequirementsV1
    receipt: SettlementReceipt


CallOutcome = Union[PaidCall, PaymentFailure]


def rpc_result(request_id: Any, result: Dict[str, Any]) -> Dict[str, Any]:
    return {"jsonrpc": "2.0", "id": request_id, "result": result}


def rpc_error(request_id: Any, code: int, message: str) -> Dict[str, Any]:
    return {"jsonrpc": "2.0", "id": request_id, "error": {"code": code, "message": message}}


def _with_meta(result: Dict[str, Any], key: str, value: Any) -> Dict[str, Any]:
    merged = dict(result)
    meta = dict(merged.get("_meta") or {})
    meta[key] = value
    merged["_meta"] = meta
    return merged


class PaymentHandler:
    """Serves one tenant's MCP endpoint on top of its upstream connection."""

    def __init__(
        self,
        tenant: TenantConfig,
        upstream: Upstream,
        resource_url: str,
        facilitator: Facilitator,
        on_transport_error: Optional[Callable[[TransportError], None]] = None,
    ) -> None:
        self.tenant = tenant
        self.upstream = upstream
        self.resource_url = resource_url
        self.facilitator = facilitator
        self._on_transport_error = on_transport_error
        self._upstream_tools: Optional[List[Dict[str, Any]]] = None

    # -- JSON-RPC dispatch ---------------------------------------------------

    async def handle(self, message: Any) -> Optional[Dict[str, Any]]:
        """Answer one JSON-RPC message. Returns None for notifications."""
        if not isinstance(message, dict):
            return rpc_error(None, INVALID_REQUEST, "Invalid Request")
        request_id = message.get("id")
        method = message.get("method")
        if message.get("jsonrpc") != "2.0" or not isinstance(method, str):
            return rpc_error(request_id, INVALID_REQUEST, "Invalid Request")

        if method.startswith("notifications/"):
            return None if "id" not in message else rpc_result(request_id, {})

        params = message.get("params") or {}
        if not isinstance(params, dict):
            return rpc_error(request_id, INVALID_PARAMS, "params must be an object")

        logger.debug("Method: %s", method)
        try:
            if method == "initialize":
                return rpc_result(request_id, self.initialize_result())
            if method == "ping":
                return rpc_result(request_id, {})
            if method == "tools/list":
                return rpc_result(request_id, await self.list_tools())
            if method == "tools/call":
                name = params.get("name")
                if not isinstance(name, str) or not name:
                    return rpc_error(request_id, INVALID_PARAMS, "tools/call requires a tool name")
                arguments = params.get("arguments") or {}
                if not isinstance(arguments, dict):
                    return rpc_error(request_id, INVALID_PARAMS, "arguments must be an object")
                meta = params.get("_meta") or {}
                if not isinstance(meta, dict):
                    return rpc_error(request_id, INVALID_PARAMS, "_meta must be an object")
                result = await self.call_tool(name, arguments, meta)
                return rpc_result(request_id, result)
        except Exception as exc:
            logger.exception("Error handling %s", method)
            return rpc_error(request_id, INTERNAL_ERROR, str(exc))

        return rpc_error(request_id, METHOD_NOT_FOUND, f"Unknown method: {method}")

    def initialize_result(self) -> Dict[str, Any]:
        return {
            "protocolVersion": MCP_PROTOCOL_VERSION,
            "capabilities": {"tools": {}},
            "serverInfo": dict(SERVER_INFO),
        }

    # -- tools/list ----------------------------------------------------------

    async def _get_upstream_tools(self) -> List[Dict[str, Any]]:
        if self._upstream_tools is None:
            try:
                tools = await self.upstream.list_tools()
            except (TransportError, UpstreamError) as exc:
                logger.warning("Could not list upstream tools: %s", exc)
                self._report_transport_error(exc)
                return []
            self._upstream_tools = tools
            logger.info("Cached upstream tools: %s", [tool.get("name") for tool in tools])
        return self._upstream_tools

    async def list_tools(self) -> Dict[str, Any]:
        enabled = self.tenant.enabled_tools
        upstream_tools: List[Dict[str, Any]] = []
        if any(tool.input_schema is None for tool in enabled):
            upstream_tools = await self._get_upstream_tools()
        upstream_schemas = {
            tool.get("name"): tool.get("inputSchema")
            for tool in upstream_tools
            if tool.get("inputSchema")
        }

        tools = []
        for tool in enabled:
            input_schema = tool.input_schema or upstream_schemas.get(tool.name)
            if input_schema is None:
                logger.warning("No inputSchema found for %s, using empty schema", tool.name)
                input_schema = dict(EMPTY_INPUT_SCHEMA)
            entry: Dict[str, Any] = {
                "name": tool.name,
                "description": tool.description,
                "inputSchema": input_schema,
            }
            if tool.is_priced:
                entry["annotations"] = build_payment_annotation(
                    tool.price, self.tenant.recipient_wallet
                )
            tools.append(entry)
        return {"tools": tools}

    # -- tools/call ----------------------------------------------------------

    def payment_requirements(self, tool: ToolConfig) -> List[PaymentRequirementsV1]:
        """Rebuilt on every call so price changes apply immediately."""
        return build_accepts(
            tool.price, self.tenant.recipient_wallet, self.resource_url, tool.description
        )

    async def call_tool(
        self,
        name: str,
        arguments: Dict[str, Any],
        meta: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        tool = self.tenant.find_tool(name)
        if tool is None:
            return tool_error(ErrorKind.TOOL_NOT_FOUND, f"Tool not found: {name}")

        if not tool.is_priced:
            logger.info("%s - free tool", name)
            return await self._forward_free(name, arguments)

        token = (meta or {}).get(PAYMENT_META_KEY)
        if not token:
            logger.info("%s - payment required", name)
            return self.payment_required(tool).to_tool_result()

        outcome = await self.process_paid_call(tool, arguments, token)
        if isinstance(outcome, PaymentFailure):
            return outcome.to_tool_result()
        return _with_meta(outcome.result, SETTLEMENT_META_KEY, outcome.receipt.to_meta())

    def payment_required(self, tool: ToolConfig) -> PaymentFailure:
        accepts = [requirements_to_payload(req) for req in self.payment_requirements(tool)]
        return PaymentFailure(
            ErrorKind.PAYMENT_REQUIRED,
            "Payment required",
            extra={"x402Version": X402_VERSION, "error": "Payment required", "accepts": accepts},
        )

    async def process_paid_call(
        self,
        tool: ToolConfig,
        arguments: Dict[str, Any],
        token: str,
    ) -> CallOutcome:
        decoded = self._decode(token)
        if isinstance(decoded, PaymentFailure):
            return decoded
        logger.info("%s - decoded payment on network %s", tool.name, decoded.network)

        requirement = self._match(tool, decoded)
        if isinstance(requirement, PaymentFailure):
            return requirement

        verified = await self._verify(decoded, requirement)
        if isinstance(verified, PaymentFailure):
            return verified
        logger.info("%s - payment verified from %s", tool.name, verified.payer)

        settled = await self._settle(decoded, requirement)
        if isinstance(settled, PaymentFailure):
            return settled
        logger.info("%s - payment settled: %s", tool.name, settled.receipt.transaction)

        return await self._forward_paid(tool.name, arguments, settled.receipt)

    def _decode(self, token: str) -> Union[PaymentPayloadV1, PaymentFailure]:
        try:
            return decode_payment_token(token)
        except PaymentDecodeError as exc:
            logger.warning("Invalid payment token: %s", exc)
            return PaymentFailure(ErrorKind.PAYMENT_DECODE, exc.message)

    def _match(
        self, tool: ToolConfig, payload: PaymentPayloadV1
    ) -> Union[PaymentRequirementsV1, PaymentFailure]:
        for requirement in self.payment_requirements(tool):
            if requirement.network == payload.network:
                return requirement
        logger.warning("Unsupported network %s", payload.network)
        return PaymentFailure(
            ErrorKind.UNSUPPORTED_NETWORK,
            f"Unsupported payment network: {payload.network}",
            extra={"network": payload.network},
        )

    async def _verify(
        self, payload: PaymentPayloadV1, requirement: PaymentRequirementsV1
    ) -> Union[VerifyResponse, PaymentFailure]:
        try:
            response = await self.facilitator.verify(payload, requirement)
        except X402ProxyError as exc:
            logger.warning("Verification error: %s", exc)
            return PaymentFailure(ErrorKind.TRANSPORT, f"Payment verification error: {exc.message}")
        if not response.is_valid:
            reason = response.invalid_reason or response.invalid_message or "unknown reason"
            logger.warning("Payment verification failed: %s", reason)
            return PaymentFailure(
                ErrorKind.VERIFICATION_FAILED,
                f"Payment verification failed: {reason}",
                extra={"reason": reason},
            )
        return response

    async def _settle(
        self, payload: PaymentPayloadV1, requirement: PaymentRequirementsV1
    ) -> Union[_Settled, PaymentFailure]:
        try:
            response = await self.facilitator.settle(payload, requirement)
        except X402ProxyError as exc:
            logger.warning("Settlement error: %s", exc)
            return PaymentFailure(ErrorKind.TRANSPORT, f"Payment settlement error: {exc.message}")
        if not response.success:
            reason = response.error_reason or response.error_message or "unknown reason"
            logger.warning("Settlement failed: %s", reason)
            return PaymentFailure(
                ErrorKind.SETTLEMENT_FAILED,
                f"Payment settlement failed: {reason}",
                extra={"reason": reason},
            )
        return _Settled(requirement, SettlementReceipt.from_settle_response(response))

    async def _forward_free(self, name: str, arguments: Dict[str, Any]) -> Dict[str, Any]:
        try:
            return await self.upstream.call_tool(name, arguments)
        except X402ProxyError as exc:
            logger.warning("%s - upstream error: %s", name, exc)
            if isinstance(exc, TransportError):
                self._report_transport_error(exc)
            return tool_error(exc.kind, f"Upstream error: {exc.message}")

    async def _forward_paid(
        self, name: str, arguments: Dict[str, Any], receipt: SettlementReceipt
    ) -> CallOutcome:
        try:
            result = await self.upstream.call_tool(name, arguments)
        except X402ProxyError as exc:
            # Settlement is final at this point; the receipt travels with the error.
            logger.error(
                "%s - upstream failed after settlement %s: %s", name, receipt.transaction, exc
            )
            if isinstance(exc, TransportError):
                self._report_transport_error(exc)
            return PaymentFailure(
                ErrorKind.UPSTREAM,
                f"Upstream error after payment settled (transaction {receipt.transaction}): "
                f"{exc.message}",
                extra={"settled": True},
                meta={SETTLEMENT_META_KEY: receipt.to_meta()},
            )
        return PaidCall(result=result, receipt=receipt)

    def _report_transport_error(self, exc: X402ProxyError) -> None:
        if self._on_transport_error is not None and isinstance(exc, TransportError):
            self._on_transport_error(exc)


def payment_error_block(result: Dict[str, Any]) -> Optional[Dict[str, Any]]:
    """The ``x402/error`` block of a tool result, if any."""
    meta = result.get("_meta") or {}
    block = meta.get(ERROR_META_KEY)
    return block if isinstance(block, dict) else None
