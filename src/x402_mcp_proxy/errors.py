"""Error taxonomy shared by the proxy handler and the paying client."""

from __future__ import annotations

from enum import Enum
from typing import Any, Dict, Optional

from .constants import ERROR_META_KEY


class ErrorKind(str, Enum):
    """Stable tags carried in ``_meta["x402/error"]["kind"]``."""

    CONFIGURATION = "configuration_error"
    PAYMENT_REQUIRED = "payment_required"
    PAYMENT_DECODE = "payment_decode_error"
    UNSUPPORTED_NETWORK = "unsupported_network"
    VERIFICATION_FAILED = "verification_failed"
    SETTLEMENT_FAILED = "settlement_failed"
    UPSTREAM = "upstream_error"
    TRANSPORT = "transport_error"
    TOOL_NOT_FOUND = "tool_not_found"
    PAYMENT_DECLINED = "payment_declined"
    PAYMENT_APPROVAL_REQUIRED = "payment_approval_required"
    PAYMENT_CREATION_FAILED = "payment_creation_failed"


class X402ProxyError(Exception):
    """Base exception for the proxy."""

    kind: ErrorKind = ErrorKind.TRANSPORT

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class ConfigurationError(X402ProxyError):
    """Missing or invalid configuration. Fatal for the request, never retried."""

    kind = ErrorKind.CONFIGURATION


class UnsupportedNetworkError(ConfigurationError, ValueError):
    """Raised when a network is not in the registry."""

    kind = ErrorKind.UNSUPPORTED_NETWORK

    def __init__(self, network: str) -> None:
        super().__init__(f"Unsupported payment network: {network}")
        self.network = network


class TenantNotFoundError(ConfigurationError):
    def __init__(self, tenant_id: str) -> None:
        super().__init__(f"Configuration not found: {tenant_id}")
        self.tenant_id = tenant_id


class PaymentDecodeError(X402ProxyError):
    kind = ErrorKind.PAYMENT_DECODE


class TransportError(X402ProxyError):
    """Facilitator, upstream or wallet service could not be reached."""

    kind = ErrorKind.TRANSPORT


class UpstreamError(X402ProxyError):
    """The upstream answered a request with a JSON-RPC error."""

    kind = ErrorKind.UPSTREAM

    def __init__(self, message: str, code: Optional[int] = None) -> None:
        super().__init__(message)
        self.code = code


class SignerError(X402ProxyError):
    kind = ErrorKind.PAYMENT_CREATION_FAILED


class ApprovalRequiredError(SignerError):
    """The custodial wallet needs a human to approve before it will sign."""

    kind = ErrorKind.PAYMENT_APPROVAL_REQUIRED

    def __init__(self, message: str, url: Optional[str] = None) -> None:
        super().__init__(message)
        self.url = url


def tool_error(
    kind: ErrorKind,
    message: str,
    extra: Optional[Dict[str, Any]] = None,
    meta: Optional[Dict[str, Any]] = None,
) -> Dict[str, Any]:
    """Build an MCP tool result flagged with ``isError`` and a kind tag."""
    error_block: Dict[str, Any] = {"kind": kind.value, "message": message}
    if extra:
        error_block.update(extra)
    result_meta = dict(meta or {})
    result_meta[ERROR_META_KEY] = error_block
    return {
        "isError": True,
        "content": [{"type": "text", "text": message}],
        "_meta": result_meta,
    }
