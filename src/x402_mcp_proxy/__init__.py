"""x402 payment proxy for MCP servers (Python)."""

from __future__ import annotations

from x402.schemas.v1 import PaymentPayloadV1, PaymentRequirementsV1

from .client import PaymentClient
from .constants import PAYMENT_NETWORKS, SUPPORTED_NETWORKS, NetworkConfig, NetworkKind, get_network
from .errors import (
    ConfigurationError,
    ErrorKind,
    TenantNotFoundError,
    TransportError,
    UnsupportedNetworkError,
    UpstreamError,
    X402ProxyError,
)
from .facilitator import FacilitatorClient, decode_payment_token, encode_payment_token
from .handler import PaymentFailure, PaymentHandler, SettlementReceipt
from .requirements import build_accepts, build_payment_annotation, build_payment_requirement
from .router import TenantRouter
from .signers import EvmPrivateKeySigner, WalletServiceSigner
from .tenants import InMemoryConfigStore, JsonFileConfigStore, TenantConfig, TenantConfigCache, ToolConfig
from .upstream import UpstreamConnection

__all__ = [
    "PAYMENT_NETWORKS",
    "SUPPORTED_NETWORKS",
    "NetworkConfig",
    "NetworkKind",
    "get_network",
    "ConfigurationError",
    "ErrorKind",
    "TenantNotFoundError",
    "TransportError",
    "UnsupportedNetworkError",
    "UpstreamError",
    "X402ProxyError",
    "build_accepts",
    "build_payment_annotation",
    "build_payment_requirement",
    "FacilitatorClient",
    "decode_payment_token",
    "encode_payment_token",
    "PaymentFailure",
    "PaymentHandler",
    "SettlementReceipt",
    "TenantRouter",
    "InMemoryConfigStore",
    "JsonFileConfigStore",
    "TenantConfig",
    "TenantConfigCache",
    "ToolConfig",
    "UpstreamConnection",
    "PaymentClient",
    "EvmPrivateKeySigner",
    "WalletServiceSigner",
    "PaymentPayloadV1",
    "PaymentRequirementsV1",
]
