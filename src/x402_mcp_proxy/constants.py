"""Shared constants and the payment network registry."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from types import MappingProxyType
from typing import List, Mapping, Optional


X402_VERSION = 1
PAYMENT_SCHEME = "exact"
DEFAULT_MAX_TIMEOUT_SECONDS = 300
DEFAULT_MIME_TYPE = "application/json"
DEFAULT_FACILITATOR_URL = "https://facilitator.xechoai.xyz"
MCP_PROTOCOL_VERSION = "2024-11-05"

PAYMENT_META_KEY = "x402/payment"
ERROR_META_KEY = "x402/error"
SETTLEMENT_META_KEY = "x402/settlement"


class NetworkKind(str, Enum):
    """Address family of a network."""

    EVM = "evm"
    SVM = "svm"

    def format_address(self, address: str) -> str:
        value = address.strip()
        if self is NetworkKind.EVM and not value.lower().startswith("0x"):
            return "0x" + value
        return value


@dataclass(frozen=True)
class NetworkConfig:
    network: str
    asset: str
    decimals: int
    symbol: str
    name: str
    version: str
    kind: NetworkKind
    chain_id: Optional[int] = None


def _usdc(
    network: str,
    asset: str,
    kind: NetworkKind = NetworkKind.EVM,
    chain_id: Optional[int] = None,
    name: str = "USD Coin",
    version: str = "2",
) -> NetworkConfig:
    return NetworkConfig(
        network=network,
        asset=asset,
        decimals=6,
        symbol="USDC",
        name=name,
        version=version,
        kind=kind,
        chain_id=chain_id,
    )


PAYMENT_NETWORKS: Mapping[str, NetworkConfig] = MappingProxyType(
    {
        "base-sepolia": _usdc(
            "base-sepolia", "0x036CbD53842c5426634e7929541eC2318f3dCF7e", chain_id=84_532
        ),
        "base": _usdc("base", "0x833589fCD6eDb6E08f4c7C32D4f71b54bdA02913", chain_id=8453),
        "avalanche-fuji": _usdc(
            "avalanche-fuji", "0x5425890298aed601595a70AB815c96711a31Bc65", chain_id=43_113
        ),
        "avalanche": _usdc(
            "avalanche",
            "0xB97EF9Ef8734C71904D8002F8b6Bc66Dd9c48a6E",
            chain_id=43_114,
            name="USDC",
        ),
        "iotex": _usdc("iotex", "0xcdf79194c6c285077a58da47641d4dbe51f63542", chain_id=4689),
        "sei": _usdc("sei", "0xe15fc38f6d8c56af07bbcbe3baf5708a2bf42392", chain_id=1_329),
        "sei-testnet": _usdc(
            "sei-testnet", "0x4fcf1784b31630811181f670aea7a7bef803eaed", chain_id=1_328
        ),
        "polygon-amoy": _usdc(
            "polygon-amoy", "0x41E94Eb019C0762f9Bfcf9Fb1E58725BfB0e7582", chain_id=80_002
        ),
        "solana": _usdc(
            "solana",
            "EPjFWdd5AufqSSqeM2qN1xzybapC8G4wEGGkZwyTDt1v",
            kind=NetworkKind.SVM,
            version="1",
        ),
        "solana-devnet": _usdc(
            "solana-devnet",
            "4zMMC9srt5Ri5X14GAgXhaHii3GnPAEERYPJgZJDncDU",
            kind=NetworkKind.SVM,
            version="1",
        ),
    }
)

SUPPORTED_NETWORKS: List[str] = list(PAYMENT_NETWORKS)


def get_network(network: str) -> NetworkConfig:
    from .errors import UnsupportedNetworkError

    try:
        return PAYMENT_NETWORKS[network]
    except KeyError as exc:
        raise UnsupportedNetworkError(network) from exc


def find_network(network: str) -> Optional[NetworkConfig]:
    return PAYMENT_NETWORKS.get(network)
