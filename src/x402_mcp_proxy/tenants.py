"""Tenant configuration: models, stores and the TTL cache."""

from __future__ import annotations

import asyncio
import json
import logging
import time
from dataclasses import dataclass, field
from decimal import Decimal
from pathlib import Path
from typing import Any, Callable, Dict, Mapping, Optional, Protocol, Tuple, runtime_checkable

from .errors import ConfigurationError
from .requirements import parse_money

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_TTL_SECONDS = 60.0


@dataclass(frozen=True)
class ToolConfig:
    name: str
    description: str = ""
    price: Decimal = Decimal("0")
    enabled: bool = True
    input_schema: Optional[Dict[str, Any]] = None

    @property
    def is_priced(self) -> bool:
        return self.price > 0

    @classmethod
    def from_payload(cls, payload: Mapping[str, Any]) -> "ToolConfig":
        name = payload.get("name")
        if not name:
            raise ConfigurationError("Tool config missing name")
        try:
            price = parse_money(payload.get("price", 0) or 0)
        except ValueError as exc:
            raise ConfigurationError(f"Tool {name}: {exc}") from exc
        if price < 0:
            raise ConfigurationError(f"Tool {name}: price must be non-negative")
        schema = payload.get("input_schema", payload.get("inputSchema"))
        return cls(
            name=str(name),
            description=str(payload.get("description") or ""),
            price=price,
            enabled=bool(payload.get("enabled", True)),
            input_schema=schema if isinstance(schema, dict) else None,
        )


@dataclass(frozen=True)
class TenantConfig:
    upstream_url: str
    recipient_wallet: str
    tools: Tuple[ToolConfig, ...] = field(default_factory=tuple)

    def find_tool(self, name: str) -> Optional[ToolConfig]:
        """Enabled tool by name."""
        for tool in self.tools:
            if tool.name == name and tool.enabled:
                return tool
        return None

    @property
    def enabled_tools(self) -> Tuple[ToolConfig, ...]:
        return tuple(tool for tool in self.tools if tool.enabled)

    @classmethod
    def from_payload(cls, payload: Mapping[str, Any]) -> "TenantConfig":
        def pick(*keys: str) -> Any:
            for key in keys:
                if payload.get(key):
                    return payload[key]
            return None

        upstream_url = pick("upstreamUrl", "upstream_url")
        wallet = pick("recipientWallet", "walletAddress", "wallet_address", "yourWallet")
        if not upstream_url or not wallet:
            raise ConfigurationError("Tenant config requires an upstream URL and a recipient wallet")
        tools = tuple(ToolConfig.from_payload(tool) for tool in payload.get("tools") or [])
        return cls(upstream_url=str(upstream_url), recipient_wallet=str(wallet), tools=tools)


@runtime_checkable
class TenantConfigStore(Protocol):
    """Read side of the configuration store. ``None`` means unknown tenant."""

    async def get(self, tenant_id: str) -> Optional[TenantConfig]:
        ...


class InMemoryConfigStore:
    def __init__(self, configs: Optional[Mapping[str, TenantConfig]] = None) -> None:
        self._configs: Dict[str, TenantConfig] = dict(configs or {})

    def put(self, tenant_id: str, config: TenantConfig) -> None:
        self._configs[tenant_id] = config

    async def get(self, tenant_id: str) -> Optional[TenantConfig]:
        return self._configs.get(tenant_id)


class JsonFileConfigStore:
    """Reads ``{configId: {upstreamUrl, walletAddress, tools}}`` from disk on every get."""

    def __init__(self, path: str | Path) -> None:
        self._path = Path(path)

    async def get(self, tenant_id: str) -> Optional[TenantConfig]:
        data = await asyncio.to_thread(self._read)
        payload = data.get(tenant_id)
        if payload is None:
            return None
        return TenantConfig.from_payload(payload)

    def _read(self) -> Dict[str, Any]:
        try:
            with self._path.open("r", encoding="utf-8") as handle:
                data = json.load(handle)
        except FileNotFoundError as exc:
            raise ConfigurationError(f"Tenant config file not found: {self._path}") from exc
        except json.JSONDecodeError as exc:
            raise ConfigurationError(f"Tenant config file is not valid JSON: {exc}") from exc
        if not isinstance(data, dict):
            raise ConfigurationError("Tenant config file must contain a JSON object")
        return data


@dataclass
class _CacheEntry:
    config: TenantConfig
    loaded_at: float


class TenantConfigCache:
    """TTL cache in front of a ``TenantConfigStore``.

    - Entries expire after ``ttl`` seconds and are refetched; nothing
      invalidates them early.
    - Misses are not cached, so a new tenant is visible on its next request.
    - Concurrent misses may both load; the last write wins.
    """

    def __init__(
        self,
        store: TenantConfigStore,
        ttl: float = DEFAULT_CONFIG_TTL_SECONDS,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._store = store
        self._ttl = ttl
        self._clock = clock
        self._entries: Dict[str, _CacheEntry] = {}

    async def get(self, tenant_id: str) -> Optional[TenantConfig]:
        entry = self._entries.get(tenant_id)
        if entry is not None and self._clock() - entry.loaded_at < self._ttl:
            return entry.config

        config = await self._store.get(tenant_id)
        if config is None:
            logger.info("[%s] Config not found", tenant_id)
            self._entries.pop(tenant_id, None)
            return None

        self._entries[tenant_id] = _CacheEntry(config=config, loaded_at=self._clock())
        logger.info("[%s] Config loaded (%d tools)", tenant_id, len(config.tools))
        return config

    @property
    def size(self) -> int:
        return len(self._entries)
