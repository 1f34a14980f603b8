"""Multi-tenant routing: tenant id → config, upstream connection and handler."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, Optional, Set

from .errors import TenantNotFoundError, TransportError
from .handler import Facilitator, PaymentHandler
from .tenants import DEFAULT_CONFIG_TTL_SECONDS, TenantConfig, TenantConfigCache, TenantConfigStore
from .upstream import UpstreamConnection, open_upstream

logger = logging.getLogger(__name__)

ConnectionFactory = Callable[[str, str], Awaitable[UpstreamConnection]]


async def _default_connection_factory(tenant_id: str, upstream_url: str) -> UpstreamConnection:
    return await open_upstream(upstream_url, client_name=f"proxy-{tenant_id}")


@dataclass
class _TenantRuntime:
    connection: UpstreamConnection
    handler: PaymentHandler
    in_flight: int = 0
    retired: bool = False


class TenantRouter:
    """Dispatches inbound MCP messages to per-tenant payment handlers.

    - Tenant configs come from a TTL cache over the config store.
    - Each tenant gets one upstream connection and one bound handler, kept
      for the process lifetime.
    - A transport failure on a cached connection evicts it; the next request
      reconnects. An evicted connection is closed once its last in-flight
      request finishes.
    - No lock guards first use: concurrent first requests may both connect.
      The first connection stored is kept and the duplicate is closed.
    """

    def __init__(
        self,
        store: TenantConfigStore,
        facilitator: Facilitator,
        proxy_base: str,
        config_ttl: float = DEFAULT_CONFIG_TTL_SECONDS,
        connection_factory: ConnectionFactory = _default_connection_factory,
        config_cache: Optional[TenantConfigCache] = None,
    ) -> None:
        self._configs = config_cache or TenantConfigCache(store, ttl=config_ttl)
        self._facilitator = facilitator
        self._proxy_base = proxy_base.rstrip("/")
        self._connect = connection_factory
        self._runtimes: Dict[str, _TenantRuntime] = {}
        self._closing: Set[asyncio.Task] = set()

    def resource_url(self, tenant_id: str) -> str:
        return f"{self._proxy_base}/mcp/{tenant_id}"

    async def get_handler(self, tenant_id: str) -> PaymentHandler:
        runtime = await self._get_runtime(tenant_id)
        return runtime.handler

    async def route_request(self, tenant_id: str, message: Any) -> Optional[Dict[str, Any]]:
        runtime = await self._get_runtime(tenant_id)
        runtime.in_flight += 1
        try:
            return await runtime.handler.handle(message)
        finally:
            runtime.in_flight -= 1
            if runtime.retired and runtime.in_flight == 0:
                await self._close(runtime.connection)

    async def _get_runtime(self, tenant_id: str) -> _TenantRuntime:
        config = await self._configs.get(tenant_id)
        if config is None:
            raise TenantNotFoundError(tenant_id)

        runtime = self._runtimes.get(tenant_id)
        if runtime is not None and runtime.connection.url != config.upstream_url:
            self.evict(tenant_id)
            runtime = None
        if runtime is None:
            created = await self._create_runtime(tenant_id, config)
            runtime = self._runtimes.get(tenant_id)
            if runtime is not None and runtime.connection.url == config.upstream_url:
                # Another request connected first; keep its connection.
                logger.info("[%s] Discarding duplicate upstream connection", tenant_id)
                await self._close(created.connection)
            else:
                if runtime is not None:
                    self.evict(tenant_id)
                runtime = created
                self._runtimes[tenant_id] = runtime
                logger.info("[%s] Created and cached handler", tenant_id)
        if runtime.handler.tenant is not config:
            # Config refreshed after TTL: rebind the handler, keep the connection.
            runtime.handler = self._build_handler(tenant_id, config, runtime.connection)
        return runtime

    async def _create_runtime(self, tenant_id: str, config: TenantConfig) -> _TenantRuntime:
        logger.info("[%s] Connecting to upstream %s", tenant_id, config.upstream_url)
        try:
            connection = await self._connect(tenant_id, config.upstream_url)
        except TransportError:
            logger.error("[%s] Upstream connection failed", tenant_id)
            raise
        except Exception as exc:
            logger.error("[%s] Upstream connection failed: %s", tenant_id, exc)
            raise TransportError(f"Failed to connect to upstream {config.upstream_url}: {exc}") from exc
        return _TenantRuntime(connection, self._build_handler(tenant_id, config, connection))

    def _build_handler(
        self, tenant_id: str, config: TenantConfig, connection: UpstreamConnection
    ) -> PaymentHandler:
        resource_url = self.resource_url(tenant_id)
        logger.debug("[%s] Resource URL for payments: %s", tenant_id, resource_url)
        return PaymentHandler(
            config,
            connection,
            resource_url,
            self._facilitator,
            on_transport_error=lambda exc: self.evict(tenant_id, connection),
        )

    def evict(self, tenant_id: str, connection: Optional[UpstreamConnection] = None) -> None:
        """Drop a tenant's cached connection (only if it is still ``connection``)."""
        runtime = self._runtimes.get(tenant_id)
        if runtime is None:
            return
        if connection is not None and runtime.connection is not connection:
            return
        del self._runtimes[tenant_id]
        runtime.retired = True
        logger.warning("[%s] Evicted upstream connection", tenant_id)
        if runtime.in_flight == 0:
            task = asyncio.get_running_loop().create_task(self._close(runtime.connection))
            self._closing.add(task)
            task.add_done_callback(self._closing.discard)

    async def _close(self, connection: UpstreamConnection) -> None:
        try:
            await connection.aclose()
        except Exception:
            logger.warning("Failed to close upstream connection %s", connection.url)

    @property
    def tenant_count(self) -> int:
        return len(self._runtimes)

    async def aclose(self) -> None:
        runtimes, self._runtimes = self._runtimes, {}
        for runtime in runtimes.values():
            await self._close(runtime.connection)
        if self._closing:
            await asyncio.gather(*self._closing)
