import json
from decimal import Decimal

import pytest

from x402_mcp_proxy.errors import ConfigurationError
from x402_mcp_proxy.tenants import (
    InMemoryConfigStore,
    JsonFileConfigStore,
    TenantConfig,
    TenantConfigCache,
    TenantConfigStore,
    ToolConfig,
)

PAYLOAD = {
    "upstreamUrl": "http://upstream.test/mcp",
    "walletAddress": "0xabc",
    "tools": [
        {"name": "echo", "price": 0},
        {"name": "premium", "price": "$0.01", "description": "Premium"},
        {"name": "hidden", "price": 1, "enabled": False},
    ],
}


class FakeClock:
    def __init__(self, now=0.0):
        self.now = now

    def __call__(self):
        return self.now


class CountingStore(InMemoryConfigStore):
    def __init__(self, configs=None):
        super().__init__(configs)
        self.calls = 0

    async def get(self, tenant_id):
        self.calls += 1
        return await super().get(tenant_id)


def test_tenant_config_from_payload():
    config = TenantConfig.from_payload(PAYLOAD)

    assert config.upstream_url == "http://upstream.test/mcp"
    assert config.recipient_wallet == "0xabc"
    assert [tool.name for tool in config.enabled_tools] == ["echo", "premium"]
    assert config.find_tool("premium").price == Decimal("0.01")
    assert config.find_tool("premium").is_priced
    assert not config.find_tool("echo").is_priced
    assert config.find_tool("hidden") is None
    assert config.find_tool("missing") is None


def test_tenant_config_requires_upstream_and_wallet():
    with pytest.raises(ConfigurationError):
        TenantConfig.from_payload({"upstreamUrl": "http://x"})
    with pytest.raises(ConfigurationError):
        TenantConfig.from_payload({"recipientWallet": "0xabc"})


def test_tool_config_rejects_bad_prices():
    with pytest.raises(ConfigurationError):
        ToolConfig.from_payload({"name": "t", "price": -1})
    with pytest.raises(ConfigurationError):
        ToolConfig.from_payload({"name": "t", "price": "free"})
    with pytest.raises(ConfigurationError):
        ToolConfig.from_payload({"price": 1})


def test_tool_config_accepts_either_schema_key():
    schema = {"type": "object", "properties": {"q": {"type": "string"}}}
    assert ToolConfig.from_payload({"name": "a", "inputSchema": schema}).input_schema == schema
    assert ToolConfig.from_payload({"name": "a", "input_schema": schema}).input_schema == schema


def test_stores_satisfy_protocol(tmp_path):
    assert isinstance(InMemoryConfigStore(), TenantConfigStore)
    assert isinstance(JsonFileConfigStore(tmp_path / "configs.json"), TenantConfigStore)


@pytest.mark.asyncio
async def test_json_file_store(tmp_path):
    path = tmp_path / "configs.json"
    path.write_text(json.dumps({"demo": PAYLOAD}))
    store = JsonFileConfigStore(path)

    config = await store.get("demo")
    assert config is not None
    assert config.upstream_url == "http://upstream.test/mcp"
    assert await store.get("other") is None


@pytest.mark.asyncio
async def test_json_file_store_errors(tmp_path):
    with pytest.raises(ConfigurationError):
        await JsonFileConfigStore(tmp_path / "missing.json").get("demo")

    bad = tmp_path / "bad.json"
    bad.write_text("{not json")
    with pytest.raises(ConfigurationError):
        await JsonFileConfigStore(bad).get("demo")


@pytest.mark.asyncio
async def test_cache_serves_hits_within_ttl():
    clock = FakeClock()
    store = CountingStore({"demo": TenantConfig.from_payload(PAYLOAD)})
    cache = TenantConfigCache(store, ttl=60, clock=clock)

    first = await cache.get("demo")
    clock.now = 59.9
    second = await cache.get("demo")

    assert first is second
    assert store.calls == 1
    assert cache.size == 1


@pytest.mark.asyncio
async def test_cache_refetches_after_ttl():
    clock = FakeClock()
    old = TenantConfig.from_payload(PAYLOAD)
    store = CountingStore({"demo": old})
    cache = TenantConfigCache(store, ttl=60, clock=clock)
    await cache.get("demo")

    new = TenantConfig.from_payload({**PAYLOAD, "walletAddress": "0xdef"})
    store.put("demo", new)
    clock.now = 30
    assert (await cache.get("demo")) is old

    clock.now = 60
    assert (await cache.get("demo")) is new
    assert store.calls == 2


@pytest.mark.asyncio
async def test_cache_does_not_remember_misses():
    store = CountingStore()
    cache = TenantConfigCache(store, ttl=60, clock=FakeClock())

    assert await cache.get("late") is None
    store.put("late", TenantConfig.from_payload(PAYLOAD))
    assert await cache.get("late") is not None
    assert store.calls == 2
