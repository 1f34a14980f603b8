"""Process settings loaded from the environment (and ``.env``)."""

from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Mapping, Optional

from dotenv import load_dotenv

from .constants import DEFAULT_FACILITATOR_URL
from .errors import ConfigurationError
from .signers import DEFAULT_AGENT_ID_URL, DEFAULT_WALLET_SERVICE_URL
from .tenants import DEFAULT_CONFIG_TTL_SECONDS

DEFAULT_PORT = 3003


def _number(env: Mapping[str, str], key: str, default: float) -> float:
    raw = env.get(key)
    if raw is None or raw == "":
        return default
    try:
        return float(raw)
    except ValueError as exc:
        raise ConfigurationError(f"{key} must be a number, got {raw!r}") from exc


@dataclass(frozen=True)
class ProxySettings:
    port: int = DEFAULT_PORT
    host: str = "0.0.0.0"
    proxy_base: Optional[str] = None
    facilitator_url: str = DEFAULT_FACILITATOR_URL
    tenant_config_file: Optional[str] = None
    config_cache_ttl: float = DEFAULT_CONFIG_TTL_SECONDS
    evm_network: str = "base"
    evm_private_key: Optional[str] = None
    wallet_service_url: str = DEFAULT_WALLET_SERVICE_URL
    agent_id_url: str = DEFAULT_AGENT_ID_URL
    agent_email: Optional[str] = None
    agent_name: str = "MCP Agent"
    client_info: str = "x402 MCP proxy client"
    log_level: str = "INFO"

    @property
    def resource_base(self) -> str:
        """Public base URL used in payment requirement ``resource`` fields."""
        return (self.proxy_base or f"http://localhost:{self.port}").rstrip("/")

    @classmethod
    def from_env(cls, env: Optional[Mapping[str, str]] = None, dotenv: bool = True) -> "ProxySettings":
        if env is None:
            if dotenv:
                load_dotenv()
            env = os.environ
        return cls(
            port=int(_number(env, "PORT", DEFAULT_PORT)),
            host=env.get("HOST") or "0.0.0.0",
            proxy_base=env.get("PROXY_BASE") or None,
            facilitator_url=env.get("FACILITATOR_URL") or DEFAULT_FACILITATOR_URL,
            tenant_config_file=env.get("TENANT_CONFIG_FILE") or None,
            config_cache_ttl=_number(env, "CONFIG_CACHE_TTL", DEFAULT_CONFIG_TTL_SECONDS),
            evm_network=env.get("EVM_NETWORK") or "base",
            evm_private_key=env.get("EVM_PRIVATE_KEY") or None,
            wallet_service_url=env.get("FLUXA_WALLET_SERVICE_URL") or DEFAULT_WALLET_SERVICE_URL,
            agent_id_url=env.get("AGENT_ID_URL") or DEFAULT_AGENT_ID_URL,
            agent_email=env.get("AGENT_EMAIL") or None,
            agent_name=env.get("AGENT_NAME") or "MCP Agent",
            client_info=env.get("CLIENT_INFO") or "x402 MCP proxy client",
            log_level=(env.get("LOG_LEVEL") or "INFO").upper(),
        )
