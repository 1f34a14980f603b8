"""Command line entry points.

``x402-mcp-proxy serve``    run the multi-tenant payment proxy over HTTP.
``x402-mcp-proxy connect``  expose a remote paid MCP server on stdio, paying
                            with a local key or the custodial wallet service.
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import sys
from dataclasses import replace
from typing import List, Optional, Sequence

from x402.schemas.v1 import PaymentRequirementsV1

from .client import PaymentClient
from .config import ProxySettings
from .errors import ConfigurationError, TransportError, X402ProxyError
from .facilitator import FacilitatorClient
from .signers import EvmPrivateKeySigner, PaymentSigner, WalletServiceSigner, register_agent
from .stdio import StdioBridge
from .tenants import JsonFileConfigStore
from .upstream import open_upstream

logger = logging.getLogger("x402_mcp_proxy")


def _configure_logging(level: str) -> None:
    # stdout carries MCP traffic for ``connect``; logs go to stderr.
    logging.basicConfig(
        level=getattr(logging, level, logging.INFO),
        stream=sys.stderr,
        format="%(asctime)s %(name)s %(levelname)s: %(message)s",
    )


def serve_settings(settings: ProxySettings, args: argparse.Namespace) -> ProxySettings:
    """Apply ``serve`` command-line overrides on top of env settings."""
    return replace(
        settings,
        port=args.port or settings.port,
        host=args.host or settings.host,
        proxy_base=args.proxy_base or settings.proxy_base,
        facilitator_url=args.facilitator_url or settings.facilitator_url,
        tenant_config_file=args.configs or settings.tenant_config_file,
    )


def run_serve(settings: ProxySettings, args: argparse.Namespace) -> int:
    import uvicorn

    from .http import create_app
    from .router import TenantRouter

    settings = serve_settings(settings, args)
    if not settings.tenant_config_file:
        raise ConfigurationError("--configs or TENANT_CONFIG_FILE is required")

    router = TenantRouter(
        JsonFileConfigStore(settings.tenant_config_file),
        FacilitatorClient(settings.facilitator_url),
        settings.resource_base,
        config_ttl=settings.config_cache_ttl,
    )
    app = create_app(router)
    logger.info(
        "Multi-tenant MCP proxy on port %d, usage: %s/mcp/{configId}", settings.port, settings.resource_base
    )
    uvicorn.run(app, host=settings.host, port=settings.port, log_level=settings.log_level.lower())
    return 0


def _auto_approve(network: str):
    def confirm(options: List[PaymentRequirementsV1]) -> bool:
        logger.info("Payment requested on the following networks:")
        for option in options:
            logger.info("- %s: %s (%s)", option.network, option.max_amount_required, option.description)
        logger.info("Using network: %s", network)
        return True

    return confirm


async def _build_signer(settings: ProxySettings) -> PaymentSigner:
    if settings.evm_private_key:
        signer = EvmPrivateKeySigner(settings.evm_private_key)
        logger.info("Paying with local key %s", signer.address)
        return signer

    if not settings.agent_email:
        raise ConfigurationError(
            "EVM_PRIVATE_KEY or AGENT_EMAIL (with AGENT_NAME) environment variables are required"
        )
    logger.info("Registering agent %s (%s)", settings.agent_name, settings.agent_email)
    registration = await register_agent(
        settings.agent_email,
        settings.agent_name,
        settings.client_info,
        base_url=settings.agent_id_url,
    )
    logger.info("Agent registered: %s", registration.agent_id)
    return WalletServiceSigner(
        registration.jwt,
        settings.agent_name,
        base_url=settings.wallet_service_url,
    )


async def run_connect(settings: ProxySettings, args: argparse.Namespace) -> int:
    network = args.network or settings.evm_network
    signer = await _build_signer(settings)

    logger.info("Connecting to %s", args.url)
    upstream = await open_upstream(args.url, client_name="x402-proxy-client")
    try:
        payments = PaymentClient(upstream.call_tool, signer, network, confirm=_auto_approve(network))
        bridge = StdioBridge(upstream, payments)
        await bridge.load_tools()
        await bridge.serve()
    finally:
        await upstream.aclose()
        if isinstance(signer, WalletServiceSigner):
            await signer.aclose()
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="x402-mcp-proxy", description=__doc__.splitlines()[0])
    subparsers = parser.add_subparsers(dest="command", required=True)

    serve = subparsers.add_parser("serve", help="Run the multi-tenant payment proxy")
    serve.add_argument("--configs", help="JSON file with tenant configs (TENANT_CONFIG_FILE)")
    serve.add_argument("--host", help="Bind address (HOST)")
    serve.add_argument("--port", type=int, help="Port (PORT, default 3003)")
    serve.add_argument("--proxy-base", help="Public base URL used in payment resources (PROXY_BASE)")
    serve.add_argument("--facilitator-url", help="Facilitator base URL (FACILITATOR_URL)")

    connect = subparsers.add_parser("connect", help="Serve a paid remote MCP server on stdio")
    connect.add_argument("--url", required=True, help="Proxy URL, e.g. http://host:3003/mcp/<configId>")
    connect.add_argument("--network", help="Network to pay on (EVM_NETWORK, default base)")
    return parser


def main(argv: Optional[Sequence[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    try:
        settings = ProxySettings.from_env()
    except ConfigurationError as err:
        print(f"Error: {err.message}", file=sys.stderr)
        return 1
    _configure_logging(settings.log_level)

    try:
        if args.command == "serve":
            return run_serve(settings, args)
        return asyncio.run(run_connect(settings, args))
    except ConfigurationError as err:
        logger.error("Configuration error: %s", err.message)
    except TransportError as err:
        logger.error("Connection failed: %s", err.message)
    except X402ProxyError as err:
        logger.error("Fatal error: %s", err.message)
    except KeyboardInterrupt:
        return 130
    return 1


if __name__ == "__main__":
    raise SystemExit(main())
