"""FastAPI surface for the multi-tenant proxy."""

from __future__ import annotations

import json
import logging
from contextlib import asynccontextmanager
from typing import Any, List, Optional

from fastapi import FastAPI, Request, Response, status
from fastapi.responses import JSONResponse

from .errors import ConfigurationError, TenantNotFoundError, TransportError
from .handler import PARSE_ERROR, rpc_error
from .router import TenantRouter

logger = logging.getLogger(__name__)


def create_app(router: TenantRouter, title: str = "x402 MCP payment proxy") -> FastAPI:
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        try:
            yield
        finally:
            await router.aclose()

    app = FastAPI(title=title, lifespan=lifespan)
    app.state.router = router

    @app.get("/health")
    async def health():
        return {"status": "ok", "tenants": router.tenant_count}

    async def handle_mcp(config_id: str, request: Request) -> Response:
        logger.info("[PROXY] %s %s (config %s)", request.method, request.url.path, config_id)
        try:
            body = json.loads(await request.body())
        except ValueError:
            return JSONResponse(
                content=rpc_error(None, PARSE_ERROR, "Parse error"),
                status_code=status.HTTP_400_BAD_REQUEST,
            )

        try:
            if isinstance(body, list):
                replies: List[Any] = []
                for message in body:
                    reply = await router.route_request(config_id, message)
                    if reply is not None:
                        replies.append(reply)
                reply_body: Optional[Any] = replies or None
            else:
                reply_body = await router.route_request(config_id, body)
        except TenantNotFoundError as err:
            logger.info("[PROXY] %s", err)
            return JSONResponse(content={"error": err.message}, status_code=status.HTTP_404_NOT_FOUND)
        except TransportError as err:
            return JSONResponse(
                content={"error": "Upstream unavailable", "details": err.message},
                status_code=status.HTTP_502_BAD_GATEWAY,
            )
        except ConfigurationError as err:
            return JSONResponse(
                content={"error": "Invalid configuration", "details": err.message},
                status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            )

        if reply_body is None:
            return Response(status_code=status.HTTP_202_ACCEPTED)
        return JSONResponse(content=reply_body)

    @app.post("/mcp/{config_id}")
    async def mcp_endpoint(config_id: str, request: Request):
        return await handle_mcp(config_id, request)

    @app.post("/mcp/{config_id}/{rest:path}")
    async def mcp_subpath_endpoint(config_id: str, rest: str, request: Request):
        return await handle_mcp(config_id, request)

    return app
