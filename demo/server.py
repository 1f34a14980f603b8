"""Minimal upstream MCP tool server to put behind the payment proxy.

Run it, then point a tenant's ``upstreamUrl`` at ``http://localhost:4000/mcp``
(see ``demo/tenants.json``) and start ``x402-mcp-proxy serve``.
"""

import os
import uuid

from dotenv import load_dotenv
from fastapi import FastAPI, Request, Response
from fastapi.responses import JSONResponse

load_dotenv()

app = FastAPI()

PORT = int(os.getenv("UPSTREAM_PORT", "4000"))

TOOLS = [
    {
        "name": "echo",
        "description": "Echo the input text",
        "inputSchema": {
            "type": "object",
            "properties": {"text": {"type": "string"}},
            "required": ["text"],
        },
    },
    {
        "name": "premium_data",
        "description": "Protected content behind a paywall",
        "inputSchema": {"type": "object", "properties": {}},
    },
]


def _text(text: str):
    return {"content": [{"type": "text", "text": text}]}


def _call(name: str, arguments: dict):
    if name == "echo":
        return _text(str(arguments.get("text", "")))
    if name == "premium_data":
        return _text("Success! You've accessed the premium data.")
    return {"isError": True, **_text(f"Unknown tool: {name}")}


@app.post("/mcp")
async def mcp(request: Request):
    message = await request.json()
    method = message.get("method")
    request_id = message.get("id")
    if request_id is None:
        return Response(status_code=202)

    headers = {}
    if method == "initialize":
        headers["mcp-session-id"] = uuid.uuid4().hex
        result = {
            "protocolVersion": "2024-11-05",
            "capabilities": {"tools": {}},
            "serverInfo": {"name": "demo-upstream", "version": "1.0.0"},
        }
    elif method == "tools/list":
        result = {"tools": TOOLS}
    elif method == "tools/call":
        params = message.get("params") or {}
        result = _call(params.get("name"), params.get("arguments") or {})
    elif method == "ping":
        result = {}
    else:
        return JSONResponse(
            {"jsonrpc": "2.0", "id": request_id, "error": {"code": -32601, "message": f"Unknown method: {method}"}}
        )
    return JSONResponse({"jsonrpc": "2.0", "id": request_id, "result": result}, headers=headers)


@app.delete("/mcp")
async def end_session():
    return Response(status_code=204)


@app.get("/health")
async def health():
    return {"status": "ok"}


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host="0.0.0.0", port=PORT)
