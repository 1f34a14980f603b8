import json

import pytest

httpx = pytest.importorskip("httpx")

from x402_mcp_proxy.errors import TransportError, UpstreamError
from x402_mcp_proxy.upstream import UpstreamConnection, _parse_sse, open_upstream

URL = "http://upstream.test/mcp"


class FakeMcpServer:
    """Answers initialize/tools/list/tools/call; optionally over SSE."""

    def __init__(self, sse=False, pages=None):
        self.sse = sse
        self.pages = pages or [{"tools": [{"name": "echo"}]}]
        self.requests = []

    def __call__(self, request):
        if request.method == "DELETE":
            self.requests.append(("DELETE", request.headers.get("mcp-session-id")))
            return httpx.Response(204)
        message = json.loads(request.content.decode())
        self.requests.append((message.get("method"), request.headers.get("mcp-session-id")))
        if "id" not in message:
            return httpx.Response(202)

        method = message["method"]
        headers = {}
        if method == "initialize":
            headers["mcp-session-id"] = "session-1"
            result = {"serverInfo": {"name": "fake"}, "capabilities": {"tools": {}}}
        elif method == "tools/list":
            cursor = (message.get("params") or {}).get("cursor")
            result = self.pages[int(cursor) if cursor else 0]
        elif method == "tools/call":
            params = message["params"]
            if params["name"] == "broken":
                return self._reply(
                    {"jsonrpc": "2.0", "id": message["id"], "error": {"code": -32602, "message": "bad args"}},
                    headers,
                )
            result = {"content": [{"type": "text", "text": json.dumps(params)}]}
        else:
            result = {}
        return self._reply({"jsonrpc": "2.0", "id": message["id"], "result": result}, headers)

    def _reply(self, body, headers):
        if self.sse:
            headers["content-type"] = "text/event-stream"
            text = "event: message\ndata: " + json.dumps(body) + "\n\n"
            return httpx.Response(200, text=text, headers=headers)
        return httpx.Response(200, json=body, headers=headers)


def _connection(server):
    return UpstreamConnection(URL, http_client=httpx.AsyncClient(transport=httpx.MockTransport(server)))


def test_parse_sse_collects_data_events():
    text = 'event: message\ndata: {"id": 1}\n\n: comment\ndata: {"id"\ndata: : 2}\n\ndata: not json\n'
    assert _parse_sse(text) == [{"id": 1}, {"id": 2}]


@pytest.mark.asyncio
@pytest.mark.parametrize("sse", [False, True])
async def test_connect_and_call(sse):
    server = FakeMcpServer(sse=sse)
    connection = _connection(server)

    await connection.connect()
    assert connection.initialized
    assert connection.session_id == "session-1"
    assert connection.server_info == {"name": "fake"}

    result = await connection.call_tool("echo", {"text": "hi"}, meta={"trace": "t"})
    sent = json.loads(result["content"][0]["text"])
    assert sent == {"name": "echo", "arguments": {"text": "hi"}, "_meta": {"trace": "t"}}

    await connection.aclose()
    assert server.requests == [
        ("initialize", None),
        ("notifications/initialized", "session-1"),
        ("tools/call", "session-1"),
        ("DELETE", "session-1"),
    ]


@pytest.mark.asyncio
async def test_list_tools_follows_cursor():
    server = FakeMcpServer(
        pages=[
            {"tools": [{"name": "a"}], "nextCursor": "1"},
            {"tools": [{"name": "b"}]},
        ]
    )
    async with _connection(server) as connection:
        tools = await connection.list_tools()
    assert [tool["name"] for tool in tools] == ["a", "b"]


@pytest.mark.asyncio
async def test_json_rpc_error_raises_upstream_error():
    async with _connection(FakeMcpServer()) as connection:
        with pytest.raises(UpstreamError) as excinfo:
            await connection.call_tool("broken")
    assert excinfo.value.code == -32602
    assert excinfo.value.message == "bad args"


@pytest.mark.asyncio
async def test_http_failure_raises_transport_error():
    def handler(request):
        return httpx.Response(503, text="unavailable")

    connection = _connection(handler)
    with pytest.raises(TransportError):
        await connection.request("ping")
    await connection.aclose()


@pytest.mark.asyncio
async def test_open_upstream_propagates_connect_failure():
    def handler(request):
        raise httpx.ConnectError("refused", request=request)

    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    with pytest.raises(TransportError):
        await open_upstream(URL, http_client=client)
    assert not client.is_closed
    await client.aclose()
