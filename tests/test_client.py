import pytest

from x402_mcp_proxy.client import PaymentClient, payment_required_accepts
from x402_mcp_proxy.errors import ApprovalRequiredError, ErrorKind, tool_error
from x402_mcp_proxy.requirements import build_accepts, requirements_to_payload
from x402_mcp_proxy.signers import EvmPrivateKeySigner

ACCEPTS = [
    requirements_to_payload(req)
    for req in build_accepts(0.01, "0xabc", "http://proxy.test/mcp/demo", "Premium")
]
PAYMENT_REQUIRED = tool_error(
    ErrorKind.PAYMENT_REQUIRED,
    "Payment required",
    extra={"x402Version": 1, "error": "Payment required", "accepts": ACCEPTS},
)
SUCCESS = {"content": [{"type": "text", "text": "ok"}]}


class ScriptedServer:
    """Returns the queued results in order and records every call."""

    def __init__(self, *results):
        self.results = list(results)
        self.calls = []

    async def __call__(self, name, arguments, meta):
        self.calls.append((name, arguments, meta))
        return self.results.pop(0)


class FakeSigner:
    def __init__(self, error=None):
        self.error = error
        self.signed = []

    async def create_payment_token(self, requirements):
        if self.error is not None:
            raise self.error
        self.signed.append(requirements)
        return f"token-for-{requirements.network}"


def _kind(result):
    return result["_meta"]["x402/error"]["kind"]


def test_payment_required_accepts():
    assert payment_required_accepts(PAYMENT_REQUIRED) == ACCEPTS
    assert payment_required_accepts(SUCCESS) is None
    assert payment_required_accepts(tool_error(ErrorKind.UPSTREAM, "boom")) is None


@pytest.mark.asyncio
async def test_free_result_is_returned_without_paying():
    server = ScriptedServer(SUCCESS)
    signer = FakeSigner()

    result = await PaymentClient(server, signer, "base").call_tool("echo", {"text": "hi"})

    assert result == SUCCESS
    assert server.calls == [("echo", {"text": "hi"}, None)]
    assert signer.signed == []


@pytest.mark.asyncio
async def test_pays_once_and_retries_with_token():
    server = ScriptedServer(PAYMENT_REQUIRED, SUCCESS)
    signer = FakeSigner()
    seen = []

    client = PaymentClient(server, signer, "base", confirm=lambda options: seen.append(options) or True)
    result = await client.call_tool("premium", {"q": 1}, meta={"trace": "t"})

    assert result == SUCCESS
    assert len(seen[0]) == 10
    assert [req.network for req in signer.signed] == ["base"]
    assert server.calls[1] == ("premium", {"q": 1}, {"trace": "t", "x402/payment": "token-for-base"})


@pytest.mark.asyncio
async def test_second_payment_required_is_terminal():
    server = ScriptedServer(PAYMENT_REQUIRED, PAYMENT_REQUIRED, SUCCESS)
    signer = FakeSigner()

    result = await PaymentClient(server, signer, "base").call_tool("premium")

    assert _kind(result) == "payment_required"
    assert "not retrying" in result["content"][0]["text"]
    assert len(server.calls) == 2
    assert len(signer.signed) == 1


@pytest.mark.asyncio
async def test_decline_stops_before_signing():
    async def decline(options):
        return False

    server = ScriptedServer(PAYMENT_REQUIRED)
    signer = FakeSigner()

    result = await PaymentClient(server, signer, "base", confirm=decline).call_tool("premium")

    assert _kind(result) == "payment_declined"
    assert signer.signed == []
    assert len(server.calls) == 1


@pytest.mark.asyncio
async def test_missing_network_option():
    server = ScriptedServer(PAYMENT_REQUIRED)

    result = await PaymentClient(server, FakeSigner(), "ethereum").call_tool("premium")

    assert _kind(result) == "unsupported_network"
    assert result["content"][0]["text"] == "Payment network ethereum not supported"
    assert len(server.calls) == 1


@pytest.mark.asyncio
async def test_signer_failure_becomes_tool_error():
    server = ScriptedServer(PAYMENT_REQUIRED)
    signer = FakeSigner(error=ApprovalRequiredError("Please approve", url="https://wallet.test/approve"))

    result = await PaymentClient(server, signer, "base").call_tool("premium")

    assert _kind(result) == "payment_approval_required"
    assert result["content"][0]["text"] == "Please approve"
    assert len(server.calls) == 1


@pytest.mark.asyncio
async def test_invalid_accepts_entries():
    bad = tool_error(
        ErrorKind.PAYMENT_REQUIRED, "Payment required", extra={"accepts": [{"network": "base"}]}
    )
    server = ScriptedServer(bad)

    result = await PaymentClient(server, FakeSigner(), "base").call_tool("premium")

    assert _kind(result) == "payment_creation_failed"


@pytest.mark.asyncio
async def test_local_signing_failure_becomes_tool_error():
    bad_accepts = [
        requirements_to_payload(req)
        for req in build_accepts(0.01, "0xnot-a-hex-address", "http://proxy.test/mcp/demo", "Premium")
    ]
    server = ScriptedServer(
        tool_error(ErrorKind.PAYMENT_REQUIRED, "Payment required", extra={"accepts": bad_accepts})
    )
    signer = EvmPrivateKeySigner("0xac0974bec39a17e36ba4a6b4d238ff944bacb478cbed5efcae784d7bf4f2ff80")

    result = await PaymentClient(server, signer, "base").call_tool("premium")

    assert _kind(result) == "payment_creation_failed"
    assert len(server.calls) == 1
