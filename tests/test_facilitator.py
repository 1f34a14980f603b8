import base64
import json

import pytest

httpx = pytest.importorskip("httpx")

from x402.schemas.v1 import PaymentPayloadV1

from x402_mcp_proxy.errors import PaymentDecodeError, TransportError
from x402_mcp_proxy.facilitator import (
    FacilitatorClient,
    decode_payment_token,
    encode_payment_token,
)
from x402_mcp_proxy.requirements import build_payment_requirement

BASE_URL = "http://fac.test"

PAYLOAD = {
    "x402Version": 1,
    "scheme": "exact",
    "network": "base-sepolia",
    "payload": {
        "signature": "0xsig",
        "authorization": {"from": "0xpayer", "to": "0xabc", "value": "10000"},
    },
}


def _token(data) -> str:
    return base64.b64encode(json.dumps(data).encode()).decode()


def _requirement():
    return build_payment_requirement(0.01, "0xabc", "http://proxy.test/mcp/demo", "d", "base-sepolia")


def test_decode_payment_token():
    payload = decode_payment_token(_token(PAYLOAD))
    assert isinstance(payload, PaymentPayloadV1)
    assert payload.network == "base-sepolia"
    assert payload.scheme == "exact"
    assert payload.payload["signature"] == "0xsig"


def test_encode_decode_preserves_payload():
    payload = decode_payment_token(_token(PAYLOAD))
    assert decode_payment_token(encode_payment_token(payload)) == payload


@pytest.mark.parametrize(
    "token",
    [
        "",
        "not base64!!",
        base64.b64encode(b"not json").decode(),
        _token(["a list"]),
        _token({**PAYLOAD, "x402Version": 2}),
        _token({"x402Version": 1, "scheme": "exact"}),
    ],
)
def test_decode_payment_token_rejects_malformed(token):
    with pytest.raises(PaymentDecodeError):
        decode_payment_token(token)


@pytest.mark.asyncio
async def test_verify_success():
    seen = {}

    def handler(request):
        seen["path"] = request.url.path
        seen["body"] = json.loads(request.content.decode())
        return httpx.Response(200, json={"isValid": True, "payer": "0xpayer"})

    async_client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    client = FacilitatorClient(BASE_URL, http_client=async_client)

    try:
        resp = await client.verify(decode_payment_token(_token(PAYLOAD)), _requirement())
        assert resp.is_valid
        assert resp.payer == "0xpayer"
        assert seen["path"] == "/verify"
        assert seen["body"]["x402Version"] == 1
        assert seen["body"]["paymentPayload"]["network"] == "base-sepolia"
        assert seen["body"]["paymentRequirements"]["maxAmountRequired"] == "10000"
    finally:
        await async_client.aclose()


@pytest.mark.asyncio
async def test_verify_rejection_is_data():
    def handler(request):
        return httpx.Response(200, json={"isValid": False, "invalidReason": "expired"})

    async_client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    client = FacilitatorClient(BASE_URL, http_client=async_client)

    try:
        resp = await client.verify(decode_payment_token(_token(PAYLOAD)), _requirement())
        assert resp.is_valid is False
        assert resp.invalid_reason == "expired"
    finally:
        await async_client.aclose()


@pytest.mark.asyncio
async def test_settle_success():
    def handler(request):
        assert request.url.path == "/settle"
        return httpx.Response(
            200,
            json={"success": True, "transaction": "0xtx", "network": "base-sepolia", "payer": "0xpayer"},
        )

    async_client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    client = FacilitatorClient(BASE_URL, http_client=async_client)

    try:
        resp = await client.settle(decode_payment_token(_token(PAYLOAD)), _requirement())
        assert resp.success
        assert resp.transaction == "0xtx"
        assert resp.network == "base-sepolia"
    finally:
        await async_client.aclose()


@pytest.mark.asyncio
async def test_settle_normalizes_alternate_field_names():
    def handler(request):
        return httpx.Response(200, json={"txHash": "0xtx"})

    async_client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    client = FacilitatorClient(BASE_URL, http_client=async_client)

    try:
        resp = await client.settle(decode_payment_token(_token(PAYLOAD)), _requirement())
        assert resp.success
        assert resp.transaction == "0xtx"
        assert resp.network == "base-sepolia"
    finally:
        await async_client.aclose()


@pytest.mark.asyncio
async def test_settle_http_error_raises_transport_error():
    def handler(request):
        return httpx.Response(500, text="boom")

    async_client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    client = FacilitatorClient(BASE_URL, http_client=async_client)

    try:
        with pytest.raises(TransportError):
            await client.settle(decode_payment_token(_token(PAYLOAD)), _requirement())
    finally:
        await async_client.aclose()


@pytest.mark.asyncio
async def test_verify_unreachable_raises_transport_error():
    def handler(request):
        raise httpx.ConnectError("refused", request=request)

    async_client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    client = FacilitatorClient(BASE_URL, http_client=async_client)

    try:
        with pytest.raises(TransportError):
            await client.verify(decode_payment_token(_token(PAYLOAD)), _requirement())
    finally:
        await async_client.aclose()


@pytest.mark.asyncio
async def test_settle_malformed_fields_raise_transport_error():
    def handler(request):
        return httpx.Response(
            200, json={"success": True, "transaction": "0xtx", "network": "base-sepolia", "payer": 5}
        )

    async_client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    client = FacilitatorClient(BASE_URL, http_client=async_client)

    try:
        with pytest.raises(TransportError):
            await client.settle(decode_payment_token(_token(PAYLOAD)), _requirement())
    finally:
        await async_client.aclose()


@pytest.mark.parametrize("token", [{"a": 1}, 42, None])
def test_decode_payment_token_rejects_non_string(token):
    with pytest.raises(PaymentDecodeError) as excinfo:
        decode_payment_token(token)
    assert excinfo.value.message == "Invalid payment token: token must be a string"


def test_decode_payment_token_empty_message():
    with pytest.raises(PaymentDecodeError) as excinfo:
        decode_payment_token("   ")
    assert excinfo.value.message == "Invalid payment token: empty token"
