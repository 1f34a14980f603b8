"""Facilitator client wrappers and payment token codec."""

from __future__ import annotations

import base64
import binascii
import json
import logging
from typing import Any, Dict, Optional

import httpx
from pydantic import ValidationError
from x402.http import FacilitatorConfig, HTTPFacilitatorClient
from x402.schemas import SettleResponse, VerifyResponse
from x402.schemas.v1 import PaymentPayloadV1, PaymentRequirementsV1

from .constants import DEFAULT_FACILITATOR_URL
from .errors import PaymentDecodeError, TransportError

logger = logging.getLogger(__name__)

DEFAULT_FACILITATOR_TIMEOUT = 30.0


def decode_payment_token(token: str) -> PaymentPayloadV1:
    """Decode a base64 ``x402/payment`` token into a v1 payload."""
    if not isinstance(token, str):
        raise PaymentDecodeError("Invalid payment token: token must be a string")
    if not token.strip():
        raise PaymentDecodeError("Invalid payment token: empty token")
    try:
        raw = base64.b64decode(token.strip().encode("utf-8"), validate=True)
        data = json.loads(raw.decode("utf-8"))
    except (binascii.Error, UnicodeDecodeError, ValueError) as exc:
        raise PaymentDecodeError(f"Invalid payment token: {exc}") from exc
    if not isinstance(data, dict):
        raise PaymentDecodeError("Invalid payment token: payload is not an object")
    version = data.get("x402Version", 1)
    if version != 1:
        raise PaymentDecodeError(f"Invalid payment token: unsupported x402Version {version}")
    try:
        return PaymentPayloadV1.model_validate(data)
    except ValidationError as exc:
        raise PaymentDecodeError(f"Invalid payment token: {exc.error_count()} invalid field(s)") from exc


def encode_payment_token(payload: PaymentPayloadV1 | Dict[str, Any]) -> str:
    if isinstance(payload, PaymentPayloadV1):
        encoded = payload.model_dump_json(by_alias=True, exclude_none=True)
    else:
        encoded = json.dumps(payload, separators=(",", ":"))
    return base64.b64encode(encoded.encode("utf-8")).decode("utf-8")


class FacilitatorClient(HTTPFacilitatorClient):
    """Async facilitator client bound to its own httpx client.

    The client is never shared with the proxy's inbound or upstream
    transports. Failures to reach the facilitator raise ``TransportError``;
    a rejection the facilitator reports is returned as data.
    """

    def __init__(
        self,
        url: str = DEFAULT_FACILITATOR_URL,
        http_client: Optional[httpx.AsyncClient] = None,
        timeout: float = DEFAULT_FACILITATOR_TIMEOUT,
    ) -> None:
        owns_client = http_client is None
        if http_client is None:
            http_client = httpx.AsyncClient(timeout=timeout, follow_redirects=True)
        super().__init__(FacilitatorConfig(url=url, timeout=timeout, http_client=http_client))
        self._owns_client = owns_client

    async def verify(
        self,
        payload: PaymentPayloadV1,
        requirements: PaymentRequirementsV1,
    ) -> VerifyResponse:
        body = self._request_body(payload, requirements)
        data = await self._post("verify", body, self._get_verify_headers())
        try:
            return VerifyResponse.model_validate(data)
        except ValidationError as exc:
            raise TransportError(f"Facilitator verify returned an invalid response: {exc}") from exc

    async def settle(
        self,
        payload: PaymentPayloadV1,
        requirements: PaymentRequirementsV1,
    ) -> SettleResponse:
        body = self._request_body(payload, requirements)
        data = await self._post("settle", body, self._get_settle_headers())
        if not isinstance(data, dict):
            raise TransportError("Facilitator settle returned an invalid response")
        return _normalize_settle_response(data, requirements)

    def _request_body(
        self,
        payload: PaymentPayloadV1,
        requirements: PaymentRequirementsV1,
    ) -> Dict[str, Any]:
        return self._build_request_body(
            payload.x402_version,
            payload.model_dump(by_alias=True, exclude_none=True),
            requirements.model_dump(by_alias=True, exclude_none=True),
        )

    async def _post(self, operation: str, body: Dict[str, Any], headers: Dict[str, str]) -> Any:
        client = self._get_async_client()
        try:
            response = await client.post(f"{self._url}/{operation}", headers=headers, json=body)
        except httpx.HTTPError as exc:
            logger.warning("Facilitator %s request failed: %s", operation, exc)
            raise TransportError(f"Facilitator {operation} unreachable: {exc}") from exc

        if response.status_code != 200:
            raise TransportError(
                f"Facilitator {operation} failed ({response.status_code}): {response.text}"
            )
        try:
            return response.json()
        except ValueError as exc:
            raise TransportError(f"Facilitator {operation} invalid JSON response: {exc}") from exc


def _normalize_settle_response(
    payload: Dict[str, Any],
    requirements: PaymentRequirementsV1,
) -> SettleResponse:
    try:
        return SettleResponse.model_validate(payload)
    except ValidationError:
        pass

    tx = (
        payload.get("transaction")
        or payload.get("transactionHash")
        or payload.get("txHash")
        or payload.get("tx")
        or payload.get("hash")
    )
    network = payload.get("network") or payload.get("networkId") or str(requirements.network)
    error_reason = (
        payload.get("error_reason")
        or payload.get("errorReason")
        or payload.get("error")
        or payload.get("message")
    )
    error_message = payload.get("error_message") or payload.get("errorMessage")
    payer = payload.get("payer") or payload.get("from")
    success = bool(payload.get("success", error_reason is None))

    try:
        return SettleResponse(
            success=success,
            error_reason=error_reason,
            error_message=error_message,
            payer=payer,
            transaction=str(tx or ""),
            network=str(network),
        )
    except ValidationError as exc:
        raise TransportError(f"Facilitator settle returned an invalid response: {exc}") from exc
