"""Client-side payment token creation: local EVM keys or a custodial wallet service."""

from __future__ import annotations

import base64
import json
import logging
import re
import secrets
import time
from dataclasses import dataclass
from typing import Any, Dict, Optional, Protocol
from urllib.parse import quote, urlparse

import httpx
from eth_abi.exceptions import EncodingError
from eth_account import Account
from eth_account.messages import encode_typed_data
from x402.schemas.v1 import PaymentPayloadV1, PaymentRequirementsV1

from .constants import NetworkKind, X402_VERSION, find_network
from .errors import ApprovalRequiredError, ConfigurationError, SignerError, TransportError
from .facilitator import encode_payment_token

logger = logging.getLogger(__name__)

DEFAULT_WALLET_SERVICE_URL = "https://walletapi.fluxapay.xyz"
DEFAULT_AGENT_ID_URL = "https://agentid.fluxapay.xyz"
DEFAULT_AGENT_AUTHORIZE_URL = "https://agentwallet.fluxapay.xyz/add-agent"
VALID_AFTER_SKEW_SECONDS = 600

_AGENT_ID_PATTERN = re.compile(r"ID:\s*([a-f0-9-]+)", re.IGNORECASE)


class PaymentSigner(Protocol):
    async def create_payment_token(self, requirements: PaymentRequirementsV1) -> str:
        """Return a base64 ``x402/payment`` token for ``requirements``."""
        ...


def _hex(value: Any) -> str:
    text = value.hex() if hasattr(value, "hex") else str(value)
    return text if text.startswith("0x") else "0x" + text


class EvmPrivateKeySigner:
    """Signs EIP-3009 ``TransferWithAuthorization`` messages with a local key."""

    def __init__(self, private_key: str, clock=time.time) -> None:
        if not private_key:
            raise ConfigurationError("EVM private key is required")
        self._private_key = private_key if private_key.startswith("0x") else "0x" + private_key
        self.address = Account.from_key(self._private_key).address
        self._clock = clock

    async def create_payment_token(self, requirements: PaymentRequirementsV1) -> str:
        return encode_payment_token(self.create_payment_payload(requirements))

    def create_payment_payload(self, requirements: PaymentRequirementsV1) -> PaymentPayloadV1:
        config = find_network(str(requirements.network))
        if config is None or config.kind is not NetworkKind.EVM or config.chain_id is None:
            raise SignerError(f"Local signing is not available for network {requirements.network}")

        extra = requirements.extra or {}
        try:
            value = int(requirements.max_amount_required)
        except ValueError as exc:
            raise SignerError(f"Invalid payment amount: {requirements.max_amount_required}") from exc
        now = int(self._clock())
        authorization = {
            "from": self.address,
            "to": requirements.pay_to,
            "value": str(value),
            "validAfter": str(now - VALID_AFTER_SKEW_SECONDS),
            "validBefore": str(now + requirements.max_timeout_seconds),
            "nonce": "0x" + secrets.token_hex(32),
        }
        signature = self._sign_authorization(
            authorization,
            token_name=str(extra.get("name") or config.name),
            token_version=str(extra.get("version") or config.version),
            chain_id=config.chain_id,
            verifying_contract=requirements.asset,
        )
        return PaymentPayloadV1(
            x402_version=X402_VERSION,
            scheme=requirements.scheme,
            network=requirements.network,
            payload={"signature": signature, "authorization": authorization},
        )

    def _sign_authorization(
        self,
        authorization: Dict[str, str],
        *,
        token_name: str,
        token_version: str,
        chain_id: int,
        verifying_contract: str,
    ) -> str:
        typed_data = {
            "types": {
                "EIP712Domain": [
                    {"name": "name", "type": "string"},
                    {"name": "version", "type": "string"},
                    {"name": "chainId", "type": "uint256"},
                    {"name": "verifyingContract", "type": "address"},
                ],
                "TransferWithAuthorization": [
                    {"name": "from", "type": "address"},
                    {"name": "to", "type": "address"},
                    {"name": "value", "type": "uint256"},
                    {"name": "validAfter", "type": "uint256"},
                    {"name": "validBefore", "type": "uint256"},
                    {"name": "nonce", "type": "bytes32"},
                ],
            },
            "primaryType": "TransferWithAuthorization",
            "domain": {
                "name": token_name,
                "version": token_version,
                "chainId": chain_id,
                "verifyingContract": verifying_contract,
            },
            "message": {
                "from": authorization["from"],
                "to": authorization["to"],
                "value": int(authorization["value"]),
                "validAfter": int(authorization["validAfter"]),
                "validBefore": int(authorization["validBefore"]),
                "nonce": authorization["nonce"],
            },
        }
        try:
            signable = encode_typed_data(full_message=typed_data)
            signed = Account.sign_message(signable, private_key=self._private_key)
        except (EncodingError, TypeError, ValueError) as exc:
            raise SignerError(f"Could not sign payment authorization: {exc}") from exc
        return _hex(signed.signature)


def _resource_host(resource: str) -> str:
    parsed = urlparse(resource)
    if parsed.hostname:
        return parsed.hostname
    return resource.replace("mcp://", "").split("/")[0]


class WalletServiceSigner:
    """Delegates signing to a custodial wallet service authenticated by an agent JWT."""

    def __init__(
        self,
        agent_jwt: str,
        agent_name: str,
        base_url: str = DEFAULT_WALLET_SERVICE_URL,
        authorize_url: str = DEFAULT_AGENT_AUTHORIZE_URL,
        http_client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self._agent_jwt = agent_jwt
        self._agent_name = agent_name
        self._base_url = base_url.rstrip("/")
        self._authorize_url = authorize_url
        self._owns_client = http_client is None
        self._client = http_client or httpx.AsyncClient(
            timeout=httpx.Timeout(connect=5.0, read=30.0, write=10.0, pool=5.0)
        )

    def payment_request(self, requirements: PaymentRequirementsV1) -> Dict[str, Any]:
        extra = requirements.extra or {}
        return {
            "scheme": requirements.scheme,
            "network": requirements.network,
            "amount": requirements.max_amount_required,
            "currency": "USDC",
            "assetAddress": requirements.asset,
            "payTo": requirements.pay_to,
            "host": _resource_host(requirements.resource),
            "resource": requirements.resource,
            "description": requirements.description,
            "tokenName": extra.get("name") or "USDC",
            "tokenVersion": extra.get("version") or "2",
            "validityWindowSeconds": requirements.max_timeout_seconds or 60,
        }

    async def create_payment_token(self, requirements: PaymentRequirementsV1) -> str:
        url = f"{self._base_url}/api/payment/x402V1Payment"
        logger.debug("Requesting payment from %s", url)
        try:
            response = await self._client.post(
                url,
                json=self.payment_request(requirements),
                headers={
                    "Authorization": f"Bearer {self._agent_jwt}",
                    "Content-Type": "application/json",
                },
            )
        except httpx.HTTPError as exc:
            raise TransportError(f"Wallet service unreachable: {exc}") from exc

        if response.status_code >= 400:
            raise self._error_from_response(response)

        try:
            data = response.json()
        except ValueError as exc:
            raise SignerError(f"Payment creation failed: invalid response ({exc})") from exc
        if not isinstance(data, dict):
            raise SignerError("Payment creation failed: response is not a JSON object")

        if data.get("status") == "need_approval":
            approval_url = data.get("approvalUrl")
            raise ApprovalRequiredError(
                f"Payment requires approval. Please visit: {approval_url}\nThen retry this operation.",
                url=approval_url,
            )

        payment = data.get("xPayment") or data
        return base64.b64encode(json.dumps(payment).encode("utf-8")).decode("utf-8")

    def _error_from_response(self, response: httpx.Response) -> SignerError:
        try:
            data = response.json()
        except ValueError:
            data = {}
        if not isinstance(data, dict):
            data = {}
        message = data.get("message") or f"HTTP {response.status_code}"
        context = data.get("payment_model_context")
        if isinstance(context, dict):
            instructions = context.get("instructions") or ""
            if data.get("code") == "agent_not_found":
                match = _AGENT_ID_PATTERN.search(instructions)
                if match:
                    auth_url = (
                        f"{self._authorize_url}?agentId={match.group(1)}"
                        f"&name={quote(self._agent_name, safe='')}"
                    )
                    return ApprovalRequiredError(
                        f"Payment failed: {message}\n\n"
                        "Your agent needs to be authorized in the wallet.\n\n"
                        f"Please open this link to authorize:\n{auth_url}\n\n"
                        "After authorization, please retry this request.",
                        url=auth_url,
                    )
            return SignerError(f"Payment failed: {message}\n\n{instructions}".rstrip())
        return SignerError(f"Payment creation failed: {message}")

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()


@dataclass(frozen=True)
class AgentRegistration:
    agent_id: str
    jwt: str


async def register_agent(
    email: str,
    agent_name: str,
    client_info: str,
    base_url: str = DEFAULT_AGENT_ID_URL,
    http_client: Optional[httpx.AsyncClient] = None,
) -> AgentRegistration:
    """Register an agent identity and obtain the JWT used by ``WalletServiceSigner``."""
    client = http_client or httpx.AsyncClient(timeout=httpx.Timeout(15.0, connect=5.0))
    try:
        response = await client.post(
            f"{base_url.rstrip('/')}/register",
            json={"email": email, "agent_name": agent_name, "client_info": client_info},
        )
    except httpx.HTTPError as exc:
        raise TransportError(f"Agent registration service unreachable: {exc}") from exc
    finally:
        if http_client is None:
            await client.aclose()

    try:
        data = response.json()
    except ValueError:
        data = {}
    if response.status_code >= 400 or not isinstance(data, dict):
        message = data.get("message") if isinstance(data, dict) else None
        raise ConfigurationError(f"Agent registration failed: {message or response.status_code}")
    if not data.get("jwt") or not data.get("agent_id"):
        raise ConfigurationError("Agent registration failed: response missing jwt or agent_id")
    return AgentRegistration(agent_id=str(data["agent_id"]), jwt=str(data["jwt"]))
