"""Client-side wrapper that pays for priced tool calls automatically."""

from __future__ import annotations

import inspect
import logging
from typing import Any, Awaitable, Callable, Dict, List, Optional, Union

from pydantic import ValidationError
from x402.schemas.v1 import PaymentRequirementsV1

from .constants import ERROR_META_KEY, PAYMENT_META_KEY
from .errors import ErrorKind, X402ProxyError, tool_error
from .signers import PaymentSigner

logger = logging.getLogger(__name__)

CallTool = Callable[[str, Dict[str, Any], Optional[Dict[str, Any]]], Awaitable[Dict[str, Any]]]
ConfirmPayment = Callable[
    [List[PaymentRequirementsV1]], Union[bool, Awaitable[bool]]
]


def payment_required_accepts(result: Dict[str, Any]) -> Optional[List[Dict[str, Any]]]:
    """Return the accepts-list when ``result`` is a payment-required error."""
    if not result.get("isError"):
        return None
    block = (result.get("_meta") or {}).get(ERROR_META_KEY)
    if not isinstance(block, dict):
        return None
    accepts = block.get("accepts")
    if isinstance(accepts, list) and accepts:
        return accepts
    return None


class PaymentClient:
    """Wraps a ``call_tool(name, arguments, meta)`` primitive with x402 payment.

    - The first call goes out unmodified.
    - On payment-required, ``confirm`` sees the full accepts-list; a decline
      ends the call.
    - The requirement for ``network`` is signed and the call is retried once
      with the token in ``_meta["x402/payment"]``.
    - A second payment-required answer is returned as a terminal error.
    """

    def __init__(
        self,
        call_tool: CallTool,
        signer: PaymentSigner,
        network: str,
        confirm: Optional[ConfirmPayment] = None,
    ) -> None:
        self._call_tool = call_tool
        self._signer = signer
        self.network = network
        self._confirm = confirm

    async def call_tool(
        self,
        name: str,
        arguments: Optional[Dict[str, Any]] = None,
        meta: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        arguments = arguments or {}
        logger.info("Calling tool: %s", name)
        result = await self._call_tool(name, arguments, meta)

        accepts = payment_required_accepts(result)
        if accepts is None:
            return result
        logger.info("Payment required for %s", name)

        try:
            options = [PaymentRequirementsV1.model_validate(option) for option in accepts]
        except ValidationError as exc:
            return tool_error(
                ErrorKind.PAYMENT_CREATION_FAILED,
                f"Server sent invalid payment requirements: {exc.error_count()} invalid field(s)",
            )

        if self._confirm is not None:
            approved = self._confirm(options)
            if inspect.isawaitable(approved):
                approved = await approved
            if not approved:
                logger.info("Payment declined")
                return tool_error(ErrorKind.PAYMENT_DECLINED, "Payment declined")

        selected = next((option for option in options if option.network == self.network), None)
        if selected is None:
            logger.warning("No payment option for network: %s", self.network)
            return tool_error(
                ErrorKind.UNSUPPORTED_NETWORK,
                f"Payment network {self.network} not supported",
                extra={"network": self.network},
            )

        try:
            token = await self._signer.create_payment_token(selected)
        except X402ProxyError as exc:
            logger.warning("Payment creation failed: %s", exc)
            return tool_error(exc.kind, exc.message)

        logger.info("Payment token created, retrying %s with payment", name)
        paid_meta = dict(meta or {})
        paid_meta[PAYMENT_META_KEY] = token
        result = await self._call_tool(name, arguments, paid_meta)

        if payment_required_accepts(result) is not None:
            logger.warning("%s still requires payment after paying; giving up", name)
            return tool_error(
                ErrorKind.PAYMENT_REQUIRED,
                f"Payment was not accepted for {name}; not retrying",
            )
        return result
