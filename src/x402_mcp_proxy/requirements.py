"""Turn tool prices into x402 payment requirements."""

from __future__ import annotations

from decimal import ROUND_FLOOR, Decimal, InvalidOperation
from typing import Any, Dict, List, Union

from x402.schemas.v1 import PaymentRequirementsV1

from .constants import (
    DEFAULT_MAX_TIMEOUT_SECONDS,
    DEFAULT_MIME_TYPE,
    PAYMENT_NETWORKS,
    PAYMENT_SCHEME,
    X402_VERSION,
    get_network,
)

Money = Union[Decimal, str, int, float]


def parse_money(money: Money) -> Decimal:
    """Parse ``"$0.01"``, ``0.01`` or ``Decimal("0.01")`` into a Decimal.

    Floats go through ``str`` first so ``0.0001`` stays ``0.0001``.
    """
    if isinstance(money, Decimal):
        return money
    if isinstance(money, bool):
        raise ValueError(f"Invalid money type: {type(money)}")
    if isinstance(money, (int, float)):
        return Decimal(str(money))
    if isinstance(money, str):
        clean = money.replace("$", "").strip()
        try:
            return Decimal(clean)
        except InvalidOperation as exc:
            raise ValueError(f"Invalid money format: {money}") from exc
    raise ValueError(f"Invalid money type: {type(money)}")


def to_atomic_units(price: Money, decimals: int) -> str:
    """Floor ``price * 10**decimals`` to an integer string.

    Flooring never over-charges. Prices below one smallest unit give ``"0"``.
    """
    amount = parse_money(price)
    if not amount.is_finite():
        raise ValueError(f"Invalid amount: {price}")
    if amount < 0:
        raise ValueError("Amount must be non-negative")
    scaled = (amount * (Decimal(10) ** decimals)).to_integral_value(rounding=ROUND_FLOOR)
    return str(int(scaled))


def build_payment_requirement(
    price: Money,
    recipient: str,
    resource: str,
    description: str,
    network: str,
) -> PaymentRequirementsV1:
    config = get_network(network)
    return PaymentRequirementsV1(
        scheme=PAYMENT_SCHEME,
        network=config.network,
        max_amount_required=to_atomic_units(price, config.decimals),
        resource=resource,
        description=description,
        mime_type=DEFAULT_MIME_TYPE,
        pay_to=config.kind.format_address(recipient),
        max_timeout_seconds=DEFAULT_MAX_TIMEOUT_SECONDS,
        asset=config.asset,
        extra={"name": config.name, "version": config.version},
    )


def build_accepts(
    price: Money,
    recipient: str,
    resource: str,
    description: str,
) -> List[PaymentRequirementsV1]:
    """One requirement per registered network, in registry order."""
    return [
        build_payment_requirement(price, recipient, resource, description, network)
        for network in PAYMENT_NETWORKS
    ]


def build_payment_annotation(price: Money, recipient: str) -> Dict[str, Any]:
    """Annotation block advertised on priced tools in ``tools/list``."""
    networks = []
    for config in PAYMENT_NETWORKS.values():
        networks.append(
            {
                "network": config.network,
                "recipient": config.kind.format_address(recipient),
                "maxAmountRequired": to_atomic_units(price, config.decimals),
                "asset": {
                    "address": config.asset,
                    "decimals": config.decimals,
                    "symbol": config.symbol,
                },
                "type": config.kind.value,
            }
        )
    return {
        "paymentHint": True,
        "paymentPriceUSD": float(parse_money(price)),
        "paymentNetworks": networks,
        "paymentVersion": X402_VERSION,
    }


def requirements_to_payload(requirements: PaymentRequirementsV1) -> Dict[str, Any]:
    return requirements.model_dump(by_alias=True, exclude_none=True)
