"""Settlement calculator: commission, seller net and delivery-fee allocation.

The calculation is a pure function of an order's stored fields and the
commission policy version recorded on the order when it was created, so a
payout can be recomputed and audited at any later time. Amounts are
integers in minor units; the commission is rounded once, half-up.
"""

from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal
from typing import Dict, Optional

from .domain import Order
from .errors import ValidationError


@dataclass(frozen=True)
class CommissionPolicy:
    version: str
    rate: Decimal


POLICIES: Dict[str, CommissionPolicy] = {
    "v1": CommissionPolicy("v1", Decimal("0.10")),
}
DEFAULT_POLICY = "v1"


def get_policy(version: Optional[str] = None) -> CommissionPolicy:
    """Look up a commission policy by version tag.

    Raises:
        ValidationError: For an unknown version.
    """
    key = version or DEFAULT_POLICY
    try:
        return POLICIES[key]
    except KeyError:
        raise ValidationError(f"unknown commission policy {key!r}", code="UNKNOWN_COMMISSION_POLICY")


@dataclass(frozen=True)
class Settlement:
    """Money split for one delivered order.

    Attributes:
        item_total_cents: Sum of the order's item prices.
        platform_commission_cents: ``item_total * rate``, rounded half-up.
        seller_net_cents: ``item_total - platform_commission``.
        delivery_fee_cents: Courier charge, paid out of the platform margin.
        platform_margin_cents: ``platform_commission - delivery_fee``; may be negative.
        policy_version: Commission policy the figures were computed under.
    """

    item_total_cents: int
    platform_commission_cents: int
    seller_net_cents: int
    delivery_fee_cents: int
    platform_margin_cents: int
    policy_version: str


def commission_for(amount_cents: int, policy: CommissionPolicy) -> int:
    raw = Decimal(amount_cents) * policy.rate
    return int(raw.quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def calculate(order: Order, policy: Optional[CommissionPolicy] = None) -> Settlement:
    """Compute the settlement for ``order``.

    Args:
        order: Order whose items and delivery fee are settled.
        policy: Override for the policy recorded on the order.

    Returns:
        Settlement: Deterministic for identical stored fields.
    """
    policy = policy or get_policy(order.commission_policy)
    item_total = sum(i.price_cents for i in order.items)
    commission = commission_for(item_total, policy)
    delivery_fee = order.delivery_fee_cents or 0
    return Settlement(
        item_total_cents=item_total,
        platform_commission_cents=commission,
        seller_net_cents=item_total - commission,
        delivery_fee_cents=delivery_fee,
        platform_margin_cents=commission - delivery_fee,
        policy_version=policy.version,
    )
