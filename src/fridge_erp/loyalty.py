"""Loyalty point accrual, deduction and tier resolution."""

from __future__ import annotations

from dataclasses import dataclass, replace
from decimal import ROUND_FLOOR, Decimal
from typing import Optional, Sequence

from . import log
from .data_manager import ConfigSettings, CustomerRow, LoyaltyTierRow


@dataclass(frozen=True)
class LoyaltySettings:
    """Loyalty program switches taken from the ``[Loyalty]`` section."""

    enabled: bool = True
    points_per_mvr: Decimal = Decimal("1")
    recalculate_tier_on_return: bool = False

    @classmethod
    def from_config(cls, settings: ConfigSettings) -> "LoyaltySettings":
        return cls(
            enabled=settings.loyalty_enabled,
            points_per_mvr=settings.points_per_mvr,
            recalculate_tier_on_return=settings.recalculate_tier_on_return,
        )


@dataclass(frozen=True)
class LoyaltyChange:
    """Before/after view of a customer's points and tier."""

    points_before: int
    points_after: int
    tier_before: Optional[str]
    tier_after: Optional[str]

    @property
    def points_delta(self) -> int:
        return self.points_after - self.points_before

    @property
    def changed(self) -> bool:
        return self.points_delta != 0 or self.tier_before != self.tier_after

    def apply(self, customer: CustomerRow) -> CustomerRow:
        """Return ``customer`` with the new points and tier; the input is untouched."""

        if not self.changed:
            return customer
        return replace(customer, loyalty_points=self.points_after, loyalty_tier_id=self.tier_after)


def _unchanged(customer: CustomerRow) -> LoyaltyChange:
    return LoyaltyChange(
        points_before=customer.loyalty_points,
        points_after=customer.loyalty_points,
        tier_before=customer.loyalty_tier_id,
        tier_after=customer.loyalty_tier_id,
    )


def floor_points(amount: Decimal) -> int:
    return int(amount.to_integral_value(rounding=ROUND_FLOOR))


def resolve_tier(points: int, tiers: Sequence[LoyaltyTierRow]) -> Optional[LoyaltyTierRow]:
    """Return the highest tier whose ``min_points`` threshold ``points`` reaches."""

    for tier in sorted(tiers, key=lambda tier: tier.min_points, reverse=True):
        if tier.min_points <= points:
            return tier
    return None


def accrue(
    customer: CustomerRow,
    purchase_total: Decimal,
    tiers: Sequence[LoyaltyTierRow],
    settings: LoyaltySettings,
) -> LoyaltyChange:
    """Compute the points earned on a purchase.

    The multiplier comes from the tier the customer's *current* points
    qualify for (1 without a tier), and
    ``points = floor(total * points_per_mvr * multiplier)``. The stored tier
    only changes when the new balance resolves to a different, non-empty
    tier.

    Args:
        customer (CustomerRow): Customer before the purchase.
        purchase_total (Decimal): Sale total after discounts.
        tiers (Sequence[LoyaltyTierRow]): Configured tiers in any order.
        settings (LoyaltySettings): Program switches and earn rate.

    Returns:
        LoyaltyChange: Unchanged when the program is disabled or nothing is
            earned.
    """

    if not settings.enabled:
        return _unchanged(customer)

    current_tier = resolve_tier(customer.loyalty_points, tiers)
    multiplier = current_tier.point_multiplier if current_tier is not None else Decimal("1")
    earned = floor_points(purchase_total * settings.points_per_mvr * multiplier)
    if earned <= 0:
        return _unchanged(customer)

    new_points = customer.loyalty_points + earned
    new_tier = resolve_tier(new_points, tiers)
    tier_after = customer.loyalty_tier_id
    if new_tier is not None and new_tier.tier_id != customer.loyalty_tier_id:
        tier_after = new_tier.tier_id
        log.info("Customer '%s' moves to loyalty tier '%s'", customer.customer_id, new_tier.tier_name)

    log.debug("Customer '%s' earns %d points (multiplier %s)", customer.customer_id, earned, multiplier)
    return LoyaltyChange(
        points_before=customer.loyalty_points,
        points_after=new_points,
        tier_before=customer.loyalty_tier_id,
        tier_after=tier_after,
    )


def deduct(
    customer: CustomerRow,
    return_value: Decimal,
    tiers: Sequence[LoyaltyTierRow],
    settings: LoyaltySettings,
) -> LoyaltyChange:
    """Compute the points removed when goods are returned.

    ``floor(return_value * points_per_mvr)`` points are removed, never taking
    the balance below zero. The tier stays as stored unless
    ``recalculate_tier_on_return`` is enabled.
    """

    if not settings.enabled or return_value <= 0:
        return _unchanged(customer)

    deducted = floor_points(return_value * settings.points_per_mvr)
    new_points = max(0, customer.loyalty_points - deducted)
    tier_after = customer.loyalty_tier_id
    if settings.recalculate_tier_on_return:
        new_tier = resolve_tier(new_points, tiers)
        tier_after = new_tier.tier_id if new_tier is not None else None

    return LoyaltyChange(
        points_before=customer.loyalty_points,
        points_after=new_points,
        tier_before=customer.loyalty_tier_id,
        tier_after=tier_after,
    )


__all__ = ["LoyaltySettings", "LoyaltyChange", "resolve_tier", "accrue", "deduct", "floor_points"]
