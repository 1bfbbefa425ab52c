"""Bulk discount tiers for group orders.

The discount depends only on how many garments are in the group, never on the
amount spent.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from decimal import Decimal

from ..errors import ValidationError
from ..money import percent_of, quantize, to_decimal

MIN_ORDERS_FOR_BULK_DISCOUNT = 3
MAX_ORDERS_PER_GROUP = 20


@dataclass(frozen=True)
class DiscountTier:
    name: str
    min_items: int
    max_items: int | None
    discount_percentage: int


BULK_DISCOUNT_TIERS = (
    DiscountTier("Tier 1", 3, 5, 15),
    DiscountTier("Tier 2", 6, 9, 20),
    DiscountTier("Tier 3", 10, None, 25),
)


@dataclass(frozen=True)
class IndividualDiscount:
    index: int
    original_amount: Decimal
    discount: Decimal
    final_amount: Decimal

    def to_dict(self) -> dict[str, object]:
        return {
            "item": self.index,
            "original_amount": float(self.original_amount),
            "discount": float(self.discount),
            "final_amount": float(self.final_amount),
        }


@dataclass(frozen=True)
class BulkDiscount:
    discount_percentage: int
    original_total: Decimal
    discount_amount: Decimal
    final_total: Decimal
    savings: Decimal
    individual_discounts: list[IndividualDiscount] = field(default_factory=list)

    def to_dict(self) -> dict[str, object]:
        return {
            "discount_percentage": self.discount_percentage,
            "original_total": float(self.original_total),
            "discount_amount": float(self.discount_amount),
            "final_total": float(self.final_total),
            "savings": float(self.savings),
            "individual_discounts": [item.to_dict() for item in self.individual_discounts],
        }


def qualifies_for_bulk_discount(item_count: int) -> bool:
    return item_count >= MIN_ORDERS_FOR_BULK_DISCOUNT


def tier_for(item_count: int) -> DiscountTier | None:
    for tier in BULK_DISCOUNT_TIERS:
        if item_count >= tier.min_items and (tier.max_items is None or item_count <= tier.max_items):
            return tier
    return None


def discount_percentage_for(item_count: int) -> int:
    tier = tier_for(item_count)
    return tier.discount_percentage if tier else 0


def validate_request(item_count: object, order_amounts: object,
                     max_items: int = MAX_ORDERS_PER_GROUP) -> list[Decimal]:
    """Check a discount request and return the amounts as ``Decimal``."""
    errors: list[dict[str, str]] = []
    if not isinstance(item_count, int) or isinstance(item_count, bool):
        raise ValidationError("Item count must be an integer", field="item_count")
    if not isinstance(order_amounts, (list, tuple)):
        raise ValidationError("Order amounts must be a list", field="order_amounts")

    if item_count < 1:
        errors.append({"field": "item_count", "message": "Item count must be at least 1"})
    if item_count > max_items:
        errors.append({"field": "item_count", "message": f"Cannot exceed {max_items} items"})
    if item_count != len(order_amounts):
        errors.append({"field": "order_amounts", "message": "Item count must match the number of order amounts"})

    amounts: list[Decimal] = []
    for amount in order_amounts:
        try:
            amounts.append(to_decimal(amount))
        except ValueError:
            errors.append({"field": "order_amounts", "message": "All order amounts must be numbers"})
            break
    if any(amount <= 0 for amount in amounts):
        errors.append({"field": "order_amounts", "message": "All order amounts must be positive"})

    if errors:
        raise ValidationError("Invalid bulk discount request", errors=errors)
    return amounts


def calculate(item_count: int, order_amounts: list, max_items: int = MAX_ORDERS_PER_GROUP) -> BulkDiscount:
    amounts = validate_request(item_count, order_amounts, max_items)
    percentage = discount_percentage_for(item_count)

    original_total = quantize(sum(amounts, Decimal("0")))
    discount_amount = percent_of(original_total, percentage)
    final_total = original_total - discount_amount

    individual = []
    for index, amount in enumerate(amounts):
        discount = percent_of(amount, percentage)
        individual.append(IndividualDiscount(index, quantize(amount), discount, quantize(amount) - discount))

    return BulkDiscount(
        discount_percentage=percentage,
        original_total=original_total,
        discount_amount=discount_amount,
        final_total=final_total,
        savings=original_total - final_total,
        individual_discounts=individual,
    )


def discount_tier_info(item_count: int) -> dict[str, object]:
    tier = tier_for(item_count)
    if tier is None:
        first = BULK_DISCOUNT_TIERS[0]
        return {
            "tier_name": "No Discount",
            "discount_percentage": 0,
            "min_items": 0,
            "max_items": first.min_items - 1,
            "next_tier_at": first.min_items,
            "next_tier_discount": first.discount_percentage,
        }

    position = BULK_DISCOUNT_TIERS.index(tier)
    next_tier = BULK_DISCOUNT_TIERS[position + 1] if position + 1 < len(BULK_DISCOUNT_TIERS) else None
    return {
        "tier_name": tier.name,
        "discount_percentage": tier.discount_percentage,
        "min_items": tier.min_items,
        "max_items": tier.max_items,
        "next_tier_at": next_tier.min_items if next_tier else None,
        "next_tier_discount": next_tier.discount_percentage if next_tier else None,
    }


def potential_savings(item_count: int, current_total: Decimal) -> dict[str, object]:
    """What the group saves now, and what it would save at the next tier."""
    info = discount_tier_info(item_count)
    result: dict[str, object] = {
        "current_discount": info["discount_percentage"],
        "current_savings": float(percent_of(current_total, info["discount_percentage"])),
    }
    if info["next_tier_at"] is not None:
        result["next_tier_at"] = info["next_tier_at"]
        result["next_tier_discount"] = info["next_tier_discount"]
        result["next_tier_potential_savings"] = float(percent_of(current_total, info["next_tier_discount"]))
    return result
