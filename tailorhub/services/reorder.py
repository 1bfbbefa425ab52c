"""Reorders: a new order derived from a completed one, with optional changes."""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from decimal import Decimal

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from ..enums import (ACTIVE_ORDER_STATUSES, EscrowStage, OrderStatus,
                     VerificationStatus)
from ..errors import Forbidden, InvalidState, NotFound, TailorUnavailable, ValidationError
from ..models import MeasurementProfile, Order, TailorProfile, utc_now
from ..money import percent_of, quantize
from . import commission, escrow

logger = logging.getLogger(__name__)

MEASUREMENT_CHANGE_FEE_PERCENTAGE = 5
DEFAULT_TURNAROUND_DAYS = 14

# Catalog price per fabric; a swap to a dearer fabric is charged the difference.
FABRIC_PRICES = {
    "polyester": Decimal("40"),
    "cotton": Decimal("50"),
    "denim": Decimal("60"),
    "linen": Decimal("75"),
    "satin": Decimal("90"),
    "wool": Decimal("100"),
    "velvet": Decimal("120"),
    "silk": Decimal("150"),
}
DEFAULT_FABRIC_PRICE = Decimal("50")

_MODIFICATION_KEYS = {"fabric_choice", "measurement_profile_id", "special_instructions", "color_choice"}


@dataclass
class ReorderModifications:
    fabric_choice: str | None = None
    measurement_profile_id: str | None = None
    special_instructions: str | None = None
    color_choice: str | None = None

    @classmethod
    def from_payload(cls, payload: object) -> ReorderModifications:
        if payload is None:
            return cls()
        if not isinstance(payload, dict):
            raise ValidationError("Modifications must be an object", field="modifications")
        unknown = set(payload) - _MODIFICATION_KEYS
        if unknown:
            raise ValidationError(f"Unknown modifications: {', '.join(sorted(unknown))}", field="modifications")
        for key, value in payload.items():
            if value is not None and not isinstance(value, str):
                raise ValidationError(f"{key} must be a string", field=key)
        return cls(**payload)

    def to_dict(self) -> dict[str, str]:
        return {key: value for key, value in self.__dict__.items() if value}


@dataclass(frozen=True)
class ReorderPricing:
    base_price: Decimal
    fabric_upcharge: Decimal
    modification_fees: Decimal
    total_amount: Decimal

    def to_dict(self) -> dict[str, float]:
        return {
            "base_price": float(self.base_price),
            "fabric_upcharge": float(self.fabric_upcharge),
            "modification_fees": float(self.modification_fees),
            "total_amount": float(self.total_amount),
        }


@dataclass(frozen=True)
class TailorAvailability:
    available: bool
    reason: str | None = None
    next_available_date: datetime | None = None

    def to_dict(self) -> dict[str, object]:
        return {
            "available": self.available,
            "reason": self.reason,
            "next_available_date": self.next_available_date.isoformat() if self.next_available_date else None,
        }


@dataclass
class ReorderPreview:
    original_order: Order
    pricing: ReorderPricing
    availability: TailorAvailability
    estimated_delivery: datetime
    warnings: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, object]:
        return {
            "original_order_id": self.original_order.id,
            "pricing": self.pricing.to_dict(),
            "escrow": escrow.calculate_breakdown(self.pricing.total_amount).to_dict(),
            "tailor": self.availability.to_dict(),
            "estimated_delivery": self.estimated_delivery.isoformat(),
            "warnings": self.warnings,
        }


def fabric_price(fabric: str | None) -> Decimal:
    if not fabric:
        return DEFAULT_FABRIC_PRICE
    return FABRIC_PRICES.get(fabric.strip().lower(), DEFAULT_FABRIC_PRICE)


def calculate_pricing(original: Order, modifications: ReorderModifications) -> ReorderPricing:
    """Price a reorder. Each fee is computed on the original total and the fees are added together."""
    base = quantize(original.total_amount)
    fabric_upcharge = Decimal("0.00")
    modification_fees = Decimal("0.00")

    if modifications.fabric_choice:
        difference = fabric_price(modifications.fabric_choice) - fabric_price(original.fabric)
        if difference > 0:
            fabric_upcharge = quantize(difference)

    if (modifications.measurement_profile_id
            and modifications.measurement_profile_id != original.measurement_profile_id):
        modification_fees = percent_of(base, MEASUREMENT_CHANGE_FEE_PERCENTAGE)

    return ReorderPricing(
        base_price=base,
        fabric_upcharge=fabric_upcharge,
        modification_fees=modification_fees,
        total_amount=base + fabric_upcharge + modification_fees,
    )


def check_tailor_availability(session: Session, tailor_id: str, now: datetime | None = None) -> TailorAvailability:
    now = now or utc_now()
    tailor = session.get(TailorProfile, tailor_id)
    if tailor is None:
        return TailorAvailability(False, "Tailor not found")
    if tailor.verification_status != VerificationStatus.VERIFIED:
        return TailorAvailability(False, "Tailor is not currently verified")
    if not tailor.is_accepting_orders:
        return TailorAvailability(False, "Tailor is not currently accepting new orders", now + timedelta(days=14))

    active_orders = session.execute(
        select(func.count(Order.id))
        .where(Order.tailor_id == tailor_id)
        .where(Order.status.in_(ACTIVE_ORDER_STATUSES))
    ).scalar_one()
    if active_orders >= tailor.max_concurrent_orders:
        return TailorAvailability(False, "Tailor is at capacity", now + timedelta(days=7))
    return TailorAvailability(True)


def _source_order(session: Session, user_id: str, order_id: str) -> Order:
    order = session.get(Order, order_id)
    if order is None:
        raise NotFound("Order not found", code="order_not_found")
    if order.customer_id != user_id:
        raise Forbidden("Order does not belong to you")
    if order.status != OrderStatus.COMPLETED:
        raise InvalidState("Only completed orders can be reordered", code="order_not_completed")
    return order


def _profile_warnings(session: Session, original: Order, modifications: ReorderModifications) -> list[str]:
    profile_id = modifications.measurement_profile_id or original.measurement_profile_id
    if not profile_id:
        return []
    profile = session.get(MeasurementProfile, profile_id)
    if profile is None or not profile.is_active:
        return ["Measurement profile no longer exists. You will need to select a new one."]
    return []


def _estimated_delivery(session: Session, tailor_id: str) -> datetime:
    tailor = session.get(TailorProfile, tailor_id)
    days = tailor.avg_turnaround_days if tailor and tailor.avg_turnaround_days else DEFAULT_TURNAROUND_DAYS
    return utc_now() + timedelta(days=days)


def preview_reorder(session: Session, user_id: str, order_id: str,
                    modifications: ReorderModifications | None = None) -> ReorderPreview:
    modifications = modifications or ReorderModifications()
    original = _source_order(session, user_id, order_id)
    return ReorderPreview(
        original_order=original,
        pricing=calculate_pricing(original, modifications),
        availability=check_tailor_availability(session, original.tailor_id),
        estimated_delivery=_estimated_delivery(session, original.tailor_id),
        warnings=_profile_warnings(session, original, modifications),
    )


def create_reorder(session: Session, user_id: str, order_id: str,
                   modifications: ReorderModifications | None = None,
                   commission_percentage: int = commission.PLATFORM_COMMISSION_PERCENTAGE) -> tuple[Order, list[str]]:
    """Create a PENDING order copying a completed one, priced with its modifications.

    Returns the new order and any non-fatal warnings. Nothing is written unless
    every check passes.
    """
    modifications = modifications or ReorderModifications()
    original = _source_order(session, user_id, order_id)
    warnings = _profile_warnings(session, original, modifications)

    availability = check_tailor_availability(session, original.tailor_id)
    if not availability.available:
        raise TailorUnavailable(f"Tailor is not available: {availability.reason}")

    pricing = calculate_pricing(original, modifications)
    # A vanished profile is left unset for the customer to pick again.
    profile_id = None if warnings else (modifications.measurement_profile_id or original.measurement_profile_id)
    reorder = Order(
        customer_id=user_id,
        tailor_id=original.tailor_id,
        measurement_profile_id=profile_id,
        garment_type=original.garment_type,
        fabric=modifications.fabric_choice or original.fabric,
        special_instructions=modifications.special_instructions or original.special_instructions,
        currency=original.currency,
        status=OrderStatus.PENDING,
        escrow_stage=EscrowStage.DEPOSIT,
        escrow_balance=Decimal("0.00"),
        rush_order=False,
        commission_percentage=commission.validate_percentage(commission_percentage),
        is_reorder=True,
        original_order_id=original.id,
        reorder_modifications=modifications.to_dict(),
        estimated_delivery=_estimated_delivery(session, original.tailor_id),
    )
    escrow.apply_breakdown(reorder, pricing.total_amount)
    session.add(reorder)
    session.flush()
    logger.info("Created reorder %s from order %s at %s", reorder.id, original.id, pricing.total_amount)
    return reorder, warnings
