"""Order lifecycle: placement, acceptance, progress updates and completion."""
from __future__ import annotations

import logging
from datetime import date, timedelta

from sqlalchemy.orm import Session

from ..enums import (DeliveryStrategy, EscrowStage, OrderStatus, PaymentMode,
                     VerificationStatus, can_transition)
from ..errors import Forbidden, InvalidTransition, NotFound, TailorUnavailable, ValidationError
from ..models import GroupOrder, MeasurementProfile, Order, TailorProfile, utc_now
from ..money import to_decimal
from . import bulk_discount, commission, escrow, loyalty
from .reorder import check_tailor_availability

logger = logging.getLogger(__name__)

MIN_GROUP_PARTICIPANTS = 2
RUSH_TURNAROUND_DAYS = 7

# Progress updates a tailor may make directly; the rest go through escrow or disputes.
TAILOR_STATUS_UPDATES = (OrderStatus.IN_PROGRESS, OrderStatus.READY_FOR_FITTING)


def _parse_amount(value: object, field: str = "total_amount"):
    try:
        amount = to_decimal(value)
    except ValueError:
        raise ValidationError("Amount must be a number", field=field) from None
    if amount <= 0:
        raise ValidationError("Amount must be greater than zero", field=field)
    return amount


def _bookable_tailor(session: Session, tailor_id: str) -> TailorProfile:
    tailor = session.get(TailorProfile, tailor_id)
    if tailor is None:
        raise NotFound("Tailor not found", code="tailor_not_found")
    availability = check_tailor_availability(session, tailor_id)
    if not availability.available:
        raise TailorUnavailable(f"Tailor is not available: {availability.reason}")
    return tailor


def _check_profile(session: Session, user_id: str, profile_id: str | None) -> None:
    if profile_id is None:
        return
    profile = session.get(MeasurementProfile, profile_id)
    if profile is None or not profile.is_active or profile.user_id != user_id:
        raise ValidationError("Measurement profile not found", field="measurement_profile_id")


def _new_order(tailor: TailorProfile, customer_id: str, garment_type: object, total, *,
               fabric: str | None, measurement_profile_id: str | None,
               special_instructions: str | None, rush_order: bool, currency: str,
               group_order_id: str | None = None,
               commission_percentage: int = commission.PLATFORM_COMMISSION_PERCENTAGE) -> Order:
    if not isinstance(garment_type, str) or not garment_type.strip():
        raise ValidationError("Garment type is required", field="garment_type")
    turnaround = RUSH_TURNAROUND_DAYS if rush_order else tailor.avg_turnaround_days
    order = Order(
        customer_id=customer_id,
        tailor_id=tailor.id,
        group_order_id=group_order_id,
        measurement_profile_id=measurement_profile_id,
        garment_type=garment_type.strip(),
        fabric=fabric,
        special_instructions=special_instructions,
        currency=currency,
        status=OrderStatus.PENDING,
        escrow_stage=EscrowStage.DEPOSIT,
        commission_percentage=commission.validate_percentage(commission_percentage),
        rush_order=bool(rush_order),
        estimated_delivery=utc_now() + timedelta(days=turnaround),
    )
    escrow.apply_breakdown(order, total)
    return order


def create_order(session: Session, gateway, customer_id: str, tailor_id: str, garment_type: object,
                 total_amount: object, *, fabric: str | None = None,
                 measurement_profile_id: str | None = None, special_instructions: str | None = None,
                 rush_order: bool = False, currency: str = "GHS",
                 commission_percentage: int = commission.PLATFORM_COMMISSION_PERCENTAGE) -> Order:
    """Place an order with a tailor and collect its total into escrow."""
    total = _parse_amount(total_amount)
    tailor = _bookable_tailor(session, tailor_id)
    if tailor.user_id == customer_id:
        raise Forbidden("Tailors cannot place orders with themselves.")
    _check_profile(session, customer_id, measurement_profile_id)

    order = _new_order(
        tailor, customer_id, garment_type, total,
        fabric=fabric, measurement_profile_id=measurement_profile_id,
        special_instructions=special_instructions, rush_order=rush_order, currency=currency,
        commission_percentage=commission_percentage,
    )
    session.add(order)
    session.flush()
    escrow.hold_order_funds(session, gateway, order, customer_id)
    logger.info("Order %s placed with tailor %s for %s", order.id, tailor.id, order.total_amount)
    return order


def _tailor_order(session: Session, order_id: str, user_id: str) -> Order:
    order = session.get(Order, order_id)
    if order is None:
        raise NotFound("Order not found", code="order_not_found")
    if order.tailor.user_id != user_id:
        raise Forbidden("Only the tailor on this order can do that.")
    return order


def accept_order(session: Session, gateway, order_id: str, user_id: str) -> Order:
    """Tailor accepts a pending order; the deposit is paid out."""
    order = _tailor_order(session, order_id, user_id)
    if order.tailor.verification_status != VerificationStatus.VERIFIED:
        raise Forbidden("Only verified tailors can accept orders.")
    if not can_transition(order.status, OrderStatus.ACCEPTED):
        raise InvalidTransition(f"An order that is {order.status.value} cannot be accepted.")

    escrow.release_deposit(session, gateway, order, user_id)
    order.status = OrderStatus.ACCEPTED
    order.accepted_at = utc_now()
    session.flush()
    return order


def update_order_status(session: Session, order_id: str, user_id: str, status: OrderStatus | str) -> Order:
    try:
        status = OrderStatus(status)
    except ValueError:
        raise ValidationError(f"Unknown order status: {status}", field="status") from None
    if status not in TAILOR_STATUS_UPDATES:
        raise ValidationError(
            "Tailors can only move an order to IN_PROGRESS or READY_FOR_FITTING.", field="status",
        )
    order = _tailor_order(session, order_id, user_id)
    if not can_transition(order.status, status):
        raise InvalidTransition(f"Cannot move order from {order.status.value} to {status.value}.")
    order.status = status
    session.flush()
    return order


def complete_order(session: Session, order_id: str, user_id: str,
                   settings: loyalty.LoyaltySettings = loyalty.LoyaltySettings()) -> tuple[Order, loyalty.PointsAward]:
    """Customer confirms a delivered order: escrow closes and loyalty points are earned."""
    order = session.get(Order, order_id)
    if order is None:
        raise NotFound("Order not found", code="order_not_found")
    if order.customer_id != user_id:
        raise Forbidden("Only the customer who placed this order can complete it.")
    if not can_transition(order.status, OrderStatus.COMPLETED) or order.status == OrderStatus.DISPUTED:
        raise InvalidTransition(f"An order that is {order.status.value} cannot be completed.")

    escrow.close_escrow(session, order)
    order.status = OrderStatus.COMPLETED
    order.completed_at = utc_now()
    session.flush()

    award = loyalty.award_points_for_order(
        session, user_id, order.id, order.total_amount, order.tailor_id,
        is_group_order=order.group_order_id is not None, settings=settings,
    )
    logger.info("Order %s completed", order.id)
    return order, award


def _parse_event_date(value: object) -> date | None:
    if value in (None, ""):
        return None
    try:
        return date.fromisoformat(value)
    except (TypeError, ValueError):
        raise ValidationError("Event date must be an ISO date", field="event_date") from None


def create_group_order(session: Session, gateway, organizer_id: str, tailor_id: str, *,
                       group_name: object, event_type: object, items: object,
                       event_date: object = None, shared_fabric: bool = False,
                       fabric_details: dict | None = None,
                       payment_mode: PaymentMode | str = PaymentMode.SINGLE_PAYER,
                       delivery_strategy: DeliveryStrategy | str = DeliveryStrategy.ALL_TOGETHER,
                       max_items: int = bulk_discount.MAX_ORDERS_PER_GROUP,
                       currency: str = "GHS",
                       commission_percentage: int = commission.PLATFORM_COMMISSION_PERCENTAGE) -> GroupOrder:
    """Create a group order and one discounted order per garment.

    ``items`` is a list of ``{"garment_type", "amount", "measurement_profile_id"?, "fabric"?}``.
    """
    if not isinstance(group_name, str) or not group_name.strip():
        raise ValidationError("Group name is required", field="group_name")
    if not isinstance(event_type, str) or not event_type.strip():
        raise ValidationError("Event type is required", field="event_type")
    if not isinstance(items, list) or not all(isinstance(item, dict) for item in items):
        raise ValidationError("Items must be a list of objects", field="items")
    if len(items) < MIN_GROUP_PARTICIPANTS:
        raise ValidationError(f"A group order needs at least {MIN_GROUP_PARTICIPANTS} items", field="items")
    try:
        payment_mode = PaymentMode(payment_mode)
        delivery_strategy = DeliveryStrategy(delivery_strategy)
    except ValueError as exc:
        raise ValidationError(str(exc), field="payment_mode") from None

    discount = bulk_discount.calculate(len(items), [item.get("amount") for item in items], max_items)
    tailor = _bookable_tailor(session, tailor_id)
    for item in items:
        _check_profile(session, organizer_id, item.get("measurement_profile_id"))

    group = GroupOrder(
        organizer_id=organizer_id,
        tailor_id=tailor.id,
        group_name=group_name.strip(),
        event_type=event_type.strip(),
        event_date=_parse_event_date(event_date),
        shared_fabric=bool(shared_fabric),
        fabric_details=fabric_details,
        payment_mode=payment_mode,
        delivery_strategy=delivery_strategy,
        participant_count=len(items),
        discount_percentage=discount.discount_percentage,
        original_total=discount.original_total,
        final_total=discount.final_total,
        currency=currency,
    )
    session.add(group)
    session.flush()

    for item, priced in zip(items, discount.individual_discounts):
        order = _new_order(
            tailor, organizer_id, item.get("garment_type"), priced.final_amount,
            fabric=item.get("fabric"), measurement_profile_id=item.get("measurement_profile_id"),
            special_instructions=item.get("special_instructions"), rush_order=False,
            currency=currency, group_order_id=group.id,
            commission_percentage=commission_percentage,
        )
        session.add(order)
        session.flush()
        escrow.hold_order_funds(session, gateway, order, organizer_id)

    logger.info(
        "Group order %s created with %s items at %s%% discount",
        group.id, len(items), discount.discount_percentage,
    )
    return group
