"""Opening disputes and applying admin resolutions."""
from __future__ import annotations

import logging
from decimal import Decimal

from sqlalchemy import update
from sqlalchemy.orm import Session

from ..enums import (DisputeCategory, DisputeResolutionType, DisputeStatus,
                     EscrowStage, EscrowTransactionType, OrderStatus, can_transition)
from ..errors import (ConcurrentModification, Forbidden, InvalidState,
                      InvalidTransition, NotFound, ValidationError)
from ..models import Dispute, EscrowTransaction, Order, utc_now
from ..money import quantize, to_decimal
from .escrow import pay_tailor, release_reference, reverse_payouts

logger = logging.getLogger(__name__)

OUTCOME_MIN_LENGTH = 10
OUTCOME_MAX_LENGTH = 1000
REASON_CODE_MAX_LENGTH = 50
ADMIN_NOTES_MAX_LENGTH = 2000
DEFAULT_REASON_CODE = "ADMIN_DECISION"


def _guarded_order_update(session: Session, order: Order, **values) -> None:
    """Apply ``values`` only if the order's version and status are the ones this request read."""
    result = session.execute(
        update(Order)
        .where(Order.id == order.id)
        .where(Order.version == order.version)
        .where(Order.status == order.status)
        .values(version=order.version + 1, updated_at=utc_now(), **values)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        logger.warning("Dispute update conflict on order %s (version %s)", order.id, order.version)
        raise ConcurrentModification("Order was modified by another request. Please retry.")
    session.refresh(order)


def open_dispute(session: Session, order_id: str, user_id: str, category: DisputeCategory | str,
                 title: str, description: str) -> Dispute:
    try:
        category = DisputeCategory(category)
    except ValueError:
        raise ValidationError(f"Unknown dispute category: {category}", field="category") from None
    if not isinstance(title, str) or not title.strip():
        raise ValidationError("Title is required", field="title")
    if not isinstance(description, str) or len(description.strip()) < 20:
        raise ValidationError("Description must be at least 20 characters", field="description")

    order = session.get(Order, order_id)
    if order is None:
        raise NotFound("Order not found", code="order_not_found")
    if user_id not in (order.customer_id, order.tailor.user_id):
        raise Forbidden("Only the customer or tailor on this order can open a dispute.")
    if not can_transition(order.status, OrderStatus.DISPUTED):
        raise InvalidTransition(f"An order that is {order.status.value} cannot be disputed.")

    dispute = Dispute(
        order_id=order.id,
        created_by=user_id,
        category=category,
        title=title.strip(),
        description=description.strip(),
        status=DisputeStatus.OPEN,
        order_status_before=order.status,
    )
    _guarded_order_update(session, order, status=OrderStatus.DISPUTED)
    session.add(dispute)
    session.flush()
    logger.info("Dispute %s opened on order %s", dispute.id, order.id)
    return dispute


def validate_resolution(order_total: Decimal, resolution_type: object, outcome: object,
                        refund_amount: object, reason_code: object, admin_notes: object,
                        force_full_refund_total: bool = True) -> tuple[DisputeResolutionType, Decimal | None]:
    """Check a resolution request and return the resolution type and the refund to issue."""
    errors: list[dict[str, str]] = []
    try:
        resolution = DisputeResolutionType(resolution_type)
    except ValueError:
        raise ValidationError("Invalid resolution type", field="resolution_type") from None

    if not isinstance(outcome, str) or len(outcome.strip()) < OUTCOME_MIN_LENGTH:
        errors.append({"field": "outcome", "message": f"Outcome must be at least {OUTCOME_MIN_LENGTH} characters"})
    elif len(outcome.strip()) > OUTCOME_MAX_LENGTH:
        errors.append({"field": "outcome", "message": f"Outcome cannot exceed {OUTCOME_MAX_LENGTH} characters"})
    if reason_code is not None and (not isinstance(reason_code, str) or len(reason_code) > REASON_CODE_MAX_LENGTH):
        errors.append({"field": "reason_code", "message": f"Reason code cannot exceed {REASON_CODE_MAX_LENGTH} characters"})
    if admin_notes is not None and (not isinstance(admin_notes, str) or len(admin_notes) > ADMIN_NOTES_MAX_LENGTH):
        errors.append({"field": "admin_notes", "message": f"Admin notes cannot exceed {ADMIN_NOTES_MAX_LENGTH} characters"})

    refund: Decimal | None = None
    if resolution == DisputeResolutionType.FULL_REFUND and force_full_refund_total:
        refund = quantize(order_total)
    elif resolution.is_refund:
        if refund_amount is None:
            errors.append({"field": "refund_amount", "message": "Refund amount is required for refund resolutions"})
        else:
            try:
                refund = quantize(to_decimal(refund_amount))
            except ValueError:
                errors.append({"field": "refund_amount", "message": "Refund amount must be a number"})
            else:
                if refund <= 0:
                    errors.append({"field": "refund_amount", "message": "Refund amount must be greater than zero"})
                elif refund > order_total:
                    errors.append({"field": "refund_amount", "message": "Refund amount cannot exceed order amount"})

    if errors:
        raise ValidationError("Invalid resolution request", errors=errors)
    return resolution, refund


def _order_effects(dispute: Dispute, resolution: DisputeResolutionType) -> dict[str, object]:
    now = utc_now()
    if resolution == DisputeResolutionType.FULL_REFUND:
        return {"status": OrderStatus.CANCELLED, "cancelled_at": now,
                "escrow_balance": Decimal("0.00"), "escrow_stage": EscrowStage.RELEASED}
    if resolution in (DisputeResolutionType.PARTIAL_REFUND, DisputeResolutionType.ORDER_COMPLETION):
        return {"status": OrderStatus.COMPLETED, "completed_at": now,
                "escrow_balance": Decimal("0.00"), "escrow_stage": EscrowStage.RELEASED}
    return {"status": dispute.order_status_before or OrderStatus.IN_PROGRESS}


def resolve_dispute(session: Session, gateway, dispute_id: str, *, resolution_type: object, outcome: object,
                    refund_amount: object = None, reason_code: object = None, admin_notes: object = None,
                    resolved_by: str, force_full_refund_total: bool = True) -> Dispute:
    """Validate and apply an admin resolution.

    A partial refund is paid from what escrow still holds and is capped at that
    balance; the rest of the held balance goes to the tailor. A full refund that
    exceeds the held balance is funded by reversing the tailor's earlier payouts,
    so the money paid out and refunded never adds up to more than the order total.
    """
    dispute = session.get(Dispute, dispute_id)
    if dispute is None:
        raise NotFound("Dispute not found", code="dispute_not_found")
    if dispute.status in (DisputeStatus.RESOLVED, DisputeStatus.CLOSED):
        raise InvalidState("Dispute is already resolved", code="dispute_already_resolved")

    order = dispute.order
    resolution, refund = validate_resolution(
        order.total_amount, resolution_type, outcome, refund_amount, reason_code, admin_notes,
        force_full_refund_total,
    )

    held = order.escrow_balance
    previous_stage = order.escrow_stage
    if resolution == DisputeResolutionType.PARTIAL_REFUND:
        if held <= 0:
            raise ValidationError("Invalid resolution request", errors=[{
                "field": "refund_amount",
                "message": "Nothing is left in escrow for a partial refund",
            }])
        refund = min(refund, held)

    _guarded_order_update(session, order, **_order_effects(dispute, resolution))

    if refund:
        clawback = refund - min(refund, held)
        if clawback > 0:
            reverse_payouts(session, gateway, order, clawback, resolved_by,
                            f"Dispute {dispute.id}: payouts reversed to fund refund")
        transaction = EscrowTransaction(
            order_id=order.id,
            transaction_type=EscrowTransactionType.REFUND,
            amount=refund,
            reference=release_reference(order.id, EscrowTransactionType.REFUND),
            actor_id=resolved_by,
            notes=f"Dispute {dispute.id}: {resolution.value}",
        )
        session.add(transaction)
        session.flush()
        transaction.gateway_id = gateway.refund(
            refund, transaction.reference, payment_intent_id=order.payment_intent_id, order_id=order.id,
        )

    leftover = held - min(refund or Decimal("0.00"), held)
    if leftover > 0 and resolution != DisputeResolutionType.NO_ACTION:
        pay_tailor(
            session, gateway, order, EscrowTransactionType.FINAL_RELEASE, leftover,
            previous_stage, EscrowStage.RELEASED, resolved_by,
            f"Dispute {dispute.id}: remaining escrow released",
        )

    dispute.status = DisputeStatus.RESOLVED
    dispute.resolution_type = resolution
    dispute.outcome = outcome.strip()
    dispute.refund_amount = refund
    dispute.reason_code = reason_code or DEFAULT_REASON_CODE
    dispute.admin_notes = admin_notes
    dispute.resolved_by = resolved_by
    dispute.resolved_at = utc_now()
    session.flush()
    logger.info("Dispute %s resolved as %s (refund %s)", dispute.id, resolution.value, refund)
    return dispute
