"""Escrow stage engine.

An order's total is collected into escrow when the order is placed and paid out
to the tailor in three portions: the deposit when the tailor accepts the order,
the fitting portion when the customer approves the fitting, and the final
portion when the customer confirms delivery.

    DEPOSIT --(approve FITTING)--> FITTING --(approve FINAL)--> FINAL --(complete)--> RELEASED

Every mutation is a conditional update on the order's ``version`` and current
stage, so two racing approvals can never both succeed. Each payout transfers the
stage amount less the platform commission; the ledger keeps the gross amount
and the commission withheld.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from decimal import Decimal

from sqlalchemy import select, update
from sqlalchemy.orm import Session

from ..enums import EscrowStage, EscrowTransactionType, OrderStatus
from ..errors import (AlreadyApproved, ConcurrentModification, Forbidden,
                      InvalidState, InvalidTransition, NotFound, ServiceError, ValidationError)
from ..models import EscrowTransaction, Order, utc_now
from ..money import percent_of, quantize
from .commission import PAYOUT_TYPES, calculate_commission

logger = logging.getLogger(__name__)

DEPOSIT_PERCENTAGE = 30
FITTING_PERCENTAGE = 30
FINAL_PERCENTAGE = 40

APPROVABLE_STAGES = (EscrowStage.FITTING, EscrowStage.FINAL)

# Milestones can only be approved while the tailor is working on the order.
MILESTONE_STATUSES = (
    OrderStatus.ACCEPTED,
    OrderStatus.IN_PROGRESS,
    OrderStatus.READY_FOR_FITTING,
    OrderStatus.DELIVERED,
)

AUTO_APPROVAL_HOURS = 48
AUTO_APPROVAL_NOTE = "Automatically approved after 48-hour deadline"

_RELEASE_TYPES = {
    EscrowStage.FITTING: EscrowTransactionType.FITTING_RELEASE,
    EscrowStage.FINAL: EscrowTransactionType.FINAL_RELEASE,
}


@dataclass(frozen=True)
class EscrowBreakdown:
    total: Decimal
    deposit: Decimal
    fitting: Decimal
    final: Decimal

    def to_dict(self) -> dict[str, float]:
        return {
            "total": float(self.total),
            "deposit": float(self.deposit),
            "fitting": float(self.fitting),
            "final": float(self.final),
        }


@dataclass(frozen=True)
class MilestoneApproval:
    stage: EscrowStage
    new_stage: EscrowStage
    amount_released: Decimal
    commission: Decimal
    tailor_payout: Decimal
    transaction_id: str

    def to_dict(self) -> dict[str, object]:
        return {
            "stage": self.stage.value,
            "new_stage": self.new_stage.value,
            "amount_released": float(self.amount_released),
            "commission": float(self.commission),
            "tailor_payout": float(self.tailor_payout),
            "transaction_id": self.transaction_id,
        }


@dataclass
class AutoApprovalReport:
    processed: int = 0
    auto_approved: int = 0
    failed: int = 0
    approved_order_ids: list[str] = field(default_factory=list)
    errors: list[dict[str, str]] = field(default_factory=list)

    def to_dict(self) -> dict[str, object]:
        return {
            "processed": self.processed,
            "auto_approved": self.auto_approved,
            "failed": self.failed,
            "approved_order_ids": self.approved_order_ids,
            "errors": self.errors,
        }


def calculate_breakdown(total: Decimal) -> EscrowBreakdown:
    """Split ``total`` 30/30/40. The final portion absorbs rounding so the parts always sum to the total."""
    total = quantize(total)
    deposit = percent_of(total, DEPOSIT_PERCENTAGE)
    fitting = percent_of(total, FITTING_PERCENTAGE)
    return EscrowBreakdown(total=total, deposit=deposit, fitting=fitting, final=total - deposit - fitting)


def stage_amount(total: Decimal, stage: EscrowStage) -> Decimal:
    breakdown = calculate_breakdown(total)
    return {
        EscrowStage.DEPOSIT: breakdown.deposit,
        EscrowStage.FITTING: breakdown.fitting,
        EscrowStage.FINAL: breakdown.final,
        EscrowStage.RELEASED: Decimal("0.00"),
    }[stage]


def apply_breakdown(order: Order, total: Decimal) -> None:
    """Set the order total and its escrow portions on a not-yet-persisted order."""
    breakdown = calculate_breakdown(total)
    order.total_amount = breakdown.total
    order.deposit_amount = breakdown.deposit
    order.fitting_amount = breakdown.fitting
    order.final_amount = breakdown.final


def release_reference(order_id: str, transaction_type: EscrowTransactionType) -> str:
    return f"{order_id}:{transaction_type.value.lower()}"


def reversal_reference(order_id: str, payout_type: EscrowTransactionType) -> str:
    return f"{order_id}:reversal:{payout_type.value.lower()}"


def _conditional_update(session: Session, order: Order, expected_stage: EscrowStage, **values) -> None:
    result = session.execute(
        update(Order)
        .where(Order.id == order.id)
        .where(Order.version == order.version)
        .where(Order.escrow_stage == expected_stage)
        .values(version=order.version + 1, updated_at=utc_now(), **values)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        logger.warning("Escrow update conflict on order %s (version %s)", order.id, order.version)
        raise ConcurrentModification("Order was modified by another request. Please retry.")
    session.refresh(order)


def _record(session: Session, order: Order, transaction_type: EscrowTransactionType, amount: Decimal,
            from_stage: EscrowStage | None, to_stage: EscrowStage | None,
            actor_id: str | None, notes: str | None, *, commission_amount: Decimal = Decimal("0.00"),
            reference: str | None = None) -> EscrowTransaction:
    transaction = EscrowTransaction(
        order_id=order.id,
        transaction_type=transaction_type,
        amount=amount,
        commission_amount=commission_amount,
        from_stage=from_stage,
        to_stage=to_stage,
        reference=reference or release_reference(order.id, transaction_type),
        actor_id=actor_id,
        notes=notes,
    )
    session.add(transaction)
    session.flush()
    return transaction


def pay_tailor(session: Session, gateway, order: Order, transaction_type: EscrowTransactionType,
               amount: Decimal, from_stage: EscrowStage | None, to_stage: EscrowStage | None,
               actor_id: str | None, notes: str | None) -> EscrowTransaction:
    """Record a payout of ``amount`` and transfer it to the tailor less the platform commission."""
    split = calculate_commission(amount, order.commission_percentage)
    transaction = _record(
        session, order, transaction_type, split.gross, from_stage, to_stage, actor_id, notes,
        commission_amount=split.commission,
    )
    if split.net > 0:
        transaction.gateway_id = gateway.release(
            split.net, transaction.reference, destination=order.tailor.stripe_account_id, order_id=order.id,
        )
    logger.info("Paid %s to tailor on order %s (commission %s)", split.net, order.id, split.commission)
    return transaction


def reverse_payouts(session: Session, gateway, order: Order, amount: Decimal, actor_id: str | None,
                    notes: str | None) -> list[EscrowTransaction]:
    """Take ``amount`` of already-paid stage money back from the tailor, latest payout first.

    Each reversal returns the tailor's net share of the slice it unwinds; the
    commission on that slice comes back to the platform with it.
    """
    payouts = session.execute(
        select(EscrowTransaction)
        .where(EscrowTransaction.order_id == order.id)
        .where(EscrowTransaction.transaction_type.in_(PAYOUT_TYPES))
    ).scalars().all()
    payouts = sorted(payouts, key=lambda tx: PAYOUT_TYPES.index(tx.transaction_type), reverse=True)

    remaining = quantize(amount)
    reversals: list[EscrowTransaction] = []
    for payout in payouts:
        if remaining <= 0:
            break
        portion = min(remaining, payout.amount)
        if portion == payout.amount:
            commission = payout.commission_amount
        else:
            commission = percent_of(portion, order.commission_percentage)
        transaction = _record(
            session, order, EscrowTransactionType.REVERSAL, portion, None, None, actor_id, notes,
            commission_amount=commission, reference=reversal_reference(order.id, payout.transaction_type),
        )
        net = portion - commission
        if net > 0:
            if not payout.gateway_id:
                raise InvalidState(f"Payout {payout.reference} has no transfer on record to reverse.")
            transaction.gateway_id = gateway.reverse(
                net, transaction.reference, transfer_id=payout.gateway_id, order_id=order.id,
            )
        reversals.append(transaction)
        remaining -= portion

    if remaining > 0:
        raise InvalidState("Cannot reverse more than the tailor has been paid for this order.")
    logger.info("Reversed %s of payouts on order %s", quantize(amount), order.id)
    return reversals


def hold_order_funds(session: Session, gateway, order: Order, actor_id: str) -> EscrowTransaction:
    """Collect the full order total into escrow at order creation."""
    order.escrow_balance = order.total_amount
    order.escrow_stage = EscrowStage.DEPOSIT
    session.flush()
    transaction = _record(
        session, order, EscrowTransactionType.HOLD, order.total_amount,
        None, EscrowStage.DEPOSIT, actor_id, "Order total held in escrow",
    )
    order.payment_intent_id = gateway.hold(
        order.total_amount, transaction.reference, customer_id=order.customer_id, order_id=order.id,
    )
    transaction.gateway_id = order.payment_intent_id
    return transaction


def release_deposit(session: Session, gateway, order: Order, actor_id: str) -> EscrowTransaction:
    """Pay the deposit portion to the tailor once they accept the order."""
    if order.deposit_released:
        raise AlreadyApproved("Deposit has already been released for this order.")
    if order.escrow_stage != EscrowStage.DEPOSIT:
        raise InvalidTransition(f"Cannot release deposit at escrow stage {order.escrow_stage.value}.")

    amount = order.deposit_amount
    _conditional_update(
        session, order, EscrowStage.DEPOSIT,
        escrow_balance=order.escrow_balance - amount,
        deposit_released=True,
    )
    transaction = pay_tailor(
        session, gateway, order, EscrowTransactionType.DEPOSIT_RELEASE, amount,
        EscrowStage.DEPOSIT, EscrowStage.DEPOSIT, actor_id, "Deposit released on order acceptance",
    )
    logger.info("Released deposit %s for order %s", amount, order.id)
    return transaction


def _parse_stage(stage: EscrowStage | str) -> EscrowStage:
    try:
        stage = EscrowStage(stage)
    except ValueError:
        raise ValidationError(f"Unknown escrow stage: {stage}", field="stage") from None
    if stage not in APPROVABLE_STAGES:
        raise ValidationError("Only the FITTING and FINAL milestones can be approved.", field="stage")
    return stage


def _check_next_milestone(order: Order, stage: EscrowStage) -> None:
    current = order.escrow_stage
    if stage.position <= current.position:
        raise AlreadyApproved(f"The {stage.value} milestone has already been approved.")
    if stage != current.successor():
        raise InvalidTransition(
            f"Invalid stage transition. Cannot approve {stage.value} while escrow is at {current.value}."
        )
    if order.status not in MILESTONE_STATUSES:
        raise InvalidTransition(f"Milestones cannot be approved while the order is {order.status.value}.")


def _approve(session: Session, gateway, order: Order, stage: EscrowStage, actor_id: str | None,
             notes: str | None) -> MilestoneApproval:
    _check_next_milestone(order, stage)
    current = order.escrow_stage
    amount = order.fitting_amount if stage == EscrowStage.FITTING else order.final_amount
    new_balance = order.escrow_balance - amount
    if new_balance < 0:
        raise InvalidState("Escrow balance is insufficient for this release.")

    values: dict[str, object] = {
        "escrow_stage": stage,
        "escrow_balance": new_balance,
        "milestone_submitted_stage": None,
        "milestone_submitted_at": None,
    }
    if stage == EscrowStage.FINAL:
        values["status"] = OrderStatus.DELIVERED
        values["delivered_at"] = utc_now()
    _conditional_update(session, order, current, **values)

    transaction = pay_tailor(
        session, gateway, order, _RELEASE_TYPES[stage], amount, current, stage,
        actor_id, notes or f"{stage.value} milestone approved",
    )
    logger.info("Approved %s milestone for order %s, released %s", stage.value, order.id, amount)
    return MilestoneApproval(
        stage=stage,
        new_stage=order.escrow_stage,
        amount_released=amount,
        commission=transaction.commission_amount,
        tailor_payout=amount - transaction.commission_amount,
        transaction_id=transaction.id,
    )


def approve_milestone(session: Session, gateway, order_id: str, stage: EscrowStage | str,
                      approved_by: str, notes: str | None = None) -> MilestoneApproval:
    """Approve the FITTING or FINAL milestone and release that stage's funds to the tailor."""
    stage = _parse_stage(stage)
    order = session.get(Order, order_id)
    if order is None:
        raise NotFound("Order not found", code="order_not_found")
    if order.customer_id != approved_by:
        raise Forbidden("Only the customer who placed this order can approve its milestones.")
    return _approve(session, gateway, order, stage, approved_by, notes)


def submit_milestone(session: Session, order_id: str, user_id: str, stage: EscrowStage | str,
                     now: datetime | None = None) -> Order:
    """Tailor asks the customer to approve the next milestone, starting the auto-approval clock."""
    stage = _parse_stage(stage)
    order = session.get(Order, order_id)
    if order is None:
        raise NotFound("Order not found", code="order_not_found")
    if order.tailor.user_id != user_id:
        raise Forbidden("Only the tailor on this order can submit its milestones.")
    _check_next_milestone(order, stage)
    if order.milestone_submitted_stage == stage:
        raise AlreadyApproved(f"The {stage.value} milestone is already awaiting approval.")

    _conditional_update(
        session, order, order.escrow_stage,
        milestone_submitted_stage=stage,
        milestone_submitted_at=now or utc_now(),
    )
    logger.info("Tailor submitted %s milestone for order %s", stage.value, order.id)
    return order


def auto_approve_due_milestones(session: Session, gateway, now: datetime | None = None,
                                window_hours: int = AUTO_APPROVAL_HOURS) -> AutoApprovalReport:
    """Approve every submitted milestone the customer has not answered within ``window_hours``.

    Each order is committed on its own; a failure is rolled back, logged and
    counted without stopping the rest of the batch.
    """
    deadline = (now or utc_now()) - timedelta(hours=window_hours)
    due = session.execute(
        select(Order.id, Order.milestone_submitted_stage)
        .where(Order.milestone_submitted_stage.is_not(None))
        .where(Order.milestone_submitted_at <= deadline)
        .where(Order.status.in_(MILESTONE_STATUSES))
        .order_by(Order.milestone_submitted_at)
    ).all()

    report = AutoApprovalReport()
    for order_id, stage in due:
        report.processed += 1
        try:
            order = session.get(Order, order_id)
            _approve(session, gateway, order, stage, None, AUTO_APPROVAL_NOTE)
            session.commit()
        except ServiceError as exc:
            session.rollback()
            report.failed += 1
            report.errors.append({"order_id": order_id, "error": exc.message})
            logger.warning("Auto-approval failed for order %s: %s", order_id, exc.message)
            continue
        report.auto_approved += 1
        report.approved_order_ids.append(order_id)

    logger.info("Auto-approval processed %s milestones, approved %s", report.processed, report.auto_approved)
    return report


def close_escrow(session: Session, order: Order) -> None:
    """Mark a fully paid-out escrow as RELEASED."""
    if order.escrow_stage == EscrowStage.RELEASED:
        raise AlreadyApproved("Escrow has already been released for this order.")
    if order.escrow_stage != EscrowStage.FINAL or order.escrow_balance != 0:
        raise InvalidTransition("Escrow can only be closed after the FINAL milestone is approved.")
    _conditional_update(session, order, EscrowStage.FINAL, escrow_stage=EscrowStage.RELEASED)


def released_total(order: Order) -> Decimal:
    released = order.deposit_amount if order.deposit_released else Decimal("0.00")
    if order.escrow_stage.position >= EscrowStage.FITTING.position:
        released += order.fitting_amount
    if order.escrow_stage.position >= EscrowStage.FINAL.position:
        released += order.final_amount
    return released


def validate_escrow_state(order: Order) -> list[str]:
    """Return the consistency problems found on an order's escrow position."""
    issues: list[str] = []
    if order.escrow_balance < 0:
        issues.append("Escrow balance is negative")
    if order.deposit_amount + order.fitting_amount + order.final_amount != order.total_amount:
        issues.append("Escrow portions do not sum to the order total")
    if order.escrow_stage == EscrowStage.RELEASED:
        if order.escrow_balance != 0:
            issues.append("Released escrow still holds funds")
        return issues
    if order.status == OrderStatus.CANCELLED:
        return issues
    expected = order.total_amount - released_total(order)
    if order.escrow_balance != expected:
        issues.append(f"Escrow balance {order.escrow_balance} does not match expected {expected}")
    if order.escrow_stage != EscrowStage.DEPOSIT and not order.deposit_released:
        issues.append("Milestone approved before the deposit was released")
    return issues
