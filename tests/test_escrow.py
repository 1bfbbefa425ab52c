"""Tests for the escrow stage engine."""
from __future__ import annotations

from datetime import timedelta
from decimal import Decimal

import pytest
from sqlalchemy import select, update

from tailorhub.enums import EscrowStage, EscrowTransactionType, OrderStatus
from tailorhub.errors import (AlreadyApproved, ConcurrentModification, Forbidden,
                              InvalidState, InvalidTransition, NotFound, ValidationError)
from tailorhub.models import EscrowTransaction, Order, utc_now
from tailorhub.services import escrow


def test_breakdown_splits_thirty_thirty_forty() -> None:
    breakdown = escrow.calculate_breakdown(Decimal("1000"))
    assert breakdown.deposit == Decimal("300.00")
    assert breakdown.fitting == Decimal("300.00")
    assert breakdown.final == Decimal("400.00")


def test_breakdown_final_portion_absorbs_rounding() -> None:
    breakdown = escrow.calculate_breakdown(Decimal("100.05"))
    assert breakdown.deposit == Decimal("30.02")
    assert breakdown.fitting == Decimal("30.02")
    assert breakdown.final == Decimal("40.01")
    assert breakdown.deposit + breakdown.fitting + breakdown.final == Decimal("100.05")


def test_stage_amount_released_stage_is_zero() -> None:
    assert escrow.stage_amount(Decimal("500"), EscrowStage.FINAL) == Decimal("200.00")
    assert escrow.stage_amount(Decimal("500"), EscrowStage.RELEASED) == Decimal("0.00")


def test_approve_fitting_releases_thirty_percent(session, gateway, make_user, make_tailor, make_order) -> None:
    customer = make_user()
    order = make_order(customer, make_tailor(), "1000.00", status=OrderStatus.READY_FOR_FITTING)
    assert order.escrow_balance == Decimal("700.00")

    approval = escrow.approve_milestone(session, gateway, order.id, "FITTING", customer.id)

    assert approval.stage == EscrowStage.FITTING
    assert approval.new_stage == EscrowStage.FITTING
    assert approval.amount_released == Decimal("300.00")
    assert approval.commission == Decimal("60.00")
    assert approval.tailor_payout == Decimal("240.00")
    assert order.escrow_stage == EscrowStage.FITTING
    assert order.escrow_balance == Decimal("400.00")
    assert order.version == 2
    assert gateway.amounts("release") == [Decimal("240.00")]
    transaction = session.get(EscrowTransaction, approval.transaction_id)
    assert transaction.transaction_type == EscrowTransactionType.FITTING_RELEASE
    assert transaction.reference == f"{order.id}:fitting_release"
    assert transaction.amount == Decimal("300.00")
    assert transaction.commission_amount == Decimal("60.00")


def test_approve_final_releases_remainder_and_marks_delivered(session, gateway, make_user, make_tailor,
                                                             make_order) -> None:
    customer = make_user()
    order = make_order(customer, make_tailor(), "1000.00", status=OrderStatus.IN_PROGRESS,
                       stage=EscrowStage.FITTING)

    approval = escrow.approve_milestone(session, gateway, order.id, EscrowStage.FINAL, customer.id)

    assert approval.amount_released == Decimal("400.00")
    assert order.escrow_balance == Decimal("0.00")
    assert order.status == OrderStatus.DELIVERED
    assert order.delivered_at is not None


def test_approve_final_before_fitting_is_invalid_transition(session, gateway, make_user, make_tailor,
                                                           make_order) -> None:
    customer = make_user()
    order = make_order(customer, make_tailor(), status=OrderStatus.IN_PROGRESS)

    with pytest.raises(InvalidTransition):
        escrow.approve_milestone(session, gateway, order.id, "FINAL", customer.id)
    assert order.escrow_stage == EscrowStage.DEPOSIT
    assert gateway.calls == []


def test_double_approval_is_rejected_without_second_payment(session, gateway, make_user, make_tailor,
                                                           make_order) -> None:
    customer = make_user()
    order = make_order(customer, make_tailor(), status=OrderStatus.READY_FOR_FITTING)
    escrow.approve_milestone(session, gateway, order.id, "FITTING", customer.id)

    with pytest.raises(AlreadyApproved):
        escrow.approve_milestone(session, gateway, order.id, "FITTING", customer.id)
    assert len(gateway.amounts("release")) == 1


def test_deposit_stage_cannot_be_approved(session, gateway, make_user, make_tailor, make_order) -> None:
    customer = make_user()
    order = make_order(customer, make_tailor())
    with pytest.raises(ValidationError):
        escrow.approve_milestone(session, gateway, order.id, "DEPOSIT", customer.id)


def test_unknown_stage_is_validation_error(session, gateway, make_user, make_tailor, make_order) -> None:
    customer = make_user()
    order = make_order(customer, make_tailor())
    with pytest.raises(ValidationError):
        escrow.approve_milestone(session, gateway, order.id, "HALFWAY", customer.id)


def test_only_the_customer_can_approve(session, gateway, make_user, make_tailor, make_order) -> None:
    order = make_order(make_user(), make_tailor(), status=OrderStatus.READY_FOR_FITTING)
    with pytest.raises(Forbidden):
        escrow.approve_milestone(session, gateway, order.id, "FITTING", make_user(name="Stranger").id)


def test_missing_order_is_not_found(session, gateway) -> None:
    with pytest.raises(NotFound):
        escrow.approve_milestone(session, gateway, "missing", "FITTING", "someone")


@pytest.mark.parametrize("status", [OrderStatus.DISPUTED, OrderStatus.CANCELLED, OrderStatus.PENDING])
def test_inactive_orders_cannot_advance(session, gateway, make_user, make_tailor, make_order, status) -> None:
    customer = make_user()
    order = make_order(customer, make_tailor(), status=status)
    with pytest.raises(InvalidTransition):
        escrow.approve_milestone(session, gateway, order.id, "FITTING", customer.id)


def test_stale_version_raises_concurrent_modification(session, gateway, make_user, make_tailor,
                                                      make_order) -> None:
    customer = make_user()
    order = make_order(customer, make_tailor(), status=OrderStatus.READY_FOR_FITTING)
    # Another request bumps the version behind this session's back.
    session.execute(
        update(Order)
        .where(Order.id == order.id)
        .values(version=Order.version + 1)
        .execution_options(synchronize_session=False)
    )

    with pytest.raises(ConcurrentModification):
        escrow.approve_milestone(session, gateway, order.id, "FITTING", customer.id)
    assert gateway.calls == []


def test_hold_and_deposit_release(session, gateway, make_user, make_tailor, make_order) -> None:
    customer = make_user()
    order = make_order(customer, make_tailor(), "750.00", status=OrderStatus.PENDING, deposit_released=False)

    escrow.hold_order_funds(session, gateway, order, customer.id)
    assert order.escrow_balance == Decimal("750.00")
    assert order.payment_intent_id == "hold_1"

    escrow.release_deposit(session, gateway, order, order.tailor.user_id)
    assert order.deposit_released is True
    assert order.escrow_balance == Decimal("525.00")
    assert order.escrow_stage == EscrowStage.DEPOSIT

    with pytest.raises(AlreadyApproved):
        escrow.release_deposit(session, gateway, order, order.tailor.user_id)


def test_close_escrow_requires_final_stage(session, make_user, make_tailor, make_order) -> None:
    customer = make_user()
    order = make_order(customer, make_tailor(), status=OrderStatus.IN_PROGRESS, stage=EscrowStage.FITTING)
    with pytest.raises(InvalidTransition):
        escrow.close_escrow(session, order)

    delivered = make_order(customer, order.tailor, status=OrderStatus.DELIVERED, stage=EscrowStage.FINAL)
    escrow.close_escrow(session, delivered)
    assert delivered.escrow_stage == EscrowStage.RELEASED


def test_validate_escrow_state_flags_mismatched_balance(make_user, make_tailor, make_order) -> None:
    order = make_order(make_user(), make_tailor(), "1000.00", stage=EscrowStage.FITTING)
    assert escrow.validate_escrow_state(order) == []

    order.escrow_balance = Decimal("650.00")
    issues = escrow.validate_escrow_state(order)
    assert any("does not match expected 400.00" in issue for issue in issues)


def test_validate_escrow_state_released_must_be_empty(make_user, make_tailor, make_order) -> None:
    order = make_order(make_user(), make_tailor(), stage=EscrowStage.RELEASED, status=OrderStatus.COMPLETED)
    order.escrow_balance = Decimal("10.00")
    assert "Released escrow still holds funds" in escrow.validate_escrow_state(order)


def test_tailor_submits_next_milestone(session, make_user, make_tailor, make_order) -> None:
    tailor = make_tailor()
    order = make_order(make_user(), tailor, status=OrderStatus.READY_FOR_FITTING)

    with pytest.raises(Forbidden):
        escrow.submit_milestone(session, order.id, order.customer_id, "FITTING")
    with pytest.raises(InvalidTransition):
        escrow.submit_milestone(session, order.id, tailor.user_id, "FINAL")

    escrow.submit_milestone(session, order.id, tailor.user_id, "FITTING")
    assert order.milestone_submitted_stage == EscrowStage.FITTING
    assert order.milestone_submitted_at is not None

    with pytest.raises(AlreadyApproved):
        escrow.submit_milestone(session, order.id, tailor.user_id, "FITTING")


def test_customer_approval_clears_submitted_milestone(session, gateway, make_user, make_tailor,
                                                      make_order) -> None:
    tailor = make_tailor()
    order = make_order(make_user(), tailor, status=OrderStatus.READY_FOR_FITTING)
    escrow.submit_milestone(session, order.id, tailor.user_id, "FITTING")

    escrow.approve_milestone(session, gateway, order.id, "FITTING", order.customer_id)

    assert order.milestone_submitted_stage is None
    assert order.milestone_submitted_at is None


def test_auto_approval_after_deadline(session, gateway, make_user, make_tailor, make_order) -> None:
    tailor = make_tailor()
    customer = make_user()
    now = utc_now()
    overdue = make_order(customer, tailor, status=OrderStatus.READY_FOR_FITTING,
                         milestone_submitted_stage=EscrowStage.FITTING,
                         milestone_submitted_at=now - timedelta(hours=49))
    recent = make_order(customer, tailor, status=OrderStatus.READY_FOR_FITTING,
                        milestone_submitted_stage=EscrowStage.FITTING,
                        milestone_submitted_at=now - timedelta(hours=47))

    report = escrow.auto_approve_due_milestones(session, gateway, now=now)

    assert report.to_dict() == {
        "processed": 1,
        "auto_approved": 1,
        "failed": 0,
        "approved_order_ids": [overdue.id],
        "errors": [],
    }
    assert overdue.escrow_stage == EscrowStage.FITTING
    assert recent.escrow_stage == EscrowStage.DEPOSIT
    assert gateway.amounts("release") == [Decimal("240.00")]
    transaction = session.execute(
        select(EscrowTransaction).where(EscrowTransaction.reference == f"{overdue.id}:fitting_release")
    ).scalar_one()
    assert transaction.notes == escrow.AUTO_APPROVAL_NOTE
    assert transaction.actor_id is None


def test_auto_approval_failure_does_not_stop_the_batch(session, gateway, make_user, make_tailor,
                                                       make_order) -> None:
    tailor = make_tailor()
    customer = make_user()
    past = utc_now() - timedelta(days=3)
    # FINAL submitted while escrow is still at DEPOSIT cannot be approved.
    broken = make_order(customer, tailor, status=OrderStatus.IN_PROGRESS,
                        milestone_submitted_stage=EscrowStage.FINAL, milestone_submitted_at=past)
    good = make_order(customer, tailor, status=OrderStatus.IN_PROGRESS, stage=EscrowStage.FITTING,
                      milestone_submitted_stage=EscrowStage.FINAL,
                      milestone_submitted_at=past + timedelta(minutes=5))

    report = escrow.auto_approve_due_milestones(session, gateway)

    assert report.processed == 2
    assert report.failed == 1
    assert report.errors[0]["order_id"] == broken.id
    assert report.approved_order_ids == [good.id]
    assert good.status == OrderStatus.DELIVERED
    assert broken.escrow_stage == EscrowStage.DEPOSIT
    assert gateway.amounts("release") == [Decimal("320.00")]


def test_auto_approval_skips_disputed_orders(session, gateway, make_user, make_tailor, make_order) -> None:
    make_order(make_user(), make_tailor(), status=OrderStatus.DISPUTED,
               milestone_submitted_stage=EscrowStage.FITTING,
               milestone_submitted_at=utc_now() - timedelta(days=5))

    report = escrow.auto_approve_due_milestones(session, gateway)

    assert report.processed == 0
    assert gateway.calls == []


def test_reverse_payouts_cannot_exceed_what_was_paid(session, gateway, make_user, make_tailor,
                                                     make_order) -> None:
    order = make_order(make_user(), make_tailor(), "1000.00")

    with pytest.raises(InvalidState):
        escrow.reverse_payouts(session, gateway, order, Decimal("400.00"), None, None)
