"""Tests for the Stripe escrow gateway."""
from __future__ import annotations

from decimal import Decimal
from unittest.mock import patch

import pytest

from tailorhub.enums import EscrowStage, OrderStatus
from tailorhub.errors import PaymentGatewayError
from tailorhub.extensions import db
from tailorhub.payments import StripeGateway


@pytest.fixture
def stripe_gateway(stripe_mock):
    return StripeGateway("sk_test_dummy", "GHS")


def test_hold_creates_payment_intent(stripe_gateway, stripe_mock) -> None:
    intent_id = stripe_gateway.hold(Decimal("637.50"), "order-1:hold", customer_id="cust-1", order_id="order-1")

    assert intent_id == "pi_test123"
    assert stripe_mock.api_key == "sk_test_dummy"
    kwargs = stripe_mock.PaymentIntent.create.call_args.kwargs
    assert kwargs["amount"] == 63750
    assert kwargs["currency"] == "ghs"
    assert kwargs["transfer_group"] == "order-1"
    assert kwargs["idempotency_key"] == "order-1:hold"
    assert kwargs["metadata"]["customer_id"] == "cust-1"


def test_release_transfers_to_connected_account(stripe_gateway, stripe_mock) -> None:
    transfer_id = stripe_gateway.release(
        Decimal("300.00"), "order-1:fitting_release", destination="acct_tailor", order_id="order-1",
    )

    assert transfer_id == "tr_test123"
    kwargs = stripe_mock.Transfer.create.call_args.kwargs
    assert kwargs["amount"] == 30000
    assert kwargs["destination"] == "acct_tailor"
    assert kwargs["idempotency_key"] == "order-1:fitting_release"


def test_refund_against_payment_intent(stripe_gateway, stripe_mock) -> None:
    refund_id = stripe_gateway.refund(
        Decimal("150.00"), "order-1:refund", payment_intent_id="pi_existing", order_id="order-1",
    )

    assert refund_id == "re_test123"
    kwargs = stripe_mock.Refund.create.call_args.kwargs
    assert kwargs["payment_intent"] == "pi_existing"
    assert kwargs["amount"] == 15000


def test_reverse_pulls_back_part_of_a_transfer(stripe_gateway, stripe_mock) -> None:
    reversal_id = stripe_gateway.reverse(
        Decimal("240.00"), "order-1:reversal:fitting_release", transfer_id="tr_earlier", order_id="order-1",
    )

    assert reversal_id == "trr_test123"
    call = stripe_mock.Transfer.create_reversal.call_args
    assert call.args == ("tr_earlier",)
    assert call.kwargs["amount"] == 24000
    assert call.kwargs["idempotency_key"] == "order-1:reversal:fitting_release"


def test_missing_api_key_is_not_retryable(stripe_mock) -> None:
    gateway = StripeGateway(None)

    with pytest.raises(PaymentGatewayError) as excinfo:
        gateway.hold(Decimal("10.00"), "order-1:hold", customer_id="cust-1", order_id="order-1")

    assert excinfo.value.retryable is False
    assert excinfo.value.status_code == 500
    stripe_mock.PaymentIntent.create.assert_not_called()


def test_release_without_destination(stripe_gateway, stripe_mock) -> None:
    with pytest.raises(PaymentGatewayError) as excinfo:
        stripe_gateway.release(Decimal("10.00"), "order-1:deposit_release", destination=None, order_id="order-1")

    assert excinfo.value.message == "Tailor has no payout account configured."
    stripe_mock.Transfer.create.assert_not_called()


def test_refund_without_payment_intent(stripe_gateway) -> None:
    with pytest.raises(PaymentGatewayError):
        stripe_gateway.refund(Decimal("10.00"), "order-1:refund", payment_intent_id=None, order_id="order-1")


@pytest.mark.parametrize("error", ["APIConnectionError", "RateLimitError"])
def test_transient_stripe_errors_are_retryable(stripe_gateway, stripe_mock, error) -> None:
    stripe_mock.Transfer.create.side_effect = getattr(stripe_mock.error, error)("try again")

    with pytest.raises(PaymentGatewayError) as excinfo:
        stripe_gateway.release(Decimal("10.00"), "order-1:final_release", destination="acct", order_id="order-1")

    assert excinfo.value.retryable is True
    assert excinfo.value.status_code == 502


def test_card_errors_are_not_retryable(stripe_gateway, stripe_mock) -> None:
    stripe_mock.PaymentIntent.create.side_effect = stripe_mock.error.CardError("card declined")

    with pytest.raises(PaymentGatewayError) as excinfo:
        stripe_gateway.hold(Decimal("10.00"), "order-1:hold", customer_id="cust-1", order_id="order-1")

    assert excinfo.value.retryable is False
    assert excinfo.value.to_dict() == {
        "error": "payment_error",
        "message": "Payment provider error while processing hold.",
        "retryable": False,
    }


def test_failed_release_keeps_escrow_untouched(client, stripe_mock, make_user, make_tailor, make_order) -> None:
    customer = make_user()
    order = make_order(customer, make_tailor(), "1000.00", status=OrderStatus.READY_FOR_FITTING)
    stripe_mock.Transfer.create.side_effect = stripe_mock.error.APIConnectionError("timeout")

    with patch("tailorhub.routes.get_jwt_identity", return_value=customer.id):
        response = client.post(f"/orders/{order.id}/milestones/approve", json={"stage": "FITTING"})

    assert response.status_code == 502
    assert response.get_json()["retryable"] is True
    db.session.refresh(order)
    assert order.escrow_stage == EscrowStage.DEPOSIT
    assert order.escrow_balance == Decimal("700.00")
