"""Shared pytest fixtures: application, database session, Stripe mock and model factories."""
from __future__ import annotations

import sys
from decimal import Decimal
from itertools import count
from pathlib import Path
from unittest.mock import MagicMock, patch

import pytest

# Ensure the project root is available on sys.path so tests can import the app package.
PROJECT_ROOT = Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from tailorhub import create_app  # noqa: E402
from tailorhub.config import TestingConfig  # noqa: E402
from tailorhub.enums import (EscrowStage, EscrowTransactionType,  # noqa: E402
                             OrderStatus, UserRole, VerificationStatus)
from tailorhub.extensions import db  # noqa: E402
from tailorhub.models import EscrowTransaction, Order, TailorProfile, User  # noqa: E402
from tailorhub.services import commission, escrow  # noqa: E402


@pytest.fixture
def app():
    flask_app = create_app(TestingConfig)
    with flask_app.app_context():
        db.create_all()
        yield flask_app
        db.session.remove()
        db.drop_all()


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture
def session(app):
    return db.session


class FakeGateway:
    """Records money movements instead of calling Stripe."""

    def __init__(self) -> None:
        self.calls: list[tuple[str, Decimal, str]] = []

    def _log(self, action: str, amount: Decimal, reference: str) -> str:
        self.calls.append((action, amount, reference))
        return f"{action}_{len(self.calls)}"

    def hold(self, amount, reference, *, customer_id, order_id):
        return self._log("hold", amount, reference)

    def release(self, amount, reference, *, destination, order_id):
        return self._log("release", amount, reference)

    def refund(self, amount, reference, *, payment_intent_id, order_id):
        return self._log("refund", amount, reference)

    def reverse(self, amount, reference, *, transfer_id, order_id):
        return self._log("reverse", amount, reference)

    def amounts(self, action: str) -> list[Decimal]:
        return [amount for name, amount, _ in self.calls if name == action]


@pytest.fixture
def gateway():
    return FakeGateway()


class FakeStripeError(Exception):
    pass


class FakeAPIConnectionError(FakeStripeError):
    pass


class FakeRateLimitError(FakeStripeError):
    pass


class FakeAPIError(FakeStripeError):
    pass


class FakeCardError(FakeStripeError):
    pass


@pytest.fixture
def stripe_mock():
    """Mock Stripe API calls."""
    with patch("tailorhub.payments.stripe") as mock_stripe:
        mock_stripe.PaymentIntent.create.return_value = MagicMock(id="pi_test123")
        mock_stripe.Transfer.create.return_value = MagicMock(id="tr_test123")
        mock_stripe.Transfer.create_reversal.return_value = MagicMock(id="trr_test123")
        mock_stripe.Refund.create.return_value = MagicMock(id="re_test123")

        # Mock Stripe error classes
        mock_stripe.error.StripeError = FakeStripeError
        mock_stripe.error.APIConnectionError = FakeAPIConnectionError
        mock_stripe.error.RateLimitError = FakeRateLimitError
        mock_stripe.error.APIError = FakeAPIError
        mock_stripe.error.CardError = FakeCardError

        yield mock_stripe


_sequence = count(1)


@pytest.fixture
def make_user(session):
    def _make_user(name: str = "Ama Mensah", role: UserRole = UserRole.CUSTOMER) -> User:
        user = User(name=name, email=f"user{next(_sequence)}@example.com", role=role)
        session.add(user)
        session.commit()
        return user

    return _make_user


@pytest.fixture
def make_tailor(session, make_user):
    def _make_tailor(verified: bool = True, accepting: bool = True, max_concurrent_orders: int = 10,
                     stripe_account_id: str | None = "acct_tailor") -> TailorProfile:
        user = make_user(name="Kofi Asante", role=UserRole.TAILOR)
        tailor = TailorProfile(
            user_id=user.id,
            business_name="Kofi's Kente Couture",
            verification_status=VerificationStatus.VERIFIED if verified else VerificationStatus.PENDING,
            is_accepting_orders=accepting,
            max_concurrent_orders=max_concurrent_orders,
            avg_turnaround_days=14,
            stripe_account_id=stripe_account_id,
        )
        session.add(tailor)
        session.commit()
        return tailor

    return _make_tailor


def _seed_payouts(session, order: Order) -> None:
    """Ledger rows for the stage payouts an order in this position has already made."""
    payouts = []
    if order.deposit_released:
        payouts.append((EscrowTransactionType.DEPOSIT_RELEASE, order.deposit_amount))
    if order.escrow_stage.position >= EscrowStage.FITTING.position:
        payouts.append((EscrowTransactionType.FITTING_RELEASE, order.fitting_amount))
    if order.escrow_stage.position >= EscrowStage.FINAL.position:
        payouts.append((EscrowTransactionType.FINAL_RELEASE, order.final_amount))
    for transaction_type, amount in payouts:
        split = commission.calculate_commission(amount, order.commission_percentage)
        session.add(EscrowTransaction(
            order_id=order.id,
            transaction_type=transaction_type,
            amount=split.gross,
            commission_amount=split.commission,
            reference=escrow.release_reference(order.id, transaction_type),
            gateway_id=f"tr_seed_{transaction_type.value.lower()}",
        ))


@pytest.fixture
def make_order(session):
    """Persist an order directly in a given lifecycle position, with its past payouts on the ledger."""

    def _make_order(customer: User, tailor: TailorProfile, total: str = "1000.00", *,
                    status: OrderStatus = OrderStatus.ACCEPTED,
                    stage: EscrowStage = EscrowStage.DEPOSIT,
                    deposit_released: bool = True,
                    fabric: str | None = "cotton",
                    **fields) -> Order:
        order = Order(
            customer_id=customer.id,
            tailor_id=tailor.id,
            garment_type="Kaba and slit",
            fabric=fabric,
            status=status,
            escrow_stage=stage,
            deposit_released=deposit_released,
            payment_intent_id="pi_existing",
            commission_percentage=commission.PLATFORM_COMMISSION_PERCENTAGE,
            version=1,
        )
        escrow.apply_breakdown(order, Decimal(total))
        order.escrow_balance = order.total_amount - escrow.released_total(order)
        for key, value in fields.items():
            setattr(order, key, value)
        session.add(order)
        session.flush()
        _seed_payouts(session, order)
        session.commit()
        return order

    return _make_order
