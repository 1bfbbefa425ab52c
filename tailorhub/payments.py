"""Stripe-backed escrow payment gateway.

Customer payments are collected into the platform account when an order is
created and paid out to the tailor's connected account stage by stage. Refunds
that reach past what escrow still holds are funded by reversing those payouts.
Every call carries an idempotency key so a retried request never moves money twice.
"""
from __future__ import annotations

import logging
from decimal import Decimal

import stripe

from .errors import PaymentGatewayError
from .money import to_minor_units

logger = logging.getLogger(__name__)


def _is_retryable(exc: Exception) -> bool:
    return isinstance(exc, (stripe.error.APIConnectionError, stripe.error.RateLimitError, stripe.error.APIError))


class StripeGateway:
    def __init__(self, api_key: str | None, currency: str = "GHS") -> None:
        self.api_key = api_key
        self.currency = currency.lower()

    def _configure(self) -> None:
        if not self.api_key:
            logger.warning("Stripe secret key not configured")
            raise PaymentGatewayError(
                "Payments are not currently available. Please contact support.",
                retryable=False,
            )
        stripe.api_key = self.api_key

    def _fail(self, action: str, reference: str, exc: Exception) -> PaymentGatewayError:
        retryable = _is_retryable(exc)
        logger.exception("Stripe %s failed for %s (retryable=%s)", action, reference, retryable)
        return PaymentGatewayError(f"Payment provider error while processing {action}.", retryable=retryable)

    def hold(self, amount: Decimal, reference: str, *, customer_id: str, order_id: str) -> str:
        """Collect the order total into escrow and return the payment intent id."""
        self._configure()
        try:
            intent = stripe.PaymentIntent.create(
                amount=to_minor_units(amount),
                currency=self.currency,
                transfer_group=order_id,
                metadata={"order_id": order_id, "customer_id": customer_id, "reference": reference},
                idempotency_key=reference,
            )
        except stripe.error.StripeError as exc:
            raise self._fail("hold", reference, exc) from exc
        logger.info("Held %s for order %s (intent %s)", amount, order_id, intent.id)
        return intent.id

    def release(self, amount: Decimal, reference: str, *, destination: str | None, order_id: str) -> str:
        """Pay ``amount`` out of escrow to the tailor's connected account."""
        self._configure()
        if not destination:
            raise PaymentGatewayError("Tailor has no payout account configured.", retryable=False)
        try:
            transfer = stripe.Transfer.create(
                amount=to_minor_units(amount),
                currency=self.currency,
                destination=destination,
                transfer_group=order_id,
                metadata={"order_id": order_id, "reference": reference},
                idempotency_key=reference,
            )
        except stripe.error.StripeError as exc:
            raise self._fail("release", reference, exc) from exc
        logger.info("Released %s for order %s to %s", amount, order_id, destination)
        return transfer.id

    def refund(self, amount: Decimal, reference: str, *, payment_intent_id: str | None, order_id: str) -> str:
        """Refund ``amount`` of the order's payment back to the customer."""
        self._configure()
        if not payment_intent_id:
            raise PaymentGatewayError("Order has no captured payment to refund.", retryable=False)
        try:
            refund = stripe.Refund.create(
                payment_intent=payment_intent_id,
                amount=to_minor_units(amount),
                metadata={"order_id": order_id, "reference": reference},
                idempotency_key=reference,
            )
        except stripe.error.StripeError as exc:
            raise self._fail("refund", reference, exc) from exc
        logger.info("Refunded %s for order %s", amount, order_id)
        return refund.id

    def reverse(self, amount: Decimal, reference: str, *, transfer_id: str, order_id: str) -> str:
        """Pull ``amount`` of an earlier payout back from the tailor's connected account."""
        self._configure()
        try:
            reversal = stripe.Transfer.create_reversal(
                transfer_id,
                amount=to_minor_units(amount),
                metadata={"order_id": order_id, "reference": reference},
                idempotency_key=reference,
            )
        except stripe.error.StripeError as exc:
            raise self._fail("reversal", reference, exc) from exc
        logger.info("Reversed %s of transfer %s for order %s", amount, transfer_id, order_id)
        return reversal.id
