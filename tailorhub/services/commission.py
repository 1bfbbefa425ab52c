"""Platform commission taken out of tailor payouts.

Every escrow release is split into the platform's commission and the net
amount transferred to the tailor. The percentage is fixed on the order when it
is placed, so a later rate change never reprices work already in progress.
"""
from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal

from sqlalchemy import select
from sqlalchemy.orm import Session

from ..enums import EscrowTransactionType
from ..errors import Forbidden, NotFound, ValidationError
from ..models import EscrowTransaction, Order, TailorProfile
from ..money import percent_of, quantize

PLATFORM_COMMISSION_PERCENTAGE = 20

PAYOUT_TYPES = (
    EscrowTransactionType.DEPOSIT_RELEASE,
    EscrowTransactionType.FITTING_RELEASE,
    EscrowTransactionType.FINAL_RELEASE,
)


@dataclass(frozen=True)
class CommissionSplit:
    gross: Decimal
    percentage: int
    commission: Decimal
    net: Decimal

    def to_dict(self) -> dict[str, object]:
        return {
            "gross_amount": float(self.gross),
            "commission_percentage": self.percentage,
            "commission_amount": float(self.commission),
            "net_amount": float(self.net),
        }


def validate_percentage(percentage: object) -> int:
    if isinstance(percentage, bool) or not isinstance(percentage, int) or not 0 <= percentage <= 100:
        raise ValidationError("Commission percentage must be a whole number from 0 to 100",
                              field="commission_percentage")
    return percentage


def calculate_commission(gross: Decimal, percentage: int = PLATFORM_COMMISSION_PERCENTAGE) -> CommissionSplit:
    gross = quantize(gross)
    commission = percent_of(gross, validate_percentage(percentage))
    return CommissionSplit(gross=gross, percentage=percentage, commission=commission, net=gross - commission)


def _paid_out(transactions: list[EscrowTransaction]) -> tuple[Decimal, Decimal]:
    """Gross and commission actually paid to the tailor, net of reversals."""
    gross = commission = Decimal("0.00")
    for transaction in transactions:
        if transaction.transaction_type in PAYOUT_TYPES:
            gross += transaction.amount
            commission += transaction.commission_amount
        elif transaction.transaction_type == EscrowTransactionType.REVERSAL:
            gross -= transaction.amount
            commission -= transaction.commission_amount
    return gross, commission


def order_commission(session: Session, order_id: str, user_id: str, is_admin: bool = False) -> dict[str, object]:
    """Commission breakdown for one order: the planned split and what has been paid so far."""
    order = session.get(Order, order_id)
    if order is None:
        raise NotFound("Order not found", code="order_not_found")
    if not is_admin and order.tailor.user_id != user_id:
        raise Forbidden("Only the tailor on this order can view its commission.")

    transactions = session.execute(
        select(EscrowTransaction).where(EscrowTransaction.order_id == order.id)
    ).scalars().all()
    gross, commission = _paid_out(transactions)
    return {
        "order_id": order.id,
        "planned": calculate_commission(order.total_amount, order.commission_percentage).to_dict(),
        "paid": {
            "gross_amount": float(gross),
            "commission_amount": float(commission),
            "net_amount": float(gross - commission),
        },
    }


def tailor_earnings(session: Session, user_id: str) -> dict[str, object]:
    """Lifetime payout totals for the tailor profile owned by ``user_id``."""
    tailor = session.execute(
        select(TailorProfile).where(TailorProfile.user_id == user_id)
    ).scalar_one_or_none()
    if tailor is None:
        raise Forbidden("Only tailors have earnings.")

    transactions = session.execute(
        select(EscrowTransaction)
        .join(Order, Order.id == EscrowTransaction.order_id)
        .where(Order.tailor_id == tailor.id)
    ).scalars().all()
    gross, commission = _paid_out(transactions)
    payouts = sum(1 for tx in transactions if tx.transaction_type in PAYOUT_TYPES)
    return {
        "tailor_id": tailor.id,
        "payout_count": payouts,
        "gross_amount": float(gross),
        "commission_amount": float(commission),
        "net_amount": float(gross - commission),
    }
