"""Closed status types and their allowed transitions."""
from __future__ import annotations

from enum import Enum


class OrderStatus(str, Enum):
    PENDING = "PENDING"
    ACCEPTED = "ACCEPTED"
    IN_PROGRESS = "IN_PROGRESS"
    READY_FOR_FITTING = "READY_FOR_FITTING"
    DELIVERED = "DELIVERED"
    COMPLETED = "COMPLETED"
    CANCELLED = "CANCELLED"
    DISPUTED = "DISPUTED"


ORDER_STATUS_TRANSITIONS: dict[OrderStatus, frozenset[OrderStatus]] = {
    OrderStatus.PENDING: frozenset({OrderStatus.ACCEPTED, OrderStatus.CANCELLED}),
    OrderStatus.ACCEPTED: frozenset({
        OrderStatus.IN_PROGRESS,
        OrderStatus.READY_FOR_FITTING,
        OrderStatus.CANCELLED,
        OrderStatus.DISPUTED,
    }),
    OrderStatus.IN_PROGRESS: frozenset({
        OrderStatus.READY_FOR_FITTING,
        OrderStatus.DELIVERED,
        OrderStatus.CANCELLED,
        OrderStatus.DISPUTED,
    }),
    OrderStatus.READY_FOR_FITTING: frozenset({
        OrderStatus.IN_PROGRESS,
        OrderStatus.DELIVERED,
        OrderStatus.DISPUTED,
    }),
    OrderStatus.DELIVERED: frozenset({OrderStatus.COMPLETED, OrderStatus.DISPUTED}),
    OrderStatus.DISPUTED: frozenset({
        OrderStatus.IN_PROGRESS,
        OrderStatus.DELIVERED,
        OrderStatus.COMPLETED,
        OrderStatus.CANCELLED,
    }),
    OrderStatus.COMPLETED: frozenset(),
    OrderStatus.CANCELLED: frozenset(),
}

# Orders that count against a tailor's concurrent capacity.
ACTIVE_ORDER_STATUSES = (
    OrderStatus.PENDING,
    OrderStatus.ACCEPTED,
    OrderStatus.IN_PROGRESS,
    OrderStatus.READY_FOR_FITTING,
)


def can_transition(current: OrderStatus, target: OrderStatus) -> bool:
    return target in ORDER_STATUS_TRANSITIONS[current]


class EscrowStage(str, Enum):
    DEPOSIT = "DEPOSIT"
    FITTING = "FITTING"
    FINAL = "FINAL"
    RELEASED = "RELEASED"

    @property
    def position(self) -> int:
        return ESCROW_STAGE_ORDER.index(self)

    def successor(self) -> EscrowStage | None:
        idx = self.position + 1
        return ESCROW_STAGE_ORDER[idx] if idx < len(ESCROW_STAGE_ORDER) else None


ESCROW_STAGE_ORDER = (
    EscrowStage.DEPOSIT,
    EscrowStage.FITTING,
    EscrowStage.FINAL,
    EscrowStage.RELEASED,
)


class EscrowTransactionType(str, Enum):
    HOLD = "HOLD"
    DEPOSIT_RELEASE = "DEPOSIT_RELEASE"
    FITTING_RELEASE = "FITTING_RELEASE"
    FINAL_RELEASE = "FINAL_RELEASE"
    REFUND = "REFUND"
    REVERSAL = "REVERSAL"


class PaymentMode(str, Enum):
    SINGLE_PAYER = "SINGLE_PAYER"
    SPLIT = "SPLIT"


class DeliveryStrategy(str, Enum):
    ALL_TOGETHER = "ALL_TOGETHER"
    STAGGERED = "STAGGERED"


class LoyaltyTier(str, Enum):
    BRONZE = "BRONZE"
    SILVER = "SILVER"
    GOLD = "GOLD"
    PLATINUM = "PLATINUM"


LOYALTY_TIER_ORDER = (
    LoyaltyTier.BRONZE,
    LoyaltyTier.SILVER,
    LoyaltyTier.GOLD,
    LoyaltyTier.PLATINUM,
)


class LoyaltyTransactionType(str, Enum):
    EARN = "EARN"
    BONUS = "BONUS"
    REDEEM = "REDEEM"


class RewardType(str, Enum):
    PERCENTAGE_DISCOUNT = "PERCENTAGE_DISCOUNT"
    FIXED_DISCOUNT = "FIXED_DISCOUNT"


class ModerationStatus(str, Enum):
    PENDING = "PENDING"
    FLAGGED = "FLAGGED"
    APPROVED = "APPROVED"
    REJECTED = "REJECTED"


MODERATION_TRANSITIONS: dict[ModerationStatus, frozenset[ModerationStatus]] = {
    ModerationStatus.PENDING: frozenset({
        ModerationStatus.APPROVED,
        ModerationStatus.FLAGGED,
        ModerationStatus.REJECTED,
    }),
    ModerationStatus.FLAGGED: frozenset({ModerationStatus.APPROVED, ModerationStatus.REJECTED}),
    ModerationStatus.APPROVED: frozenset(),
    ModerationStatus.REJECTED: frozenset(),
}


class VoteType(str, Enum):
    HELPFUL = "HELPFUL"
    UNHELPFUL = "UNHELPFUL"


class ReviewIneligibilityReason(str, Enum):
    NOT_FOUND = "NOT_FOUND"
    DISPUTED = "DISPUTED"
    NOT_DELIVERED = "NOT_DELIVERED"
    TIME_EXPIRED = "TIME_EXPIRED"
    ALREADY_REVIEWED = "ALREADY_REVIEWED"


class DisputeCategory(str, Enum):
    QUALITY_ISSUE = "QUALITY_ISSUE"
    DELIVERY_DELAY = "DELIVERY_DELAY"
    PAYMENT_PROBLEM = "PAYMENT_PROBLEM"
    COMMUNICATION_ISSUE = "COMMUNICATION_ISSUE"
    MILESTONE_REJECTION = "MILESTONE_REJECTION"
    OTHER = "OTHER"


class DisputeStatus(str, Enum):
    OPEN = "OPEN"
    IN_PROGRESS = "IN_PROGRESS"
    ESCALATED = "ESCALATED"
    RESOLVED = "RESOLVED"
    CLOSED = "CLOSED"


class DisputeResolutionType(str, Enum):
    FULL_REFUND = "FULL_REFUND"
    PARTIAL_REFUND = "PARTIAL_REFUND"
    ORDER_COMPLETION = "ORDER_COMPLETION"
    NO_ACTION = "NO_ACTION"

    @property
    def is_refund(self) -> bool:
        return self in (DisputeResolutionType.FULL_REFUND, DisputeResolutionType.PARTIAL_REFUND)


class UserRole(str, Enum):
    CUSTOMER = "customer"
    TAILOR = "tailor"
    ADMIN = "admin"


class VerificationStatus(str, Enum):
    PENDING = "PENDING"
    VERIFIED = "VERIFIED"
    REJECTED = "REJECTED"
