"""Loyalty points ledger.

Points are earned on completed orders (1 point per currency unit plus bonuses)
and spent on catalog rewards. ``lifetime_points`` only ever grows and decides
the member's tier; ``available_points`` is what can be spent.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import ROUND_FLOOR, Decimal
from typing import Mapping

from sqlalchemy import func, select, update
from sqlalchemy.orm import Session

from ..enums import (LOYALTY_TIER_ORDER, LoyaltyTier, LoyaltyTransactionType,
                     OrderStatus, RewardType)
from ..errors import (ConcurrentModification, InsufficientPoints, InvalidState,
                      NotFound, ValidationError)
from ..models import (LoyaltyAccount, LoyaltyReward, LoyaltyTransaction, Order,
                      utc_now)
from ..money import quantize, to_decimal

logger = logging.getLogger(__name__)

POINTS_PER_CURRENCY_UNIT = 1
REPEAT_TAILOR_BONUS_PERCENTAGE = 10
GROUP_ORDER_BONUS_PERCENTAGE = 5

TIER_THRESHOLDS = {
    LoyaltyTier.BRONZE: 0,
    LoyaltyTier.SILVER: 1000,
    LoyaltyTier.GOLD: 5000,
    LoyaltyTier.PLATINUM: 15000,
}

TIER_BONUSES = {
    LoyaltyTier.BRONZE: 0,
    LoyaltyTier.SILVER: 5,
    LoyaltyTier.GOLD: 10,
    LoyaltyTier.PLATINUM: 15,
}


@dataclass(frozen=True)
class LoyaltySettings:
    repeat_tailor_window_days: int = 30
    milestone_order_count: int = 5
    milestone_bonus: int = 500

    @classmethod
    def from_config(cls, config: Mapping[str, object]) -> LoyaltySettings:
        return cls(
            repeat_tailor_window_days=int(config.get("LOYALTY_REPEAT_TAILOR_WINDOW_DAYS", 30)),
            milestone_order_count=int(config.get("LOYALTY_MILESTONE_ORDER_COUNT", 5)),
            milestone_bonus=int(config.get("LOYALTY_MILESTONE_BONUS", 500)),
        )


@dataclass(frozen=True)
class PointsEarning:
    base_points: int
    bonus_points: int
    total_points: int
    reason: str

    def to_dict(self) -> dict[str, object]:
        return {
            "base_points": self.base_points,
            "bonus_points": self.bonus_points,
            "total_points": self.total_points,
            "reason": self.reason,
        }


@dataclass(frozen=True)
class PointsAward:
    account: LoyaltyAccount
    earning: PointsEarning
    milestone_bonus: int
    previous_tier: LoyaltyTier

    @property
    def tier_upgraded(self) -> bool:
        return self.account.tier != self.previous_tier


def calculate_tier(lifetime_points: int) -> LoyaltyTier:
    for tier in reversed(LOYALTY_TIER_ORDER):
        if lifetime_points >= TIER_THRESHOLDS[tier]:
            return tier
    return LoyaltyTier.BRONZE


def upgraded_tier(current: LoyaltyTier, lifetime_points: int) -> LoyaltyTier:
    """Tier for ``lifetime_points``, never lower than ``current``."""
    earned = calculate_tier(lifetime_points)
    return max(current, earned, key=LOYALTY_TIER_ORDER.index)


def points_for_next_tier(lifetime_points: int, tier: LoyaltyTier) -> int | None:
    """Points still needed to reach the next tier, or ``None`` at PLATINUM."""
    position = LOYALTY_TIER_ORDER.index(tier)
    if position == len(LOYALTY_TIER_ORDER) - 1:
        return None
    next_tier = LOYALTY_TIER_ORDER[position + 1]
    return max(TIER_THRESHOLDS[next_tier] - lifetime_points, 0)


def get_or_create_account(session: Session, user_id: str) -> LoyaltyAccount:
    account = session.execute(
        select(LoyaltyAccount).where(LoyaltyAccount.user_id == user_id)
    ).scalar_one_or_none()
    if account is None:
        account = LoyaltyAccount(user_id=user_id, total_points=0, available_points=0,
                                 lifetime_points=0, tier=LoyaltyTier.BRONZE, version=1)
        session.add(account)
        session.flush()
        logger.info("Created loyalty account for user %s", user_id)
    return account


def has_recent_order_with_tailor(session: Session, user_id: str, tailor_id: str, window_days: int,
                                 exclude_order_id: str | None = None,
                                 now: datetime | None = None) -> bool:
    since = (now or utc_now()) - timedelta(days=window_days)
    query = (
        select(func.count(Order.id))
        .where(Order.customer_id == user_id)
        .where(Order.tailor_id == tailor_id)
        .where(Order.status == OrderStatus.COMPLETED)
        .where(Order.completed_at >= since)
    )
    if exclude_order_id:
        query = query.where(Order.id != exclude_order_id)
    return session.execute(query).scalar_one() > 0


def completed_order_count(session: Session, user_id: str) -> int:
    return session.execute(
        select(func.count(Order.id))
        .where(Order.customer_id == user_id)
        .where(Order.status == OrderStatus.COMPLETED)
    ).scalar_one()


def _percentage(points: int, percentage: int) -> int:
    return points * percentage // 100


def calculate_points_for_order(session: Session, user_id: str, amount, tailor_id: str,
                               is_group_order: bool = False,
                               settings: LoyaltySettings = LoyaltySettings(),
                               exclude_order_id: str | None = None) -> PointsEarning:
    """Points earned for an order of ``amount``.

    Bonuses are applied in a fixed order, each on the running subtotal:
    repeat tailor (+10%), group order (+5%), then the member's tier bonus.
    Every step rounds down to whole points.
    """
    try:
        amount = to_decimal(amount)
    except ValueError:
        raise ValidationError("Order amount must be a number", field="amount") from None
    if amount < 0:
        raise ValidationError("Order amount cannot be negative", field="amount")

    base_points = int((amount * POINTS_PER_CURRENCY_UNIT).to_integral_value(rounding=ROUND_FLOOR))
    subtotal = base_points
    reasons: list[str] = []

    if has_recent_order_with_tailor(session, user_id, tailor_id, settings.repeat_tailor_window_days,
                                    exclude_order_id=exclude_order_id):
        subtotal += _percentage(subtotal, REPEAT_TAILOR_BONUS_PERCENTAGE)
        reasons.append(f"Repeat tailor bonus (+{REPEAT_TAILOR_BONUS_PERCENTAGE}%)")

    if is_group_order:
        subtotal += _percentage(subtotal, GROUP_ORDER_BONUS_PERCENTAGE)
        reasons.append(f"Group order bonus (+{GROUP_ORDER_BONUS_PERCENTAGE}%)")

    # Read-only: members without an account yet earn at BRONZE.
    account = session.execute(
        select(LoyaltyAccount).where(LoyaltyAccount.user_id == user_id)
    ).scalar_one_or_none()
    tier = account.tier if account is not None else LoyaltyTier.BRONZE
    tier_bonus = TIER_BONUSES[tier]
    if tier_bonus > 0:
        subtotal += _percentage(subtotal, tier_bonus)
        reasons.append(f"{tier.value} tier bonus (+{tier_bonus}%)")

    return PointsEarning(
        base_points=base_points,
        bonus_points=subtotal - base_points,
        total_points=subtotal,
        reason=", ".join(reasons) if reasons else "Base points",
    )


def _update_account(session: Session, account: LoyaltyAccount, *, delta_total: int, delta_available: int,
                    delta_lifetime: int, tier: LoyaltyTier, min_available: int = 0) -> None:
    result = session.execute(
        update(LoyaltyAccount)
        .where(LoyaltyAccount.id == account.id)
        .where(LoyaltyAccount.version == account.version)
        .where(LoyaltyAccount.available_points >= min_available)
        .values(
            total_points=account.total_points + delta_total,
            available_points=account.available_points + delta_available,
            lifetime_points=account.lifetime_points + delta_lifetime,
            tier=tier,
            version=account.version + 1,
            updated_at=utc_now(),
        )
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        logger.warning("Loyalty account %s version conflict", account.id)
        raise ConcurrentModification("Loyalty account was modified by another request. Please retry.")
    session.refresh(account)


def award_points_for_order(session: Session, user_id: str, order_id: str, amount, tailor_id: str,
                           is_group_order: bool = False,
                           settings: LoyaltySettings = LoyaltySettings()) -> PointsAward:
    """Record the points for a completed order and the one-off order-count milestone bonus."""
    already = session.execute(
        select(func.count(LoyaltyTransaction.id))
        .where(LoyaltyTransaction.order_id == order_id)
        .where(LoyaltyTransaction.transaction_type == LoyaltyTransactionType.EARN)
    ).scalar_one()
    if already:
        raise InvalidState("Points have already been awarded for this order.", code="points_already_awarded")

    earning = calculate_points_for_order(session, user_id, amount, tailor_id, is_group_order,
                                         settings, exclude_order_id=order_id)
    account = get_or_create_account(session, user_id)
    previous_tier = account.tier

    session.add(LoyaltyTransaction(
        user_id=user_id,
        transaction_type=LoyaltyTransactionType.EARN,
        points=earning.total_points,
        description=f"Earned {earning.total_points} points from order. {earning.reason}",
        order_id=order_id,
    ))

    milestone_bonus = 0
    order_count = completed_order_count(session, user_id)
    if order_count == settings.milestone_order_count:
        milestone_bonus = settings.milestone_bonus
        session.add(LoyaltyTransaction(
            user_id=user_id,
            transaction_type=LoyaltyTransactionType.BONUS,
            points=milestone_bonus,
            description=f"Milestone bonus for {order_count} completed orders",
            order_id=order_id,
        ))

    gained = earning.total_points + milestone_bonus
    _update_account(
        session, account,
        delta_total=gained,
        delta_available=gained,
        delta_lifetime=gained,
        tier=upgraded_tier(account.tier, account.lifetime_points + gained),
    )
    logger.info("Awarded %s points to user %s for order %s", gained, user_id, order_id)
    return PointsAward(account=account, earning=earning, milestone_bonus=milestone_bonus,
                       previous_tier=previous_tier)


def redeem_reward(session: Session, user_id: str, reward_id: str,
                  order_id: str | None = None) -> tuple[LoyaltyAccount, LoyaltyReward]:
    reward = session.get(LoyaltyReward, reward_id)
    if reward is None:
        raise NotFound("Reward not found", code="reward_not_found")
    if not reward.is_active:
        raise InvalidState("Reward is no longer active", code="reward_inactive")

    account = get_or_create_account(session, user_id)
    if account.available_points < reward.points_cost:
        raise InsufficientPoints(account.available_points, reward.points_cost)

    _update_account(
        session, account,
        delta_total=-reward.points_cost,
        delta_available=-reward.points_cost,
        delta_lifetime=0,
        tier=account.tier,
        min_available=reward.points_cost,
    )
    session.add(LoyaltyTransaction(
        user_id=user_id,
        transaction_type=LoyaltyTransactionType.REDEEM,
        points=-reward.points_cost,
        description=f"Redeemed reward: {reward.name}",
        order_id=order_id,
    ))
    session.flush()
    logger.info("User %s redeemed %s for %s points", user_id, reward.name, reward.points_cost)
    return account, reward


def calculate_discount_amount(reward: LoyaltyReward, order_amount) -> Decimal:
    order_amount = to_decimal(order_amount)
    if reward.reward_type == RewardType.PERCENTAGE_DISCOUNT and reward.discount_percentage:
        return quantize(order_amount * Decimal(reward.discount_percentage) / Decimal(100))
    if reward.reward_type == RewardType.FIXED_DISCOUNT and reward.discount_amount:
        return min(quantize(reward.discount_amount), quantize(order_amount))
    return Decimal("0.00")


def transaction_history(session: Session, user_id: str, limit: int = 50) -> list[LoyaltyTransaction]:
    return list(session.execute(
        select(LoyaltyTransaction)
        .where(LoyaltyTransaction.user_id == user_id)
        .order_by(LoyaltyTransaction.created_at.desc())
        .limit(limit)
    ).scalars())


def active_rewards(session: Session) -> list[LoyaltyReward]:
    return list(session.execute(
        select(LoyaltyReward).where(LoyaltyReward.is_active.is_(True)).order_by(LoyaltyReward.points_cost)
    ).scalars())


def affordable_rewards(session: Session, user_id: str) -> list[LoyaltyReward]:
    account = get_or_create_account(session, user_id)
    return [reward for reward in active_rewards(session) if reward.points_cost <= account.available_points]
