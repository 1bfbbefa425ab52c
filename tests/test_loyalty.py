"""Tests for the loyalty points ledger."""
from __future__ import annotations

from datetime import timedelta
from decimal import Decimal

import pytest
from sqlalchemy import select

from tailorhub.enums import EscrowStage, LoyaltyTier, LoyaltyTransactionType, OrderStatus, RewardType
from tailorhub.errors import InsufficientPoints, InvalidState, NotFound
from tailorhub.models import LoyaltyAccount, LoyaltyReward, LoyaltyTransaction, utc_now
from tailorhub.services import loyalty


def _completed(make_order, customer, tailor, total="100.00", **fields):
    return make_order(customer, tailor, total, status=OrderStatus.COMPLETED, stage=EscrowStage.RELEASED, **fields)


def _set_account(session, user_id: str, tier: LoyaltyTier, lifetime: int = 0, available: int = 0):
    account = loyalty.get_or_create_account(session, user_id)
    account.tier = tier
    account.lifetime_points = lifetime
    account.total_points = available
    account.available_points = available
    session.commit()
    return account


def _reward(session, points_cost: int = 500, active: bool = True, **fields) -> LoyaltyReward:
    reward = LoyaltyReward(
        name=fields.pop("name", "10% Discount"),
        points_cost=points_cost,
        reward_type=fields.pop("reward_type", RewardType.PERCENTAGE_DISCOUNT),
        discount_percentage=fields.pop("discount_percentage", 10),
        is_active=active,
        **fields,
    )
    session.add(reward)
    session.commit()
    return reward


@pytest.mark.parametrize(
    "lifetime, tier",
    [(0, LoyaltyTier.BRONZE), (999, LoyaltyTier.BRONZE), (1000, LoyaltyTier.SILVER),
     (4999, LoyaltyTier.SILVER), (5000, LoyaltyTier.GOLD), (15000, LoyaltyTier.PLATINUM)],
)
def test_tier_thresholds(lifetime: int, tier: LoyaltyTier) -> None:
    assert loyalty.calculate_tier(lifetime) == tier


def test_points_for_next_tier() -> None:
    assert loyalty.points_for_next_tier(250, LoyaltyTier.BRONZE) == 750
    assert loyalty.points_for_next_tier(6000, LoyaltyTier.GOLD) == 9000
    assert loyalty.points_for_next_tier(20000, LoyaltyTier.PLATINUM) is None


def test_tier_never_goes_down() -> None:
    assert loyalty.upgraded_tier(LoyaltyTier.GOLD, 10) == LoyaltyTier.GOLD


def test_first_bronze_order_earns_base_points(session, make_user, make_tailor) -> None:
    customer = make_user()
    earning = loyalty.calculate_points_for_order(session, customer.id, Decimal("500.00"), make_tailor().id)
    assert earning.base_points == 500
    assert earning.bonus_points == 0
    assert earning.total_points == 500
    assert earning.reason == "Base points"


def test_calculating_points_does_not_create_an_account(session, make_user, make_tailor) -> None:
    customer = make_user()

    loyalty.calculate_points_for_order(session, customer.id, 300, make_tailor().id)

    assert session.execute(
        select(LoyaltyAccount).where(LoyaltyAccount.user_id == customer.id)
    ).scalar_one_or_none() is None
    assert not any(isinstance(obj, LoyaltyAccount) for obj in session.new)


def test_base_points_round_down(session, make_user, make_tailor) -> None:
    earning = loyalty.calculate_points_for_order(session, make_user().id, "99.99", make_tailor().id)
    assert earning.total_points == 99


def test_silver_tier_bonus(session, make_user, make_tailor) -> None:
    customer = make_user()
    _set_account(session, customer.id, LoyaltyTier.SILVER, lifetime=1200)
    earning = loyalty.calculate_points_for_order(session, customer.id, 100, make_tailor().id)
    assert earning.total_points == 105


def test_group_and_tier_bonuses_apply_to_running_subtotal(session, make_user, make_tailor) -> None:
    customer = make_user()
    _set_account(session, customer.id, LoyaltyTier.SILVER, lifetime=1200)
    earning = loyalty.calculate_points_for_order(session, customer.id, 800, make_tailor().id, is_group_order=True)
    assert earning.base_points == 800
    assert earning.bonus_points == 82
    assert earning.total_points == 882


def test_repeat_tailor_bonus_within_window(session, make_user, make_tailor, make_order) -> None:
    customer = make_user()
    tailor = make_tailor()
    _completed(make_order, customer, tailor, completed_at=utc_now() - timedelta(days=10))

    earning = loyalty.calculate_points_for_order(session, customer.id, 200, tailor.id)
    assert earning.total_points == 220
    assert "Repeat tailor" in earning.reason


def test_repeat_tailor_bonus_expires(session, make_user, make_tailor, make_order) -> None:
    customer = make_user()
    tailor = make_tailor()
    _completed(make_order, customer, tailor, completed_at=utc_now() - timedelta(days=40))

    earning = loyalty.calculate_points_for_order(session, customer.id, 200, tailor.id)
    assert earning.total_points == 200


def test_award_crossing_threshold_upgrades_tier(session, make_user, make_tailor, make_order) -> None:
    customer = make_user()
    tailor = make_tailor()
    _set_account(session, customer.id, LoyaltyTier.BRONZE, lifetime=900, available=900)
    order = _completed(make_order, customer, tailor, "200.00")

    award = loyalty.award_points_for_order(session, customer.id, order.id, order.total_amount, tailor.id)

    assert award.earning.total_points == 200
    assert award.account.lifetime_points == 1100
    assert award.account.available_points == 1100
    assert award.account.tier == LoyaltyTier.SILVER
    assert award.tier_upgraded is True


def test_awarding_twice_for_one_order_is_rejected(session, make_user, make_tailor, make_order) -> None:
    customer = make_user()
    tailor = make_tailor()
    order = _completed(make_order, customer, tailor)
    loyalty.award_points_for_order(session, customer.id, order.id, order.total_amount, tailor.id)

    with pytest.raises(InvalidState):
        loyalty.award_points_for_order(session, customer.id, order.id, order.total_amount, tailor.id)


def test_fifth_completed_order_earns_milestone_bonus(session, make_user, make_tailor, make_order) -> None:
    customer = make_user()
    tailor = make_tailor()
    orders = [_completed(make_order, customer, tailor) for _ in range(5)]

    award = loyalty.award_points_for_order(session, customer.id, orders[-1].id, Decimal("100.00"), tailor.id)

    assert award.milestone_bonus == 500
    assert award.account.lifetime_points == 600
    bonus = session.execute(
        select(LoyaltyTransaction).where(LoyaltyTransaction.transaction_type == LoyaltyTransactionType.BONUS)
    ).scalar_one()
    assert bonus.points == 500


def test_redeem_reward_spends_available_points(session, make_user) -> None:
    customer = make_user()
    _set_account(session, customer.id, LoyaltyTier.SILVER, lifetime=1500, available=800)
    reward = _reward(session, points_cost=500)

    account, redeemed = loyalty.redeem_reward(session, customer.id, reward.id)

    assert redeemed.id == reward.id
    assert account.available_points == 300
    assert account.total_points == 300
    assert account.lifetime_points == 1500
    assert account.tier == LoyaltyTier.SILVER
    entry = loyalty.transaction_history(session, customer.id)[0]
    assert entry.transaction_type == LoyaltyTransactionType.REDEEM
    assert entry.points == -500


def test_redeem_with_insufficient_points_leaves_account_unchanged(session, make_user) -> None:
    customer = make_user()
    _set_account(session, customer.id, LoyaltyTier.BRONZE, lifetime=400, available=400)
    reward = _reward(session, points_cost=500)

    with pytest.raises(InsufficientPoints) as excinfo:
        loyalty.redeem_reward(session, customer.id, reward.id)
    assert str(excinfo.value) == "Insufficient points. You have 400 points, but need 500 points"
    assert loyalty.get_or_create_account(session, customer.id).available_points == 400


def test_redeem_missing_or_inactive_reward(session, make_user) -> None:
    customer = make_user()
    with pytest.raises(NotFound):
        loyalty.redeem_reward(session, customer.id, "missing")
    inactive = _reward(session, active=False)
    with pytest.raises(InvalidState):
        loyalty.redeem_reward(session, customer.id, inactive.id)


def test_discount_amounts(session) -> None:
    percentage = _reward(session, discount_percentage=15)
    fixed = _reward(session, name="GHS 50 Off", reward_type=RewardType.FIXED_DISCOUNT,
                    discount_percentage=None, discount_amount=Decimal("50.00"))

    assert loyalty.calculate_discount_amount(percentage, Decimal("300")) == Decimal("45.00")
    assert loyalty.calculate_discount_amount(fixed, Decimal("300")) == Decimal("50.00")
    assert loyalty.calculate_discount_amount(fixed, Decimal("30")) == Decimal("30.00")


def test_affordable_rewards(session, make_user) -> None:
    customer = make_user()
    _set_account(session, customer.id, LoyaltyTier.BRONZE, available=600)
    cheap = _reward(session, points_cost=500)
    _reward(session, name="20% Discount", points_cost=1000, discount_percentage=20)

    assert [reward.id for reward in loyalty.affordable_rewards(session, customer.id)] == [cheap.id]
