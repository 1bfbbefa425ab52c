#!/usr/bin/env python3
"""
Seed the default loyalty reward catalog.
Rewards that already exist (matched by name) are left untouched.
"""
from decimal import Decimal

from sqlalchemy import select

from tailorhub import create_app
from tailorhub.enums import RewardType
from tailorhub.extensions import db
from tailorhub.models import LoyaltyReward

DEFAULT_REWARDS = [
    {"name": "10% Discount", "description": "Save 10% on your next order", "points_cost": 500,
     "reward_type": RewardType.PERCENTAGE_DISCOUNT, "discount_percentage": 10},
    {"name": "15% Discount", "description": "Save 15% on your next order", "points_cost": 750,
     "reward_type": RewardType.PERCENTAGE_DISCOUNT, "discount_percentage": 15},
    {"name": "20% Discount", "description": "Save 20% on your next order", "points_cost": 1000,
     "reward_type": RewardType.PERCENTAGE_DISCOUNT, "discount_percentage": 20},
    {"name": "GHS 50 Off", "description": "Take 50 cedis off your next order", "points_cost": 600,
     "reward_type": RewardType.FIXED_DISCOUNT, "discount_amount": Decimal("50.00")},
]


def seed_rewards():
    app = create_app()

    with app.app_context():
        print("🔄 Seeding loyalty rewards...")
        created_count = 0

        for data in DEFAULT_REWARDS:
            existing = db.session.execute(
                select(LoyaltyReward).where(LoyaltyReward.name == data["name"])
            ).scalar_one_or_none()
            if existing is not None:
                print(f"⏭️  {data['name']} already exists")
                continue
            db.session.add(LoyaltyReward(is_active=True, **data))
            created_count += 1

        db.session.commit()
        print(f"✅ Created {created_count} reward(s)")


if __name__ == "__main__":
    seed_rewards()
