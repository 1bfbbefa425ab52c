"""Default configuration for the TailorHub backend."""
from __future__ import annotations

import os


class Config:
    SQLALCHEMY_DATABASE_URI = os.environ.get("DATABASE_URL", "sqlite:///tailorhub.db")
    SQLALCHEMY_TRACK_MODIFICATIONS = False
    SECRET_KEY = os.environ.get("SECRET_KEY", "dev-secret-key")
    LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO")

    # Payments
    STRIPE_SECRET_KEY = os.environ.get("STRIPE_SECRET_KEY")
    CURRENCY = os.environ.get("CURRENCY", "GHS")
    PLATFORM_COMMISSION_PERCENTAGE = 20

    # Escrow milestones
    MILESTONE_AUTO_APPROVAL_HOURS = 48

    # Group orders
    MAX_ORDERS_PER_GROUP = 20

    # Reviews
    REVIEW_WINDOW_DAYS = 90
    REVIEW_PROFANITY_THRESHOLD = 3
    REVIEW_PROFANITY_WORDS = (
        "damn",
        "crap",
        "shit",
        "bastard",
        "idiot",
        "fool",
        "stupid",
    )

    # Loyalty
    LOYALTY_REPEAT_TAILOR_WINDOW_DAYS = 30
    LOYALTY_MILESTONE_ORDER_COUNT = 5
    LOYALTY_MILESTONE_BONUS = 500

    # Disputes
    DISPUTE_FULL_REFUND_FORCE_TOTAL = True


class TestingConfig(Config):
    TESTING = True
    SQLALCHEMY_DATABASE_URI = "sqlite:///:memory:"
    SECRET_KEY = "test-secret-key"
    STRIPE_SECRET_KEY = "sk_test_dummy"
