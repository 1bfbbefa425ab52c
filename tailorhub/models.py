"""Database models for the TailorHub backend."""
from __future__ import annotations

import uuid
from datetime import datetime, timezone
from decimal import Decimal

from .enums import (DeliveryStrategy, DisputeCategory, DisputeResolutionType,
                    DisputeStatus, EscrowStage, EscrowTransactionType, LoyaltyTier,
                    LoyaltyTransactionType, ModerationStatus, OrderStatus,
                    PaymentMode, RewardType, UserRole, VerificationStatus, VoteType)
from .extensions import db

MONEY = db.Numeric(12, 2)


def utc_now() -> datetime:
    """Return a timezone-aware UTC datetime."""
    return datetime.now(timezone.utc)


def new_id() -> str:
    return str(uuid.uuid4())


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value else None


def _money(value: Decimal | None) -> float | None:
    return float(value) if value is not None else None


def _enum(enum_cls, name: str) -> db.Enum:
    return db.Enum(enum_cls, name=name, native_enum=False, validate_strings=True)


class User(db.Model):
    __tablename__ = "users"

    id = db.Column(db.String(36), primary_key=True, default=new_id)
    name = db.Column(db.String(100), nullable=False)
    email = db.Column(db.String(255), unique=True, nullable=False)
    phone = db.Column(db.String(30))
    role = db.Column(_enum(UserRole, "user_role"), nullable=False, default=UserRole.CUSTOMER)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utc_now)

    favorite_orders = db.relationship("FavoriteOrder", lazy="dynamic", order_by="FavoriteOrder.created_at.desc()")

    def to_dict_basic(self) -> dict[str, object]:
        return {
            "id": self.id,
            "name": self.name,
            "email": self.email,
            "role": self.role.value if self.role else None,
        }


class TailorProfile(db.Model):
    """A tailor's business profile and order intake settings."""

    __tablename__ = "tailor_profiles"

    id = db.Column(db.String(36), primary_key=True, default=new_id)
    user_id = db.Column(db.String(36), db.ForeignKey("users.id"), nullable=False, unique=True)
    business_name = db.Column(db.String(150), nullable=False)
    verification_status = db.Column(
        _enum(VerificationStatus, "verification_status"),
        nullable=False,
        default=VerificationStatus.PENDING,
    )
    is_accepting_orders = db.Column(db.Boolean, nullable=False, default=True)
    max_concurrent_orders = db.Column(db.Integer, nullable=False, default=10)
    avg_turnaround_days = db.Column(db.Integer, nullable=False, default=14)
    # Stripe connected account receiving escrow releases
    stripe_account_id = db.Column(db.String(255))
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utc_now)

    user = db.relationship("User")

    def to_dict(self) -> dict[str, object]:
        return {
            "id": self.id,
            "user_id": self.user_id,
            "business_name": self.business_name,
            "verification_status": self.verification_status.value,
            "is_accepting_orders": bool(self.is_accepting_orders),
            "max_concurrent_orders": self.max_concurrent_orders,
            "avg_turnaround_days": self.avg_turnaround_days,
        }


class MeasurementProfile(db.Model):
    __tablename__ = "measurement_profiles"

    id = db.Column(db.String(36), primary_key=True, default=new_id)
    user_id = db.Column(db.String(36), db.ForeignKey("users.id"), nullable=False)
    nickname = db.Column(db.String(100), nullable=False)
    measurements = db.Column(db.JSON, nullable=False, default=dict)
    is_active = db.Column(db.Boolean, nullable=False, default=True)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utc_now)


class GroupOrder(db.Model):
    """Family/event order grouping several individual orders."""

    __tablename__ = "group_orders"

    id = db.Column(db.String(36), primary_key=True, default=new_id)
    organizer_id = db.Column(db.String(36), db.ForeignKey("users.id"), nullable=False)
    tailor_id = db.Column(db.String(36), db.ForeignKey("tailor_profiles.id"), nullable=False)
    group_name = db.Column(db.String(100), nullable=False)
    event_type = db.Column(db.String(50), nullable=False)
    event_date = db.Column(db.Date)
    shared_fabric = db.Column(db.Boolean, nullable=False, default=False)
    fabric_details = db.Column(db.JSON)
    payment_mode = db.Column(_enum(PaymentMode, "payment_mode"), nullable=False, default=PaymentMode.SINGLE_PAYER)
    delivery_strategy = db.Column(
        _enum(DeliveryStrategy, "delivery_strategy"),
        nullable=False,
        default=DeliveryStrategy.ALL_TOGETHER,
    )
    participant_count = db.Column(db.Integer, nullable=False)
    discount_percentage = db.Column(db.Integer, nullable=False, default=0)
    original_total = db.Column(MONEY, nullable=False)
    final_total = db.Column(MONEY, nullable=False)
    currency = db.Column(db.String(3), nullable=False, default="GHS")
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utc_now)

    orders = db.relationship("Order", back_populates="group_order")

    def to_dict(self) -> dict[str, object]:
        return {
            "id": self.id,
            "organizer_id": self.organizer_id,
            "tailor_id": self.tailor_id,
            "group_name": self.group_name,
            "event_type": self.event_type,
            "event_date": self.event_date.isoformat() if self.event_date else None,
            "shared_fabric": bool(self.shared_fabric),
            "payment_mode": self.payment_mode.value,
            "delivery_strategy": self.delivery_strategy.value,
            "participant_count": self.participant_count,
            "discount_percentage": self.discount_percentage,
            "original_total": _money(self.original_total),
            "final_total": _money(self.final_total),
            "currency": self.currency,
            "orders": [order.to_dict() for order in self.orders],
        }


class Order(db.Model):
    """A single garment commission and its escrow position."""

    __tablename__ = "orders"

    id = db.Column(db.String(36), primary_key=True, default=new_id)
    customer_id = db.Column(db.String(36), db.ForeignKey("users.id"), nullable=False)
    tailor_id = db.Column(db.String(36), db.ForeignKey("tailor_profiles.id"), nullable=False)
    group_order_id = db.Column(db.String(36), db.ForeignKey("group_orders.id"))
    measurement_profile_id = db.Column(db.String(36), db.ForeignKey("measurement_profiles.id"))
    garment_type = db.Column(db.String(100), nullable=False)
    fabric = db.Column(db.String(50))
    special_instructions = db.Column(db.Text)

    total_amount = db.Column(MONEY, nullable=False)
    currency = db.Column(db.String(3), nullable=False, default="GHS")
    deposit_amount = db.Column(MONEY, nullable=False)
    fitting_amount = db.Column(MONEY, nullable=False)
    final_amount = db.Column(MONEY, nullable=False)

    status = db.Column(_enum(OrderStatus, "order_status"), nullable=False, default=OrderStatus.PENDING)
    escrow_stage = db.Column(_enum(EscrowStage, "escrow_stage"), nullable=False, default=EscrowStage.DEPOSIT)
    escrow_balance = db.Column(MONEY, nullable=False, default=Decimal("0.00"))
    deposit_released = db.Column(db.Boolean, nullable=False, default=False)
    payment_intent_id = db.Column(db.String(255))
    # Platform share of every payout, fixed when the order is placed
    commission_percentage = db.Column(db.Integer, nullable=False, default=20)
    # Milestone the tailor has asked the customer to approve
    milestone_submitted_stage = db.Column(_enum(EscrowStage, "milestone_submitted_stage"))
    milestone_submitted_at = db.Column(db.DateTime(timezone=True))
    # Optimistic lock, bumped on every financial mutation
    version = db.Column(db.Integer, nullable=False, default=1)

    rush_order = db.Column(db.Boolean, nullable=False, default=False)
    is_reorder = db.Column(db.Boolean, nullable=False, default=False)
    original_order_id = db.Column(db.String(36), db.ForeignKey("orders.id"))
    reorder_modifications = db.Column(db.JSON)
    estimated_delivery = db.Column(db.DateTime(timezone=True))

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utc_now)
    accepted_at = db.Column(db.DateTime(timezone=True))
    delivered_at = db.Column(db.DateTime(timezone=True))
    completed_at = db.Column(db.DateTime(timezone=True))
    cancelled_at = db.Column(db.DateTime(timezone=True))
    updated_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utc_now, onupdate=utc_now)

    customer = db.relationship("User")
    tailor = db.relationship("TailorProfile")
    group_order = db.relationship("GroupOrder", back_populates="orders")
    original_order = db.relationship("Order", remote_side=[id])

    def to_dict(self) -> dict[str, object]:
        return {
            "id": self.id,
            "customer_id": self.customer_id,
            "tailor_id": self.tailor_id,
            "group_order_id": self.group_order_id,
            "measurement_profile_id": self.measurement_profile_id,
            "garment_type": self.garment_type,
            "fabric": self.fabric,
            "total_amount": _money(self.total_amount),
            "currency": self.currency,
            "escrow": {
                "stage": self.escrow_stage.value,
                "balance": _money(self.escrow_balance),
                "deposit_amount": _money(self.deposit_amount),
                "fitting_amount": _money(self.fitting_amount),
                "final_amount": _money(self.final_amount),
                "commission_percentage": self.commission_percentage,
                "pending_milestone": self.milestone_submitted_stage.value if self.milestone_submitted_stage else None,
            },
            "status": self.status.value,
            "rush_order": bool(self.rush_order),
            "is_reorder": bool(self.is_reorder),
            "original_order_id": self.original_order_id,
            "reorder_modifications": self.reorder_modifications,
            "estimated_delivery": _iso(self.estimated_delivery),
            "created_at": _iso(self.created_at),
            "accepted_at": _iso(self.accepted_at),
            "delivered_at": _iso(self.delivered_at),
            "completed_at": _iso(self.completed_at),
            "cancelled_at": _iso(self.cancelled_at),
        }


class EscrowTransaction(db.Model):
    """Immutable record of funds held, released or refunded for an order."""

    __tablename__ = "escrow_transactions"

    id = db.Column(db.String(36), primary_key=True, default=new_id)
    order_id = db.Column(db.String(36), db.ForeignKey("orders.id"), nullable=False)
    transaction_type = db.Column(_enum(EscrowTransactionType, "escrow_transaction_type"), nullable=False)
    amount = db.Column(MONEY, nullable=False)
    # Platform share withheld from a payout, or returned by a reversal
    commission_amount = db.Column(MONEY, nullable=False, default=Decimal("0.00"))
    from_stage = db.Column(_enum(EscrowStage, "escrow_from_stage"))
    to_stage = db.Column(_enum(EscrowStage, "escrow_to_stage"))
    # Idempotency key sent to the payment gateway
    reference = db.Column(db.String(64), nullable=False, unique=True)
    gateway_id = db.Column(db.String(255))
    actor_id = db.Column(db.String(36))
    notes = db.Column(db.Text)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utc_now)

    def to_dict(self) -> dict[str, object]:
        return {
            "id": self.id,
            "order_id": self.order_id,
            "type": self.transaction_type.value,
            "amount": _money(self.amount),
            "commission_amount": _money(self.commission_amount),
            "from_stage": self.from_stage.value if self.from_stage else None,
            "to_stage": self.to_stage.value if self.to_stage else None,
            "reference": self.reference,
            "gateway_id": self.gateway_id,
            "notes": self.notes,
            "created_at": _iso(self.created_at),
        }


class LoyaltyAccount(db.Model):
    __tablename__ = "loyalty_accounts"

    id = db.Column(db.String(36), primary_key=True, default=new_id)
    user_id = db.Column(db.String(36), db.ForeignKey("users.id"), nullable=False, unique=True)
    total_points = db.Column(db.Integer, nullable=False, default=0)
    available_points = db.Column(db.Integer, nullable=False, default=0)
    lifetime_points = db.Column(db.Integer, nullable=False, default=0)
    tier = db.Column(_enum(LoyaltyTier, "loyalty_tier"), nullable=False, default=LoyaltyTier.BRONZE)
    version = db.Column(db.Integer, nullable=False, default=1)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utc_now)
    updated_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utc_now, onupdate=utc_now)

    __table_args__ = (
        db.CheckConstraint("available_points >= 0", name="ck_loyalty_available_non_negative"),
    )

    def to_dict(self) -> dict[str, object]:
        return {
            "id": self.id,
            "user_id": self.user_id,
            "total_points": self.total_points,
            "available_points": self.available_points,
            "lifetime_points": self.lifetime_points,
            "tier": self.tier.value,
            "updated_at": _iso(self.updated_at),
        }


class LoyaltyTransaction(db.Model):
    """Append-only points ledger entry."""

    __tablename__ = "loyalty_transactions"

    id = db.Column(db.String(36), primary_key=True, default=new_id)
    user_id = db.Column(db.String(36), db.ForeignKey("users.id"), nullable=False)
    transaction_type = db.Column(_enum(LoyaltyTransactionType, "loyalty_transaction_type"), nullable=False)
    points = db.Column(db.Integer, nullable=False)
    description = db.Column(db.String(255), nullable=False)
    order_id = db.Column(db.String(36), db.ForeignKey("orders.id"))
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utc_now)

    def to_dict(self) -> dict[str, object]:
        return {
            "id": self.id,
            "user_id": self.user_id,
            "type": self.transaction_type.value,
            "points": self.points,
            "description": self.description,
            "order_id": self.order_id,
            "created_at": _iso(self.created_at),
        }


class LoyaltyReward(db.Model):
    __tablename__ = "loyalty_rewards"

    id = db.Column(db.String(36), primary_key=True, default=new_id)
    name = db.Column(db.String(100), nullable=False)
    description = db.Column(db.Text)
    points_cost = db.Column(db.Integer, nullable=False)
    reward_type = db.Column(_enum(RewardType, "reward_type"), nullable=False)
    discount_percentage = db.Column(db.Integer)
    discount_amount = db.Column(MONEY)
    is_active = db.Column(db.Boolean, nullable=False, default=True)

    def to_dict(self) -> dict[str, object]:
        return {
            "id": self.id,
            "name": self.name,
            "description": self.description,
            "points_cost": self.points_cost,
            "reward_type": self.reward_type.value,
            "discount_percentage": self.discount_percentage,
            "discount_amount": _money(self.discount_amount),
            "is_active": bool(self.is_active),
        }


class Review(db.Model):
    """Customer review of a delivered order."""

    __tablename__ = "reviews"

    id = db.Column(db.String(36), primary_key=True, default=new_id)
    order_id = db.Column(db.String(36), db.ForeignKey("orders.id"), nullable=False, unique=True)
    customer_id = db.Column(db.String(36), db.ForeignKey("users.id"), nullable=False)
    tailor_id = db.Column(db.String(36), db.ForeignKey("tailor_profiles.id"), nullable=False)
    rating_fit = db.Column(db.Integer, nullable=False)
    rating_quality = db.Column(db.Integer, nullable=False)
    rating_communication = db.Column(db.Integer, nullable=False)
    rating_timeliness = db.Column(db.Integer, nullable=False)
    overall_rating = db.Column(db.Numeric(3, 2), nullable=False)
    review_text = db.Column(db.Text)
    moderation_status = db.Column(
        _enum(ModerationStatus, "moderation_status"),
        nullable=False,
        default=ModerationStatus.PENDING,
    )
    moderation_reason = db.Column(db.String(255))
    moderated_by = db.Column(db.String(36))
    moderated_at = db.Column(db.DateTime(timezone=True))
    helpful_count = db.Column(db.Integer, nullable=False, default=0)
    unhelpful_count = db.Column(db.Integer, nullable=False, default=0)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utc_now)
    updated_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utc_now, onupdate=utc_now)

    response = db.relationship("ReviewResponse", uselist=False, back_populates="review")

    def to_dict(self) -> dict[str, object]:
        return {
            "id": self.id,
            "order_id": self.order_id,
            "customer_id": self.customer_id,
            "tailor_id": self.tailor_id,
            "ratings": {
                "fit": self.rating_fit,
                "quality": self.rating_quality,
                "communication": self.rating_communication,
                "timeliness": self.rating_timeliness,
            },
            "overall_rating": float(self.overall_rating),
            "review_text": self.review_text,
            "moderation_status": self.moderation_status.value,
            "moderation_reason": self.moderation_reason,
            "helpful_count": self.helpful_count,
            "unhelpful_count": self.unhelpful_count,
            "response": self.response.to_dict() if self.response else None,
            "created_at": _iso(self.created_at),
        }


class ReviewVote(db.Model):
    __tablename__ = "review_votes"

    id = db.Column(db.String(36), primary_key=True, default=new_id)
    review_id = db.Column(db.String(36), db.ForeignKey("reviews.id"), nullable=False)
    user_id = db.Column(db.String(36), db.ForeignKey("users.id"), nullable=False)
    vote_type = db.Column(_enum(VoteType, "vote_type"), nullable=False)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utc_now)
    updated_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utc_now, onupdate=utc_now)

    __table_args__ = (db.UniqueConstraint("review_id", "user_id", name="uq_review_vote_user"),)

    def to_dict(self) -> dict[str, object]:
        return {
            "id": self.id,
            "review_id": self.review_id,
            "user_id": self.user_id,
            "vote_type": self.vote_type.value,
        }


class ReviewResponse(db.Model):
    __tablename__ = "review_responses"

    id = db.Column(db.String(36), primary_key=True, default=new_id)
    review_id = db.Column(db.String(36), db.ForeignKey("reviews.id"), nullable=False, unique=True)
    tailor_id = db.Column(db.String(36), db.ForeignKey("tailor_profiles.id"), nullable=False)
    response_text = db.Column(db.Text, nullable=False)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utc_now)

    review = db.relationship("Review", back_populates="response")

    def to_dict(self) -> dict[str, object]:
        return {
            "id": self.id,
            "tailor_id": self.tailor_id,
            "response_text": self.response_text,
            "created_at": _iso(self.created_at),
        }


class Dispute(db.Model):
    __tablename__ = "disputes"

    id = db.Column(db.String(36), primary_key=True, default=new_id)
    order_id = db.Column(db.String(36), db.ForeignKey("orders.id"), nullable=False)
    created_by = db.Column(db.String(36), db.ForeignKey("users.id"), nullable=False)
    category = db.Column(_enum(DisputeCategory, "dispute_category"), nullable=False)
    title = db.Column(db.String(200), nullable=False)
    description = db.Column(db.Text, nullable=False)
    status = db.Column(_enum(DisputeStatus, "dispute_status"), nullable=False, default=DisputeStatus.OPEN)
    # Order status to restore on a NO_ACTION resolution
    order_status_before = db.Column(_enum(OrderStatus, "dispute_order_status"))

    resolution_type = db.Column(_enum(DisputeResolutionType, "dispute_resolution_type"))
    outcome = db.Column(db.Text)
    refund_amount = db.Column(MONEY)
    reason_code = db.Column(db.String(50))
    admin_notes = db.Column(db.Text)
    resolved_by = db.Column(db.String(36))
    resolved_at = db.Column(db.DateTime(timezone=True))
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utc_now)

    order = db.relationship("Order")

    def to_dict(self) -> dict[str, object]:
        return {
            "id": self.id,
            "order_id": self.order_id,
            "created_by": self.created_by,
            "category": self.category.value,
            "title": self.title,
            "description": self.description,
            "status": self.status.value,
            "resolution_type": self.resolution_type.value if self.resolution_type else None,
            "outcome": self.outcome,
            "refund_amount": _money(self.refund_amount),
            "reason_code": self.reason_code,
            "admin_notes": self.admin_notes,
            "resolved_by": self.resolved_by,
            "resolved_at": _iso(self.resolved_at),
            "created_at": _iso(self.created_at),
        }


class FavoriteOrder(db.Model):
    """A completed order the customer saved for quick reordering."""

    __tablename__ = "favorite_orders"

    id = db.Column(db.String(36), primary_key=True, default=new_id)
    user_id = db.Column(db.String(36), db.ForeignKey("users.id"), nullable=False)
    order_id = db.Column(db.String(36), db.ForeignKey("orders.id"), nullable=False)
    nickname = db.Column(db.String(100))
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utc_now)

    __table_args__ = (db.UniqueConstraint("user_id", "order_id", name="uq_favorite_order_user"),)

    order = db.relationship("Order")

    def to_dict(self) -> dict[str, object]:
        return {
            "id": self.id,
            "order_id": self.order_id,
            "nickname": self.nickname,
            "order": self.order.to_dict() if self.order else None,
            "created_at": _iso(self.created_at),
        }
