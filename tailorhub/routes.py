"""HTTP routes for the TailorHub backend."""
from __future__ import annotations

from flask import Blueprint, Flask, current_app, jsonify, request
from sqlalchemy import select, text
from sqlalchemy.exc import SQLAlchemyError

from .auth import get_jwt_identity
from .enums import UserRole
from .errors import Forbidden, NotFound, ServiceError, Unauthorized, ValidationError
from .extensions import db
from .models import EscrowTransaction, Order, Review, User
from .payments import StripeGateway
from .services import (bulk_discount, commission, disputes, escrow, favorites,
                       loyalty, orders, reorder, reviews)

bp = Blueprint("api", __name__)


@bp.errorhandler(ServiceError)
def handle_service_error(exc: ServiceError) -> tuple[dict[str, object], int]:
    db.session.rollback()
    if exc.status_code >= 500:
        current_app.logger.error("Request failed: %s", exc.message)
    else:
        current_app.logger.warning("Request rejected (%s): %s", exc.code, exc.message)
    return jsonify(exc.to_dict()), exc.status_code


@bp.errorhandler(SQLAlchemyError)
def handle_database_error(exc: SQLAlchemyError) -> tuple[dict[str, object], int]:
    db.session.rollback()
    current_app.logger.exception("Database error while handling request", exc_info=exc)
    return jsonify({"error": "database_error", "message": "A database error occurred."}), 500


def _gateway() -> StripeGateway:
    return StripeGateway(current_app.config.get("STRIPE_SECRET_KEY"), current_app.config.get("CURRENCY", "GHS"))


def _commission_percentage() -> int:
    return int(current_app.config.get("PLATFORM_COMMISSION_PERCENTAGE", commission.PLATFORM_COMMISSION_PERCENTAGE))


def _loyalty_settings() -> loyalty.LoyaltySettings:
    return loyalty.LoyaltySettings.from_config(current_app.config)


def _moderation_settings() -> reviews.ModerationSettings:
    return reviews.ModerationSettings.from_words(
        current_app.config.get("REVIEW_PROFANITY_WORDS", ()),
        int(current_app.config.get("REVIEW_PROFANITY_THRESHOLD", reviews.PROFANITY_THRESHOLD)),
    )


def _current_user() -> User:
    user_id = get_jwt_identity()
    if not user_id:
        raise Unauthorized("Authentication required. Please log in to continue.")
    user = db.session.get(User, user_id)
    if user is None:
        raise Unauthorized("Authentication required. Please log in to continue.")
    return user


def _current_admin() -> User:
    user = _current_user()
    if user.role != UserRole.ADMIN:
        raise Forbidden("Administrator access required.")
    return user


def _payload() -> dict[str, object]:
    payload = request.get_json(silent=True)
    if payload is None:
        return {}
    if not isinstance(payload, dict):
        raise ValidationError("Request body must be a JSON object")
    return payload


@bp.get("/health")
def health_check() -> tuple[dict[str, str], int]:
    """
    Expose a simple uptime check endpoint.
    ---
    tags:
      - Health
    responses:
      200:
        description: Service is healthy and running.
    """
    return jsonify({"status": "ok"}), 200


@bp.get("/db-health")
def database_health() -> tuple[dict[str, str], int]:
    """Check connectivity to the configured database."""
    try:
        db.session.execute(text("SELECT 1"))
    except SQLAlchemyError as exc:
        current_app.logger.exception("Database connectivity check failed", exc_info=exc)
        return jsonify({"database": "unavailable"}), 500

    return jsonify({"database": "ok"}), 200


# --- Orders ---

@bp.post("/orders")
def create_order() -> tuple[dict[str, object], int]:
    """Place an order with a tailor; the total is held in escrow.
    ---
    tags:
      - Orders
    security:
      - Bearer: []
    parameters:
      - name: body
        in: body
        required: true
        schema:
          type: object
          properties:
            tailor_id:
              type: string
            garment_type:
              type: string
            total_amount:
              type: number
            fabric:
              type: string
            measurement_profile_id:
              type: string
            special_instructions:
              type: string
            rush_order:
              type: boolean
          required:
            - tailor_id
            - garment_type
            - total_amount
    responses:
      201:
        description: Order created and funds held
      400:
        description: Invalid payload
      401:
        description: Authentication required
      422:
        description: Tailor unavailable
      502:
        description: Payment provider temporarily unavailable
    """
    user = _current_user()
    payload = _payload()
    tailor_id = payload.get("tailor_id")
    if not tailor_id:
        raise ValidationError("tailor_id is required", field="tailor_id")

    order = orders.create_order(
        db.session, _gateway(), user.id, tailor_id, payload.get("garment_type"), payload.get("total_amount"),
        fabric=payload.get("fabric"),
        measurement_profile_id=payload.get("measurement_profile_id"),
        special_instructions=payload.get("special_instructions"),
        rush_order=bool(payload.get("rush_order", False)),
        currency=current_app.config.get("CURRENCY", "GHS"),
        commission_percentage=_commission_percentage(),
    )
    db.session.commit()
    return jsonify({"order": order.to_dict()}), 201


@bp.post("/orders/<order_id>/accept")
def accept_order(order_id: str) -> tuple[dict[str, object], int]:
    """Tailor accepts a pending order and receives the deposit."""
    user = _current_user()
    order = orders.accept_order(db.session, _gateway(), order_id, user.id)
    db.session.commit()
    return jsonify({"order": order.to_dict()}), 200


@bp.put("/orders/<order_id>/status")
def update_order_status(order_id: str) -> tuple[dict[str, object], int]:
    user = _current_user()
    payload = _payload()
    order = orders.update_order_status(db.session, order_id, user.id, payload.get("status"))
    db.session.commit()
    return jsonify({"order": order.to_dict()}), 200


@bp.post("/orders/<order_id>/milestones/approve")
def approve_milestone(order_id: str) -> tuple[dict[str, object], int]:
    """Approve the FITTING or FINAL milestone and release that stage's funds.
    ---
    tags:
      - Escrow
    security:
      - Bearer: []
    parameters:
      - name: order_id
        in: path
        type: string
        required: true
      - name: body
        in: body
        required: true
        schema:
          type: object
          properties:
            stage:
              type: string
              enum: [FITTING, FINAL]
            notes:
              type: string
          required:
            - stage
    responses:
      200:
        description: Milestone approved, funds released
      400:
        description: Invalid stage
      403:
        description: Not the customer on this order
      404:
        description: Order not found
      409:
        description: Stage already approved, out of order, or concurrent update
    """
    user = _current_user()
    payload = _payload()
    approval = escrow.approve_milestone(
        db.session, _gateway(), order_id, payload.get("stage"), user.id, notes=payload.get("notes"),
    )
    db.session.commit()
    return jsonify(approval.to_dict()), 200


@bp.post("/orders/<order_id>/milestones/submit")
def submit_milestone(order_id: str) -> tuple[dict[str, object], int]:
    """Tailor asks the customer to approve the next milestone.
    ---
    tags:
      - Escrow
    security:
      - Bearer: []
    parameters:
      - name: body
        in: body
        required: true
        schema:
          type: object
          properties:
            stage:
              type: string
              enum: [FITTING, FINAL]
    responses:
      200:
        description: Milestone awaiting customer approval
      403:
        description: Not the tailor on this order
      409:
        description: Stage already approved, already submitted, or out of order
    """
    user = _current_user()
    order = escrow.submit_milestone(db.session, order_id, user.id, _payload().get("stage"))
    db.session.commit()
    return jsonify({"order": order.to_dict()}), 200


@bp.post("/admin/milestones/auto-approve")
def auto_approve_milestones() -> tuple[dict[str, object], int]:
    """Approve submitted milestones the customer has left unanswered past the deadline."""
    _current_admin()
    report = escrow.auto_approve_due_milestones(
        db.session, _gateway(),
        window_hours=int(current_app.config.get("MILESTONE_AUTO_APPROVAL_HOURS", escrow.AUTO_APPROVAL_HOURS)),
    )
    return jsonify(report.to_dict()), 200


@bp.get("/orders/<order_id>/commission")
def order_commission(order_id: str) -> tuple[dict[str, object], int]:
    user = _current_user()
    breakdown = commission.order_commission(db.session, order_id, user.id, is_admin=user.role == UserRole.ADMIN)
    return jsonify(breakdown), 200


@bp.get("/tailors/me/earnings")
def tailor_earnings() -> tuple[dict[str, object], int]:
    user = _current_user()
    return jsonify({"earnings": commission.tailor_earnings(db.session, user.id)}), 200


@bp.post("/orders/<order_id>/complete")
def complete_order(order_id: str) -> tuple[dict[str, object], int]:
    """Customer confirms a delivered order; escrow closes and points are earned."""
    user = _current_user()
    order, award = orders.complete_order(db.session, order_id, user.id, _loyalty_settings())
    db.session.commit()
    return jsonify({
        "order": order.to_dict(),
        "loyalty": {
            "points_earned": award.earning.to_dict(),
            "milestone_bonus": award.milestone_bonus,
            "tier_upgraded": award.tier_upgraded,
            "account": award.account.to_dict(),
        },
    }), 200


# --- Group orders ---

@bp.post("/group-orders/bulk-discount")
def calculate_bulk_discount() -> tuple[dict[str, object], int]:
    """Price a group of garments with the bulk discount for its size.
    ---
    tags:
      - Group Orders
    parameters:
      - name: body
        in: body
        required: true
        schema:
          type: object
          properties:
            item_count:
              type: integer
            order_amounts:
              type: array
              items:
                type: number
    responses:
      200:
        description: Discount breakdown
      400:
        description: Invalid request
    """
    payload = _payload()
    item_count = payload.get("item_count")
    discount = bulk_discount.calculate(
        item_count, payload.get("order_amounts"),
        int(current_app.config.get("MAX_ORDERS_PER_GROUP", bulk_discount.MAX_ORDERS_PER_GROUP)),
    )
    return jsonify({
        "discount": discount.to_dict(),
        "tier": bulk_discount.discount_tier_info(item_count),
        "potential_savings": bulk_discount.potential_savings(item_count, discount.original_total),
    }), 200


@bp.post("/group-orders")
def create_group_order() -> tuple[dict[str, object], int]:
    user = _current_user()
    payload = _payload()
    tailor_id = payload.get("tailor_id")
    if not tailor_id:
        raise ValidationError("tailor_id is required", field="tailor_id")

    group = orders.create_group_order(
        db.session, _gateway(), user.id, tailor_id,
        group_name=payload.get("group_name"),
        event_type=payload.get("event_type"),
        items=payload.get("items"),
        event_date=payload.get("event_date"),
        shared_fabric=bool(payload.get("shared_fabric", False)),
        fabric_details=payload.get("fabric_details"),
        payment_mode=payload.get("payment_mode", "SINGLE_PAYER"),
        delivery_strategy=payload.get("delivery_strategy", "ALL_TOGETHER"),
        max_items=int(current_app.config.get("MAX_ORDERS_PER_GROUP", bulk_discount.MAX_ORDERS_PER_GROUP)),
        currency=current_app.config.get("CURRENCY", "GHS"),
        commission_percentage=_commission_percentage(),
    )
    db.session.commit()
    return jsonify({"group_order": group.to_dict()}), 201


# --- Reorders ---

@bp.post("/orders/<order_id>/reorder/preview")
def preview_reorder(order_id: str) -> tuple[dict[str, object], int]:
    user = _current_user()
    modifications = reorder.ReorderModifications.from_payload(_payload().get("modifications"))
    preview = reorder.preview_reorder(db.session, user.id, order_id, modifications)
    return jsonify({"preview": preview.to_dict()}), 200


@bp.post("/orders/<order_id>/reorder")
def create_reorder(order_id: str) -> tuple[dict[str, object], int]:
    """Create a new order from a completed one, with optional modifications.
    ---
    tags:
      - Orders
    security:
      - Bearer: []
    parameters:
      - name: body
        in: body
        schema:
          type: object
          properties:
            modifications:
              type: object
              properties:
                fabric_choice:
                  type: string
                measurement_profile_id:
                  type: string
                special_instructions:
                  type: string
                color_choice:
                  type: string
    responses:
      201:
        description: Reorder created with its funds held
      403:
        description: Order does not belong to you
      404:
        description: Order not found
      409:
        description: Order not completed
      422:
        description: Tailor unavailable
    """
    user = _current_user()
    modifications = reorder.ReorderModifications.from_payload(_payload().get("modifications"))
    new_order, warnings = reorder.create_reorder(
        db.session, user.id, order_id, modifications, commission_percentage=_commission_percentage(),
    )
    escrow.hold_order_funds(db.session, _gateway(), new_order, user.id)
    db.session.commit()
    return jsonify({
        "order": new_order.to_dict(),
        "pricing": reorder.calculate_pricing(new_order.original_order, modifications).to_dict(),
        "warnings": warnings,
    }), 201


# --- Favorites ---

@bp.get("/favorites")
def list_favorites() -> tuple[dict[str, object], int]:
    user = _current_user()
    saved = favorites.list_favorites(db.session, user.id)
    return jsonify({"favorites": [favorite.to_dict() for favorite in saved], "count": len(saved)}), 200


@bp.post("/favorites")
def add_favorite() -> tuple[dict[str, object], int]:
    """Save a completed order to favorites.
    ---
    tags:
      - Favorites
    security:
      - Bearer: []
    parameters:
      - name: body
        in: body
        required: true
        schema:
          type: object
          properties:
            order_id:
              type: string
            nickname:
              type: string
          required:
            - order_id
    responses:
      201:
        description: Favorite saved
      404:
        description: Order not found or does not belong to you
      409:
        description: Order not completed, already saved, or favorites limit reached
    """
    user = _current_user()
    payload = _payload()
    order_id = payload.get("order_id")
    if not order_id:
        raise ValidationError("order_id is required", field="order_id")
    favorite = favorites.add_favorite(db.session, user.id, order_id, payload.get("nickname"))
    db.session.commit()
    return jsonify({"favorite": favorite.to_dict()}), 201


@bp.get("/favorites/check/<order_id>")
def check_favorite(order_id: str) -> tuple[dict[str, object], int]:
    user = _current_user()
    return jsonify(favorites.can_favorite_order(db.session, user.id, order_id).to_dict()), 200


@bp.put("/favorites/<favorite_id>")
def rename_favorite(favorite_id: str) -> tuple[dict[str, object], int]:
    user = _current_user()
    favorite = favorites.update_nickname(db.session, user.id, favorite_id, _payload().get("nickname"))
    db.session.commit()
    return jsonify({"favorite": favorite.to_dict()}), 200


@bp.delete("/favorites/<favorite_id>")
def remove_favorite(favorite_id: str) -> tuple[dict[str, object], int]:
    user = _current_user()
    favorites.remove_favorite(db.session, user.id, favorite_id)
    db.session.commit()
    return jsonify({"message": "Favorite removed"}), 200


@bp.post("/favorites/<favorite_id>/reorder")
def reorder_favorite(favorite_id: str) -> tuple[dict[str, object], int]:
    """Reorder a saved favorite; funds for the new order are held in escrow."""
    user = _current_user()
    modifications = reorder.ReorderModifications.from_payload(_payload().get("modifications"))
    new_order, warnings = favorites.reorder_favorite(
        db.session, user.id, favorite_id, modifications, commission_percentage=_commission_percentage(),
    )
    escrow.hold_order_funds(db.session, _gateway(), new_order, user.id)
    db.session.commit()
    return jsonify({
        "order": new_order.to_dict(),
        "pricing": reorder.calculate_pricing(new_order.original_order, modifications).to_dict(),
        "warnings": warnings,
    }), 201


# --- Loyalty ---

@bp.get("/loyalty/account")
def get_loyalty_account() -> tuple[dict[str, object], int]:
    user = _current_user()
    account = loyalty.get_or_create_account(db.session, user.id)
    db.session.commit()
    return jsonify({
        "account": account.to_dict(),
        "points_to_next_tier": loyalty.points_for_next_tier(account.lifetime_points, account.tier),
        "transactions": [tx.to_dict() for tx in loyalty.transaction_history(db.session, user.id)],
        "available_rewards": [reward.to_dict() for reward in loyalty.affordable_rewards(db.session, user.id)],
    }), 200


@bp.get("/loyalty/rewards")
def list_rewards() -> tuple[dict[str, object], int]:
    return jsonify({"rewards": [reward.to_dict() for reward in loyalty.active_rewards(db.session)]}), 200


@bp.post("/loyalty/redeem")
def redeem_reward() -> tuple[dict[str, object], int]:
    """Spend points on a reward.
    ---
    tags:
      - Loyalty
    security:
      - Bearer: []
    parameters:
      - name: body
        in: body
        required: true
        schema:
          type: object
          properties:
            reward_id:
              type: string
            order_id:
              type: string
          required:
            - reward_id
    responses:
      200:
        description: Reward redeemed
      404:
        description: Reward not found
      409:
        description: Reward inactive or concurrent update
      422:
        description: Insufficient points
    """
    user = _current_user()
    payload = _payload()
    reward_id = payload.get("reward_id")
    if not reward_id:
        raise ValidationError("reward_id is required", field="reward_id")
    order_id = payload.get("order_id")

    discount_amount = None
    if order_id:
        order = db.session.get(Order, order_id)
        if order is None:
            raise NotFound("Order not found", code="order_not_found")
        if order.customer_id != user.id:
            raise Forbidden("Order does not belong to you")

    account, reward = loyalty.redeem_reward(db.session, user.id, reward_id, order_id)
    if order_id:
        discount_amount = float(loyalty.calculate_discount_amount(reward, order.total_amount))
    db.session.commit()
    return jsonify({
        "account": account.to_dict(),
        "reward": reward.to_dict(),
        "discount_amount": discount_amount,
    }), 200


# --- Reviews ---

@bp.get("/orders/<order_id>/review-eligibility")
def review_eligibility(order_id: str) -> tuple[dict[str, object], int]:
    _current_user()
    eligibility = reviews.check_review_eligibility(
        db.session, order_id,
        window_days=int(current_app.config.get("REVIEW_WINDOW_DAYS", reviews.REVIEW_WINDOW_DAYS)),
    )
    return jsonify(eligibility.to_dict()), 200


@bp.post("/orders/<order_id>/reviews")
def submit_review(order_id: str) -> tuple[dict[str, object], int]:
    """Review a delivered order.
    ---
    tags:
      - Reviews
    security:
      - Bearer: []
    parameters:
      - name: body
        in: body
        required: true
        schema:
          type: object
          properties:
            ratings:
              type: object
              properties:
                fit:
                  type: integer
                quality:
                  type: integer
                communication:
                  type: integer
                timeliness:
                  type: integer
            review_text:
              type: string
    responses:
      201:
        description: Review created and auto-moderated
      400:
        description: Invalid ratings
      409:
        description: Order not eligible for review
    """
    user = _current_user()
    payload = _payload()
    review = reviews.submit_review(
        db.session, order_id, user.id, payload.get("ratings"), payload.get("review_text"),
        _moderation_settings(),
        window_days=int(current_app.config.get("REVIEW_WINDOW_DAYS", reviews.REVIEW_WINDOW_DAYS)),
    )
    db.session.commit()
    return jsonify({"review": review.to_dict()}), 201


@bp.post("/reviews/<review_id>/votes")
def vote_on_review(review_id: str) -> tuple[dict[str, object], int]:
    user = _current_user()
    vote = reviews.vote_on_review(db.session, review_id, user.id, _payload().get("vote_type"))
    db.session.commit()
    review = db.session.get(Review, review_id)
    return jsonify({
        "vote": vote.to_dict(),
        "helpful_count": review.helpful_count,
        "unhelpful_count": review.unhelpful_count,
    }), 200


@bp.post("/reviews/<review_id>/response")
def respond_to_review(review_id: str) -> tuple[dict[str, object], int]:
    user = _current_user()
    response = reviews.respond_to_review(db.session, review_id, user.id, _payload().get("response_text"))
    db.session.commit()
    return jsonify({"response": response.to_dict()}), 201


@bp.put("/admin/reviews/<review_id>/moderation")
def moderate_review(review_id: str) -> tuple[dict[str, object], int]:
    admin = _current_admin()
    payload = _payload()
    review = reviews.moderate_review(db.session, review_id, payload.get("status"), admin.id, payload.get("reason"))
    db.session.commit()
    return jsonify({"review": review.to_dict()}), 200


# --- Disputes ---

@bp.post("/orders/<order_id>/disputes")
def open_dispute(order_id: str) -> tuple[dict[str, object], int]:
    user = _current_user()
    payload = _payload()
    dispute = disputes.open_dispute(
        db.session, order_id, user.id,
        payload.get("category"), payload.get("title"), payload.get("description"),
    )
    db.session.commit()
    return jsonify({"dispute": dispute.to_dict()}), 201


@bp.post("/admin/disputes/<dispute_id>/resolve")
def resolve_dispute(dispute_id: str) -> tuple[dict[str, object], int]:
    """Apply an admin resolution to a dispute.
    ---
    tags:
      - Disputes
    security:
      - Bearer: []
    parameters:
      - name: body
        in: body
        required: true
        schema:
          type: object
          properties:
            resolution_type:
              type: string
              enum: [FULL_REFUND, PARTIAL_REFUND, ORDER_COMPLETION, NO_ACTION]
            outcome:
              type: string
            refund_amount:
              type: number
            reason_code:
              type: string
            admin_notes:
              type: string
          required:
            - resolution_type
            - outcome
    responses:
      200:
        description: Dispute resolved
      400:
        description: Invalid resolution
      403:
        description: Administrator access required
      404:
        description: Dispute not found
      409:
        description: Dispute already resolved
    """
    admin = _current_admin()
    payload = _payload()
    dispute = disputes.resolve_dispute(
        db.session, _gateway(), dispute_id,
        resolution_type=payload.get("resolution_type"),
        outcome=payload.get("outcome"),
        refund_amount=payload.get("refund_amount"),
        reason_code=payload.get("reason_code"),
        admin_notes=payload.get("admin_notes"),
        resolved_by=admin.id,
        force_full_refund_total=bool(current_app.config.get("DISPUTE_FULL_REFUND_FORCE_TOTAL", True)),
    )
    db.session.commit()
    return jsonify({"dispute": dispute.to_dict(), "order": dispute.order.to_dict()}), 200


@bp.get("/admin/orders/<order_id>/escrow")
def escrow_reconciliation(order_id: str) -> tuple[dict[str, object], int]:
    """Escrow ledger for an order with any consistency problems found."""
    _current_admin()
    order = db.session.get(Order, order_id)
    if order is None:
        raise NotFound("Order not found", code="order_not_found")
    transactions = db.session.execute(
        select(EscrowTransaction)
        .where(EscrowTransaction.order_id == order.id)
        .order_by(EscrowTransaction.created_at)
    ).scalars()
    issues = escrow.validate_escrow_state(order)
    return jsonify({
        "order_id": order.id,
        "escrow": order.to_dict()["escrow"],
        "released_total": float(escrow.released_total(order)),
        "transactions": [tx.to_dict() for tx in transactions],
        "consistent": not issues,
        "issues": issues,
    }), 200


def register_routes(app: Flask) -> None:
    app.register_blueprint(bp)
