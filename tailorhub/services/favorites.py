"""Saved orders a customer can reorder in one step."""
from __future__ import annotations

import logging
from dataclasses import dataclass

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from ..enums import OrderStatus
from ..errors import InvalidState, NotFound, ValidationError
from ..models import FavoriteOrder, Order, User
from . import commission, reorder

logger = logging.getLogger(__name__)

MAX_FAVORITES = 50
NICKNAME_MAX_LENGTH = 100


@dataclass(frozen=True)
class FavoriteCheck:
    can_favorite: bool
    reason: str | None = None

    def to_dict(self) -> dict[str, object]:
        payload: dict[str, object] = {"can_favorite": self.can_favorite}
        if self.reason:
            payload["reason"] = self.reason
        return payload


def _clean_nickname(nickname: object) -> str | None:
    if nickname is None:
        return None
    if not isinstance(nickname, str):
        raise ValidationError("Nickname must be text", field="nickname")
    nickname = nickname.strip()
    if len(nickname) > NICKNAME_MAX_LENGTH:
        raise ValidationError(f"Nickname cannot exceed {NICKNAME_MAX_LENGTH} characters", field="nickname")
    return nickname or None


def _favorite_count(session: Session, user_id: str) -> int:
    return session.execute(
        select(func.count(FavoriteOrder.id)).where(FavoriteOrder.user_id == user_id)
    ).scalar_one()


def _existing(session: Session, user_id: str, order_id: str) -> FavoriteOrder | None:
    return session.execute(
        select(FavoriteOrder)
        .where(FavoriteOrder.user_id == user_id)
        .where(FavoriteOrder.order_id == order_id)
    ).scalar_one_or_none()


def can_favorite_order(session: Session, user_id: str, order_id: str) -> FavoriteCheck:
    order = session.get(Order, order_id)
    if order is None or order.customer_id != user_id:
        return FavoriteCheck(False, "Order not found")
    if order.status != OrderStatus.COMPLETED:
        return FavoriteCheck(False, "Only completed orders can be added to favorites")
    if _existing(session, user_id, order_id) is not None:
        return FavoriteCheck(False, "Already in favorites")
    if _favorite_count(session, user_id) >= MAX_FAVORITES:
        return FavoriteCheck(False, f"Maximum {MAX_FAVORITES} favorites reached")
    return FavoriteCheck(True)


def add_favorite(session: Session, user_id: str, order_id: str, nickname: object = None) -> FavoriteOrder:
    nickname = _clean_nickname(nickname)
    order = session.get(Order, order_id)
    if order is None or order.customer_id != user_id:
        raise NotFound("Order not found or does not belong to you", code="order_not_found")
    if order.status != OrderStatus.COMPLETED:
        raise InvalidState("Only completed orders can be added to favorites", code="order_not_completed")
    if _existing(session, user_id, order_id) is not None:
        raise InvalidState("Order is already in favorites", code="already_favorited")
    if _favorite_count(session, user_id) >= MAX_FAVORITES:
        raise InvalidState(
            f"Maximum {MAX_FAVORITES} favorites reached. Please remove some favorites before adding more.",
            code="favorites_limit_reached",
        )

    favorite = FavoriteOrder(user_id=user_id, order_id=order.id, nickname=nickname)
    session.add(favorite)
    session.flush()
    logger.info("User %s saved order %s as a favorite", user_id, order.id)
    return favorite


def _owned_favorite(session: Session, user_id: str, favorite_id: str) -> FavoriteOrder:
    favorite = session.get(FavoriteOrder, favorite_id)
    if favorite is None or favorite.user_id != user_id:
        raise NotFound("Favorite not found", code="favorite_not_found")
    return favorite


def update_nickname(session: Session, user_id: str, favorite_id: str, nickname: object) -> FavoriteOrder:
    favorite = _owned_favorite(session, user_id, favorite_id)
    favorite.nickname = _clean_nickname(nickname)
    session.flush()
    return favorite


def remove_favorite(session: Session, user_id: str, favorite_id: str) -> None:
    favorite = _owned_favorite(session, user_id, favorite_id)
    session.delete(favorite)
    session.flush()


def list_favorites(session: Session, user_id: str) -> list[FavoriteOrder]:
    user = session.get(User, user_id)
    if user is None:
        raise NotFound("User not found", code="user_not_found")
    return user.favorite_orders.all()


def reorder_favorite(session: Session, user_id: str, favorite_id: str,
                     modifications: reorder.ReorderModifications | None = None,
                     commission_percentage: int = commission.PLATFORM_COMMISSION_PERCENTAGE
                     ) -> tuple[Order, list[str]]:
    """Start a reorder from a saved favorite; the reorder checks and pricing apply unchanged."""
    favorite = _owned_favorite(session, user_id, favorite_id)
    return reorder.create_reorder(
        session, user_id, favorite.order_id, modifications, commission_percentage=commission_percentage,
    )
