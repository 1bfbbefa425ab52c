"""Tests for favorite orders and reordering from them."""
from __future__ import annotations

from decimal import Decimal
from unittest.mock import patch

import pytest

from tailorhub.enums import EscrowStage, OrderStatus
from tailorhub.errors import InvalidState, NotFound, ValidationError
from tailorhub.models import FavoriteOrder
from tailorhub.services import favorites


@pytest.fixture
def completed(make_user, make_tailor, make_order):
    customer = make_user()
    return make_order(customer, make_tailor(), "500.00", status=OrderStatus.COMPLETED,
                      stage=EscrowStage.RELEASED, fabric="wool")


def test_add_and_list_favorites(session, completed) -> None:
    favorite = favorites.add_favorite(session, completed.customer_id, completed.id, "  Sunday kaba  ")
    session.commit()

    assert favorite.nickname == "Sunday kaba"
    listed = favorites.list_favorites(session, completed.customer_id)
    assert [item.id for item in listed] == [favorite.id]
    assert listed[0].to_dict()["order"]["id"] == completed.id


def test_only_own_completed_orders_can_be_favorited(session, completed, make_user, make_order) -> None:
    with pytest.raises(NotFound) as excinfo:
        favorites.add_favorite(session, make_user(name="Other").id, completed.id)
    assert excinfo.value.message == "Order not found or does not belong to you"

    in_progress = make_order(completed.customer, completed.tailor, status=OrderStatus.IN_PROGRESS)
    with pytest.raises(InvalidState) as excinfo:
        favorites.add_favorite(session, completed.customer_id, in_progress.id)
    assert excinfo.value.message == "Only completed orders can be added to favorites"


def test_duplicate_favorite_is_rejected(session, completed) -> None:
    favorites.add_favorite(session, completed.customer_id, completed.id)
    with pytest.raises(InvalidState) as excinfo:
        favorites.add_favorite(session, completed.customer_id, completed.id)
    assert excinfo.value.code == "already_favorited"


def test_limit_blocks_new_favorites(session, completed, make_order, monkeypatch) -> None:
    monkeypatch.setattr(favorites, "MAX_FAVORITES", 1)
    other = make_order(completed.customer, completed.tailor, status=OrderStatus.COMPLETED, stage=EscrowStage.RELEASED)
    favorites.add_favorite(session, completed.customer_id, completed.id)

    assert favorites.can_favorite_order(session, completed.customer_id, other.id).can_favorite is False
    with pytest.raises(InvalidState) as excinfo:
        favorites.add_favorite(session, completed.customer_id, other.id)
    assert excinfo.value.code == "favorites_limit_reached"


def test_rename_and_remove(session, completed, make_user) -> None:
    favorite = favorites.add_favorite(session, completed.customer_id, completed.id, "Old")

    favorites.update_nickname(session, completed.customer_id, favorite.id, "Wedding agbada")
    assert favorite.nickname == "Wedding agbada"
    with pytest.raises(ValidationError):
        favorites.update_nickname(session, completed.customer_id, favorite.id, "x" * 101)
    with pytest.raises(NotFound):
        favorites.remove_favorite(session, make_user(name="Other").id, favorite.id)

    favorites.remove_favorite(session, completed.customer_id, favorite.id)
    assert session.get(FavoriteOrder, favorite.id) is None


def test_can_favorite_order(session, completed) -> None:
    assert favorites.can_favorite_order(session, completed.customer_id, completed.id).to_dict() == {
        "can_favorite": True,
    }
    assert favorites.can_favorite_order(session, completed.customer_id, "missing").reason == "Order not found"


def test_reorder_from_favorite(session, completed) -> None:
    favorite = favorites.add_favorite(session, completed.customer_id, completed.id)

    new_order, warnings = favorites.reorder_favorite(session, completed.customer_id, favorite.id)

    assert new_order.is_reorder is True
    assert new_order.original_order_id == completed.id
    assert new_order.total_amount == Decimal("500.00")
    assert new_order.status == OrderStatus.PENDING
    assert warnings == []


def test_favorite_endpoints(client, stripe_mock, completed) -> None:
    with patch("tailorhub.routes.get_jwt_identity", return_value=completed.customer_id):
        created = client.post("/favorites", json={"order_id": completed.id, "nickname": "Kente set"})
        check = client.get(f"/favorites/check/{completed.id}")
        listed = client.get("/favorites")
        favorite_id = created.get_json()["favorite"]["id"]
        renamed = client.put(f"/favorites/{favorite_id}", json={"nickname": "Naming ceremony"})
        reordered = client.post(f"/favorites/{favorite_id}/reorder",
                                json={"modifications": {"fabric_choice": "silk"}})
        removed = client.delete(f"/favorites/{favorite_id}")
        missing = client.delete(f"/favorites/{favorite_id}")

    assert created.status_code == 201
    assert check.get_json() == {"can_favorite": False, "reason": "Already in favorites"}
    assert listed.get_json()["count"] == 1
    assert renamed.get_json()["favorite"]["nickname"] == "Naming ceremony"
    assert reordered.status_code == 201
    assert reordered.get_json()["order"]["original_order_id"] == completed.id
    assert stripe_mock.PaymentIntent.create.call_count == 1
    assert removed.status_code == 200
    assert missing.status_code == 404
    assert missing.get_json()["error"] == "favorite_not_found"


def test_add_favorite_requires_order_id(client, completed) -> None:
    with patch("tailorhub.routes.get_jwt_identity", return_value=completed.customer_id):
        response = client.post("/favorites", json={})

    assert response.status_code == 400
