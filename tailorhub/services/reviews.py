"""Review eligibility, submission with automatic moderation, votes and responses."""
from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import ROUND_HALF_UP, Decimal
from typing import Iterable

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from ..enums import (MODERATION_TRANSITIONS, ModerationStatus, OrderStatus,
                     ReviewIneligibilityReason, VoteType)
from ..errors import (Forbidden, InvalidState, InvalidTransition, NotFound,
                      ReviewNotAllowed, ValidationError)
from ..models import Order, Review, ReviewResponse, ReviewVote, TailorProfile, utc_now

logger = logging.getLogger(__name__)

REVIEW_WINDOW_DAYS = 90
PROFANITY_THRESHOLD = 3
RATING_CATEGORIES = ("fit", "quality", "communication", "timeliness")
RESPONSE_MIN_LENGTH = 10
RESPONSE_MAX_LENGTH = 1000
SYSTEM_MODERATOR = "system"

_WORD = re.compile(r"[a-z']+")


@dataclass
class ReviewEligibility:
    can_review: bool
    reason: ReviewIneligibilityReason | None = None
    days_remaining: int | None = None
    existing_review: Review | None = None

    def to_dict(self) -> dict[str, object]:
        body: dict[str, object] = {"can_review": self.can_review}
        if self.reason is not None:
            body["reason"] = self.reason.value
        if self.days_remaining is not None:
            body["days_remaining"] = self.days_remaining
        if self.existing_review is not None:
            body["existing_review"] = self.existing_review.to_dict()
        return body


@dataclass(frozen=True)
class ModerationSettings:
    profanity_words: frozenset[str] = field(default_factory=frozenset)
    threshold: int = PROFANITY_THRESHOLD

    @classmethod
    def from_words(cls, words: Iterable[str], threshold: int = PROFANITY_THRESHOLD) -> ModerationSettings:
        return cls(frozenset(word.lower() for word in words), threshold)


def _as_utc(value: datetime) -> datetime:
    # SQLite hands datetimes back without tzinfo.
    return value.replace(tzinfo=timezone.utc) if value.tzinfo is None else value


def days_since(moment: datetime, now: datetime | None = None) -> float:
    elapsed = _as_utc(now or utc_now()) - _as_utc(moment)
    return elapsed.total_seconds() / 86400


def check_review_eligibility(session: Session, order_id: str, now: datetime | None = None,
                             window_days: int = REVIEW_WINDOW_DAYS) -> ReviewEligibility:
    order = session.get(Order, order_id)
    if order is None:
        return ReviewEligibility(False, ReviewIneligibilityReason.NOT_FOUND)
    # A disputed order is never reviewable, delivered or not.
    if order.status == OrderStatus.DISPUTED:
        return ReviewEligibility(False, ReviewIneligibilityReason.DISPUTED)
    if order.status != OrderStatus.DELIVERED or order.delivered_at is None:
        return ReviewEligibility(False, ReviewIneligibilityReason.NOT_DELIVERED)

    elapsed = days_since(order.delivered_at, now)
    if elapsed > window_days:
        return ReviewEligibility(False, ReviewIneligibilityReason.TIME_EXPIRED)

    existing = session.execute(select(Review).where(Review.order_id == order_id)).scalar_one_or_none()
    if existing is not None:
        return ReviewEligibility(False, ReviewIneligibilityReason.ALREADY_REVIEWED, existing_review=existing)

    return ReviewEligibility(True, days_remaining=int(window_days - elapsed))


def count_profane_words(text: str, words: frozenset[str]) -> int:
    return sum(1 for word in _WORD.findall(text.lower()) if word in words)


def auto_moderate(text: str | None, settings: ModerationSettings) -> tuple[ModerationStatus, str | None]:
    if not text:
        return ModerationStatus.APPROVED, None
    count = count_profane_words(text, settings.profanity_words)
    if count >= settings.threshold:
        return ModerationStatus.FLAGGED, f"Contains {count} profane words (threshold: {settings.threshold})"
    return ModerationStatus.APPROVED, None


def _validate_ratings(ratings: object) -> dict[str, int]:
    if not isinstance(ratings, dict):
        raise ValidationError("Ratings must be an object", field="ratings")
    errors = []
    cleaned: dict[str, int] = {}
    for category in RATING_CATEGORIES:
        value = ratings.get(category)
        if not isinstance(value, int) or isinstance(value, bool) or not 1 <= value <= 5:
            errors.append({"field": f"ratings.{category}", "message": "Rating must be an integer from 1 to 5"})
        else:
            cleaned[category] = value
    if errors:
        raise ValidationError("Invalid ratings", errors=errors, code="invalid_rating")
    return cleaned


def overall_rating(ratings: dict[str, int]) -> Decimal:
    mean = Decimal(sum(ratings[c] for c in RATING_CATEGORIES)) / Decimal(len(RATING_CATEGORIES))
    return mean.quantize(Decimal("0.01"), rounding=ROUND_HALF_UP)


def _transition(review: Review, status: ModerationStatus, moderator: str, reason: str | None) -> None:
    if status not in MODERATION_TRANSITIONS[review.moderation_status]:
        raise InvalidTransition(
            f"Cannot move review from {review.moderation_status.value} to {status.value}."
        )
    review.moderation_status = status
    review.moderation_reason = reason
    review.moderated_by = moderator
    review.moderated_at = utc_now()


def submit_review(session: Session, order_id: str, customer_id: str, ratings: object,
                  review_text: str | None, settings: ModerationSettings,
                  window_days: int = REVIEW_WINDOW_DAYS, now: datetime | None = None) -> Review:
    """Create a review and classify it straight away: APPROVED, or FLAGGED for an admin."""
    cleaned = _validate_ratings(ratings)
    if review_text is not None and not isinstance(review_text, str):
        raise ValidationError("Review text must be a string", field="review_text")

    eligibility = check_review_eligibility(session, order_id, now, window_days)
    if not eligibility.can_review:
        if eligibility.reason == ReviewIneligibilityReason.NOT_FOUND:
            raise NotFound("Order not found", code="order_not_found")
        raise ReviewNotAllowed(
            f"Order is not eligible for review: {eligibility.reason.value}",
            reason=eligibility.reason.value,
        )

    order = session.get(Order, order_id)
    if order.customer_id != customer_id:
        raise Forbidden("Only the customer who placed this order can review it.")

    review = Review(
        order_id=order.id,
        customer_id=customer_id,
        tailor_id=order.tailor_id,
        rating_fit=cleaned["fit"],
        rating_quality=cleaned["quality"],
        rating_communication=cleaned["communication"],
        rating_timeliness=cleaned["timeliness"],
        overall_rating=overall_rating(cleaned),
        review_text=review_text,
        moderation_status=ModerationStatus.PENDING,
    )
    session.add(review)
    session.flush()

    status, reason = auto_moderate(review_text, settings)
    _transition(review, status, SYSTEM_MODERATOR, reason)
    session.flush()
    logger.info("Review %s for order %s auto-moderated as %s", review.id, order_id, status.value)
    return review


def moderate_review(session: Session, review_id: str, status: ModerationStatus | str,
                    moderator_id: str, reason: str | None = None) -> Review:
    try:
        status = ModerationStatus(status)
    except ValueError:
        raise ValidationError(f"Unknown moderation status: {status}", field="status") from None
    review = session.get(Review, review_id)
    if review is None:
        raise NotFound("Review not found", code="review_not_found")
    _transition(review, status, moderator_id, reason)
    session.flush()
    return review


def vote_on_review(session: Session, review_id: str, user_id: str, vote_type: VoteType | str) -> ReviewVote:
    """Record a user's vote; voting again replaces the earlier vote."""
    try:
        vote_type = VoteType(vote_type)
    except ValueError:
        raise ValidationError(f"Unknown vote type: {vote_type}", field="vote_type") from None
    review = session.get(Review, review_id)
    if review is None:
        raise NotFound("Review not found", code="review_not_found")
    if review.customer_id == user_id:
        raise Forbidden("You cannot vote on your own review.")

    vote = session.execute(
        select(ReviewVote).where(ReviewVote.review_id == review_id, ReviewVote.user_id == user_id)
    ).scalar_one_or_none()
    if vote is None:
        vote = ReviewVote(review_id=review_id, user_id=user_id, vote_type=vote_type)
        session.add(vote)
    else:
        vote.vote_type = vote_type
    session.flush()

    counts = dict(session.execute(
        select(ReviewVote.vote_type, func.count(ReviewVote.id))
        .where(ReviewVote.review_id == review_id)
        .group_by(ReviewVote.vote_type)
    ).all())
    review.helpful_count = counts.get(VoteType.HELPFUL, 0)
    review.unhelpful_count = counts.get(VoteType.UNHELPFUL, 0)
    session.flush()
    return vote


def respond_to_review(session: Session, review_id: str, user_id: str, response_text: object) -> ReviewResponse:
    if not isinstance(response_text, str):
        raise ValidationError("Response text is required", field="response_text")
    response_text = response_text.strip()
    if len(response_text) < RESPONSE_MIN_LENGTH:
        raise ValidationError(f"Response must be at least {RESPONSE_MIN_LENGTH} characters", field="response_text")
    if len(response_text) > RESPONSE_MAX_LENGTH:
        raise ValidationError(f"Response must be less than {RESPONSE_MAX_LENGTH} characters", field="response_text")

    review = session.get(Review, review_id)
    if review is None:
        raise NotFound("Review not found", code="review_not_found")
    tailor = session.get(TailorProfile, review.tailor_id)
    if tailor is None or tailor.user_id != user_id:
        raise Forbidden("Only the reviewed tailor can respond to this review.")
    if review.response is not None:
        raise InvalidState("This review already has a response.", code="response_exists")

    response = ReviewResponse(review=review, tailor_id=tailor.id, response_text=response_text)
    session.add(response)
    session.flush()
    return response
