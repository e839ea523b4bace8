"""
Audience reviews ("user reviews") posted against a review page.

One review per (user, review slug): submissions go through
INSERT .. ON CONFLICT (review_slug, user_id) DO UPDATE, so concurrent posts
from the same user converge on a single row (last write wins) and the
original id/created_at survive edits.
"""
import math
from datetime import datetime, timezone
from typing import Optional
from uuid import uuid4

from sqlalchemy import select, delete, func
from sqlalchemy.orm import Session

from persona.core.config import settings
from persona.core.database import (
    get_db_session,
    upsert,
    reviews,
    user_reviews,
    user_review_helpful,
)
from persona.core.errors import NotFoundError, ValidationError
from persona.core.logging import log_event
from persona.models.review import HelpfulResult, Pagination, UserReview, UserReviewPage

MAX_PAGE_SIZE = 20


def validate_review_payload(rating, title: Optional[str], body: Optional[str]) -> tuple[int, Optional[str], str]:
    """Return the normalized (rating, title, body) or raise ValidationError."""
    if isinstance(rating, bool) or not isinstance(rating, int) or not 1 <= rating <= 10:
        raise ValidationError("Rating must be an integer between 1 and 10", field="rating")

    clean_body = (body or "").strip()
    if len(clean_body) < settings.REVIEW_BODY_MIN_CHARS:
        raise ValidationError(
            f"Review must be at least {settings.REVIEW_BODY_MIN_CHARS} characters",
            field="body",
        )
    if len(clean_body) > settings.REVIEW_BODY_MAX_CHARS:
        raise ValidationError(
            f"Review must be at most {settings.REVIEW_BODY_MAX_CHARS} characters",
            field="body",
        )

    clean_title = (title or "").strip() or None
    if clean_title and len(clean_title) > settings.REVIEW_TITLE_MAX_CHARS:
        raise ValidationError(
            f"Title must be at most {settings.REVIEW_TITLE_MAX_CHARS} characters",
            field="title",
        )
    return rating, clean_title, clean_body


def _require_review_page(session: Session, review_slug: str) -> None:
    exists = session.execute(select(reviews.c.id).where(reviews.c.slug == review_slug)).first()
    if exists is None:
        raise NotFoundError("Review not found")


def _helpful_count_subquery():
    return (
        select(func.count())
        .select_from(user_review_helpful)
        .where(user_review_helpful.c.user_review_id == user_reviews.c.id)
        .scalar_subquery()
    )


def _to_user_review(row) -> UserReview:
    return UserReview(
        id=row.id,
        review_slug=row.review_slug,
        user_id=row.user_id,
        user_name=row.user_name,
        user_avatar=row.user_avatar,
        rating=row.rating,
        title=row.title,
        body=row.body,
        helpful_count=row.helpful_count,
        created_at=row.created_at,
        updated_at=row.updated_at,
    )


def _fetch_user_review(session: Session, review_slug: str, user_id: str):
    return session.execute(
        select(user_reviews, _helpful_count_subquery().label("helpful_count")).where(
            user_reviews.c.review_slug == review_slug,
            user_reviews.c.user_id == user_id,
        )
    ).first()


def average_rating(session: Session, review_slug: str) -> Optional[float]:
    """Mean rating for a slug rounded to one decimal; None when nobody reviewed it."""
    avg = session.execute(
        select(func.avg(user_reviews.c.rating)).where(user_reviews.c.review_slug == review_slug)
    ).scalar()
    if avg is None:
        return None
    return round(float(avg), 1)


def upsert_user_review(
    review_slug: str,
    user_id: str,
    *,
    rating,
    body: Optional[str],
    title: Optional[str] = None,
    user_name: str = "User",
    user_avatar: Optional[str] = None,
    now: Optional[datetime] = None,
) -> UserReview:
    """Create the caller's review for a slug, or overwrite the one they already posted."""
    rating, title, body = validate_review_payload(rating, title, body)
    ts = now or datetime.now(timezone.utc)

    with get_db_session() as session:
        _require_review_page(session, review_slug)
        stmt = upsert(session, user_reviews).values(
            id=uuid4().hex,
            review_slug=review_slug,
            user_id=user_id,
            user_name=user_name or "User",
            user_avatar=user_avatar,
            rating=rating,
            title=title,
            body=body,
            created_at=ts,
            updated_at=ts,
        )
        stmt = stmt.on_conflict_do_update(
            index_elements=["review_slug", "user_id"],
            set_={
                "rating": stmt.excluded.rating,
                "title": stmt.excluded.title,
                "body": stmt.excluded.body,
                "user_name": stmt.excluded.user_name,
                "user_avatar": stmt.excluded.user_avatar,
                "updated_at": stmt.excluded.updated_at,
            },
        )
        session.execute(stmt)
        row = _fetch_user_review(session, review_slug, user_id)

    log_event(
        "info",
        "review.upserted",
        user_id=user_id,
        entity=f"reviews:{review_slug}",
        event_type="user_review",
        extra={"rating": rating},
    )
    return _to_user_review(row)


def delete_user_review(review_slug: str, user_id: str) -> None:
    """Remove the caller's own review for a slug."""
    with get_db_session() as session:
        review_id = session.execute(
            select(user_reviews.c.id).where(
                user_reviews.c.review_slug == review_slug,
                user_reviews.c.user_id == user_id,
            )
        ).scalar()
        if review_id is None:
            raise NotFoundError("Review not found")
        session.execute(delete(user_review_helpful).where(user_review_helpful.c.user_review_id == review_id))
        session.execute(delete(user_reviews).where(user_reviews.c.id == review_id))

    log_event("info", "review.deleted", user_id=user_id, entity=f"reviews:{review_slug}", event_type="user_review_delete")


def get_user_review(review_slug: str, user_id: str) -> Optional[UserReview]:
    with get_db_session() as session:
        row = _fetch_user_review(session, review_slug, user_id)
    return _to_user_review(row) if row else None


def list_user_reviews(review_slug: str, page: int = 1, limit: int = 10) -> UserReviewPage:
    """Newest-first page of audience reviews plus the slug's average rating."""
    page = max(1, int(page))
    limit = max(1, min(MAX_PAGE_SIZE, int(limit)))

    with get_db_session() as session:
        total = session.execute(
            select(func.count()).select_from(user_reviews).where(user_reviews.c.review_slug == review_slug)
        ).scalar_one()
        rows = session.execute(
            select(user_reviews, _helpful_count_subquery().label("helpful_count"))
            .where(user_reviews.c.review_slug == review_slug)
            .order_by(user_reviews.c.created_at.desc(), user_reviews.c.id.desc())
            .offset((page - 1) * limit)
            .limit(limit)
        ).all()
        avg = average_rating(session, review_slug)

    return UserReviewPage(
        avg_rating=avg,
        pagination=Pagination(page=page, limit=limit, total=total, pages=math.ceil(total / limit) if total else 0),
        data=[_to_user_review(row) for row in rows],
    )


def _helpful_count(session: Session, user_review_id: str) -> int:
    return session.execute(
        select(func.count())
        .select_from(user_review_helpful)
        .where(user_review_helpful.c.user_review_id == user_review_id)
    ).scalar_one()


def _require_user_review(session: Session, user_review_id: str) -> None:
    if session.execute(select(user_reviews.c.id).where(user_reviews.c.id == user_review_id)).first() is None:
        raise NotFoundError("Review not found")


def mark_helpful(user_review_id: str, user_id: str) -> HelpfulResult:
    with get_db_session() as session:
        _require_user_review(session, user_review_id)
        stmt = upsert(session, user_review_helpful).values(
            user_review_id=user_review_id,
            user_id=user_id,
            created_at=datetime.now(timezone.utc),
        ).on_conflict_do_nothing(index_elements=["user_review_id", "user_id"])
        session.execute(stmt)
        count = _helpful_count(session, user_review_id)
    return HelpfulResult(helpful=True, count=count)


def unmark_helpful(user_review_id: str, user_id: str) -> HelpfulResult:
    with get_db_session() as session:
        _require_user_review(session, user_review_id)
        session.execute(
            delete(user_review_helpful).where(
                user_review_helpful.c.user_review_id == user_review_id,
                user_review_helpful.c.user_id == user_id,
            )
        )
        count = _helpful_count(session, user_review_id)
    return HelpfulResult(helpful=False, count=count)
