"""Audience review endpoints (one review per user per review page)."""

from typing import Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel

from persona.core.auth import get_current_actor, get_optional_actor
from persona.features.reviews import service
from persona.models.actor import Actor

router = APIRouter(prefix="/v1", tags=["reviews"])


class UserReviewRequest(BaseModel):
    rating: int
    body: str
    title: Optional[str] = None


@router.get("/reviews/{slug}/user-reviews")
def list_user_reviews(
    slug: str,
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1),
    actor: Optional[Actor] = Depends(get_optional_actor),
):
    result = service.list_user_reviews(slug, page=page, limit=limit)
    mine = service.get_user_review(slug, actor.user_id) if actor else None
    return {"success": True, **result.to_wire(), "myReview": mine.to_wire() if mine else None}


@router.post("/reviews/{slug}/user-reviews")
def submit_user_review(slug: str, body: UserReviewRequest, actor: Actor = Depends(get_current_actor)):
    review = service.upsert_user_review(
        slug,
        actor.user_id,
        rating=body.rating,
        title=body.title,
        body=body.body,
        user_name=actor.name,
        user_avatar=actor.avatar,
    )
    return {"success": True, "review": review.to_wire()}


@router.delete("/reviews/{slug}/user-reviews")
def delete_user_review(slug: str, actor: Actor = Depends(get_current_actor)):
    service.delete_user_review(slug, actor.user_id)
    return {"success": True, "message": "Review deleted"}


@router.post("/user-reviews/{review_id}/helpful")
def mark_helpful(review_id: str, actor: Actor = Depends(get_current_actor)):
    return {"success": True, **service.mark_helpful(review_id, actor.user_id).to_wire()}


@router.delete("/user-reviews/{review_id}/helpful")
def unmark_helpful(review_id: str, actor: Actor = Depends(get_current_actor)):
    return {"success": True, **service.unmark_helpful(review_id, actor.user_id).to_wire()}
