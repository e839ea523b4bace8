from datetime import datetime
from typing import List, Optional
from pydantic import ConfigDict

from persona.models.base import CamelModel


class UserReview(CamelModel):
    """Audience rating + text submitted against a review page."""
    model_config = ConfigDict(frozen=True)

    id: str
    review_slug: str
    user_id: str
    user_name: str
    user_avatar: Optional[str] = None
    rating: int
    title: Optional[str] = None
    body: str
    helpful_count: int = 0
    created_at: datetime
    updated_at: datetime


class Pagination(CamelModel):
    page: int
    limit: int
    total: int
    pages: int


class UserReviewPage(CamelModel):
    avg_rating: Optional[float] = None
    pagination: Pagination
    data: List[UserReview]


class HelpfulResult(CamelModel):
    model_config = ConfigDict(frozen=True)

    helpful: bool
    count: int
