"""
persona/models/engagement.py

Result models for the engagement ledger (likes, favourites, follows,
comments). Every result is frozen: callers use them to confirm or roll
back an optimistic UI state.
"""

from datetime import datetime
from enum import Enum
from typing import Optional
from pydantic import ConfigDict, Field

from persona.models.base import CamelModel


class EntityType(str, Enum):
    """Engageable content kinds. Values double as URL path segments."""
    CELEBRITY = "celebrities"
    OUTFIT = "outfits"
    MOVIE = "movies"
    REVIEW = "reviews"
    NEWS = "news"


class EngagementKind(str, Enum):
    LIKE = "like"
    FAVOURITE = "favourite"


class LikeResult(CamelModel):
    model_config = ConfigDict(frozen=True)

    liked: bool
    count: int


class FavouriteResult(CamelModel):
    model_config = ConfigDict(frozen=True)

    favourited: bool
    count: int


class FollowResult(CamelModel):
    model_config = ConfigDict(frozen=True)

    following: bool
    count: int  # celebrities followed by the user after the operation


class Comment(CamelModel):
    model_config = ConfigDict(frozen=True)

    id: str
    user_id: str
    user_name: str
    user_avatar: Optional[str] = None
    text: str
    created_at: datetime


class CommentResult(CamelModel):
    model_config = ConfigDict(frozen=True)

    comment: Comment
    count: int  # comments on the entity after the insert


class EngagementStatus(CamelModel):
    """Counts for an entity plus the viewer's own membership (False when anonymous)."""
    model_config = ConfigDict(frozen=True)

    entity_type: EntityType
    entity_id: str
    likes: int = Field(0, ge=0)
    favourites: int = Field(0, ge=0)
    comments: int = Field(0, ge=0)
    liked: bool = False
    favourited: bool = False
