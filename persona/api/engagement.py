"""
Engagement endpoints: likes, favourites, comments and celebrity follows.

POST /v1/{entityType}/{entityId}/interact takes {action, text?, commentId?}
where action is one of like, unlike, favourite, unfavourite, save, unsave,
comment, delete-comment. Every response carries success plus the
action-specific fields so clients can confirm or roll back optimistic state.
"""

from typing import Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel, ConfigDict, Field

from persona.core.auth import get_current_actor, get_optional_actor
from persona.core.errors import ValidationError
from persona.features.engagement import service
from persona.models.actor import Actor

router = APIRouter(prefix="/v1", tags=["engagement"])

# Path segment -> engagement kind for /v1/me/{kind}/{entityType}
ME_KINDS = {
    "likes": "like",
    "favourites": "favourite",
    "saved": "favourite",
}


class InteractRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    action: str
    text: Optional[str] = None
    comment_id: Optional[str] = Field(None, alias="commentId")


class ToggleFollowRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    celebrity_id: str = Field(..., alias="celebrityId")


@router.post("/{entity_type}/{entity_id}/interact")
def interact(entity_type: str, entity_id: str, body: InteractRequest, actor: Actor = Depends(get_current_actor)):
    action = body.action.strip().lower()

    if action == "like":
        return {"success": True, **service.like(entity_type, entity_id, actor.user_id).to_wire()}
    if action == "unlike":
        return {"success": True, **service.unlike(entity_type, entity_id, actor.user_id).to_wire()}
    if action in ("favourite", "save"):
        return {"success": True, **service.favourite(entity_type, entity_id, actor.user_id).to_wire()}
    if action in ("unfavourite", "unsave"):
        return {"success": True, **service.unfavourite(entity_type, entity_id, actor.user_id).to_wire()}
    if action == "comment":
        result = service.add_comment(
            entity_type,
            entity_id,
            actor.user_id,
            actor.name,
            body.text,
            user_avatar=actor.avatar,
        )
        return {"success": True, **result.to_wire()}
    if action == "delete-comment":
        remaining = service.delete_comment(entity_type, entity_id, body.comment_id, actor)
        return {"success": True, "deleted": True, "commentsCount": remaining}

    raise ValidationError(f"Unknown action: {body.action}", field="action")


@router.get("/{entity_type}/{entity_id}/status")
def engagement_status(entity_type: str, entity_id: str, actor: Optional[Actor] = Depends(get_optional_actor)):
    status = service.get_engagement_status(entity_type, entity_id, actor.user_id if actor else None)
    return {"success": True, **status.to_wire()}


@router.get("/{entity_type}/{entity_id}/comments")
def comments(entity_type: str, entity_id: str):
    items = service.list_comments(entity_type, entity_id)
    return {"success": True, "count": len(items), "comments": [c.to_wire() for c in items]}


@router.post("/celebrities/follow/toggle")
def toggle_follow(body: ToggleFollowRequest, actor: Actor = Depends(get_current_actor)):
    """Legacy single-verb follow endpoint."""
    result = service.toggle_follow(actor.user_id, body.celebrity_id)
    return {"success": True, **result.to_wire()}


@router.post("/celebrities/{celebrity_id}/follow")
def follow(celebrity_id: str, actor: Actor = Depends(get_current_actor)):
    return {"success": True, **service.follow(actor.user_id, celebrity_id).to_wire()}


@router.delete("/celebrities/{celebrity_id}/follow")
def unfollow(celebrity_id: str, actor: Actor = Depends(get_current_actor)):
    return {"success": True, **service.unfollow(actor.user_id, celebrity_id).to_wire()}


@router.get("/me/following")
def my_following(actor: Actor = Depends(get_current_actor)):
    ids = service.list_followed_celebrities(actor.user_id)
    return {"success": True, "count": len(ids), "celebrityIds": ids}


@router.get("/me/{kind}/{entity_type}")
def my_engagements(kind: str, entity_type: str, actor: Actor = Depends(get_current_actor)):
    if kind not in ME_KINDS:
        raise ValidationError(f"Unsupported list: {kind}", field="kind")
    ids = service.list_user_engagements(actor.user_id, entity_type, ME_KINDS[kind])
    return {"success": True, "count": len(ids), "entityIds": ids}
