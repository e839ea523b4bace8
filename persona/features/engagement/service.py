"""
Engagement ledger: likes, favourites, follows and comments.

Every operation runs as one transaction (get_db_session). Set membership is
mutated with INSERT .. ON CONFLICT DO NOTHING / DELETE, never with an
application-level read-modify-write, so concurrent toggles from the same
user cannot double-insert. Counts are always derived from the sets; the
denormalized outfit counters are rewritten from those sets inside the same
transaction.
"""
from datetime import datetime, timezone
from typing import List, Optional, Union
from uuid import uuid4

from sqlalchemy import select, insert, delete, update, func, or_
from sqlalchemy.orm import Session

from persona.core.auth import can_moderate
from persona.core.config import settings
from persona.core.database import (
    get_db_session,
    upsert,
    celebrities,
    outfits,
    movies,
    reviews,
    news,
    entity_likes,
    entity_favourites,
    entity_comments,
    celebrity_follows,
)
from persona.core.errors import NotFoundError, PermissionError, ValidationError
from persona.core.logging import log_event
from persona.models.actor import Actor
from persona.models.engagement import (
    Comment,
    CommentResult,
    EngagementKind,
    EngagementStatus,
    EntityType,
    FavouriteResult,
    FollowResult,
    LikeResult,
)


ENTITY_TABLES = {
    EntityType.CELEBRITY: celebrities,
    EntityType.OUTFIT: outfits,
    EntityType.MOVIE: movies,
    EntityType.REVIEW: reviews,
    EntityType.NEWS: news,
}

ENTITY_LABELS = {
    EntityType.CELEBRITY: "Celebrity",
    EntityType.OUTFIT: "Outfit",
    EntityType.MOVIE: "Movie",
    EntityType.REVIEW: "Review",
    EntityType.NEWS: "News article",
}

SET_TABLES = {
    EngagementKind.LIKE: entity_likes,
    EngagementKind.FAVOURITE: entity_favourites,
}


def parse_entity_type(value: Union[str, EntityType]) -> EntityType:
    try:
        return EntityType(value)
    except ValueError:
        raise ValidationError(f"Unsupported entity type: {value}", field="entityType")


def parse_kind(value: Union[str, EngagementKind]) -> EngagementKind:
    try:
        return EngagementKind(value)
    except ValueError:
        raise ValidationError(f"Unsupported engagement kind: {value}", field="kind")


def resolve_entity_id(session: Session, entity_type: EntityType, ref: str) -> str:
    """Resolve an id or slug to the entity's canonical id, or raise NotFoundError."""
    table = ENTITY_TABLES[entity_type]
    entity_id = session.execute(
        select(table.c.id).where(or_(table.c.id == ref, table.c.slug == ref))
    ).scalar()
    if entity_id is None:
        raise NotFoundError(f"{ENTITY_LABELS[entity_type]} not found")
    return entity_id


def _count_set(session: Session, table, entity_type: EntityType, entity_id: str) -> int:
    return session.execute(
        select(func.count())
        .select_from(table)
        .where(table.c.entity_type == entity_type.value, table.c.entity_id == entity_id)
    ).scalar_one()


def _sync_outfit_counters(session: Session, entity_type: EntityType, entity_id: str) -> None:
    """Rewrite likesCount/commentsCount from the authoritative sets."""
    if entity_type != EntityType.OUTFIT:
        return
    likes_sq = (
        select(func.count())
        .select_from(entity_likes)
        .where(entity_likes.c.entity_type == entity_type.value, entity_likes.c.entity_id == entity_id)
        .scalar_subquery()
    )
    comments_sq = (
        select(func.count())
        .select_from(entity_comments)
        .where(entity_comments.c.entity_type == entity_type.value, entity_comments.c.entity_id == entity_id)
        .scalar_subquery()
    )
    session.execute(
        update(outfits)
        .where(outfits.c.id == entity_id)
        .values(likes_count=likes_sq, comments_count=comments_sq)
    )


def _add_member(kind: EngagementKind, entity_type, entity_ref: str, user_id: str) -> int:
    etype = parse_entity_type(entity_type)
    table = SET_TABLES[kind]
    with get_db_session() as session:
        entity_id = resolve_entity_id(session, etype, entity_ref)
        stmt = upsert(session, table).values(
            entity_type=etype.value,
            entity_id=entity_id,
            user_id=user_id,
            created_at=datetime.now(timezone.utc),
        ).on_conflict_do_nothing(index_elements=["entity_type", "entity_id", "user_id"])
        inserted = session.execute(stmt).rowcount
        _sync_outfit_counters(session, etype, entity_id)
        count = _count_set(session, table, etype, entity_id)

    log_event(
        "info",
        f"engagement.{kind.value}",
        user_id=user_id,
        entity=f"{etype.value}:{entity_id}",
        event_type=kind.value,
        extra={"changed": bool(inserted), "count": count},
    )
    return count


def _remove_member(kind: EngagementKind, entity_type, entity_ref: str, user_id: str) -> int:
    etype = parse_entity_type(entity_type)
    table = SET_TABLES[kind]
    with get_db_session() as session:
        entity_id = resolve_entity_id(session, etype, entity_ref)
        removed = session.execute(
            delete(table).where(
                table.c.entity_type == etype.value,
                table.c.entity_id == entity_id,
                table.c.user_id == user_id,
            )
        ).rowcount
        _sync_outfit_counters(session, etype, entity_id)
        count = _count_set(session, table, etype, entity_id)

    log_event(
        "info",
        f"engagement.un{kind.value}",
        user_id=user_id,
        entity=f"{etype.value}:{entity_id}",
        event_type=f"un{kind.value}",
        extra={"changed": bool(removed), "count": count},
    )
    return count


def like(entity_type, entity_id: str, user_id: str) -> LikeResult:
    """Add user to the entity's likes. Repeating the call is a no-op."""
    return LikeResult(liked=True, count=_add_member(EngagementKind.LIKE, entity_type, entity_id, user_id))


def unlike(entity_type, entity_id: str, user_id: str) -> LikeResult:
    return LikeResult(liked=False, count=_remove_member(EngagementKind.LIKE, entity_type, entity_id, user_id))


def favourite(entity_type, entity_id: str, user_id: str) -> FavouriteResult:
    return FavouriteResult(
        favourited=True,
        count=_add_member(EngagementKind.FAVOURITE, entity_type, entity_id, user_id),
    )


def unfavourite(entity_type, entity_id: str, user_id: str) -> FavouriteResult:
    return FavouriteResult(
        favourited=False,
        count=_remove_member(EngagementKind.FAVOURITE, entity_type, entity_id, user_id),
    )


# "save" is the movie/outfit wording for favourite
save = favourite
unsave = unfavourite


# ---------------------------------------------------------------------------
# Follows
# ---------------------------------------------------------------------------

def _count_follows(session: Session, user_id: str) -> int:
    return session.execute(
        select(func.count()).select_from(celebrity_follows).where(celebrity_follows.c.user_id == user_id)
    ).scalar_one()


def _insert_follow(session: Session, user_id: str, celebrity_id: str) -> None:
    stmt = upsert(session, celebrity_follows).values(
        user_id=user_id,
        celebrity_id=celebrity_id,
        created_at=datetime.now(timezone.utc),
    ).on_conflict_do_nothing(index_elements=["user_id", "celebrity_id"])
    session.execute(stmt)


def _delete_follow(session: Session, user_id: str, celebrity_id: str) -> int:
    return session.execute(
        delete(celebrity_follows).where(
            celebrity_follows.c.user_id == user_id,
            celebrity_follows.c.celebrity_id == celebrity_id,
        )
    ).rowcount


def follow(user_id: str, celebrity_ref: str) -> FollowResult:
    """Add a celebrity to the user's followed set (idempotent)."""
    with get_db_session() as session:
        celebrity_id = resolve_entity_id(session, EntityType.CELEBRITY, celebrity_ref)
        _insert_follow(session, user_id, celebrity_id)
        count = _count_follows(session, user_id)
    log_event("info", "engagement.follow", user_id=user_id, entity=f"celebrities:{celebrity_id}", event_type="follow")
    return FollowResult(following=True, count=count)


def unfollow(user_id: str, celebrity_ref: str) -> FollowResult:
    with get_db_session() as session:
        celebrity_id = resolve_entity_id(session, EntityType.CELEBRITY, celebrity_ref)
        _delete_follow(session, user_id, celebrity_id)
        count = _count_follows(session, user_id)
    log_event("info", "engagement.unfollow", user_id=user_id, entity=f"celebrities:{celebrity_id}", event_type="unfollow")
    return FollowResult(following=False, count=count)


def toggle_follow(user_id: str, celebrity_ref: str) -> FollowResult:
    """
    Legacy single-endpoint follow: delete the membership if present, else insert it.

    Kept for older clients; new callers should use follow()/unfollow(), which
    do not flip state when a stale request is replayed.
    """
    with get_db_session() as session:
        celebrity_id = resolve_entity_id(session, EntityType.CELEBRITY, celebrity_ref)
        following = _delete_follow(session, user_id, celebrity_id) == 0
        if following:
            _insert_follow(session, user_id, celebrity_id)
        count = _count_follows(session, user_id)
    log_event(
        "info",
        "engagement.follow_toggle",
        user_id=user_id,
        entity=f"celebrities:{celebrity_id}",
        event_type="follow" if following else "unfollow",
    )
    return FollowResult(following=following, count=count)


def list_followed_celebrities(user_id: str) -> List[str]:
    with get_db_session() as session:
        rows = session.execute(
            select(celebrity_follows.c.celebrity_id)
            .where(celebrity_follows.c.user_id == user_id)
            .order_by(celebrity_follows.c.created_at.desc())
        ).scalars().all()
    return list(rows)


# ---------------------------------------------------------------------------
# Comments
# ---------------------------------------------------------------------------

def _to_comment(row) -> Comment:
    return Comment(
        id=row.comment_id,
        user_id=row.user_id,
        user_name=row.user_name,
        user_avatar=row.user_avatar,
        text=row.text,
        created_at=row.created_at,
    )


def add_comment(
    entity_type,
    entity_id: str,
    user_id: str,
    user_name: str,
    text: Optional[str],
    *,
    user_avatar: Optional[str] = None,
    now: Optional[datetime] = None,
) -> CommentResult:
    """Append a comment and return it with the entity's new comment count."""
    body = (text or "").strip()
    if not body:
        raise ValidationError("Comment text is required", field="text")
    if settings.COMMENT_MAX_CHARS and len(body) > settings.COMMENT_MAX_CHARS:
        raise ValidationError(
            f"Comment must be at most {settings.COMMENT_MAX_CHARS} characters",
            field="text",
        )

    etype = parse_entity_type(entity_type)
    created_at = now or datetime.now(timezone.utc)
    comment_id = uuid4().hex
    with get_db_session() as session:
        resolved_id = resolve_entity_id(session, etype, entity_id)
        session.execute(
            insert(entity_comments).values(
                comment_id=comment_id,
                entity_type=etype.value,
                entity_id=resolved_id,
                user_id=user_id,
                user_name=user_name or "User",
                user_avatar=user_avatar,
                text=body,
                created_at=created_at,
            )
        )
        _sync_outfit_counters(session, etype, resolved_id)
        count = _count_set(session, entity_comments, etype, resolved_id)

    log_event("info", "engagement.comment", user_id=user_id, entity=f"{etype.value}:{resolved_id}", event_type="comment")
    comment = Comment(
        id=comment_id,
        user_id=user_id,
        user_name=user_name or "User",
        user_avatar=user_avatar,
        text=body,
        created_at=created_at,
    )
    return CommentResult(comment=comment, count=count)


def delete_comment(entity_type, entity_id: str, comment_id: str, actor: Actor) -> int:
    """
    Remove a comment authored by the actor (or any comment, for moderators).

    Returns the remaining comment count. Raises NotFoundError when the comment
    does not belong to the entity and PermissionError for other users.
    """
    if not comment_id:
        raise ValidationError("Comment ID is required", field="commentId")

    etype = parse_entity_type(entity_type)
    with get_db_session() as session:
        resolved_id = resolve_entity_id(session, etype, entity_id)
        owner_id = session.execute(
            select(entity_comments.c.user_id).where(
                entity_comments.c.comment_id == comment_id,
                entity_comments.c.entity_type == etype.value,
                entity_comments.c.entity_id == resolved_id,
            )
        ).scalar()
        if owner_id is None:
            raise NotFoundError("Comment not found")
        if not can_moderate(actor, owner_id):
            raise PermissionError("You can only delete your own comments")

        session.execute(delete(entity_comments).where(entity_comments.c.comment_id == comment_id))
        _sync_outfit_counters(session, etype, resolved_id)
        remaining = _count_set(session, entity_comments, etype, resolved_id)

    log_event(
        "info",
        "engagement.comment_deleted",
        user_id=actor.user_id,
        entity=f"{etype.value}:{resolved_id}",
        event_type="delete-comment",
        extra={"comment_id": comment_id, "moderated": actor.user_id != owner_id},
    )
    return remaining


def list_comments(entity_type, entity_id: str) -> List[Comment]:
    """Comments in insertion order."""
    etype = parse_entity_type(entity_type)
    with get_db_session() as session:
        resolved_id = resolve_entity_id(session, etype, entity_id)
        rows = session.execute(
            select(entity_comments)
            .where(entity_comments.c.entity_type == etype.value, entity_comments.c.entity_id == resolved_id)
            .order_by(entity_comments.c.seq.asc())
        ).all()
    return [_to_comment(row) for row in rows]


# ---------------------------------------------------------------------------
# Reads
# ---------------------------------------------------------------------------

def _is_member(session: Session, table, entity_type: EntityType, entity_id: str, user_id: str) -> bool:
    return session.execute(
        select(table.c.user_id).where(
            table.c.entity_type == entity_type.value,
            table.c.entity_id == entity_id,
            table.c.user_id == user_id,
        )
    ).first() is not None


def get_engagement_status(entity_type, entity_id: str, user_id: Optional[str] = None) -> EngagementStatus:
    etype = parse_entity_type(entity_type)
    with get_db_session() as session:
        resolved_id = resolve_entity_id(session, etype, entity_id)
        likes = _count_set(session, entity_likes, etype, resolved_id)
        favourites = _count_set(session, entity_favourites, etype, resolved_id)
        comments = _count_set(session, entity_comments, etype, resolved_id)
        liked = bool(user_id) and _is_member(session, entity_likes, etype, resolved_id, user_id)
        favourited = bool(user_id) and _is_member(session, entity_favourites, etype, resolved_id, user_id)

    return EngagementStatus(
        entity_type=etype,
        entity_id=resolved_id,
        likes=likes,
        favourites=favourites,
        comments=comments,
        liked=liked,
        favourited=favourited,
    )


def list_user_engagements(user_id: str, entity_type, kind) -> List[str]:
    """Entity ids the user liked/favourited, newest first."""
    etype = parse_entity_type(entity_type)
    table = SET_TABLES[parse_kind(kind)]
    with get_db_session() as session:
        rows = session.execute(
            select(table.c.entity_id)
            .where(table.c.user_id == user_id, table.c.entity_type == etype.value)
            .order_by(table.c.created_at.desc())
        ).scalars().all()
    return list(rows)
