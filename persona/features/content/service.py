"""Read-only content listings served to API-key holders."""
import math
from typing import Any, Dict

from sqlalchemy import select, func

from persona.core.database import get_db_session, entity_likes, entity_comments
from persona.core.errors import NotFoundError
from persona.features.engagement.service import ENTITY_LABELS, ENTITY_TABLES, parse_entity_type

MAX_PAGE_SIZE = 50


def _with_counts(table, entity_type: str):
    likes = (
        select(func.count())
        .select_from(entity_likes)
        .where(entity_likes.c.entity_type == entity_type, entity_likes.c.entity_id == table.c.id)
        .scalar_subquery()
    )
    comments = (
        select(func.count())
        .select_from(entity_comments)
        .where(entity_comments.c.entity_type == entity_type, entity_comments.c.entity_id == table.c.id)
        .scalar_subquery()
    )
    return select(table, likes.label("likes"), comments.label("comments"))


def _row_to_dict(row) -> Dict[str, Any]:
    data = {}
    for key, value in row._mapping.items():
        data[key] = value.isoformat() if hasattr(value, "isoformat") else value
    return data


def list_entities(entity_type, page: int = 1, limit: int = 20) -> Dict[str, Any]:
    etype = parse_entity_type(entity_type)
    table = ENTITY_TABLES[etype]
    page = max(1, page)
    limit = max(1, min(MAX_PAGE_SIZE, limit))

    with get_db_session() as session:
        total = session.execute(select(func.count()).select_from(table)).scalar_one()
        rows = session.execute(
            _with_counts(table, etype.value)
            .order_by(table.c.created_at.desc(), table.c.id)
            .offset((page - 1) * limit)
            .limit(limit)
        ).all()

    return {
        "data": [_row_to_dict(row) for row in rows],
        "pagination": {"page": page, "limit": limit, "total": total, "pages": math.ceil(total / limit)},
    }


def get_entity(entity_type, slug: str) -> Dict[str, Any]:
    etype = parse_entity_type(entity_type)
    table = ENTITY_TABLES[etype]
    with get_db_session() as session:
        row = session.execute(_with_counts(table, etype.value).where(table.c.slug == slug)).first()
    if row is None:
        raise NotFoundError(f"{ENTITY_LABELS[etype]} not found")
    return _row_to_dict(row)
