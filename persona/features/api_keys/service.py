"""
API key lifecycle and usage analytics.

Self-service:
- generate_api_key: one key per user, full key shown once
- get_usage_stats: quota + usage breakdown for the caller's key
- rotate_own_key: owner revokes the current key string and gets a new one

Operator tooling (superadmin):
- list_api_keys: every key with owner info, orphan flag and a summary
- set_key_active: revoke/restore, history retained
- delete_api_key: hard delete, orphaned keys only

Every operator action is written to admin_audit in the same transaction.
"""
import math
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional
from uuid import uuid4

from sqlalchemy import select, insert, update, delete, func, or_
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from persona.core.config import settings
from persona.core.database import (
    get_db_session,
    api_keys,
    api_usage_monthly,
    api_usage_daily,
    api_endpoint_hits,
    users,
)
from persona.core.errors import ConflictError, InvalidStateError, KeyRevokedError, NotFoundError
from persona.core.logging import log_event
from persona.features.api_keys.keys import generate_key_string, hash_api_key, key_prefix, mask_key
from persona.features.audit.service import record_admin_audit
from persona.features.payments.plans import PLANS
from persona.features.quota.service import (
    as_utc,
    day_key,
    month_key,
    month_used,
    percent_used,
    usage_level,
)
from persona.models.actor import Actor
from persona.models.api_key import (
    AdminKeyView,
    DayBucket,
    EndpointBucket,
    GeneratedKey,
    KeySummary,
    MonthBucket,
    UsageStats,
)

MAX_ADMIN_PAGE_SIZE = 50


def generate_api_key(user_id: str, *, now: Optional[datetime] = None) -> GeneratedKey:
    """Create the user's key on the free plan. A second key is a conflict."""
    now = as_utc(now)
    raw_key = generate_key_string()

    with get_db_session() as session:
        existing = session.execute(select(api_keys.c.key_id).where(api_keys.c.user_id == user_id)).first()
        if existing is not None:
            raise ConflictError("You already have an API key. Revoke it to get a replacement.")

        key_id = uuid4().hex
        try:
            session.execute(
                insert(api_keys).values(
                    key_id=key_id,
                    user_id=user_id,
                    key_prefix=key_prefix(raw_key),
                    key_hash=hash_api_key(raw_key),
                    is_active=True,
                    plan_id="free",
                    free_quota=settings.DEFAULT_FREE_QUOTA,
                    purchased_quota=0,
                    total_hits=0,
                    created_at=now,
                    updated_at=now,
                )
            )
        except IntegrityError:
            raise ConflictError("You already have an API key. Revoke it to get a replacement.") from None

    log_event("info", "api_key.generated", user_id=user_id, event_type="api_key_generate", extra={"key_id": key_id})
    return GeneratedKey(
        key_id=key_id,
        api_key=raw_key,
        key_prefix=mask_key(key_prefix(raw_key)),
        plan_id="free",
        total_quota=settings.DEFAULT_FREE_QUOTA,
    )


def _usage_fields(session: Session, key, now: datetime) -> Dict[str, Any]:
    """Usage block shared by the owner stats and the operator listing."""
    key_id = key.key_id
    used = month_used(session, key_id, now)
    total = key.free_quota + key.purchased_quota
    pct = percent_used(used, total)

    daily = dict(
        session.execute(
            select(api_usage_daily.c.day, api_usage_daily.c.hits).where(api_usage_daily.c.key_id == key_id)
        ).all()
    )
    last_7_days = []
    for offset in range(settings.USAGE_DAILY_WINDOW_DAYS - 1, -1, -1):
        day = day_key(now - timedelta(days=offset))
        last_7_days.append(DayBucket(date=day, count=daily.get(day, 0)))

    monthly_rows = session.execute(
        select(api_usage_monthly.c.month, api_usage_monthly.c.hits)
        .where(api_usage_monthly.c.key_id == key_id)
        .order_by(api_usage_monthly.c.month.desc())
        .limit(settings.USAGE_MONTHLY_WINDOW)
    ).all()
    monthly_hits = [MonthBucket(month=row.month, count=row.hits) for row in reversed(monthly_rows)]

    endpoint_rows = session.execute(
        select(api_endpoint_hits)
        .where(api_endpoint_hits.c.key_id == key_id)
        .order_by(api_endpoint_hits.c.hits.desc(), api_endpoint_hits.c.endpoint.asc())
    ).all()
    endpoint_hits = [
        EndpointBucket(endpoint=row.endpoint, count=row.hits, last_hit_at=row.last_hit_at)
        for row in endpoint_rows
    ]

    return {
        "key_id": key_id,
        "key_prefix": mask_key(key.key_prefix),
        "is_active": bool(key.is_active),
        "plan_id": key.plan_id,
        "total_hits": key.total_hits,
        "month_used": used,
        "free_quota": key.free_quota,
        "purchased_quota": key.purchased_quota,
        "total_quota": total,
        "remaining": max(0, total - used),
        "percent_used": pct,
        "level": usage_level(pct),
        "last_7_days": last_7_days,
        "monthly_hits": monthly_hits,
        "endpoint_hits": endpoint_hits,
        "last_used_at": key.last_used_at,
        "created_at": key.created_at,
    }


def get_usage_stats(user_id: str, *, now: Optional[datetime] = None) -> Optional[UsageStats]:
    """Usage for the caller's key, or None when they have not generated one."""
    now = as_utc(now)
    with get_db_session() as session:
        key = session.execute(select(api_keys).where(api_keys.c.user_id == user_id)).first()
        if key is None:
            return None
        return UsageStats(**_usage_fields(session, key, now))


def _delete_key_rows(session: Session, key_id: str) -> None:
    for table in (api_usage_monthly, api_usage_daily, api_endpoint_hits):
        session.execute(delete(table).where(table.c.key_id == key_id))
    session.execute(delete(api_keys).where(api_keys.c.key_id == key_id))


def rotate_own_key(user_id: str, *, now: Optional[datetime] = None) -> GeneratedKey:
    """
    Owner-initiated revoke: the old key string stops working and a new one is
    issued on the same row.

    key_id, usage counters, purchased quota and the active flag are untouched,
    so rotating never resets the month's usage and never lifts an operator
    revocation (a deactivated key raises KeyRevokedError).
    """
    now = as_utc(now)
    raw_key = generate_key_string()

    with get_db_session() as session:
        key = session.execute(select(api_keys).where(api_keys.c.user_id == user_id)).first()
        if key is None:
            raise NotFoundError("No API key found")
        if not key.is_active:
            raise KeyRevokedError("This API key has been revoked by an administrator")

        rotated = session.execute(
            update(api_keys)
            .where(api_keys.c.key_id == key.key_id, api_keys.c.is_active.is_(True))
            .values(key_prefix=key_prefix(raw_key), key_hash=hash_api_key(raw_key), updated_at=now)
        ).rowcount
        if not rotated:
            raise KeyRevokedError("This API key has been revoked by an administrator")

    log_event("info", "api_key.rotated", user_id=user_id, event_type="api_key_rotate", extra={"key_id": key.key_id})
    return GeneratedKey(
        key_id=key.key_id,
        api_key=raw_key,
        key_prefix=mask_key(key_prefix(raw_key)),
        plan_id=key.plan_id,
        total_quota=key.free_quota + key.purchased_quota,
    )


# ---------------------------------------------------------------------------
# Operator tooling
# ---------------------------------------------------------------------------

def _key_with_owner_query():
    return select(
        api_keys,
        users.c.user_id.label("owner_id"),
        users.c.name.label("owner_name"),
        users.c.email.label("owner_email"),
        users.c.role.label("owner_role"),
        users.c.status.label("owner_status"),
    ).select_from(api_keys.outerjoin(users, users.c.user_id == api_keys.c.user_id))


def _summary(session: Session, now: datetime) -> KeySummary:
    totals = session.execute(
        select(
            func.count(),
            func.coalesce(func.sum(api_keys.c.total_hits), 0),
        ).select_from(api_keys)
    ).one()
    active = session.execute(
        select(func.count()).select_from(api_keys).where(api_keys.c.is_active.is_(True))
    ).scalar_one()
    this_month = session.execute(
        select(func.coalesce(func.sum(api_usage_monthly.c.hits), 0)).where(api_usage_monthly.c.month == month_key(now))
    ).scalar_one()
    by_plan = {plan_id: 0 for plan_id in PLANS}
    for plan_id, count in session.execute(
        select(api_keys.c.plan_id, func.count()).group_by(api_keys.c.plan_id)
    ).all():
        by_plan[plan_id] = count

    return KeySummary(
        total_keys=totals[0],
        active_keys=active,
        total_hits_all_time=int(totals[1]),
        total_hits_this_month=int(this_month),
        by_plan=by_plan,
    )


def list_api_keys(
    *,
    search: Optional[str] = None,
    plan_id: Optional[str] = None,
    page: int = 1,
    limit: int = 20,
    now: Optional[datetime] = None,
) -> Dict[str, Any]:
    """All keys joined with their owners; a missing owner marks the key orphaned."""
    now = as_utc(now)
    page = max(1, page)
    limit = max(1, min(MAX_ADMIN_PAGE_SIZE, limit))

    conditions = []
    if search:
        pattern = f"%{search.lower()}%"
        conditions.append(or_(func.lower(users.c.name).like(pattern), func.lower(users.c.email).like(pattern)))
    if plan_id:
        conditions.append(api_keys.c.plan_id == plan_id)

    with get_db_session() as session:
        query = _key_with_owner_query().where(*conditions)
        total = session.execute(select(func.count()).select_from(query.subquery())).scalar_one()
        rows = session.execute(
            query.order_by(api_keys.c.created_at.desc()).offset((page - 1) * limit).limit(limit)
        ).all()

        data: List[AdminKeyView] = []
        for row in rows:
            data.append(
                AdminKeyView(
                    **_usage_fields(session, row, now),
                    user_id=row.user_id,
                    user_name=row.owner_name,
                    user_email=row.owner_email,
                    user_role=row.owner_role or "user",
                    user_active=row.owner_status != "banned",
                    is_orphaned=row.owner_id is None,
                )
            )
        summary = _summary(session, now)

    return {
        "summary": summary,
        "pagination": {"page": page, "limit": limit, "total": total, "pages": math.ceil(total / limit)},
        "data": data,
    }


def set_key_active(key_id: str, is_active: bool, actor: Actor, *, now: Optional[datetime] = None) -> Dict[str, Any]:
    """Revoke or restore a key. Usage history is kept either way."""
    now = as_utc(now)
    with get_db_session() as session:
        owner_id = session.execute(select(api_keys.c.user_id).where(api_keys.c.key_id == key_id)).scalar()
        if owner_id is None:
            raise NotFoundError("API key not found")
        session.execute(
            update(api_keys).where(api_keys.c.key_id == key_id).values(is_active=is_active, updated_at=now)
        )
        record_admin_audit(
            session,
            actor,
            "restore_api_key" if is_active else "revoke_api_key",
            target_user_id=owner_id,
            target_resource=key_id,
        )

    log_event(
        "info",
        "api_key.active_changed",
        user_id=actor.user_id,
        event_type="api_key_restore" if is_active else "api_key_revoke",
        extra={"key_id": key_id, "is_active": is_active},
    )
    return {"keyId": key_id, "isActive": is_active}


def delete_api_key(key_id: str, actor: Actor) -> None:
    """Hard-delete a key whose owner no longer exists."""
    with get_db_session() as session:
        row = session.execute(
            select(api_keys.c.user_id, users.c.user_id.label("owner_id"))
            .select_from(api_keys.outerjoin(users, users.c.user_id == api_keys.c.user_id))
            .where(api_keys.c.key_id == key_id)
        ).first()
        if row is None:
            raise NotFoundError("API key not found")
        if row.owner_id is not None:
            raise InvalidStateError("Only orphaned keys can be deleted. Revoke this key instead.")

        _delete_key_rows(session, key_id)
        record_admin_audit(session, actor, "delete_api_key", target_user_id=row.user_id, target_resource=key_id)

    log_event("info", "api_key.deleted", user_id=actor.user_id, event_type="api_key_delete", extra={"key_id": key_id})
