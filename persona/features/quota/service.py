"""
Quota meter for API-key authenticated requests.

Fixed monthly window (UTC calendar month). The check and the increment are a
single conditional UPDATE:

    UPDATE api_usage_monthly SET hits = hits + 1
    WHERE key_id = :k AND month = :m
      AND hits < (SELECT free_quota + purchased_quota FROM api_keys
                  WHERE key_id = :k AND is_active)

so two requests racing on the last unit of quota cannot both pass. Rejected
requests are never recorded: the transaction is rolled back and neither the
monthly counter nor total_hits move.
"""
from datetime import datetime, timedelta, timezone
from typing import Optional

from sqlalchemy import select, update, delete, func, true
from sqlalchemy.orm import Session

from persona.core.config import settings
from persona.core.database import (
    get_db_session,
    upsert,
    api_keys,
    api_usage_monthly,
    api_usage_daily,
    api_endpoint_hits,
)
from persona.core.errors import InvalidApiKeyError, KeyRevokedError, QuotaExceededError
from persona.core.logging import log_event
from persona.features.api_keys.keys import key_prefix, verify_api_key
from persona.models.api_key import QuotaBlock, QuotaStatus


# ---------------------------------------------------------------------------
# Calendar helpers (all UTC)
# ---------------------------------------------------------------------------

def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(now: Optional[datetime]) -> datetime:
    if now is None:
        return utcnow()
    if now.tzinfo is None:
        return now.replace(tzinfo=timezone.utc)
    return now.astimezone(timezone.utc)


def month_key(now: datetime) -> str:
    return now.strftime("%Y-%m")


def day_key(now: datetime) -> str:
    return now.strftime("%Y-%m-%d")


def shift_month(now: datetime, months: int) -> str:
    """YYYY-MM of the month `months` away from now (negative = past)."""
    index = now.year * 12 + (now.month - 1) + months
    return f"{index // 12:04d}-{index % 12 + 1:02d}"


def resets_on(now: Optional[datetime] = None) -> datetime:
    """First instant of the next calendar month, UTC."""
    now = as_utc(now)
    if now.month == 12:
        return datetime(now.year + 1, 1, 1, tzinfo=timezone.utc)
    return datetime(now.year, now.month + 1, 1, tzinfo=timezone.utc)


def percent_used(used: int, total: int) -> int:
    """Whole percent, halves rounded up (1 of 200 is 1, not 0)."""
    if total <= 0:
        return 0
    return (used * 200 + total) // (total * 2)


def usage_level(percent: int) -> str:
    """Display/alert bucket only; never throttles."""
    if percent >= settings.QUOTA_CRITICAL_PERCENT:
        return "critical"
    if percent >= settings.QUOTA_WARNING_PERCENT:
        return "warning"
    return "nominal"


# ---------------------------------------------------------------------------
# Lookups
# ---------------------------------------------------------------------------

def month_used(session: Session, key_id: str, now: datetime) -> int:
    hits = session.execute(
        select(api_usage_monthly.c.hits).where(
            api_usage_monthly.c.key_id == key_id,
            api_usage_monthly.c.month == month_key(now),
        )
    ).scalar()
    return hits or 0


def authenticate_key(session: Session, raw_key: Optional[str]):
    """
    Resolve a raw key to its api_keys row.

    Raises InvalidApiKeyError for a missing/unknown key and KeyRevokedError for
    a deactivated one. Revoked keys are rejected before any counter is touched.
    """
    if not raw_key:
        raise InvalidApiKeyError("API key required. Pass your key in the x-api-key header.")

    row = session.execute(
        select(api_keys).where(api_keys.c.key_prefix == key_prefix(raw_key))
    ).first()
    if row is None or not verify_api_key(raw_key, row.key_hash):
        raise InvalidApiKeyError("The provided API key is invalid")
    if not row.is_active:
        raise KeyRevokedError("This API key has been revoked")
    return row


# ---------------------------------------------------------------------------
# Metering
# ---------------------------------------------------------------------------

def _record_breakdowns(session: Session, key_id: str, endpoint: str, now: datetime) -> None:
    """Daily, per-endpoint and all-time counters for an accepted request."""
    session.execute(
        update(api_keys)
        .where(api_keys.c.key_id == key_id)
        .values(total_hits=api_keys.c.total_hits + 1, last_used_at=now)
    )

    stmt = upsert(session, api_usage_daily).values(key_id=key_id, day=day_key(now), hits=1)
    session.execute(
        stmt.on_conflict_do_update(
            index_elements=["key_id", "day"],
            set_={"hits": api_usage_daily.c.hits + 1},
        )
    )

    stmt = upsert(session, api_endpoint_hits).values(key_id=key_id, endpoint=endpoint, hits=1, last_hit_at=now)
    session.execute(
        stmt.on_conflict_do_update(
            index_elements=["key_id", "endpoint"],
            set_={"hits": api_endpoint_hits.c.hits + 1, "last_hit_at": stmt.excluded.last_hit_at},
        )
    )


def _prune_windows(session: Session, key_id: str, now: datetime) -> None:
    oldest_day = day_key(now - timedelta(days=settings.USAGE_DAILY_WINDOW_DAYS - 1))
    session.execute(
        delete(api_usage_daily).where(api_usage_daily.c.key_id == key_id, api_usage_daily.c.day < oldest_day)
    )

    oldest_month = shift_month(now, -(settings.USAGE_MONTHLY_WINDOW - 1))
    session.execute(
        delete(api_usage_monthly).where(
            api_usage_monthly.c.key_id == key_id,
            api_usage_monthly.c.month < oldest_month,
        )
    )

    # Keep the busiest endpoints; ties go to the most recently hit
    overflow = session.execute(
        select(api_endpoint_hits.c.endpoint)
        .where(api_endpoint_hits.c.key_id == key_id)
        .order_by(api_endpoint_hits.c.hits.desc(), api_endpoint_hits.c.last_hit_at.desc())
        .offset(settings.USAGE_MAX_ENDPOINTS)
    ).scalars().all()
    if overflow:
        session.execute(
            delete(api_endpoint_hits).where(
                api_endpoint_hits.c.key_id == key_id,
                api_endpoint_hits.c.endpoint.in_(overflow),
            )
        )


def meter_request(raw_key: Optional[str], endpoint: str, *, now: Optional[datetime] = None) -> QuotaStatus:
    """
    Gate one API request and record it.

    Returns the post-increment quota status. Raises InvalidApiKeyError,
    KeyRevokedError or QuotaExceededError (with the {used, total, resetsOn}
    block); a rejected request leaves every counter untouched.
    """
    now = as_utc(now)
    month = month_key(now)

    with get_db_session() as session:
        key = authenticate_key(session, raw_key)
        key_id = key.key_id

        stmt = upsert(session, api_usage_monthly).values(key_id=key_id, month=month, hits=0)
        session.execute(stmt.on_conflict_do_nothing(index_elements=["key_id", "month"]))

        cap = (
            select(api_keys.c.free_quota + api_keys.c.purchased_quota)
            .where(api_keys.c.key_id == key_id, api_keys.c.is_active == true())
            .scalar_subquery()
        )
        claimed = session.execute(
            update(api_usage_monthly)
            .where(
                api_usage_monthly.c.key_id == key_id,
                api_usage_monthly.c.month == month,
                api_usage_monthly.c.hits < cap,
            )
            .values(hits=api_usage_monthly.c.hits + 1)
        ).rowcount

        current = session.execute(
            select(api_keys.c.is_active, api_keys.c.free_quota, api_keys.c.purchased_quota, api_keys.c.total_hits)
            .where(api_keys.c.key_id == key_id)
        ).one()
        total = current.free_quota + current.purchased_quota

        if not claimed:
            if not current.is_active:
                raise KeyRevokedError("This API key has been revoked")
            used = month_used(session, key_id, now)
            block = QuotaBlock(used=used, total=total, resets_on=resets_on(now))
            log_event(
                "warning",
                "quota.exceeded",
                user_id=key.user_id,
                event_type="quota_reject",
                error_code="quota_exceeded",
                extra={"key_id": key_id, "used": used, "total": total, "endpoint": endpoint},
            )
            raise QuotaExceededError(
                f"Monthly quota of {total} requests exceeded. Upgrade your plan to continue.",
                quota=block.to_wire(),
            )

        _record_breakdowns(session, key_id, endpoint, now)
        _prune_windows(session, key_id, now)
        used = month_used(session, key_id, now)
        total_hits = current.total_hits + 1

    pct = percent_used(used, total)
    return QuotaStatus(
        key_id=key_id,
        used=used,
        total=total,
        remaining=max(0, total - used),
        percent_used=pct,
        level=usage_level(pct),
        resets_on=resets_on(now),
        total_hits=total_hits,
    )
