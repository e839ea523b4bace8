"""
Quota meter: monthly fixed-window metering of API-key requests.

Times are pinned with `now=` so month boundaries are deterministic.
"""

import pytest
from datetime import datetime, timedelta, timezone
from sqlalchemy import select, update

from persona.core.config import settings
from persona.core.database import (
    get_db_session,
    upsert,
    api_keys,
    api_usage_daily,
    api_usage_monthly,
    api_endpoint_hits,
)
from persona.core.errors import InvalidApiKeyError, KeyRevokedError, QuotaExceededError
from persona.features.api_keys.service import generate_api_key, get_usage_stats, set_key_active
from persona.features.payments.manual_credit import manual_credit
from persona.features.quota import service as quota

MARCH = datetime(2026, 3, 14, 10, 0, tzinfo=timezone.utc)
ENDPOINT = "GET /api/v1/celebrities"


@pytest.fixture
def api_key():
    return generate_api_key("u1", now=MARCH)


def _set_month_hits(key_id, month, hits):
    with get_db_session() as session:
        stmt = upsert(session, api_usage_monthly).values(key_id=key_id, month=month, hits=hits)
        session.execute(
            stmt.on_conflict_do_update(index_elements=["key_id", "month"], set_={"hits": hits})
        )


def _month_hits(key_id, month):
    with get_db_session() as session:
        return session.execute(
            select(api_usage_monthly.c.hits).where(
                api_usage_monthly.c.key_id == key_id, api_usage_monthly.c.month == month
            )
        ).scalar()


def _total_hits(key_id):
    with get_db_session() as session:
        return session.execute(select(api_keys.c.total_hits).where(api_keys.c.key_id == key_id)).scalar_one()


class TestCalendar:
    def test_resets_on_is_first_of_next_month(self):
        assert quota.resets_on(MARCH) == datetime(2026, 4, 1, tzinfo=timezone.utc)

    def test_resets_on_rolls_the_year_in_december(self):
        assert quota.resets_on(datetime(2026, 12, 31, 23, 59, tzinfo=timezone.utc)) == datetime(
            2027, 1, 1, tzinfo=timezone.utc
        )

    def test_naive_datetimes_are_treated_as_utc(self):
        assert quota.month_key(quota.as_utc(datetime(2026, 3, 31, 23, 0))) == "2026-03"

    @pytest.mark.parametrize(
        "months,expected", [(0, "2026-03"), (-2, "2026-01"), (-3, "2025-12"), (10, "2027-01")]
    )
    def test_shift_month(self, months, expected):
        assert quota.shift_month(MARCH, months) == expected

    @pytest.mark.parametrize(
        "pct,level", [(0, "nominal"), (69, "nominal"), (70, "warning"), (89, "warning"), (90, "critical"), (100, "critical")]
    )
    def test_usage_level_thresholds(self, pct, level):
        assert quota.usage_level(pct) == level

    @pytest.mark.parametrize(
        "used,total,expected",
        [(1, 200, 1), (5, 1000, 1), (141, 200, 71), (139, 200, 70), (179, 200, 90), (2, 3, 67), (0, 100, 0), (5, 0, 0)],
    )
    def test_percent_used_rounds_halves_up(self, used, total, expected):
        assert quota.percent_used(used, total) == expected


class TestMeter:
    def test_accepted_request_is_counted(self, api_key):
        status = quota.meter_request(api_key.api_key, ENDPOINT, now=MARCH)

        assert status.used == 1
        assert status.total == 100
        assert status.remaining == 99
        assert status.total_hits == 1
        assert status.resets_on == datetime(2026, 4, 1, tzinfo=timezone.utc)

    def test_last_unit_of_quota_then_rejection(self, api_key):
        _set_month_hits(api_key.key_id, "2026-03", 99)

        status = quota.meter_request(api_key.api_key, ENDPOINT, now=MARCH)
        assert status.used == 100
        assert status.remaining == 0
        assert status.level == "critical"

        with pytest.raises(QuotaExceededError) as exc:
            quota.meter_request(api_key.api_key, ENDPOINT, now=MARCH)

        assert exc.value.quota == {"used": 100, "total": 100, "resetsOn": "2026-04-01T00:00:00Z"}
        assert _month_hits(api_key.key_id, "2026-03") == 100
        assert _total_hits(api_key.key_id) == 1

    def test_missing_or_unknown_key(self, api_key):
        with pytest.raises(InvalidApiKeyError):
            quota.meter_request(None, ENDPOINT, now=MARCH)
        with pytest.raises(InvalidApiKeyError):
            quota.meter_request("cp_live_" + "0" * 48, ENDPOINT, now=MARCH)
        with pytest.raises(InvalidApiKeyError):
            # Right prefix, wrong secret
            quota.meter_request(api_key.api_key[:-4] + "zzzz", ENDPOINT, now=MARCH)

    def test_revoked_key_is_rejected_with_unused_quota(self, api_key, superadmin):
        set_key_active(api_key.key_id, False, superadmin)

        with pytest.raises(KeyRevokedError):
            quota.meter_request(api_key.api_key, ENDPOINT, now=MARCH)

        assert _month_hits(api_key.key_id, "2026-03") is None
        assert _total_hits(api_key.key_id) == 0

    def test_restored_key_meters_again(self, api_key, superadmin):
        set_key_active(api_key.key_id, False, superadmin)
        set_key_active(api_key.key_id, True, superadmin)

        assert quota.meter_request(api_key.api_key, ENDPOINT, now=MARCH).used == 1

    def test_new_month_resets_used_but_not_total_hits(self, api_key):
        last_minute = datetime(2026, 3, 31, 23, 59, 59, tzinfo=timezone.utc)
        quota.meter_request(api_key.api_key, ENDPOINT, now=last_minute)
        _set_month_hits(api_key.key_id, "2026-03", 100)

        with pytest.raises(QuotaExceededError):
            quota.meter_request(api_key.api_key, ENDPOINT, now=last_minute)

        status = quota.meter_request(api_key.api_key, ENDPOINT, now=datetime(2026, 4, 1, tzinfo=timezone.utc))

        assert status.used == 1
        assert status.total_hits == 2
        assert status.resets_on == datetime(2026, 5, 1, tzinfo=timezone.utc)
        assert _month_hits(api_key.key_id, "2026-03") == 100

    def test_breakdowns_are_recorded(self, api_key):
        quota.meter_request(api_key.api_key, ENDPOINT, now=MARCH)
        quota.meter_request(api_key.api_key, ENDPOINT, now=MARCH)
        quota.meter_request(api_key.api_key, "GET /api/v1/outfits", now=MARCH + timedelta(days=1))

        stats = get_usage_stats("u1", now=MARCH + timedelta(days=1))

        assert stats.month_used == 3
        assert stats.total_hits == 3
        by_day = {bucket.date: bucket.count for bucket in stats.last_7_days}
        assert by_day["2026-03-14"] == 2
        assert by_day["2026-03-15"] == 1
        assert len(stats.last_7_days) == 7
        assert [(e.endpoint, e.count) for e in stats.endpoint_hits] == [
            (ENDPOINT, 2),
            ("GET /api/v1/outfits", 1),
        ]
        assert stats.last_used_at is not None


class TestPruning:
    def test_daily_buckets_older_than_window_are_dropped(self, api_key):
        quota.meter_request(api_key.api_key, ENDPOINT, now=MARCH)
        quota.meter_request(api_key.api_key, ENDPOINT, now=MARCH + timedelta(days=10))

        with get_db_session() as session:
            days = session.execute(
                select(api_usage_daily.c.day).where(api_usage_daily.c.key_id == api_key.key_id)
            ).scalars().all()
        assert days == ["2026-03-24"]

    def test_monthly_buckets_older_than_window_are_dropped(self, api_key):
        quota.meter_request(api_key.api_key, ENDPOINT, now=datetime(2026, 1, 5, tzinfo=timezone.utc))
        quota.meter_request(api_key.api_key, ENDPOINT, now=datetime(2026, 3, 5, tzinfo=timezone.utc))
        quota.meter_request(api_key.api_key, ENDPOINT, now=datetime(2026, 8, 5, tzinfo=timezone.utc))

        with get_db_session() as session:
            months = session.execute(
                select(api_usage_monthly.c.month)
                .where(api_usage_monthly.c.key_id == api_key.key_id)
                .order_by(api_usage_monthly.c.month)
            ).scalars().all()
        assert months == ["2026-03", "2026-08"]

    def test_endpoint_cap_keeps_busiest_then_most_recent(self, api_key, monkeypatch):
        monkeypatch.setattr(settings, "USAGE_MAX_ENDPOINTS", 3)
        calls = ["GET /a", "GET /a", "GET /a", "GET /b", "GET /b", "GET /c", "GET /d"]
        for i, endpoint in enumerate(calls):
            quota.meter_request(api_key.api_key, endpoint, now=MARCH + timedelta(seconds=i))

        with get_db_session() as session:
            kept = session.execute(
                select(api_endpoint_hits.c.endpoint, api_endpoint_hits.c.hits)
                .where(api_endpoint_hits.c.key_id == api_key.key_id)
                .order_by(api_endpoint_hits.c.hits.desc(), api_endpoint_hits.c.endpoint)
            ).all()
        assert [tuple(row) for row in kept] == [("GET /a", 3), ("GET /b", 2), ("GET /d", 1)]


def test_exhausted_free_tier_recovers_after_manual_credit(api_key, seed_user, seed_order, superadmin):
    seed_user("u1")
    for i in range(100):
        quota.meter_request(api_key.api_key, ENDPOINT, now=MARCH + timedelta(seconds=i))

    with pytest.raises(QuotaExceededError) as exc:
        quota.meter_request(api_key.api_key, ENDPOINT, now=MARCH + timedelta(minutes=5))
    assert exc.value.quota["used"] == 100
    assert exc.value.quota["total"] == 100

    order_id = seed_order("u1", status="paid", quota_granted=900, plan_id="starter")
    result = manual_credit(order_id, superadmin, "webhook missed")
    assert result["totalQuota"] == 1000

    status = quota.meter_request(api_key.api_key, ENDPOINT, now=MARCH + timedelta(minutes=6))
    assert status.used == 101
    assert status.total == 1000
    assert status.total_hits == 101

    stats = get_usage_stats("u1", now=MARCH + timedelta(minutes=6))
    assert stats.month_used == 101
    assert stats.plan_id == "starter"


def test_quota_cap_reads_current_purchased_quota(api_key):
    _set_month_hits(api_key.key_id, "2026-03", 100)
    with get_db_session() as session:
        session.execute(
            update(api_keys).where(api_keys.c.key_id == api_key.key_id).values(purchased_quota=1)
        )

    status = quota.meter_request(api_key.api_key, ENDPOINT, now=MARCH)

    assert status.used == 101
    assert status.remaining == 0
