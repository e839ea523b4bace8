"""Response models for API keys, quota status and usage analytics."""

from datetime import datetime
from typing import Dict, List, Optional

from persona.models.base import CamelModel


class QuotaBlock(CamelModel):
    """The {used, total, resetsOn} block returned on every metered response."""
    used: int
    total: int
    resets_on: datetime


class QuotaStatus(CamelModel):
    key_id: str
    used: int
    total: int
    remaining: int
    percent_used: int
    level: str  # nominal | warning | critical
    resets_on: datetime
    total_hits: int


class DayBucket(CamelModel):
    date: str
    count: int


class MonthBucket(CamelModel):
    month: str
    count: int


class EndpointBucket(CamelModel):
    endpoint: str
    count: int
    last_hit_at: Optional[datetime] = None


class UsageStats(CamelModel):
    key_id: str
    key_prefix: str
    is_active: bool
    plan_id: str
    total_hits: int
    month_used: int
    free_quota: int
    purchased_quota: int
    total_quota: int
    remaining: int
    percent_used: int
    level: str
    last_7_days: List[DayBucket]
    monthly_hits: List[MonthBucket]
    endpoint_hits: List[EndpointBucket]
    last_used_at: Optional[datetime] = None
    created_at: datetime


class GeneratedKey(CamelModel):
    """Returned exactly once, when the key is issued or reissued. Only the hash is stored."""
    key_id: str
    api_key: str
    key_prefix: str
    plan_id: str
    total_quota: int


class AdminKeyView(UsageStats):
    user_id: str
    user_name: Optional[str] = None
    user_email: Optional[str] = None
    user_role: str = "user"
    user_active: bool = True
    is_orphaned: bool = False


class KeySummary(CamelModel):
    total_keys: int
    active_keys: int
    total_hits_all_time: int
    total_hits_this_month: int
    by_plan: Dict[str, int]
