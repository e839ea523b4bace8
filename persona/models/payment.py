from datetime import datetime
from typing import Dict, Optional

from persona.models.base import CamelModel


class PaymentOrderView(CamelModel):
    order_id: str
    user_id: str
    user_name: str = "Unknown"
    user_email: str = "Unknown"
    plan_id: str
    plan_label: str
    quota_granted: int
    amount_inr: int
    currency: str
    provider_order_id: str
    provider_payment_id: Optional[str] = None
    has_signature: bool = False
    status: str  # created | paid | failed | refunded
    quota_credited_at: Optional[datetime] = None
    credit_source: Optional[str] = None  # auto | manual
    created_at: datetime
    updated_at: datetime


class PaymentSummary(CamelModel):
    total_orders: int
    paid: int
    failed: int
    abandoned: int  # created, never paid
    refunded: int
    uncredited_paid: int
    total_revenue_inr: int
    by_plan: Dict[str, int]


class CreditResult(CamelModel):
    """Outcome of crediting an order's quota to the owner's key."""
    order_id: str
    key_id: str
    credit_source: str
    quota_granted: int
    purchased_quota: int
    total_quota: int
