"""
Manual quota correction for paid orders whose automatic credit never landed.

Checks run in a fixed order so the operator sees the most specific reason:
unknown order -> not paid -> already credited -> owner has no key. The
credit itself, the order claim and the audit entry commit together.
"""
from datetime import datetime
from typing import Any, Dict, Optional

from sqlalchemy import select

from persona.core.database import get_db_session, api_keys
from persona.core.errors import AlreadyCreditedError, InvalidStateError, NotFoundError
from persona.core.logging import log_event
from persona.features.audit.service import record_admin_audit
from persona.features.payments.service import apply_quota_credit, load_order
from persona.features.quota.service import as_utc
from persona.models.actor import Actor


def manual_credit(
    order_id: str,
    actor: Actor,
    operator_note: Optional[str] = None,
    *,
    now: Optional[datetime] = None,
) -> Dict[str, Any]:
    """Credit a paid order's quota to the owner's key exactly once."""
    now = as_utc(now)
    note = (operator_note or "").strip() or None

    with get_db_session() as session:
        order = load_order(session, order_id)
        if order.status != "paid":
            raise InvalidStateError(f"Cannot credit an order that was not paid (status: {order.status})")
        if order.quota_credited_at is not None:
            raise AlreadyCreditedError(
                f"Quota for this order was already credited ({order.credit_source or 'unknown'})",
            )
        has_key = session.execute(select(api_keys.c.key_id).where(api_keys.c.user_id == order.user_id)).first()
        if has_key is None:
            raise NotFoundError("User has no API key to credit")

        credit = apply_quota_credit(session, order, "manual", now)
        record_admin_audit(
            session,
            actor,
            "manual_credit",
            target_user_id=order.user_id,
            target_resource=order_id,
            note=note,
            payload={
                "keyId": credit.key_id,
                "quotaGranted": credit.quota_granted,
                "totalQuota": credit.total_quota,
            },
        )

    log_event(
        "info",
        "payment.manual_credit",
        user_id=actor.user_id,
        event_type="manual_credit",
        extra={"order_id": order_id, "key_id": credit.key_id, "quota_granted": credit.quota_granted},
    )
    return {
        "message": f"Credited {credit.quota_granted} requests to the user's API key",
        "orderId": order_id,
        "keyId": credit.key_id,
        "purchasedQuota": credit.purchased_quota,
        "totalQuota": credit.total_quota,
    }
