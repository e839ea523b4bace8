"""
Plan purchases and payment-to-quota crediting.

Order lifecycle:
    created -> paid -> (credited) ; created -> failed ; paid -> refunded

Crediting is a one-shot state transition on the order: the crediting path
claims the order with

    UPDATE payment_orders SET quota_credited_at = :now, credit_source = :src
    WHERE order_id = :id AND status = 'paid' AND quota_credited_at IS NULL

and only increments the key's purchased_quota when that claim wins. The
automatic path (verify_payment) and the manual correction path share this
claim, so an order can never be credited twice.
"""
import math
from datetime import datetime
from typing import Any, Dict, Optional
from uuid import uuid4

from sqlalchemy import select, insert, update, func, or_
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from persona.core.database import get_db_session, api_keys, payment_orders, users
from persona.core.errors import (
    AlreadyCreditedError,
    AppError,
    InvalidStateError,
    NotFoundError,
    ValidationError,
)
from persona.core.logging import log_event
from persona.features.audit.service import record_admin_audit
from persona.features.payments.plans import PLANS, get_plan
from persona.features.payments.provider import PaymentProvider, verify_signature
from persona.features.quota.service import as_utc
from persona.models.actor import Actor
from persona.models.payment import CreditResult, PaymentOrderView, PaymentSummary

MAX_PAGE_SIZE = 100


def load_order(session: Session, order_id: str):
    row = session.execute(select(payment_orders).where(payment_orders.c.order_id == order_id)).first()
    if row is None:
        raise NotFoundError("Order not found")
    return row


def apply_quota_credit(session: Session, order, source: str, now: datetime) -> CreditResult:
    """
    Credit a paid order's quota to its owner's key inside the caller's transaction.

    Raises NotFoundError when the owner has no key and AlreadyCreditedError when
    another path already claimed the order.
    """
    key = session.execute(
        select(api_keys.c.key_id).where(api_keys.c.user_id == order.user_id)
    ).first()
    if key is None:
        raise NotFoundError("User has no API key to credit")

    claimed = session.execute(
        update(payment_orders)
        .where(
            payment_orders.c.order_id == order.order_id,
            payment_orders.c.status == "paid",
            payment_orders.c.quota_credited_at.is_(None),
        )
        .values(quota_credited_at=now, credit_source=source, updated_at=now)
    ).rowcount
    if not claimed:
        raise AlreadyCreditedError("Quota for this order has already been credited")

    session.execute(
        update(api_keys)
        .where(api_keys.c.key_id == key.key_id)
        .values(
            purchased_quota=api_keys.c.purchased_quota + order.quota_granted,
            plan_id=order.plan_id,
            updated_at=now,
        )
    )
    updated = session.execute(
        select(api_keys.c.free_quota, api_keys.c.purchased_quota).where(api_keys.c.key_id == key.key_id)
    ).one()

    return CreditResult(
        order_id=order.order_id,
        key_id=key.key_id,
        credit_source=source,
        quota_granted=order.quota_granted,
        purchased_quota=updated.purchased_quota,
        total_quota=updated.free_quota + updated.purchased_quota,
    )


def create_order(
    user_id: str,
    plan_id: Optional[str],
    provider: PaymentProvider,
    *,
    now: Optional[datetime] = None,
) -> Dict[str, Any]:
    """Open a checkout for a paid plan; the caller must already own a key."""
    if not plan_id:
        raise ValidationError("planId is required", field="planId")
    plan = get_plan(plan_id)
    if plan.plan_id == "free":
        raise ValidationError("Invalid plan selected", field="planId")
    now = as_utc(now)

    with get_db_session() as session:
        key = session.execute(select(api_keys.c.plan_id).where(api_keys.c.user_id == user_id)).first()
    if key is None:
        raise InvalidStateError("Generate your free API key first before upgrading")
    if key.plan_id == plan.plan_id:
        raise InvalidStateError("You are already on this plan")

    provider_order = provider.create_order(
        amount_paise=plan.price_inr * 100,
        currency="INR",
        receipt=f"api_{user_id}_{int(now.timestamp())}",
        notes={"userId": user_id, "planId": plan.plan_id, "quotaGranted": str(plan.quota_granted)},
    )

    order_id = uuid4().hex
    with get_db_session() as session:
        session.execute(
            insert(payment_orders).values(
                order_id=order_id,
                user_id=user_id,
                plan_id=plan.plan_id,
                plan_label=plan.label,
                quota_granted=plan.quota_granted,
                amount_inr=plan.price_inr,
                currency=provider_order.currency,
                provider_order_id=provider_order.order_id,
                status="created",
                created_at=now,
                updated_at=now,
            )
        )

    log_event(
        "info",
        "payment.order_created",
        user_id=user_id,
        event_type="payment_create",
        extra={"order_id": order_id, "plan_id": plan.plan_id},
    )
    return {
        "orderId": order_id,
        "order": {
            "id": provider_order.order_id,
            "amount": provider_order.amount_paise,
            "currency": provider_order.currency,
        },
        "plan": plan.to_dict(),
        "keyId": provider.key_id,
    }


def verify_payment(
    user_id: str,
    provider_order_id: Optional[str],
    provider_payment_id: Optional[str],
    signature: Optional[str],
    *,
    now: Optional[datetime] = None,
) -> Dict[str, Any]:
    """
    Confirm a checkout and credit the plan's quota.

    The paid transition commits on its own. The credit runs in a second
    transaction; if it fails the order stays paid and uncredited, which is
    what the manual correction tool repairs.
    """
    if not provider_order_id or not provider_payment_id or not signature:
        raise ValidationError("Missing payment verification fields")
    if not verify_signature(provider_order_id, provider_payment_id, signature):
        raise ValidationError("Payment verification failed. Invalid signature.", field="signature")
    now = as_utc(now)

    with get_db_session() as session:
        paid = session.execute(
            update(payment_orders)
            .where(
                payment_orders.c.provider_order_id == provider_order_id,
                payment_orders.c.user_id == user_id,
                payment_orders.c.status == "created",
            )
            .values(
                status="paid",
                provider_payment_id=provider_payment_id,
                provider_signature=signature,
                updated_at=now,
            )
        ).rowcount
        if not paid:
            raise NotFoundError("Order not found or already processed")
        order_id = session.execute(
            select(payment_orders.c.order_id).where(payment_orders.c.provider_order_id == provider_order_id)
        ).scalar_one()

    log_event("info", "payment.paid", user_id=user_id, event_type="payment_paid", extra={"order_id": order_id})

    credit = None
    try:
        with get_db_session() as session:
            order = load_order(session, order_id)
            credit = apply_quota_credit(session, order, "auto", now)
    except (AppError, SQLAlchemyError) as exc:
        log_event(
            "error",
            "payment.auto_credit_failed",
            user_id=user_id,
            event_type="payment_credit",
            error_code=getattr(exc, "code", "database_error"),
            extra={"order_id": order_id, "reason": str(exc)},
        )

    if credit is not None:
        log_event(
            "info",
            "payment.credited",
            user_id=user_id,
            event_type="payment_credit",
            extra={"order_id": order_id, "source": "auto", "total_quota": credit.total_quota},
        )

    return {
        "orderId": order_id,
        "status": "paid",
        "credited": credit is not None,
        "credit": credit.to_wire() if credit else None,
    }


def mark_order_failed(provider_order_id: str, user_id: Optional[str] = None, *, now: Optional[datetime] = None) -> str:
    """created -> failed (checkout dismissed or declined). Returns the order id."""
    now = as_utc(now)
    conditions = [payment_orders.c.provider_order_id == provider_order_id]
    if user_id:
        conditions.append(payment_orders.c.user_id == user_id)

    with get_db_session() as session:
        order = session.execute(select(payment_orders.c.order_id, payment_orders.c.status).where(*conditions)).first()
        if order is None:
            raise NotFoundError("Order not found")
        updated = session.execute(
            update(payment_orders)
            .where(payment_orders.c.order_id == order.order_id, payment_orders.c.status == "created")
            .values(status="failed", updated_at=now)
        ).rowcount
        if not updated:
            raise InvalidStateError(f"Cannot mark a {order.status} order as failed")

    log_event("info", "payment.failed", user_id=user_id, event_type="payment_failed", extra={"order_id": order.order_id})
    return order.order_id


def refund_order(order_id: str, actor: Actor, *, note: Optional[str] = None, now: Optional[datetime] = None) -> Dict[str, Any]:
    """paid -> refunded. Credited quota is left on the key."""
    now = as_utc(now)
    with get_db_session() as session:
        order = load_order(session, order_id)
        updated = session.execute(
            update(payment_orders)
            .where(payment_orders.c.order_id == order_id, payment_orders.c.status == "paid")
            .values(status="refunded", updated_at=now)
        ).rowcount
        if not updated:
            raise InvalidStateError(f"Cannot refund an order that is {order.status}")
        record_admin_audit(
            session,
            actor,
            "refund_order",
            target_user_id=order.user_id,
            target_resource=order_id,
            note=note,
            payload={"amountINR": order.amount_inr, "planId": order.plan_id},
        )

    log_event("info", "payment.refunded", user_id=actor.user_id, event_type="payment_refund", extra={"order_id": order_id})
    return {"orderId": order_id, "status": "refunded"}


def _to_view(row) -> PaymentOrderView:
    return PaymentOrderView(
        order_id=row.order_id,
        user_id=row.user_id,
        user_name=row.owner_name or "Unknown",
        user_email=row.owner_email or "Unknown",
        plan_id=row.plan_id,
        plan_label=row.plan_label,
        quota_granted=row.quota_granted,
        amount_inr=row.amount_inr,
        currency=row.currency,
        provider_order_id=row.provider_order_id,
        provider_payment_id=row.provider_payment_id,
        has_signature=bool(row.provider_signature),
        status=row.status,
        quota_credited_at=row.quota_credited_at,
        credit_source=row.credit_source,
        created_at=row.created_at,
        updated_at=row.updated_at,
    )


def _payment_summary(session: Session) -> PaymentSummary:
    counts = dict(
        session.execute(
            select(payment_orders.c.status, func.count()).group_by(payment_orders.c.status)
        ).all()
    )
    revenue = session.execute(
        select(func.coalesce(func.sum(payment_orders.c.amount_inr), 0)).where(payment_orders.c.status == "paid")
    ).scalar_one()
    uncredited = session.execute(
        select(func.count())
        .select_from(payment_orders)
        .where(payment_orders.c.status == "paid", payment_orders.c.quota_credited_at.is_(None))
    ).scalar_one()
    by_plan = {plan_id: 0 for plan_id in PLANS if plan_id != "free"}
    for plan_id, count in session.execute(
        select(payment_orders.c.plan_id, func.count())
        .where(payment_orders.c.status == "paid")
        .group_by(payment_orders.c.plan_id)
    ).all():
        by_plan[plan_id] = count

    return PaymentSummary(
        total_orders=sum(counts.values()),
        paid=counts.get("paid", 0),
        failed=counts.get("failed", 0),
        abandoned=counts.get("created", 0),
        refunded=counts.get("refunded", 0),
        uncredited_paid=uncredited,
        total_revenue_inr=int(revenue),
        by_plan=by_plan,
    )


def list_orders(
    *,
    status: Optional[str] = None,
    search: Optional[str] = None,
    page: int = 1,
    limit: int = 25,
) -> Dict[str, Any]:
    """Every payment attempt, newest first, with owner details and a summary."""
    page = max(1, page)
    limit = max(1, min(MAX_PAGE_SIZE, limit))

    conditions = []
    if status:
        conditions.append(payment_orders.c.status == status)
    if search:
        pattern = f"%{search.lower()}%"
        conditions.append(
            or_(
                func.lower(users.c.name).like(pattern),
                func.lower(users.c.email).like(pattern),
                func.lower(payment_orders.c.provider_order_id).like(pattern),
                func.lower(payment_orders.c.provider_payment_id).like(pattern),
            )
        )

    query = (
        select(
            payment_orders,
            users.c.name.label("owner_name"),
            users.c.email.label("owner_email"),
        )
        .select_from(payment_orders.outerjoin(users, users.c.user_id == payment_orders.c.user_id))
        .where(*conditions)
    )

    with get_db_session() as session:
        total = session.execute(select(func.count()).select_from(query.subquery())).scalar_one()
        rows = session.execute(
            query.order_by(payment_orders.c.created_at.desc()).offset((page - 1) * limit).limit(limit)
        ).all()
        summary = _payment_summary(session)

    return {
        "summary": summary,
        "pagination": {"page": page, "limit": limit, "total": total, "pages": math.ceil(total / limit)},
        "data": [_to_view(row) for row in rows],
    }
