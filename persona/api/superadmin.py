"""
Superadmin back-office: API key oversight, payment tracking, manual quota
correction and the audit trail. Every route requires the superadmin role;
every mutation is audited with the operator's identity.
"""

from typing import Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, ConfigDict, Field

from persona.core.auth import require_role
from persona.features.api_keys import service as keys_service
from persona.features.audit.service import list_admin_audit
from persona.features.payments import service as payments_service
from persona.features.payments.manual_credit import manual_credit
from persona.models.actor import Actor

router = APIRouter(prefix="/v1/superadmin", tags=["superadmin"])

require_superadmin = require_role("superadmin")


class KeyActiveRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    is_active: bool = Field(..., alias="isActive")


class ManualCreditRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    order_id: str = Field(..., alias="orderId")
    note: Optional[str] = Field(None, max_length=1000)


class RefundRequest(BaseModel):
    note: Optional[str] = Field(None, max_length=1000)


@router.get("/api-keys")
def api_keys(
    search: Optional[str] = None,
    plan: Optional[str] = None,
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1),
    actor: Actor = Depends(require_superadmin),
):
    result = keys_service.list_api_keys(search=search, plan_id=plan, page=page, limit=limit)
    return {
        "success": True,
        "summary": result["summary"].to_wire(),
        "pagination": result["pagination"],
        "data": [row.to_wire() for row in result["data"]],
    }


@router.patch("/api-keys/{key_id}")
def set_key_active(key_id: str, body: KeyActiveRequest, actor: Actor = Depends(require_superadmin)):
    result = keys_service.set_key_active(key_id, body.is_active, actor)
    message = "API key restored" if body.is_active else "API key revoked"
    return {"success": True, "message": message, **result}


@router.delete("/api-keys/{key_id}")
def delete_api_key(key_id: str, actor: Actor = Depends(require_superadmin)):
    keys_service.delete_api_key(key_id, actor)
    return {"success": True, "message": "Orphaned API key deleted"}


@router.get("/payments")
def payments(
    status: Optional[str] = None,
    search: Optional[str] = None,
    page: int = Query(1, ge=1),
    limit: int = Query(25, ge=1),
    actor: Actor = Depends(require_superadmin),
):
    result = payments_service.list_orders(status=status, search=search, page=page, limit=limit)
    return {
        "success": True,
        "summary": result["summary"].to_wire(),
        "pagination": result["pagination"],
        "data": [row.to_wire() for row in result["data"]],
    }


@router.post("/payments/manual-credit")
def manual_credit_order(body: ManualCreditRequest, actor: Actor = Depends(require_superadmin)):
    result = manual_credit(body.order_id, actor, body.note)
    return {"success": True, **result}


@router.post("/payments/{order_id}/refund")
def refund(order_id: str, body: Optional[RefundRequest] = None, actor: Actor = Depends(require_superadmin)):
    result = payments_service.refund_order(order_id, actor, note=body.note if body else None)
    return {"success": True, **result}


@router.get("/audit")
def audit(
    action: Optional[str] = None,
    target_user_id: Optional[str] = Query(None, alias="targetUserId"),
    page: int = Query(1, ge=1),
    limit: int = Query(50, ge=1),
    actor: Actor = Depends(require_superadmin),
):
    result = list_admin_audit(action=action, target_user_id=target_user_id, page=page, limit=limit)
    return {"success": True, **result}
