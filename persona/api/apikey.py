"""
Self-service API key endpoints.

Key lifecycle (generate/stats/revoke-and-reissue) and plan purchases through Razorpay
checkout (create-order -> client checkout -> verify).
"""

from typing import Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel, ConfigDict, Field

from persona.core.auth import get_current_actor
from persona.features.api_keys import service as keys_service
from persona.features.payments import service as payments_service
from persona.features.payments.plans import list_plans
from persona.features.payments.provider import PaymentProvider, get_payment_provider
from persona.models.actor import Actor

router = APIRouter(prefix="/v1/apikey", tags=["apikey"])


class CreateOrderRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    plan_id: Optional[str] = Field(None, alias="planId")


class VerifyPaymentRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    razorpay_order_id: Optional[str] = Field(None, alias="razorpayOrderId")
    razorpay_payment_id: Optional[str] = Field(None, alias="razorpayPaymentId")
    razorpay_signature: Optional[str] = Field(None, alias="razorpaySignature")


class PaymentFailedRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    razorpay_order_id: str = Field(..., alias="razorpayOrderId")


@router.get("/plans")
def plans():
    return {"success": True, "plans": [plan.to_dict() for plan in list_plans()]}


@router.post("/generate", status_code=201)
def generate(actor: Actor = Depends(get_current_actor)):
    generated = keys_service.generate_api_key(actor.user_id)
    return {
        "success": True,
        "message": "API key generated. Copy it now, it will not be shown again.",
        **generated.to_wire(),
    }


@router.get("/stats")
def stats(actor: Actor = Depends(get_current_actor)):
    usage = keys_service.get_usage_stats(actor.user_id)
    if usage is None:
        return {"success": True, "hasKey": False}
    return {"success": True, "hasKey": True, "stats": usage.to_wire()}


@router.post("/revoke")
@router.post("/rotate")
def revoke(actor: Actor = Depends(get_current_actor)):
    rotated = keys_service.rotate_own_key(actor.user_id)
    return {
        "success": True,
        "message": "API key revoked. Copy the replacement now, it will not be shown again.",
        **rotated.to_wire(),
    }


@router.post("/payment/create-order")
def create_order(
    body: CreateOrderRequest,
    actor: Actor = Depends(get_current_actor),
    provider: PaymentProvider = Depends(get_payment_provider),
):
    order = payments_service.create_order(actor.user_id, body.plan_id, provider)
    return {"success": True, **order}


@router.post("/payment/verify")
def verify(body: VerifyPaymentRequest, actor: Actor = Depends(get_current_actor)):
    result = payments_service.verify_payment(
        actor.user_id,
        body.razorpay_order_id,
        body.razorpay_payment_id,
        body.razorpay_signature,
    )
    if result["credited"]:
        message = "Payment successful. Your plan has been upgraded."
    else:
        message = "Payment received. Your quota will be credited shortly."
    return {"success": True, "message": message, **result}


@router.post("/payment/failed")
def payment_failed(body: PaymentFailedRequest, actor: Actor = Depends(get_current_actor)):
    order_id = payments_service.mark_order_failed(body.razorpay_order_id, actor.user_id)
    return {"success": True, "orderId": order_id, "status": "failed"}
