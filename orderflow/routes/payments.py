import json
import logging
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel
from sqlalchemy.orm import Session

from orderflow.database import get_db
from orderflow.dependencies import get_current_user
from orderflow.errors import OrderflowError, PaymentTimeout, to_http
from orderflow.models import Payment, PaymentMethod, User
from orderflow.services.catalog import parse_uuid
from orderflow.services.container import Services, get_services
from orderflow.services.gateway import PayerInfo, verify_signature

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/payments", tags=["payments"])


# =====================================================
# HELPERS
# =====================================================

def _serialize_payment(p: Payment) -> dict:
    return {
        "id": str(p.id),
        "order_id": str(p.order_id),
        "amount": p.amount,
        "status": p.status,
        "method": p.payment_method,
        "phone_number": p.phone_number,
        "provider_payment_id": p.provider_payment_id,
        "transaction_id": p.transaction_id,
        "completed_at": p.completed_at,
        "created_at": p.created_at,
        "updated_at": p.updated_at,
        "order": {
            "id": str(p.order.id),
            "status": p.order.status,
            "total_amount": p.order.total_amount,
        } if p.order else None,
    }


def _get_owned_payment(db: Session, payment_id: str, user: User) -> Payment:
    try:
        pid = parse_uuid(payment_id, "payment id")
    except OrderflowError as e:
        raise to_http(e)
    payment = db.get(Payment, pid)
    if not payment or (payment.user_id != user.id and user.role != "admin"):
        raise HTTPException(404, "Payment not found")
    return payment


# =====================================================
# Pydantic Schemas
# =====================================================

class StartPaymentPayload(BaseModel):
    phone: Optional[str] = None
    name: Optional[str] = None
    email: Optional[str] = None
    method: Optional[str] = "kkiapay"


class WaitPayload(BaseModel):
    timeout_seconds: Optional[float] = None


# =====================================================
# USER: START / FOLLOW A PAYMENT
# =====================================================

@router.post("/orders/{order_id}", status_code=201)
async def start_payment(
    order_id: str,
    payload: StartPaymentPayload,
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
    services: Services = Depends(get_services),
):
    """
    Opens the mobile-money transaction. The customer approves it on their
    phone; confirmation arrives later through polling or the webhook.
    """
    try:
        method = PaymentMethod(payload.method or "kkiapay")
    except ValueError:
        raise HTTPException(400, f"Unsupported payment method: '{payload.method}'")

    payer = PayerInfo(
        name=payload.name or user.full_name,
        email=payload.email or user.email,
        phone=payload.phone or user.phone,
    )
    try:
        payment = await services.reconciler.begin(db, order_id, user.id, payer, payment_method=method)
    except OrderflowError as e:
        raise to_http(e)

    services.reconciler.schedule(payment.id)
    return {
        "payment_id": str(payment.id),
        "order_id": str(payment.order_id),
        "status": payment.status,
        "provider_payment_id": payment.provider_payment_id,
        "amount": payment.amount,
        "message": "Approve the payment on your phone to complete your order.",
    }


@router.get("/{payment_id}")
def get_payment(
    payment_id: str,
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
):
    return _serialize_payment(_get_owned_payment(db, payment_id, user))


@router.post("/{payment_id}/wait")
async def wait_for_payment(
    payment_id: str,
    payload: Optional[WaitPayload] = None,
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
    services: Services = Depends(get_services),
):
    payment = _get_owned_payment(db, payment_id, user)
    timeout = payload.timeout_seconds if payload else None
    try:
        outcome = await services.reconciler.poll(payment.id, timeout=timeout)
    except PaymentTimeout as e:
        return JSONResponse(
            status_code=e.status_code,
            content={
                "payment_id": str(payment.id),
                "order_id": str(payment.order_id),
                "state": "pending_confirmation",
                "message": e.message,
            },
        )
    except OrderflowError as e:
        raise to_http(e)
    return outcome.as_dict()


@router.post("/{payment_id}/check")
async def check_payment(
    payment_id: str,
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
    services: Services = Depends(get_services),
):
    payment = _get_owned_payment(db, payment_id, user)
    try:
        outcome = await services.reconciler.check_once(db, payment.id)
    except OrderflowError as e:
        raise to_http(e)
    return outcome.as_dict()


# =====================================================
# PROVIDER WEBHOOK
# =====================================================

@router.post("/webhook/kkiapay")
async def kkiapay_webhook(
    request: Request,
    db: Session = Depends(get_db),
    services: Services = Depends(get_services),
):
    body = await request.body()

    if services.webhook_secret:
        signature = request.headers.get("x-kkiapay-signature")
        if not verify_signature(body, signature, services.webhook_secret):
            logger.warning("Rejected webhook with invalid signature")
            raise HTTPException(401, "Invalid signature")

    try:
        payload = json.loads(body or b"{}")
    except ValueError:
        raise HTTPException(400, "Invalid JSON body")
    if not isinstance(payload, dict):
        raise HTTPException(400, "Invalid webhook payload")

    try:
        outcome = services.reconciler.apply_webhook(db, payload)
    except OrderflowError as e:
        raise to_http(e)

    # Unknown payments are acknowledged so the provider stops retrying.
    if outcome is None:
        return {"received": True, "matched": False}
    return {"received": True, "matched": True, **outcome.as_dict()}
