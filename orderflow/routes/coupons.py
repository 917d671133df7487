from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, status
from pydantic import BaseModel
from sqlalchemy.orm import Session

from orderflow.database import get_db
from orderflow.dependencies import get_current_user, require_admin
from orderflow.errors import OrderflowError, to_http
from orderflow.models import Coupon, User
from orderflow.services import discounts

router = APIRouter(prefix="/coupons", tags=["coupons"])


class PreviewCouponPayload(BaseModel):
    order_total: float
    code: Optional[str] = None


class CreateCouponPayload(BaseModel):
    code: str
    description: Optional[str] = None
    discount_amount: Optional[float] = None
    discount_percent: Optional[float] = None
    min_order_amount: float = 0
    max_uses: Optional[int] = None
    max_uses_per_user: Optional[int] = 1
    valid_from: Optional[datetime] = None
    valid_until: Optional[datetime] = None
    is_active: bool = True


@router.post("/preview", status_code=status.HTTP_200_OK)
def preview_discount(payload: PreviewCouponPayload, db: Session = Depends(get_db), user: User = Depends(get_current_user)):
    """What checkout would apply right now. Nothing is reserved or consumed."""
    try:
        discount = discounts.resolve(db, payload.order_total, user.id, payload.code)
    except OrderflowError as e:
        raise to_http(e)
    return {
        "discount": discount.amount,
        "source": discount.source,
        "coupon_code": discount.coupon_code,
        "total_after_discount": round(payload.order_total - discount.amount, 2),
    }


@router.post("/admin", status_code=status.HTTP_201_CREATED)
def create_coupon(payload: CreateCouponPayload, db: Session = Depends(get_db), admin: User = Depends(require_admin)):
    code = discounts.normalize_code(payload.code)
    if not code:
        raise HTTPException(400, "Coupon code is required")
    if (payload.discount_amount is None) == (payload.discount_percent is None):
        raise HTTPException(400, "Set exactly one of discount_amount or discount_percent")
    if payload.discount_amount is not None and payload.discount_amount <= 0:
        raise HTTPException(400, "Discount amount must be positive")
    if payload.discount_percent is not None and not 0 < payload.discount_percent <= 100:
        raise HTTPException(400, "Discount percent must be between 0 and 100")
    if payload.max_uses is not None and payload.max_uses <= 0:
        raise HTTPException(400, "max_uses must be positive")
    if payload.max_uses_per_user is not None and payload.max_uses_per_user <= 0:
        raise HTTPException(400, "max_uses_per_user must be positive")
    if db.query(Coupon.id).filter(Coupon.code == code).first():
        raise HTTPException(409, "Coupon code already exists")

    coupon = Coupon(
        code=code,
        description=payload.description,
        discount_amount=payload.discount_amount,
        discount_percent=payload.discount_percent,
        min_order_amount=payload.min_order_amount,
        max_uses=payload.max_uses,
        max_uses_per_user=payload.max_uses_per_user,
        used_count=0,
        valid_from=payload.valid_from,
        valid_until=payload.valid_until,
        is_active=payload.is_active,
    )
    db.add(coupon)
    db.commit()
    db.refresh(coupon)
    return {"id": str(coupon.id), "code": coupon.code}
