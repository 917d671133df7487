"""
Discount Resolver.

Computes the single discount an order gets: an explicit coupon typed by the
customer, or, when no code is given, the most recent unused loyalty coupon
that validates against the cart. Never both, never more than one.

Resolution is read-only. Consuming the coupon (used_count, redemption row)
happens in ``orders.create_order`` in the same transaction as the order.
"""

from dataclasses import dataclass
from datetime import datetime
from typing import Optional
import uuid

from sqlalchemy import func
from sqlalchemy.orm import Session

from orderflow.errors import InvalidCoupon, ValidationError
from orderflow.models import Coupon, CouponRedemption, LoyaltyReward
from orderflow.utils.clock import as_utc, utcnow


@dataclass(frozen=True)
class Discount:
    amount: float
    source: str                      # none / coupon / loyalty
    coupon_id: Optional[uuid.UUID] = None
    coupon_code: Optional[str] = None
    reward_id: Optional[uuid.UUID] = None


NO_DISCOUNT = Discount(amount=0.0, source="none")


def normalize_code(code: Optional[str]) -> Optional[str]:
    if code is None:
        return None
    code = code.strip().upper()
    return code or None


def compute_discount(coupon: Coupon, cart_total: float) -> float:
    """Effective discount against the *current* total. Never cached."""
    if coupon.discount_amount is not None:
        discount = min(cart_total, float(coupon.discount_amount))
    elif coupon.discount_percent is not None:
        discount = cart_total * (float(coupon.discount_percent) / 100)
    else:
        discount = 0.0
    return round(max(0.0, min(discount, cart_total)), 2)


def check_coupon(coupon: Optional[Coupon], cart_total: float, now: datetime) -> None:
    if coupon is None:
        raise InvalidCoupon("Coupon not found")
    if not coupon.is_active:
        raise InvalidCoupon("Coupon is inactive")
    valid_from = as_utc(coupon.valid_from)
    valid_until = as_utc(coupon.valid_until)
    if valid_from and now < valid_from:
        raise InvalidCoupon("Coupon is not yet valid")
    if valid_until and now > valid_until:
        raise InvalidCoupon("Coupon has expired")
    if cart_total < float(coupon.min_order_amount or 0):
        raise InvalidCoupon(f"Minimum order of {coupon.min_order_amount:,.0f} required for this coupon")
    if coupon.max_uses is not None and (coupon.used_count or 0) >= coupon.max_uses:
        raise InvalidCoupon("Coupon usage limit reached")


def check_user_limit(db: Session, coupon: Coupon, user_id) -> None:
    if coupon.max_uses_per_user is None:
        return
    used = (
        db.query(func.count(CouponRedemption.id))
        .filter(CouponRedemption.coupon_id == coupon.id, CouponRedemption.user_id == user_id)
        .scalar()
    )
    if used >= coupon.max_uses_per_user:
        raise InvalidCoupon("You have already used this coupon")


def resolve(
    db: Session,
    cart_total: float,
    user_id,
    explicit_code: Optional[str] = None,
    now: Optional[datetime] = None,
) -> Discount:
    if cart_total is None or cart_total < 0:
        raise ValidationError("Cart total must be a non-negative amount")
    now = now or utcnow()
    code = normalize_code(explicit_code)

    if code:
        return _resolve_explicit(db, cart_total, user_id, code, now)
    return _resolve_loyalty(db, cart_total, user_id, now)


def _resolve_explicit(db: Session, cart_total: float, user_id, code: str, now: datetime) -> Discount:
    coupon = db.query(Coupon).filter(Coupon.code == code).first()
    check_coupon(coupon, cart_total, now)
    check_user_limit(db, coupon, user_id)

    # Loyalty coupons belong to the user who redeemed the points.
    reward = db.query(LoyaltyReward).filter(LoyaltyReward.coupon_code == code).first()
    if reward is not None:
        if reward.user_id != user_id:
            raise InvalidCoupon("Coupon not found")
        if reward.is_used:
            raise InvalidCoupon("Coupon has already been used")
        expires_at = as_utc(reward.expires_at)
        if expires_at and now > expires_at:
            raise InvalidCoupon("Coupon has expired")

    return Discount(
        amount=compute_discount(coupon, cart_total),
        source="loyalty" if reward is not None else "coupon",
        coupon_id=coupon.id,
        coupon_code=coupon.code,
        reward_id=reward.id if reward is not None else None,
    )


def _resolve_loyalty(db: Session, cart_total: float, user_id, now: datetime) -> Discount:
    rewards = (
        db.query(LoyaltyReward)
        .filter(
            LoyaltyReward.user_id == user_id,
            LoyaltyReward.is_used == False,
            LoyaltyReward.coupon_code.isnot(None),
            (LoyaltyReward.expires_at.is_(None)) | (LoyaltyReward.expires_at > now),
        )
        .order_by(LoyaltyReward.created_at.desc(), LoyaltyReward.id.desc())
        .all()
    )
    # Most recent valid reward wins; only one is ever auto-applied.
    for reward in rewards:
        coupon = db.query(Coupon).filter(Coupon.code == reward.coupon_code).first()
        try:
            check_coupon(coupon, cart_total, now)
        except InvalidCoupon:
            continue
        return Discount(
            amount=compute_discount(coupon, cart_total),
            source="loyalty",
            coupon_id=coupon.id,
            coupon_code=coupon.code,
            reward_id=reward.id,
        )
    return NO_DISCOUNT
