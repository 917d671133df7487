"""
Loyalty Ledger.

Points are credited once per delivered order (the LoyaltyAccrual row is the
accrual marker) and spent by converting them into single-use coupons. The
balance lives on LoyaltyAccount as two running totals; a redemption is a
conditional UPDATE that only succeeds while ``earned - spent >= cost``, so two
concurrent redemptions cannot both draw on the same points.
"""

import logging
import math
import secrets
import string
from dataclasses import dataclass
from datetime import timedelta
from typing import Optional

from sqlalchemy import update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from orderflow.config import settings
from orderflow.errors import InsufficientPoints, ValidationError
from orderflow.models import Coupon, LoyaltyAccount, LoyaltyAccrual, LoyaltyReward, Order
from orderflow.utils.clock import utcnow

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RewardOption:
    description: str
    points_cost: int
    discount_amount: Optional[float] = None
    discount_percent: Optional[float] = None


REWARD_CATALOG = {
    "free_shipping": RewardOption("Free shipping", 100, discount_amount=settings.shipping_fee),
    "discount_5": RewardOption("5% off your next order", 100, discount_percent=5),
    "discount_10": RewardOption("10% off your next order", 200, discount_percent=10),
    "fixed_2500": RewardOption("2,500 FCFA off your next order", 300, discount_amount=2500),
}

CODE_ALPHABET = string.ascii_uppercase + string.digits


def generate_coupon_code(prefix: str = "LOY") -> str:
    return f"{prefix}-" + "".join(secrets.choice(CODE_ALPHABET) for _ in range(8))


class LoyaltyLedger:
    def __init__(
        self,
        points_per_amount: int = settings.loyalty_points_per_amount,
        reward_ttl_days: int = settings.loyalty_reward_ttl_days,
        sink=None,
    ):
        self.points_per_amount = points_per_amount
        self.reward_ttl_days = reward_ttl_days
        self.sink = sink

    # =====================================================
    # BALANCE
    # =====================================================

    def get_or_create_account(self, db: Session, user_id) -> LoyaltyAccount:
        account = db.query(LoyaltyAccount).filter(LoyaltyAccount.user_id == user_id).first()
        if account is None:
            account = LoyaltyAccount(user_id=user_id, points_earned=0, points_spent=0)
            db.add(account)
            db.flush()
        return account

    def available_points(self, db: Session, user_id) -> int:
        account = db.query(LoyaltyAccount).filter(LoyaltyAccount.user_id == user_id).first()
        if account is None:
            return 0
        db.refresh(account)
        return account.available_points

    def points_for(self, total_amount: float) -> int:
        return max(0, math.floor((total_amount or 0) / self.points_per_amount))

    # =====================================================
    # ACCRUAL
    # =====================================================

    def accrue_for_order(self, db: Session, order: Order) -> int:
        """
        Credit points for a delivered order inside the caller's transaction.
        Returns the points credited, 0 if this order already accrued.

        The unique marker decides: the insert runs in a savepoint so a losing
        writer (admin transition racing customer confirmation) keeps the rest
        of its transaction.
        """
        points = self.points_for(order.total_amount)
        try:
            with db.begin_nested():
                db.add(LoyaltyAccrual(
                    user_id=order.user_id,
                    order_id=order.id,
                    order_total=order.total_amount,
                    points=points,
                ))
        except IntegrityError:
            logger.info("Loyalty accrual already recorded | order=%s", order.id)
            return 0

        self.get_or_create_account(db, order.user_id)
        db.flush()
        if points:
            db.execute(
                update(LoyaltyAccount)
                .where(LoyaltyAccount.user_id == order.user_id)
                .values(points_earned=LoyaltyAccount.points_earned + points, updated_at=utcnow())
                .execution_options(synchronize_session=False)
            )
        logger.info("Loyalty accrual | order=%s user=%s points=%s", order.id, order.user_id, points)
        return points

    # =====================================================
    # REDEMPTION
    # =====================================================

    def redeem(self, db: Session, user_id, reward_type: str, points_cost: Optional[int] = None) -> LoyaltyReward:
        """
        Spend points on a catalogue reward. The price comes from REWARD_CATALOG;
        a caller-supplied ``points_cost`` must match it.
        """
        option = REWARD_CATALOG.get(reward_type)
        if option is None:
            raise ValidationError(f"Unknown reward type: '{reward_type}'")
        if points_cost is not None and int(points_cost) != option.points_cost:
            raise ValidationError(f"Reward '{reward_type}' costs {option.points_cost} points")
        points_cost = option.points_cost

        now = utcnow()
        expires_at = now + timedelta(days=self.reward_ttl_days)
        try:
            self.get_or_create_account(db, user_id)
            result = db.execute(
                update(LoyaltyAccount)
                .where(
                    LoyaltyAccount.user_id == user_id,
                    LoyaltyAccount.points_earned - LoyaltyAccount.points_spent >= points_cost,
                )
                .values(points_spent=LoyaltyAccount.points_spent + points_cost, updated_at=now)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                raise InsufficientPoints("Not enough available points")

            code = self._unique_code(db)
            db.add(Coupon(
                code=code,
                description=option.description,
                discount_amount=option.discount_amount,
                discount_percent=option.discount_percent,
                min_order_amount=0,
                max_uses=1,
                max_uses_per_user=1,
                used_count=0,
                valid_from=now,
                valid_until=expires_at,
                is_active=True,
            ))
            reward = LoyaltyReward(
                user_id=user_id,
                reward_type=reward_type,
                points_spent=points_cost,
                coupon_code=code,
                is_used=False,
                expires_at=expires_at,
                created_at=now,
            )
            db.add(reward)
            db.commit()
        except Exception:
            db.rollback()
            raise

        db.refresh(reward)
        logger.info("Reward redeemed | user=%s type=%s points=%s code=%s", user_id, reward_type, points_cost, code)
        if self.sink:
            self.sink.emit(db, "reward_redeemed", user_id=user_id, points=points_cost, coupon_code=code)
        return reward

    @staticmethod
    def _unique_code(db: Session) -> str:
        for _ in range(10):
            code = generate_coupon_code()
            if db.query(Coupon.id).filter(Coupon.code == code).first() is None:
                return code
        raise RuntimeError("Could not generate a unique coupon code")

    def mark_reward_used(self, db: Session, coupon_code: Optional[str], order_id) -> bool:
        """
        Flip is_used false->true for the reward behind ``coupon_code``.
        Called from settlement only. No commit.
        """
        if not coupon_code:
            return False
        result = db.execute(
            update(LoyaltyReward)
            .where(LoyaltyReward.coupon_code == coupon_code, LoyaltyReward.is_used == False)
            .values(is_used=True, used_at=utcnow(), used_order_id=order_id)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    def list_rewards(self, db: Session, user_id) -> list[LoyaltyReward]:
        return (
            db.query(LoyaltyReward)
            .filter(LoyaltyReward.user_id == user_id)
            .order_by(LoyaltyReward.created_at.desc())
            .all()
        )
