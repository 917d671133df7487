from typing import Optional

from fastapi import APIRouter, Depends, status
from sqlalchemy.orm import Session
from pydantic import BaseModel

from orderflow.database import get_db
from orderflow.dependencies import get_current_user
from orderflow.errors import OrderflowError, to_http
from orderflow.models import LoyaltyReward, User
from orderflow.services.container import Services, get_services
from orderflow.services.loyalty import REWARD_CATALOG

router = APIRouter(prefix="/loyalty", tags=["loyalty"])


class RedeemPayload(BaseModel):
    reward_type: str
    points_cost: Optional[int] = None


def _serialize_reward(r: LoyaltyReward) -> dict:
    return {"id": str(r.id), "reward_type": r.reward_type, "points_spent": r.points_spent, "coupon_code": r.coupon_code, "is_used": r.is_used, "used_at": r.used_at, "expires_at": r.expires_at, "created_at": r.created_at}


@router.get("", status_code=status.HTTP_200_OK)
def get_balance(db: Session = Depends(get_db), user: User = Depends(get_current_user), services: Services = Depends(get_services)):
    account = services.loyalty.get_or_create_account(db, user.id)
    db.commit()
    return {
        "points_earned": account.points_earned,
        "points_spent": account.points_spent,
        "available_points": account.available_points,
        "rewards": [
            {"reward_type": name, "description": option.description, "points_cost": option.points_cost}
            for name, option in REWARD_CATALOG.items()
        ],
    }


@router.post("/redeem", status_code=status.HTTP_201_CREATED)
def redeem_points(payload: RedeemPayload, db: Session = Depends(get_db), user: User = Depends(get_current_user), services: Services = Depends(get_services)):
    try:
        reward = services.loyalty.redeem(db, user.id, payload.reward_type, payload.points_cost)
    except OrderflowError as e:
        raise to_http(e)
    return {
        "message": "Points redeemed",
        "reward": _serialize_reward(reward),
        "remaining_points": services.loyalty.available_points(db, user.id),
    }


@router.get("/rewards", status_code=status.HTTP_200_OK)
def list_rewards(db: Session = Depends(get_db), user: User = Depends(get_current_user), services: Services = Depends(get_services)):
    return [_serialize_reward(r) for r in services.loyalty.list_rewards(db, user.id)]
