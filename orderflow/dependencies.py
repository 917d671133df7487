import uuid

from fastapi import Depends, HTTPException, status, Request
from sqlalchemy.orm import Session

from orderflow.database import get_db
from orderflow.models import User, Vendor
from orderflow.security import decode_token, get_token_from_request


# =========================
# CURRENT USER (COOKIE OR BEARER)
# =========================
def get_current_user(
    request: Request,
    db: Session = Depends(get_db),
) -> User:
    token = get_token_from_request(request)

    if not token:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Not authenticated",
        )

    payload = decode_token(token)
    if not payload:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or expired token",
        )

    try:
        user_id = uuid.UUID(str(payload.get("sub")))
    except ValueError:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid token payload",
        )

    user = db.get(User, user_id)
    if not user:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="User not found",
        )

    if not user.is_active:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Account disabled",
        )

    return user


# =========================
# ROLE GUARDS
# =========================
def require_admin(user: User = Depends(get_current_user)) -> User:
    if user.role != "admin":
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Admin access required",
        )
    return user


def require_delivery_agent(user: User = Depends(get_current_user)) -> User:
    if user.role != "delivery":
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Delivery agent access required",
        )
    return user


def require_vendor(
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
) -> Vendor:
    vendor = db.query(Vendor).filter(Vendor.user_id == user.id).first()
    if user.role != "vendor" or not vendor or not vendor.is_active:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Vendor access required",
        )
    return vendor
