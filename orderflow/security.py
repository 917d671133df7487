from datetime import timedelta

from fastapi import Request
from jose import jwt, JWTError

from orderflow.config import settings
from orderflow.utils.clock import utcnow


# =====================================================
# JWT HANDLING
# =====================================================

ALGORITHM = "HS256"
ACCESS_TOKEN_EXPIRE_DAYS = 7


def create_token(user_id, role: str, expires_in: timedelta | None = None) -> str:
    now = utcnow()
    payload = {
        "sub": str(user_id),  # UUID -> str
        "role": role,
        "exp": now + (expires_in or timedelta(days=ACCESS_TOKEN_EXPIRE_DAYS)),
        "iat": now,
    }
    return jwt.encode(payload, settings.secret_key, algorithm=ALGORITHM)


def decode_token(token: str) -> dict | None:
    try:
        return jwt.decode(token, settings.secret_key, algorithms=[ALGORITHM])
    except JWTError:
        return None


def get_token_from_request(request: Request) -> str | None:
    # HTTP-only cookie first
    token = request.cookies.get("access_token")
    if token:
        return token

    auth_header = request.headers.get("Authorization")
    if auth_header and auth_header.startswith("Bearer "):
        return auth_header.split(" ", 1)[1]

    return None
