import hmac
import secrets
from datetime import timedelta
from typing import Optional

import jwt
from passlib.context import CryptContext

from config import Settings
from database import utcnow
from errors import AuthenticationError

password_ctx = CryptContext(schemes=["bcrypt"], deprecated="auto")


def hash_password(password: str) -> str:
    return password_ctx.hash(password)


def verify_password(password: str, hashed: str) -> bool:
    return password_ctx.verify(password, hashed)


def generate_otp() -> str:
    """Six digit numeric code, never starting with zero."""
    return str(100000 + secrets.randbelow(900000))


def expiry(minutes: int):
    return utcnow() + timedelta(minutes=minutes)


def codes_match(expected: Optional[str], given: Optional[str]) -> bool:
    if not expected or given is None:
        return False
    return hmac.compare_digest(str(expected), str(given).strip())


def create_token(user: dict, settings: Settings, is_admin: Optional[bool] = None) -> str:
    now = utcnow()
    payload = {
        "sub": str(user["_id"]),
        "email": user.get("email"),
        "is_admin": user.get("is_admin", False) if is_admin is None else is_admin,
        "exp": now + timedelta(minutes=settings.jwt_expires_min),
        "iat": now,
    }
    return jwt.encode(payload, settings.jwt_secret, algorithm="HS256")


def decode_token(token: str, settings: Settings) -> dict:
    try:
        return jwt.decode(token, settings.jwt_secret, algorithms=["HS256"])
    except jwt.ExpiredSignatureError:
        raise AuthenticationError("Token expired")
    except jwt.InvalidTokenError:
        raise AuthenticationError("Invalid token")
