from datetime import datetime, timedelta, timezone
from uuid import uuid4

from jose import JWTError, jwt

from metahub.config.settings import get_settings


def create_access_token(user_id: str, ttl_minutes: int | None = None) -> str:
    settings = get_settings()
    expire = datetime.now(timezone.utc) + timedelta(minutes=ttl_minutes or settings.access_token_ttl_minutes)
    payload = {
        "sub": str(user_id),
        "exp": expire,
        "type": "access",
        "jti": str(uuid4()),
    }
    return jwt.encode(payload, settings.jwt_secret, algorithm=settings.jwt_algorithm)


def decode_access_token(token: str) -> dict:
    settings = get_settings()
    try:
        payload = jwt.decode(token, settings.jwt_secret, algorithms=[settings.jwt_algorithm])
    except JWTError as exc:
        raise ValueError("Invalid token") from exc
    token_type = payload.get("type")
    if token_type and token_type != "access":
        raise ValueError("Invalid access token type")
    if not payload.get("sub"):
        raise ValueError("Token has no subject")
    return payload
