from datetime import datetime, timedelta
from jose import jwt
from config.env import JWT_SECRET, JWT_ALGORITHM, ACCESS_TOKEN_MINUTES


def _require_jwt_secret() -> str:
    secret = (JWT_SECRET or "").strip()
    if not secret:
        raise RuntimeError("JWT_SECRET is not configured")
    return secret


def create_access_token(payload: dict, expires_minutes: int | None = None) -> str:
    payload = payload.copy()
    payload.update({
        "exp": datetime.utcnow() + timedelta(minutes=expires_minutes or ACCESS_TOKEN_MINUTES),
        "iat": datetime.utcnow(),
    })
    return jwt.encode(payload, _require_jwt_secret(), algorithm=JWT_ALGORITHM)


def decode_token(token: str) -> dict:
    return jwt.decode(token, _require_jwt_secret(), algorithms=[JWT_ALGORITHM])
