from bson import ObjectId
from fastapi import Depends, HTTPException, Request, status
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from jose import JWTError

from utils.jwt import decode_token
from database import get_db

security = HTTPBearer(auto_error=False)

ACCESS_TOKEN_COOKIE = "accessToken"


async def get_token_payload(
    request: Request,
    credentials: HTTPAuthorizationCredentials | None = Depends(security),
) -> dict:
    """Bearer header first, then the ``accessToken`` cookie."""
    token = credentials.credentials if credentials else request.cookies.get(ACCESS_TOKEN_COOKIE)

    if not token:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Authentication required",
        )

    try:
        return decode_token(token)
    except JWTError:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or expired token",
        )


def _payload_object_id(payload: dict, field: str) -> ObjectId:
    value = payload.get(field)
    if not value or not ObjectId.is_valid(value):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid token payload",
        )
    return ObjectId(value)


async def get_current_user(
    payload: dict = Depends(get_token_payload),
    db=Depends(get_db),
):
    user_id = _payload_object_id(payload, "userId")

    user = await db.users.find_one({"_id": user_id})
    if not user:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="User not found",
        )
    return user


async def get_current_seller(
    payload: dict = Depends(get_token_payload),
    db=Depends(get_db),
):
    if payload.get("role") != "seller":
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Seller access only",
        )

    seller_id = _payload_object_id(payload, "sellerId")
    seller = await db.sellers.find_one({"_id": seller_id})
    if not seller:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Seller not found",
        )
    return seller


def require_role(required_role: str):
    async def checker(user=Depends(get_current_user)):
        if user.get("role") != required_role:
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail="Insufficient permissions",
            )
        return user

    return checker


require_admin = require_role("admin")
