import logging
from datetime import datetime

from fastapi import APIRouter, Depends, HTTPException, Response
from pydantic import BaseModel, Field

from config.constants import OTP_EXPIRY_MINUTES, OTP_MAX_ATTEMPTS
from config.env import ACCESS_TOKEN_MINUTES, ENV
from database import get_db
from utils.jwt import create_access_token
from utils.notifications import send_otp_message
from utils.otp import generate_otp, hash_otp, otp_expiry, verify_hash
from utils.rate_limit import rate_limit
from utils.security import ACCESS_TOKEN_COOKIE
from utils.validators import normalize_phone
from utils.whatsapp import GupshupError

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/whatsapp-otp", tags=["Auth"])

OTP_SEND_LIMIT = 3
OTP_SEND_WINDOW_SECONDS = 300  # 3 OTPs per 5 minutes


# ======================
# Schemas
# ======================

class SendOtpRequest(BaseModel):
    phone: str


class VerifyOtpRequest(BaseModel):
    phone: str
    otp: str = Field(..., min_length=4, max_length=8)


def _normalize_or_400(phone: str) -> str:
    try:
        return normalize_phone(phone)
    except ValueError:
        raise HTTPException(400, "Invalid phone number. Use a 10 digit Indian mobile number")


# ======================
# Send OTP
# ======================

@router.post("/send")
async def send_whatsapp_otp(data: SendOtpRequest, db=Depends(get_db)):
    phone = _normalize_or_400(data.phone)

    await rate_limit(
        db=db,
        key=f"otp:{phone}",
        max_requests=OTP_SEND_LIMIT,
        window_seconds=OTP_SEND_WINDOW_SECONDS,
    )

    otp = generate_otp()
    now = datetime.utcnow()

    result = await db.whatsapp_otps.insert_one({
        "phone": phone,
        "otp_hash": hash_otp(otp),
        "expires_at": otp_expiry(now),
        "attempts": 0,
        "verified": False,
        "created_at": now,
    })

    try:
        await send_otp_message(phone, otp)
    except GupshupError:
        logger.exception("OTP_SEND_FAILED phone=%s", phone)
        await db.whatsapp_otps.delete_one({"_id": result.inserted_id})
        raise HTTPException(502, "Failed to send OTP over WhatsApp")

    return {
        "message": "OTP sent via WhatsApp",
        "expires_in_minutes": OTP_EXPIRY_MINUTES,
    }


# ======================
# Verify OTP (LOGIN)
# ======================

async def _issue_principal_token(db, phone: str, now: datetime) -> dict:
    seller = await db.sellers.find_one({"phone": phone})
    if seller:
        token = create_access_token({
            "sub": str(seller["_id"]),
            "role": "seller",
            "sellerId": str(seller["_id"]),
        })
        return {"access_token": token, "role": "seller", "id": str(seller["_id"])}

    user = await db.users.find_one({"phone": phone})
    if not user:
        user = {
            "phone": phone,
            "name": None,
            "role": "customer",
            "created_at": now,
            "last_active_at": now,
        }
        result = await db.users.insert_one(user)
        user["_id"] = result.inserted_id
    else:
        await db.users.update_one(
            {"_id": user["_id"]},
            {"$set": {"last_active_at": now}},
        )

    role = user.get("role", "customer")
    token = create_access_token({
        "sub": str(user["_id"]),
        "role": role,
        "userId": str(user["_id"]),
    })
    return {"access_token": token, "role": role, "id": str(user["_id"])}


@router.post("/verify")
async def verify_whatsapp_otp(data: VerifyOtpRequest, response: Response, db=Depends(get_db)):
    phone = _normalize_or_400(data.phone)
    now = datetime.utcnow()

    rows = await (
        db.whatsapp_otps.find({"phone": phone, "verified": False})
        .sort("created_at", -1)
        .limit(1)
        .to_list(1)
    )
    if not rows:
        raise HTTPException(400, "OTP not found. Please request a new OTP")
    otp_doc = rows[0]

    if otp_doc["expires_at"] < now:
        raise HTTPException(400, "OTP expired. Please request a new OTP")

    if otp_doc.get("attempts", 0) >= OTP_MAX_ATTEMPTS:
        raise HTTPException(429, "Too many OTP attempts. Please request a new OTP")

    if not verify_hash(data.otp, otp_doc["otp_hash"]):
        await db.whatsapp_otps.update_one(
            {"_id": otp_doc["_id"]},
            {"$inc": {"attempts": 1}},
        )
        raise HTTPException(400, "Invalid OTP")

    claimed = await db.whatsapp_otps.update_one(
        {"_id": otp_doc["_id"], "verified": False},
        {"$set": {"verified": True, "verified_at": now}},
    )
    if claimed.modified_count == 0:
        raise HTTPException(400, "OTP already used")

    principal = await _issue_principal_token(db, phone, now)

    response.set_cookie(
        key=ACCESS_TOKEN_COOKIE,
        value=principal["access_token"],
        httponly=True,
        secure=ENV == "production",
        samesite="lax",
        max_age=ACCESS_TOKEN_MINUTES * 60,
    )

    return {
        "message": "OTP verified",
        "token_type": "bearer",
        **principal,
    }
