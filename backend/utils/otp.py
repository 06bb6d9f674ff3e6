import hashlib
import hmac
import secrets
from datetime import datetime, timedelta

from config.constants import OTP_EXPIRY_MINUTES


# ===============================
# GENERATE 6-DIGIT OTP
# ===============================
def generate_otp() -> str:
    return str(secrets.randbelow(900000) + 100000)


# ===============================
# OTP EXPIRY
# ===============================
def otp_expiry(now: datetime | None = None) -> datetime:
    return (now or datetime.utcnow()) + timedelta(minutes=OTP_EXPIRY_MINUTES)


# ===============================
# HASH OTP
# ===============================
def hash_otp(otp: str) -> str:
    return hashlib.sha256(otp.strip().encode()).hexdigest()


# ===============================
# VERIFY OTP
# ===============================
def verify_hash(plain_otp: str, hashed_otp: str) -> bool:
    return hmac.compare_digest(hash_otp(plain_otp), hashed_otp or "")
