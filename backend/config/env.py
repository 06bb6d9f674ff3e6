import logging
import os
from dotenv import load_dotenv

load_dotenv()

# =====================================================
# ENV
# =====================================================
ENV = os.getenv("ENV", "development")
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")

# =====================================================
# DATABASE
# =====================================================
MONGO_URI = os.getenv("MONGO_URI") or os.getenv("MONGODB_URI")

# =====================================================
# JWT
# =====================================================
JWT_SECRET = os.getenv("JWT_SECRET")
JWT_ALGORITHM = os.getenv("JWT_ALGORITHM", "HS256")
ACCESS_TOKEN_MINUTES = int(os.getenv("ACCESS_TOKEN_MINUTES", 60 * 24))

# =====================================================
# GUPSHUP (WHATSAPP)
# =====================================================
GUPSHUP_API_KEY = os.getenv("GUPSHUP_API_KEY")
GUPSHUP_SOURCE_NUMBER = os.getenv("GUPSHUP_SOURCE_NUMBER")
GUPSHUP_SRC_NAME = os.getenv("GUPSHUP_SRC_NAME")
GUPSHUP_API_URL = os.getenv("GUPSHUP_API_URL")

GUPSHUP_TEMPLATE_ID = os.getenv("GUPSHUP_TEMPLATE_ID")
GUPSHUP_TEMPLATE_SELLER_NEW_ORDER = os.getenv(
    "GUPSHUP_TEMPLATE_SELLER_NEW_ORDER", "seller_order_with_image"
)
GUPSHUP_TEMPLATE_SELLER_NEW_ORDER_TEXT = os.getenv(
    "GUPSHUP_TEMPLATE_SELLER_NEW_ORDER_TEXT", "seller_new_order"
)
GUPSHUP_TEMPLATE_ADMIN_ORDER_PENDING = os.getenv(
    "GUPSHUP_TEMPLATE_ADMIN_ORDER_PENDING", "admin_order_pending_seller"
)
GUPSHUP_TEMPLATE_CUSTOMER_ORDER_CANCELLED = os.getenv(
    "GUPSHUP_TEMPLATE_CUSTOMER_ORDER_CANCELLED", "customer_order_cancelled_refund"
)

# =====================================================
# CASHFREE (PAYMENTS / REFUNDS)
# =====================================================
CASHFREE_API_KEY = os.getenv("CASHFREE_API_KEY")
CASHFREE_SECRET_KEY = os.getenv("CASHFREE_SECRET_KEY")
CASHFREE_API_URL = os.getenv("CASHFREE_API_URL", "https://sandbox.cashfree.com/pg")
CASHFREE_API_VERSION = os.getenv("CASHFREE_API_VERSION", "2022-09-01")

# =====================================================
# ADMIN / CRON
# =====================================================
ADMIN_NOTIFICATION_PHONE = os.getenv("ADMIN_NOTIFICATION_PHONE")
CRON_API_KEY = os.getenv("CRON_API_KEY")
RUN_BACKGROUND_WORKERS = os.getenv("RUN_BACKGROUND_WORKERS", "true").lower() in {"1", "true", "yes"}

# =====================================================
# CORS
# =====================================================
CORS_ALLOWED_ORIGINS = os.getenv("CORS_ALLOWED_ORIGINS", "").split(",")

# --------------------------------------------------
# DATA ENCRYPTION
# --------------------------------------------------
BANK_DATA_ENCRYPTION_KEY = os.getenv("BANK_DATA_ENCRYPTION_KEY")


def validate_production_env() -> None:
    if (ENV or "").lower() != "production":
        return

    required = {
        "JWT_SECRET": JWT_SECRET,
        "MONGODB_URI": MONGO_URI,
        "GUPSHUP_API_KEY": GUPSHUP_API_KEY,
        "GUPSHUP_SOURCE_NUMBER": GUPSHUP_SOURCE_NUMBER,
        "GUPSHUP_API_URL": GUPSHUP_API_URL,
        "CASHFREE_API_KEY": CASHFREE_API_KEY,
        "CASHFREE_SECRET_KEY": CASHFREE_SECRET_KEY,
        "ADMIN_NOTIFICATION_PHONE": ADMIN_NOTIFICATION_PHONE,
        "CRON_API_KEY": CRON_API_KEY,
        "BANK_DATA_ENCRYPTION_KEY": BANK_DATA_ENCRYPTION_KEY,
    }

    invalid = []
    for key, value in required.items():
        val = (value or "").strip()
        if not val or val.startswith("CHANGE_THIS"):
            invalid.append(key)

    if invalid:
        raise RuntimeError(f"Production env misconfigured. Invalid keys: {', '.join(sorted(invalid))}")


def setup_logging() -> None:
    logging.basicConfig(
        level=getattr(logging, LOG_LEVEL.upper(), logging.INFO),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )
