# backend/config/constants.py

# -----------------------------
# SELLER RESPONSE
# -----------------------------

SELLER_RESPONSE_MINUTES = 3           # accept/reject window after payment

# -----------------------------
# RETURNS / EARNINGS
# -----------------------------

RETURN_WINDOW_DAYS = 7
POST_RETURN_WINDOW_COMMISSION_RATE = 0.08   # returnable items
IMMEDIATE_COMMISSION_RATE = 0.05            # non-returnable items

# -----------------------------
# OTP
# -----------------------------

OTP_EXPIRY_MINUTES = 10
OTP_MAX_ATTEMPTS = 5
OTP_RETENTION_HOURS = 24

# -----------------------------
# REFUND RECONCILIATION
# -----------------------------

REFUND_MAX_ATTEMPTS = 6
REFUND_MAX_BACKOFF_MINUTES = 60

# -----------------------------
# PAGINATION
# -----------------------------

DEFAULT_PAGE_SIZE = 20
MAX_PAGE_SIZE = 100
