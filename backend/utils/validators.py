import re

PHONE_REGEX = re.compile(r"^(?:\+91)?[6-9]\d{9}$")


def normalize_phone(phone: str) -> str:
    """Indian mobile number as +91XXXXXXXXXX. Raises ValueError otherwise."""
    phone = re.sub(r"[\s\-()]", "", phone or "")

    if phone.startswith("+91"):
        phone = phone[3:]
    elif phone.startswith("91") and len(phone) == 12:
        phone = phone[2:]
    elif phone.startswith("0") and len(phone) == 11:
        phone = phone[1:]

    if not PHONE_REGEX.match(phone):
        raise ValueError("Invalid phone number format")

    return "+91" + phone


def phones_match(a: str | None, b: str | None) -> bool:
    da = re.sub(r"\D", "", a or "")
    db_ = re.sub(r"\D", "", b or "")
    if len(da) < 10 or len(db_) < 10:
        return False
    return da[-10:] == db_[-10:]
