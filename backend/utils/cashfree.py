import base64
import hashlib
import hmac
import http.client
import json
from urllib import request, error, parse

from config.env import (
    CASHFREE_API_KEY,
    CASHFREE_SECRET_KEY,
    CASHFREE_API_URL,
    CASHFREE_API_VERSION,
)

CASHFREE_TIMEOUT_SECONDS = 20


class CashfreeError(Exception):
    pass


def _require_cashfree_config() -> tuple[str, str]:
    if not CASHFREE_API_KEY or not CASHFREE_SECRET_KEY:
        raise CashfreeError("Cashfree keys are not configured")
    return CASHFREE_API_KEY, CASHFREE_SECRET_KEY


def refund_id_for_order(order_id) -> str:
    # stable per order so gateway-side dedup covers retries
    return f"refund_{order_id}"


def refund_id_for_return(return_request_id) -> str:
    return f"refund_return_{return_request_id}"


def create_refund(*, order_number: str, amount: float, refund_id: str, note: str) -> dict:
    client_id, client_secret = _require_cashfree_config()

    payload = {
        "refund_amount": round(float(amount), 2),
        "refund_id": refund_id,
        "refund_note": note[:100],
    }

    req = request.Request(
        url=f"{CASHFREE_API_URL}/orders/{parse.quote(order_number, safe='')}/refunds",
        data=json.dumps(payload).encode("utf-8"),
        headers={
            "Accept": "application/json",
            "Content-Type": "application/json",
            "x-api-version": CASHFREE_API_VERSION,
            "x-client-id": client_id,
            "x-client-secret": client_secret,
        },
        method="POST",
    )

    try:
        with request.urlopen(req, timeout=CASHFREE_TIMEOUT_SECONDS) as resp:
            body = resp.read().decode("utf-8")
            if not 200 <= resp.status < 300:
                raise CashfreeError(f"Cashfree returned HTTP {resp.status}: {body}")
            return json.loads(body) if body else {}
    except error.HTTPError as e:
        details = e.read().decode("utf-8", errors="ignore")
        raise CashfreeError(f"Cashfree refund failed: {details}")
    except error.URLError as e:
        raise CashfreeError(f"Cashfree unreachable: {e.reason}")
    except (OSError, http.client.HTTPException) as e:
        raise CashfreeError(f"Cashfree connection failed: {e!r}")
    except ValueError:
        raise CashfreeError("Cashfree returned an unreadable response")


def compute_webhook_signature(*, raw_body: bytes, timestamp: str) -> str:
    if not CASHFREE_SECRET_KEY:
        raise CashfreeError("Cashfree webhook secret is not configured")
    message = timestamp.encode("utf-8") + raw_body
    digest = hmac.new(CASHFREE_SECRET_KEY.encode("utf-8"), message, hashlib.sha256).digest()
    return base64.b64encode(digest).decode("utf-8")


def verify_webhook_signature(*, raw_body: bytes, timestamp: str, received_signature: str) -> bool:
    if not received_signature or not timestamp:
        return False
    expected = compute_webhook_signature(raw_body=raw_body, timestamp=timestamp)
    return hmac.compare_digest(expected, received_signature)
