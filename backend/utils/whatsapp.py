import http.client
import json
import logging
import re
from urllib import request, error, parse

from config.env import (
    GUPSHUP_API_KEY,
    GUPSHUP_SOURCE_NUMBER,
    GUPSHUP_SRC_NAME,
    GUPSHUP_API_URL,
)

logger = logging.getLogger(__name__)

GUPSHUP_TIMEOUT_SECONDS = 15


class GupshupError(Exception):
    pass


def normalize_destination(phone: str) -> str:
    """Bare digits, country code included, no leading plus."""
    digits = re.sub(r"\D", "", phone or "")
    if not digits:
        raise GupshupError("Destination phone number is empty")
    return digits


def _require_gupshup_config() -> tuple[str, str, str]:
    if not GUPSHUP_API_KEY or not GUPSHUP_SOURCE_NUMBER or not GUPSHUP_API_URL:
        raise GupshupError("Gupshup credentials missing")
    return GUPSHUP_API_KEY, GUPSHUP_SOURCE_NUMBER, GUPSHUP_API_URL


def send_template_message(
    template_id: str,
    phone: str,
    params: list,
    *,
    image_url: str | None = None,
    postback_texts: list[str] | None = None,
) -> dict:
    """
    Send a WhatsApp template message.

    ``params`` fill the template placeholders in order. With ``image_url``
    the template is sent with an image header. ``postback_texts`` become the
    payloads of the template's quick-reply buttons, in button order.
    """
    if not template_id:
        raise GupshupError("Template id missing")

    api_key, source_number, api_url = _require_gupshup_config()
    destination = normalize_destination(phone)

    form = {
        "source": source_number,
        "destination": destination,
        "template": json.dumps({
            "id": template_id,
            "params": [str(p) for p in params],
        }),
    }
    if GUPSHUP_SRC_NAME:
        form["source.name"] = GUPSHUP_SRC_NAME
    if image_url:
        form["message"] = json.dumps({
            "type": "image",
            "image": {"link": image_url},
        })
    if postback_texts:
        form["postbackTexts"] = json.dumps([
            {"index": i, "text": text} for i, text in enumerate(postback_texts)
        ])

    req = request.Request(
        url=api_url,
        data=parse.urlencode(form).encode("utf-8"),
        headers={
            "Cache-Control": "no-cache",
            "Content-Type": "application/x-www-form-urlencoded",
            "apikey": api_key,
        },
        method="POST",
    )

    logger.info("GUPSHUP_SEND template=%s destination=%s", template_id, destination)

    try:
        with request.urlopen(req, timeout=GUPSHUP_TIMEOUT_SECONDS) as resp:
            body = resp.read().decode("utf-8")
            if not 200 <= resp.status < 300:
                raise GupshupError(f"Gupshup returned HTTP {resp.status}: {body}")
    except error.HTTPError as e:
        details = e.read().decode("utf-8", errors="ignore")
        raise GupshupError(f"Gupshup send failed: {details}")
    except error.URLError as e:
        raise GupshupError(f"Gupshup unreachable: {e.reason}")
    except (OSError, http.client.HTTPException) as e:
        raise GupshupError(f"Gupshup connection failed: {e!r}")

    try:
        return json.loads(body) if body else {}
    except ValueError:
        return {"raw": body}
