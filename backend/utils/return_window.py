"""
Return-window arithmetic for the seller dashboard.

All functions are pure: they take ``now`` explicitly and never touch
the database.
"""

import math
from datetime import datetime

from models.order import ReturnWindowStatus

MS_PER_HOUR = 60 * 60 * 1000
MS_PER_MINUTE = 60 * 1000


def format_time_remaining(ms: int) -> str:
    if ms <= 0:
        return "Expired"

    hours = ms // MS_PER_HOUR
    minutes = (ms % MS_PER_HOUR) // MS_PER_MINUTE
    if hours > 0:
        return f"{hours}h {minutes}m remaining"
    return f"{minutes}m remaining"


def time_remaining(end: datetime | None, now: datetime) -> dict | None:
    if end is None:
        return None

    ms = max(0, int((end - now).total_seconds() * 1000))
    return {
        "ms": ms,
        "hours": ms // MS_PER_HOUR,
        "minutes": (ms % MS_PER_HOUR) // MS_PER_MINUTE,
        "formatted": format_time_remaining(ms),
    }


def window_progress(start: datetime | None, end: datetime | None, now: datetime) -> float:
    """Percent of the window elapsed, clamped to 0-100."""
    if start is None or end is None:
        return 0.0

    total = (end - start).total_seconds()
    if total <= 0:
        return 100.0

    elapsed = (now - start).total_seconds()
    return round(min(100.0, max(0.0, elapsed / total * 100)), 2)


def projected_release(item: dict) -> dict | None:
    end = item.get("return_window_end")
    if item.get("return_window_status") != ReturnWindowStatus.ACTIVE.value or end is None:
        return None
    return {
        "date": end,
        "formatted_date": end.strftime("%a, %b %d %I:%M %p"),
    }


def transition_date(item: dict) -> datetime | None:
    if item.get("return_window_status") == ReturnWindowStatus.RETURNED.value:
        return item.get("returned_at")
    return item.get("earnings_credited_at") or item.get("return_window_end")


def item_amount(item: dict) -> float:
    return round(float(item.get("price") or 0) * int(item.get("quantity") or 1), 2)


def group_by_day(entries: list[dict], date_field: str, amount_field: str) -> list[dict]:
    """
    Bucket ``entries`` by calendar day (UTC) of ``date_field``.
    Newest day first; entries without a date are left out.
    """
    groups: dict[str, dict] = {}

    for entry in entries:
        moment = entry.get(date_field)
        if moment is None:
            continue

        key = moment.strftime("%Y-%m-%d")
        group = groups.setdefault(key, {
            "date": key,
            "formatted_date": moment.strftime("%b %d, %Y"),
            "items": [],
            "total_amount": 0.0,
        })
        group["items"].append(entry)
        group["total_amount"] = round(group["total_amount"] + float(entry.get(amount_field) or 0), 2)

    return [groups[key] for key in sorted(groups, reverse=True)]


def paginate_meta(total: int, page: int, limit: int) -> dict:
    return {
        "total": total,
        "page": page,
        "limit": limit,
        "pages": math.ceil(total / limit) if limit else 0,
        "has_next_page": page * limit < total,
        "has_prev_page": page > 1,
    }
