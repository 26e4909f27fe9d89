from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Any

GROUP_ORDER = ("today", "yesterday", "last_week", "last_month", "older")

GROUP_LABELS = {
    "today": "Today",
    "yesterday": "Yesterday",
    "last_week": "Last 7 days",
    "last_month": "Last 30 days",
    "older": "Older",
}


def _as_datetime(value: Any) -> datetime:
    if isinstance(value, datetime):
        dt = value
    else:
        dt = datetime.fromisoformat(str(value))
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


def _months_back(now: datetime, months: int) -> datetime:
    month = now.month - months
    year = now.year
    while month <= 0:
        month += 12
        year -= 1
    # Clamp the day for shorter months (e.g. Mar 31 -> Feb 28).
    for day in (now.day, 30, 29, 28):
        try:
            return now.replace(year=year, month=month, day=day)
        except ValueError:
            continue
    return now.replace(year=year, month=month, day=28)


def group_chats_by_date(chats: list[dict[str, Any]], now: datetime | None = None) -> dict[str, list[dict[str, Any]]]:
    """Bucket chats for the sidebar: today, yesterday, last week, last month, older.

    Day boundaries are taken in the timezone of ``now``.
    """
    now = _as_datetime(now or datetime.now(timezone.utc))
    today = now.date()
    yesterday = today - timedelta(days=1)
    one_week_ago = now - timedelta(weeks=1)
    one_month_ago = _months_back(now, 1)

    groups: dict[str, list[dict[str, Any]]] = {k: [] for k in GROUP_ORDER}
    for chat in chats:
        created = _as_datetime(chat.get("created_at")).astimezone(now.tzinfo)
        if created.date() == today:
            groups["today"].append(chat)
        elif created.date() == yesterday:
            groups["yesterday"].append(chat)
        elif created > one_week_ago:
            groups["last_week"].append(chat)
        elif created > one_month_ago:
            groups["last_month"].append(chat)
        else:
            groups["older"].append(chat)
    return groups
