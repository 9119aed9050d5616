"""New York market calendar.

Every "which day" question in the ledger goes through here: the NY calendar
day of a trade timestamp, whether a day is a trading session, and stepping
between sessions. The holiday table is static; extend it yearly.
"""
from __future__ import annotations

from datetime import date, datetime, time, timedelta, timezone
from typing import Iterator
from zoneinfo import ZoneInfo

NY_TZ = ZoneInfo("America/New_York")
MARKET_CLOSE = time(16, 0)

US_MARKET_HOLIDAYS: dict[date, str] = {
    # 2023
    date(2023, 1, 2): "New Year's Day (observed)",
    date(2023, 1, 16): "Martin Luther King Jr. Day",
    date(2023, 2, 20): "Washington's Birthday",
    date(2023, 4, 7): "Good Friday",
    date(2023, 5, 29): "Memorial Day",
    date(2023, 6, 19): "Juneteenth National Independence Day",
    date(2023, 7, 4): "Independence Day",
    date(2023, 9, 4): "Labor Day",
    date(2023, 11, 23): "Thanksgiving Day",
    date(2023, 12, 25): "Christmas Day",
    # 2024
    date(2024, 1, 1): "New Year's Day",
    date(2024, 1, 15): "Martin Luther King Jr. Day",
    date(2024, 2, 19): "Washington's Birthday",
    date(2024, 3, 29): "Good Friday",
    date(2024, 5, 27): "Memorial Day",
    date(2024, 6, 19): "Juneteenth National Independence Day",
    date(2024, 7, 4): "Independence Day",
    date(2024, 9, 2): "Labor Day",
    date(2024, 11, 28): "Thanksgiving Day",
    date(2024, 12, 25): "Christmas Day",
    # 2025
    date(2025, 1, 1): "New Year's Day",
    date(2025, 1, 9): "National Day of Mourning (President Carter)",
    date(2025, 1, 20): "Martin Luther King Jr. Day",
    date(2025, 2, 17): "Washington's Birthday",
    date(2025, 4, 18): "Good Friday",
    date(2025, 5, 26): "Memorial Day",
    date(2025, 6, 19): "Juneteenth National Independence Day",
    date(2025, 7, 4): "Independence Day",
    date(2025, 9, 1): "Labor Day",
    date(2025, 11, 27): "Thanksgiving Day",
    date(2025, 12, 25): "Christmas Day",
    # 2026
    date(2026, 1, 1): "New Year's Day",
    date(2026, 1, 19): "Martin Luther King Jr. Day",
    date(2026, 2, 16): "Washington's Birthday",
    date(2026, 4, 3): "Good Friday",
    date(2026, 5, 25): "Memorial Day",
    date(2026, 6, 19): "Juneteenth National Independence Day",
    date(2026, 7, 3): "Independence Day (observed)",
    date(2026, 9, 7): "Labor Day",
    date(2026, 11, 26): "Thanksgiving Day",
    date(2026, 12, 25): "Christmas Day",
}


def ny_day(ts: datetime) -> date:
    """NY calendar day of a timestamp. Naive datetimes are treated as UTC."""
    if ts.tzinfo is None:
        ts = ts.replace(tzinfo=timezone.utc)
    return ts.astimezone(NY_TZ).date()


def now_ny() -> datetime:
    return datetime.now(tz=NY_TZ)


def holiday_name(day: date) -> str | None:
    return US_MARKET_HOLIDAYS.get(day)


def is_trading_day(day: date) -> bool:
    return day.weekday() < 5 and day not in US_MARKET_HOLIDAYS


def prev_trading_day(day: date) -> date:
    candidate = day - timedelta(days=1)
    while not is_trading_day(candidate):
        candidate -= timedelta(days=1)
    return candidate


def next_trading_day(day: date) -> date:
    candidate = day + timedelta(days=1)
    while not is_trading_day(candidate):
        candidate += timedelta(days=1)
    return candidate


def calendar_days(start: date, end: date) -> Iterator[date]:
    current = start
    while current <= end:
        yield current
        current += timedelta(days=1)


def trading_days(start: date, end: date) -> list[date]:
    return [d for d in calendar_days(start, end) if is_trading_day(d)]


def last_closed_session(now: datetime | None = None) -> date:
    """Most recent trading day whose regular session has closed."""
    now = (now or now_ny()).astimezone(NY_TZ)
    today = now.date()
    if is_trading_day(today) and now.time() >= MARKET_CLOSE:
        return today
    return prev_trading_day(today)
