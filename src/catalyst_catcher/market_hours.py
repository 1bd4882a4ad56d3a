# -*- coding: utf-8 -*-
"""Market hours detection for the Indian exchanges (NSE/BSE).

Every function is a pure function of the supplied datetime and the holiday
calendar, so callers (and tests) inject the clock instead of patching it.
The tracker uses :func:`is_market_open` to decide whether price checks run
at all; :func:`get_market_status` gives the four-way posture used for
logging and the status dashboard.
"""

from __future__ import annotations

from datetime import date, datetime, time, timedelta, timezone
from typing import Dict, Iterable, Literal, Optional
from zoneinfo import ZoneInfo

# Market status types
MarketStatus = Literal["pre_market", "regular", "after_hours", "closed"]

IST = ZoneInfo("Asia/Kolkata")

PRE_OPEN_START = time(9, 0)
REGULAR_START = time(9, 15)
REGULAR_END = time(15, 30)
# closing session / post-close order window
AFTER_HOURS_END = time(16, 0)

# NSE trading holidays (2026) - ISO dates
NSE_HOLIDAYS_2026 = [
    "2026-01-26",  # Republic Day
    "2026-03-17",  # Holi
    "2026-04-06",  # Ram Navami
    "2026-04-10",  # Good Friday
    "2026-04-14",  # Dr. Ambedkar Jayanti
    "2026-04-21",  # Mahavir Jayanti
    "2026-05-01",  # Maharashtra Day
    "2026-07-17",  # Muharram
    "2026-08-15",  # Independence Day
    "2026-08-26",  # Janmashtami
    "2026-09-25",  # Milad un-Nabi
    "2026-10-02",  # Gandhi Jayanti
    "2026-10-20",  # Dussehra
    "2026-10-21",  # Dussehra (cont.)
    "2026-11-09",  # Diwali (Laxmi Puja)
    "2026-11-10",  # Diwali Balipratipada
    "2026-11-27",  # Guru Nanak Jayanti
    "2026-12-25",  # Christmas
]


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _to_ist(dt: datetime) -> datetime:
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(IST)


def is_market_holiday(
    dt: datetime, holidays: Optional[Iterable[str]] = None
) -> bool:
    """Return True when the IST calendar date of ``dt`` is a trading holiday."""
    calendar = set(holidays) if holidays is not None else set(NSE_HOLIDAYS_2026)
    return _to_ist(dt).strftime("%Y-%m-%d") in calendar


def is_weekend(dt: datetime) -> bool:
    return _to_ist(dt).weekday() >= 5


def is_trading_day(dt: datetime, holidays: Optional[Iterable[str]] = None) -> bool:
    return not is_weekend(dt) and not is_market_holiday(dt, holidays)


def get_market_status(
    dt: datetime | None = None, holidays: Optional[Iterable[str]] = None
) -> MarketStatus:
    """
    Determine the market posture.

    Market hours (IST):
    - Pre-market: 9:00 AM - 9:15 AM (pre-open call auction)
    - Regular: 9:15 AM - 3:30 PM
    - After-hours: 3:30 PM - 4:00 PM (closing session)
    - Closed: otherwise, weekends and holidays

    Parameters
    ----------
    dt : datetime, optional
        The datetime to check. If None, uses current UTC time.
    holidays : iterable of str, optional
        ISO dates replacing the built-in NSE calendar.

    Returns
    -------
    MarketStatus
        One of "pre_market", "regular", "after_hours", or "closed".
    """
    dt_ist = _to_ist(dt or _now())

    if not is_trading_day(dt_ist, holidays):
        return "closed"

    current_time = dt_ist.time()
    if PRE_OPEN_START <= current_time < REGULAR_START:
        return "pre_market"
    elif REGULAR_START <= current_time < REGULAR_END:
        return "regular"
    elif REGULAR_END <= current_time < AFTER_HOURS_END:
        return "after_hours"
    else:
        return "closed"


def is_market_open(
    dt: datetime | None = None, holidays: Optional[Iterable[str]] = None
) -> bool:
    """True only during the regular session."""
    return get_market_status(dt, holidays) == "regular"


def _open_on(day: date) -> datetime:
    return datetime.combine(day, REGULAR_START, tzinfo=IST).astimezone(timezone.utc)


def next_market_open(
    dt: datetime | None = None, holidays: Optional[Iterable[str]] = None
) -> datetime:
    """Return the next regular-session open as an aware UTC datetime.

    If ``dt`` falls before today's open on a trading day, today's open is
    returned.  While the market is open the *following* open is returned.
    """
    dt_ist = _to_ist(dt or _now())
    day = dt_ist.date()
    if not (is_trading_day(dt_ist, holidays) and dt_ist.time() < REGULAR_START):
        day = day + timedelta(days=1)
    # holiday clusters never exceed a couple of weeks
    for _ in range(30):
        candidate = datetime.combine(day, time(12, 0), tzinfo=IST)
        if is_trading_day(candidate, holidays):
            return _open_on(day)
        day = day + timedelta(days=1)
    return _open_on(day)


def market_status_message(
    dt: datetime | None = None, holidays: Optional[Iterable[str]] = None
) -> str:
    """Human-readable market status for logs and the status dashboard."""
    now = _to_ist(dt or _now())
    if is_market_open(now, holidays):
        return "Market is OPEN"
    nxt = next_market_open(now, holidays)
    hours_until = round((nxt - now).total_seconds() / 3600)
    if hours_until < 24:
        return f"Market is CLOSED (opens in ~{hours_until}h)"
    return f"Market is CLOSED (opens {nxt.astimezone(IST).strftime('%a, %b %d')})"


def get_market_info(
    dt: datetime | None = None, holidays: Optional[Iterable[str]] = None
) -> Dict[str, object]:
    """Snapshot of the market clock used by the status dashboard."""
    now = dt or _now()
    return {
        "status": get_market_status(now, holidays),
        "is_open": is_market_open(now, holidays),
        "is_weekend": is_weekend(now),
        "is_holiday": is_market_holiday(now, holidays),
        "next_open": next_market_open(now, holidays).isoformat(),
        "message": market_status_message(now, holidays),
    }
