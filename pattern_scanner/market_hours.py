from __future__ import annotations

import re
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Optional, Protocol, Tuple

from .models import MarketStatus

_TZ_RE = re.compile(r"^UTC([+-])(\d{1,2})$")


def _parse_tz(tz_str: str) -> timezone:
    tz_str = (tz_str or "UTC").strip().upper()
    if tz_str == "UTC":
        return timezone.utc
    m = _TZ_RE.match(tz_str)
    if not m:
        raise ValueError(f"Unsupported timezone format: {tz_str} (use 'UTC' or 'UTC-5' etc.)")
    sign = 1 if m.group(1) == "+" else -1
    hours = int(m.group(2))
    return timezone(timedelta(hours=sign * hours))


def _hhmm(s: str) -> Tuple[int, int]:
    h, _, m = s.partition(":")
    return int(h), int(m or 0)


class MarketCalendar(Protocol):
    def status(self, ts_ms: int) -> MarketStatus:
        ...


@dataclass
class RegularSessionCalendar:
    """Weekday equity session in a fixed-offset timezone. Holidays are not modelled."""

    timezone: str = "UTC-5"
    pre_market: str = "04:00"
    open: str = "09:30"
    close: str = "16:00"
    after_hours: str = "20:00"

    def status(self, ts_ms: int) -> MarketStatus:
        tz = _parse_tz(self.timezone)
        dt = datetime.fromtimestamp(ts_ms / 1000, tz=timezone.utc).astimezone(tz)
        if dt.weekday() >= 5:
            return MarketStatus.CLOSED
        t = (dt.hour, dt.minute)
        if _hhmm(self.open) <= t < _hhmm(self.close):
            return MarketStatus.OPEN
        if _hhmm(self.pre_market) <= t < _hhmm(self.open):
            return MarketStatus.PRE_MARKET
        if _hhmm(self.close) <= t < _hhmm(self.after_hours):
            return MarketStatus.AFTER_HOURS
        return MarketStatus.CLOSED


@dataclass
class AlwaysOpenCalendar:
    """For venues that trade around the clock."""

    def status(self, ts_ms: int) -> MarketStatus:
        return MarketStatus.OPEN


def make_calendar(kind: str, tz: Optional[str] = None) -> MarketCalendar:
    kind = (kind or "regular").lower()
    if kind == "regular":
        return RegularSessionCalendar(timezone=tz or "UTC-5")
    if kind in ("always_open", "24x7"):
        return AlwaysOpenCalendar()
    raise ValueError(f"Unsupported calendar: {kind}")
