"""Day-bucketed series for the admin analytics dashboard."""
from __future__ import annotations

from collections import defaultdict
from dataclasses import dataclass
from datetime import date, datetime, timedelta, timezone
from typing import Dict, Iterable, List, Optional, Tuple
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from storefront.config import Config

try:
    _LOCAL_TZ = ZoneInfo(getattr(Config, "DEFAULT_TIMEZONE", "UTC"))
except ZoneInfoNotFoundError:
    _LOCAL_TZ = timezone.utc


@dataclass(frozen=True)
class AnalyticsWindow:
    days: int
    start: datetime
    end: datetime

    @property
    def label(self) -> str:
        return f"Letzte {self.days} Tage"


def trailing_window(days: int = 30, now: Optional[datetime] = None) -> AnalyticsWindow:
    """Window covering the last ``days`` local calendar days including today."""
    days = max(1, int(days))
    now = now or datetime.now(timezone.utc)
    local_today = to_local(now).date()
    first_day = local_today - timedelta(days=days - 1)
    start = datetime.combine(first_day, datetime.min.time(), tzinfo=_LOCAL_TZ).astimezone(timezone.utc)
    end = datetime.combine(local_today + timedelta(days=1), datetime.min.time(), tzinfo=_LOCAL_TZ).astimezone(
        timezone.utc
    )
    return AnalyticsWindow(days=days, start=start, end=end)


def to_local(value: datetime) -> datetime:
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(_LOCAL_TZ)


def build_daily_series(
    points: Iterable[Tuple[datetime, float]],
    window: AnalyticsWindow,
) -> Dict[str, object]:
    """Bucket ``(timestamp, amount)`` pairs into one entry per local day."""
    revenue: Dict[date, float] = defaultdict(float)
    orders: Dict[date, int] = defaultdict(int)
    for timestamp, amount in points:
        day = to_local(timestamp).date()
        revenue[day] += float(amount or 0)
        orders[day] += 1

    series: List[Dict[str, object]] = []
    day = to_local(window.start).date()
    last_day = to_local(window.end - timedelta(seconds=1)).date()
    while day <= last_day:
        series.append({"date": day.isoformat(), "revenue": round(revenue.get(day, 0.0), 2), "orders": orders.get(day, 0)})
        day += timedelta(days=1)

    return {
        "series": series,
        "series_max": max((point["revenue"] for point in series), default=0.0),
        "mean_per_day": round(sum(point["revenue"] for point in series) / len(series), 2) if series else 0.0,
    }


__all__ = [
    "AnalyticsWindow",
    "trailing_window",
    "to_local",
    "build_daily_series",
]
