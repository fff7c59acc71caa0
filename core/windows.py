# core/windows.py
import asyncio
import datetime
import math
import re
from typing import Any, Callable, Dict, List, Optional

from .errors import SyncError
from .logger import get_logger
from .models import CachedHistoryWindow, HistoryWindow, PriceHistoryPoint, PriceSummary

logger = get_logger(__name__)

LONG_WINDOW_DAYS = 30
SHORT_WINDOW_DAYS = 7

_DAY_RE = re.compile(r"^\d{4}-\d{2}-\d{2}$")

HistorySource = Callable[[str, int], Optional[Dict[str, Any]]]


def calendar_day(value: Any) -> Optional[str]:
    """Reduce '2024-03-20' or '2024-03-20T00:00:00Z' to 'YYYY-MM-DD'; None if not a date."""
    if not isinstance(value, str):
        return None
    day = value.strip().split("T", 1)[0]
    if not _DAY_RE.match(day):
        return None
    try:
        datetime.date.fromisoformat(day)
    except ValueError:
        return None
    return day


def _price(value: Any) -> Optional[float]:
    if value is None or isinstance(value, bool):
        return None
    try:
        price = float(value)
    except (TypeError, ValueError):
        return None
    if not math.isfinite(price) or price <= 0:
        return None
    return price


def normalize_chart(data: Optional[Dict[str, Any]]) -> List[PriceHistoryPoint]:
    """
    Normalize a backend history payload into date-ordered points.

    The backend sends either ``chart: [{x, y}]`` or ``history: [{date, price}]``;
    entries without a valid day or a positive price are dropped.
    """
    if not data:
        return []
    raw = data.get("chart")
    if not isinstance(raw, list):
        raw = data.get("history")
    if not isinstance(raw, list):
        return []

    points: List[PriceHistoryPoint] = []
    for entry in raw:
        if not isinstance(entry, dict):
            continue
        day = calendar_day(entry.get("date") or entry.get("x"))
        price = _price(entry["price"] if "price" in entry else entry.get("y"))
        if day is None or price is None:
            continue
        points.append(PriceHistoryPoint(date=day, price=price))
    points.sort(key=lambda p: p.date)
    return points


def compute_summary(points: List[PriceHistoryPoint]) -> Optional[PriceSummary]:
    """Summary over the positive prices of ``points``; None when there are none."""
    prices = [p for p in (_price(pt.price) for pt in points) if p is not None]
    if not prices:
        return None

    start = prices[0]
    end = prices[-1]
    change = end - start
    change_pct = (change / start) * 100 if start > 0 else 0.0
    return PriceSummary(
        start_price=round(start, 2),
        end_price=round(end, 2),
        min_price=round(min(prices), 2),
        max_price=round(max(prices), 2),
        avg_price=round(sum(prices) / len(prices), 2),
        price_change=round(change, 2),
        price_change_percent=round(change_pct, 2),
    )


def last_days(points: List[PriceHistoryPoint], days: int) -> List[PriceHistoryPoint]:
    """
    Points within the ``days`` calendar days ending at the latest point.

    The right edge is the newest date in the series, not today. Bounds are
    compared as YYYY-MM-DD strings.
    """
    dated = [(calendar_day(p.date), p) for p in points]
    dated = [(d, p) for d, p in dated if d is not None]
    if not dated or days < 1:
        return []

    right = max(d for d, _ in dated)
    left = (datetime.date.fromisoformat(right) - datetime.timedelta(days=days - 1)).isoformat()
    return [p for d, p in dated if left <= d <= right]


class TimeWindowCache:
    """
    Per-view price-history windows for individual items.

    Windows of LONG_WINDOW_DAYS or more come from the backend and the widest
    one per item is kept. Shorter windows are cut from that cached series.
    """

    def __init__(self, history_source: HistorySource, long_window: int = LONG_WINDOW_DAYS):
        self.history_source = history_source
        self.long_window = long_window
        self._windows: Dict[str, CachedHistoryWindow] = {}

    def cached(self, market_hash_name: str) -> Optional[CachedHistoryWindow]:
        return self._windows.get(market_hash_name)

    def discard(self, market_hash_name: str) -> None:
        self._windows.pop(market_hash_name, None)

    def clear(self) -> None:
        self._windows.clear()

    async def _fetch(self, market_hash_name: str, days: int) -> Optional[Dict[str, Any]]:
        try:
            return await asyncio.to_thread(self.history_source, market_hash_name, days)
        except SyncError as e:
            logger.warning("Could not load %dd history for %s: %s", days, market_hash_name, e)
            return None

    def _remember(self, market_hash_name: str, days: int, points: List[PriceHistoryPoint]) -> None:
        if not points:
            return
        current = self._windows.get(market_hash_name)
        if current is not None and current.days > days:
            return
        self._windows[market_hash_name] = CachedHistoryWindow(market_hash_name, days, list(points))

    async def _load_long(self, market_hash_name: str, days: int) -> HistoryWindow:
        data = await self._fetch(market_hash_name, days)
        points = normalize_chart(data)
        self._remember(market_hash_name, days, points)

        summary = None
        if points:
            summary = PriceSummary.from_backend((data or {}).get("summary"))
            if summary is None:
                logger.debug("Backend summary for %s incomplete; computing locally", market_hash_name)
                summary = compute_summary(points)
        return HistoryWindow(market_hash_name, days, points, summary)

    async def get_window(self, market_hash_name: str, days: int) -> HistoryWindow:
        if days >= self.long_window:
            return await self._load_long(market_hash_name, days)

        source = self._windows.get(market_hash_name)
        if source is None or not source.points:
            logger.debug("No cached %dd series for %s; loading it first", self.long_window, market_hash_name)
            await self._load_long(market_hash_name, self.long_window)
            source = self._windows.get(market_hash_name)
        else:
            logger.debug("Deriving %dd window for %s from cached %dd series",
                         days, market_hash_name, source.days)

        if source is None:
            return HistoryWindow(market_hash_name, days, derived=True)

        subset = last_days(source.points, days)
        if not subset:
            logger.warning("No points within the last %d days of %s", days, market_hash_name)
        return HistoryWindow(market_hash_name, days, subset, compute_summary(subset), derived=True)
