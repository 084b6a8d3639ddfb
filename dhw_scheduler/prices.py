# SPDX-License-Identifier: MPL-2.0
"""
Hourly Price Series Module

Turns the raw price feeds handed over by the price source (one array for
today, one for tomorrow) into a single deduplicated, time-ordered list of
hourly price points that the schedulers work on.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, Iterable, List, Mapping, Optional, Tuple

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PricePoint:
    """
    A single hourly spot price.

    Attributes:
        start: Hour-aligned, timezone-aware start of the hour
        price: Price for the hour (currency per kWh)
    """
    start: datetime
    price: Decimal

    def __repr__(self) -> str:
        return f"PricePoint({self.start.isoformat()}, {self.price})"


def to_datetime(value: Any) -> Optional[datetime]:
    """
    Convert a raw timestamp into a timezone-aware datetime.

    Accepts datetime objects as well as ISO 8601 strings (including a
    trailing 'Z'). Naive values are taken to be UTC.

    Returns:
        The parsed datetime, or None if the value cannot be parsed
    """
    if isinstance(value, datetime):
        dt = value
    elif isinstance(value, str) and value.strip():
        try:
            dt = datetime.fromisoformat(value.strip().replace('Z', '+00:00'))
        except ValueError:
            return None
    else:
        return None

    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt


def to_decimal(value: Any) -> Optional[Decimal]:
    """Convert a raw price (string or number) into a Decimal, or None."""
    if value is None or isinstance(value, bool):
        return None
    try:
        if isinstance(value, float):
            result = Decimal(repr(value))
        else:
            result = Decimal(str(value).strip())
    except (InvalidOperation, ValueError):
        return None
    if not result.is_finite():
        return None
    return result


def parse_price_entry(entry: Any) -> Optional[Tuple[datetime, Decimal]]:
    """
    Parse one raw feed entry of the form {"start": ..., "value": ...}.

    Args:
        entry: Raw entry from the price source

    Returns:
        Tuple of (start, price), or None if the entry is incomplete or invalid
    """
    if not isinstance(entry, Mapping):
        return None
    start = to_datetime(entry.get('start'))
    if start is None:
        return None
    price = to_decimal(entry.get('value'))
    if price is None:
        return None
    return start, price


def _truncate_to_hour(dt: datetime) -> datetime:
    return dt.replace(minute=0, second=0, microsecond=0)


def _hourly_averages(raw: Optional[Iterable[Any]]) -> Dict[datetime, Decimal]:
    """
    Group a single feed by hour and average the entries of each hour.

    Hourly feeds pass through unchanged; 15-minute feeds collapse into one
    point per hour.
    """
    by_hour: Dict[datetime, List[Decimal]] = {}
    if not raw:
        return {}

    dropped = 0
    for entry in raw:
        parsed = parse_price_entry(entry)
        if parsed is None:
            dropped += 1
            continue
        start, price = parsed
        by_hour.setdefault(_truncate_to_hour(start), []).append(price)

    if dropped:
        logger.debug(f"Dropped {dropped} unparsable price entries")

    return {
        hour: sum(values, Decimal(0)) / len(values) if len(values) > 1 else values[0]
        for hour, values in by_hour.items()
    }


def parse_hourly_prices(
    today: Optional[Iterable[Any]],
    tomorrow: Optional[Iterable[Any]]
) -> List[PricePoint]:
    """
    Merge today's and tomorrow's raw feeds into one hourly price series.

    If an hour appears in both feeds, the value from tomorrow's feed wins
    since it is the more recently published one. Invalid entries are dropped.

    Args:
        today: Raw entries for today (may be None or empty)
        tomorrow: Raw entries for tomorrow (may be None or empty)

    Returns:
        List of PricePoint objects sorted by start time
    """
    merged: Dict[datetime, Decimal] = {}
    merged.update(_hourly_averages(today))
    merged.update(_hourly_averages(tomorrow))

    return [PricePoint(start, price) for start, price in sorted(merged.items())]


def cheapest(points: Iterable[PricePoint]) -> Optional[PricePoint]:
    """Return the cheapest point, preferring the earliest hour on ties."""
    best: Optional[PricePoint] = None
    for point in points:
        if best is None or point.price < best.price or (
            point.price == best.price and point.start < best.start
        ):
            best = point
    return best
