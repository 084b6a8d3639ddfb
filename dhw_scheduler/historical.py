# SPDX-License-Identifier: MPL-2.0
"""
Historical Price Analysis

Percentile and threshold helpers used by the flexible comfort scheduler to
judge whether a current price is "historically cheap" enough to run early.
"""

import json
import logging
import math
from dataclasses import dataclass
from decimal import Decimal
from typing import Iterable, List, Optional

from dhw_scheduler.prices import to_decimal

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class HistoricalPriceStats:
    """Percentile threshold and maximum over a historical price population."""
    percentile_threshold: Optional[Decimal] = None
    max_price: Optional[Decimal] = None


def _clamp(value: float, low: float, high: float) -> float:
    return max(low, min(high, value))


def compute_percentile(prices: Iterable[Decimal], percentile: float) -> Optional[Decimal]:
    """
    Compute the value at a percentile using linear interpolation.

    The percentile is mapped onto the continuous index p * (n - 1) of the
    ascending-sorted population and interpolated between the two order
    statistics around it.

    Args:
        prices: Price population
        percentile: Percentile as a fraction (0.0 to 1.0), clamped

    Returns:
        The percentile value, or None if there are no prices
    """
    ordered = sorted(prices)
    if not ordered:
        return None
    if len(ordered) == 1:
        return ordered[0]

    position = _clamp(percentile, 0.0, 1.0) * (len(ordered) - 1)
    lower = int(math.floor(position))
    upper = int(math.ceil(position))
    if lower == upper:
        return ordered[lower]

    fraction = Decimal(repr(position - lower))
    return ordered[lower] + (ordered[upper] - ordered[lower]) * fraction


def compute_sliding_threshold(base: Decimal, max_price: Decimal, progress: float) -> Decimal:
    """
    Interpolate the acceptance threshold across a flexible window.

    At progress 0 (window just opened) the strict base threshold applies; at
    progress 1 (deadline) any price up to the historical maximum is accepted.
    """
    clamped = _clamp(progress, 0.0, 1.0)
    if clamped == 0.0:
        return base
    if clamped == 1.0:
        return max_price
    return base + (max_price - base) * Decimal(repr(clamped))


def get_historical_stats(prices: Iterable[Decimal], percentile: float) -> HistoricalPriceStats:
    """
    Summarize a historical price population.

    Args:
        prices: All prices seen in the lookback window
        percentile: Percentile used as the early-run threshold

    Returns:
        HistoricalPriceStats with both fields None if there is no data
    """
    population = list(prices)
    if not population:
        logger.debug("No historical prices available")
        return HistoricalPriceStats()

    stats = HistoricalPriceStats(
        percentile_threshold=compute_percentile(population, percentile),
        max_price=max(population),
    )
    logger.debug(
        f"Historical stats over {len(population)} prices: "
        f"p{percentile * 100:.0f}={stats.percentile_threshold}, max={stats.max_price}"
    )
    return stats


def extract_snapshot_prices(snapshot_json: Optional[str]) -> List[Decimal]:
    """
    Read the prices out of a stored daily snapshot.

    Snapshots are JSON arrays of {"start": ..., "value": ...} objects.
    Malformed documents and entries without a usable value are skipped.
    """
    if not snapshot_json or not snapshot_json.strip() or snapshot_json.strip() == '[]':
        return []

    try:
        data = json.loads(snapshot_json)
    except ValueError:
        logger.debug("Skipping malformed price snapshot")
        return []

    if not isinstance(data, list):
        return []

    prices = []
    for item in data:
        if not isinstance(item, dict) or 'value' not in item:
            continue
        price = to_decimal(item['value'])
        if price is not None:
            prices.append(price)
    return prices


def collect_historical_prices(snapshots: Iterable[Optional[str]]) -> List[Decimal]:
    """Flatten the snapshots of a lookback window into one price population."""
    prices: List[Decimal] = []
    for snapshot in snapshots:
        prices.extend(extract_snapshot_prices(snapshot))
    return prices
