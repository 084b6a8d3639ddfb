# SPDX-License-Identifier: MPL-2.0
"""
Classic Segment Scheduler

Builds day-shaped hot water schedules from hourly spot prices: a comfort
block around the cheapest hour, an optional turn-off during a price spike,
and eco everywhere else, all within a per-day activation budget.
"""

import logging
import math
from dataclasses import dataclass
from datetime import date, datetime, timedelta, timezone
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, List, Optional, Sequence, Tuple

from dhw_scheduler.composer import HeaterState, Segment, render_day, weekday_name, wrap_actions
from dhw_scheduler.prices import PricePoint, parse_hourly_prices

logger = logging.getLogger(__name__)

NO_SCHEDULE_MESSAGE = "No schedule generated"

# Share of future hours that qualify as comfort candidates in cross-day mode
CROSS_DAY_PERCENTILE = 0.2

# Longest turn-off block; a longer gap before the next segment gets an eco re-activation
MAX_TURN_OFF_HOURS = 2

# Today's hours that started longer ago than this are not planned
PAST_HOUR_GRACE = timedelta(minutes=10)


class LogicType(Enum):
    """Classic scheduling strategies."""
    PER_DAY_ORIGINAL = "per_day_original"
    CROSS_DAY_CHEAPEST_LIMITED = "cross_day_cheapest_limited"


@dataclass(frozen=True)
class HourBlock:
    """Inclusive run of consecutive hours within one day."""
    start: int
    end: int

    def overlaps(self, other: "HourBlock") -> bool:
        return self.start <= other.end and other.start <= self.end

    def hours(self) -> range:
        return range(self.start, self.end + 1)


def _hourly_map(entries: Sequence[Tuple[int, Decimal]]) -> Dict[int, Decimal]:
    # On a DST fall-back day the repeated hour keeps its last value
    by_hour: Dict[int, Decimal] = {}
    for hour, price in entries:
        by_hour[hour] = price
    return by_hour


def find_comfort_block(
    by_hour: Dict[int, Decimal],
    comfort_hours: int,
    next_hour_max_increase_pct: float
) -> Optional[HourBlock]:
    """
    Locate the comfort block for one day.

    The block starts at the cheapest hour (earliest on ties) and grows forward
    while the next hour costs at most `next_hour_max_increase_pct` percent
    more than the starting hour. A limit of 0 or less disables growth.
    """
    if not by_hour:
        return None

    base_hour = min(by_hour, key=lambda h: (by_hour[h], h))
    base_price = by_hour[base_hour]
    limit = Decimal(str(next_hour_max_increase_pct))

    end = base_hour
    while end - base_hour + 1 < comfort_hours and (end + 1) in by_hour:
        if limit <= 0:
            break
        next_price = by_hour[end + 1]
        if base_price == 0:
            increase = Decimal(0)
        else:
            increase = (next_price - base_price) / base_price * 100
        if increase > limit:
            break
        end += 1

    return HourBlock(base_hour, end)


def _neighbor_prices(by_hour: Dict[int, Decimal], hour: int, window: int) -> List[Decimal]:
    return [
        by_hour[h]
        for h in range(hour - window, hour + window + 1)
        if h != hour and h in by_hour
    ]


def find_turn_off_block(
    by_hour: Dict[int, Decimal],
    comfort: Optional[HourBlock],
    turn_off_percentile: float,
    turn_off_max_consecutive: int,
    spike_delta_pct: float,
    neighbor_window: int
) -> Optional[HourBlock]:
    """
    Pick the price spike worth turning the heater off for.

    Args:
        by_hour: Prices of one day keyed by local hour
        comfort: The day's comfort block; turn-off never overlaps it
        turn_off_percentile: Percentile (of prices sorted descending) that
            a candidate must reach
        turn_off_max_consecutive: Longest run of consecutive candidates kept
        spike_delta_pct: Minimum rise over the neighbor mean, in percent
        neighbor_window: Number of hours on each side used as neighbors

    Returns:
        The spike block with the highest average price, cut to its first
        MAX_TURN_OFF_HOURS hours, or None
    """
    if len(by_hour) < 4:
        return None

    descending = sorted(by_hour.values(), reverse=True)
    index = max(0, int(math.floor(len(descending) * turn_off_percentile)) - 1)
    threshold = descending[min(index, len(descending) - 1)]
    delta = Decimal(str(spike_delta_pct))

    candidates = []
    for hour in sorted(by_hour):
        price = by_hour[hour]
        if price < threshold:
            continue
        neighbors = _neighbor_prices(by_hour, hour, neighbor_window)
        if not neighbors:
            continue
        mean = sum(neighbors, Decimal(0)) / len(neighbors)
        if mean == 0:
            continue
        if (price - mean) / mean * 100 >= delta:
            candidates.append(hour)

    comfort_hours = set(comfort.hours()) if comfort is not None else set()
    kept = []
    run = 0
    previous = None
    for hour in candidates:
        run = run + 1 if previous is not None and hour == previous + 1 else 1
        previous = hour
        if run > turn_off_max_consecutive:
            continue

        price = by_hour[hour]
        near_peer = any(
            peer > 0 and abs(price - peer) / peer * 100 < delta
            for peer in _neighbor_prices(by_hour, hour, neighbor_window)
        )
        if near_peer:
            continue
        if hour in comfort_hours:
            continue
        kept.append(hour)

    if not kept:
        return None

    blocks: List[HourBlock] = []
    start = end = kept[0]
    for hour in kept[1:]:
        if hour == end + 1:
            end = hour
        else:
            blocks.append(HourBlock(start, end))
            start = end = hour
    blocks.append(HourBlock(start, end))

    if comfort is not None:
        blocks = [block for block in blocks if not block.overlaps(comfort)]
    if not blocks:
        return None

    # A turn-off never spans more than MAX_TURN_OFF_HOURS hours
    blocks = [
        HourBlock(block.start, min(block.end, block.start + MAX_TURN_OFF_HOURS - 1))
        for block in blocks
    ]

    def average(block: HourBlock) -> Decimal:
        prices = [by_hour[h] for h in block.hours()]
        return sum(prices, Decimal(0)) / len(prices)

    # max() keeps the earliest block on ties
    return max(blocks, key=average)


def _set_segment(segments: List[Segment], hour: int, state: HeaterState) -> None:
    for index, segment in enumerate(segments):
        if segment.hour == hour:
            segments[index] = Segment(hour, state)
            return
    segments.append(Segment(hour, state))


def _index_of(segments: List[Segment], hour: int, state: HeaterState) -> int:
    for index, segment in enumerate(segments):
        if segment.hour == hour and segment.state == state:
            return index
    return -1


def _enforce_activation_limit(
    segments: List[Segment],
    comfort: Optional[HourBlock],
    earliest_hour: int,
    activation_limit: int
) -> List[Segment]:
    segments = list(segments)

    # Eco re-activation right after comfort; comfort then runs on
    if len(segments) > activation_limit and comfort is not None:
        index = _index_of(segments, comfort.end + 1, HeaterState.ECO)
        if index > 0:
            del segments[index]

    # First turn-off together with its eco follow-up
    if len(segments) > activation_limit:
        for index, segment in enumerate(segments):
            if segment.state != HeaterState.TURN_OFF:
                continue
            if index + 1 < len(segments) and segments[index + 1].state == HeaterState.ECO:
                del segments[index + 1]
            del segments[index]
            break

    # Remaining eco segments from the end, keeping the day's first one
    index = len(segments) - 1
    while len(segments) > activation_limit and index >= 0:
        segment = segments[index]
        if segment.state == HeaterState.ECO and segment.hour != earliest_hour:
            del segments[index]
        index -= 1

    # Past the three priorities a day may still exceed activation_limit;
    # trim from the end, comfort last, so no day ever does
    index = len(segments) - 1
    while len(segments) > activation_limit and index >= 0:
        if segments[index].state != HeaterState.COMFORT:
            del segments[index]
        index -= 1
    if len(segments) > activation_limit:
        segments = segments[-activation_limit:]

    return segments


def build_day_segments(
    entries: Sequence[Tuple[int, Decimal]],
    comfort_hours: int,
    turn_off_percentile: float,
    turn_off_max_consecutive: int,
    activation_limit: int,
    spike_delta_pct: float,
    neighbor_window: int,
    next_hour_max_increase_pct: float
) -> List[Segment]:
    """
    Build the segment list for a single day.

    Args:
        entries: (local hour, price) pairs for the day
        comfort_hours: Maximum length of the comfort block
        turn_off_percentile: Spike threshold percentile
        turn_off_max_consecutive: Longest consecutive turn-off run
        activation_limit: Maximum number of segments in the day
        spike_delta_pct: Minimum spike height over neighbors, in percent
        neighbor_window: Neighbor hours on each side for spike detection
        next_hour_max_increase_pct: Comfort block extension limit, in percent

    Returns:
        Segments sorted by hour, at most `activation_limit` of them
    """
    by_hour = _hourly_map(entries)
    if not by_hour:
        return []

    earliest_hour = min(by_hour)
    latest_hour = max(by_hour)

    comfort = find_comfort_block(by_hour, comfort_hours, next_hour_max_increase_pct)
    turn_off = find_turn_off_block(
        by_hour, comfort, turn_off_percentile, turn_off_max_consecutive,
        spike_delta_pct, neighbor_window
    )
    turn_off_first = turn_off is not None and comfort is not None and turn_off.end < comfort.start

    segments: List[Segment] = []
    _set_segment(segments, earliest_hour, HeaterState.ECO)

    if turn_off is not None and turn_off_first:
        _set_segment(segments, turn_off.start, HeaterState.TURN_OFF)
        reactivate = turn_off.end + 1
        if comfort is None or reactivate < comfort.start:
            _set_segment(segments, reactivate, HeaterState.ECO)

    if comfort is not None:
        _set_segment(segments, comfort.start, HeaterState.COMFORT)
        if comfort.end < latest_hour:
            _set_segment(segments, comfort.end + 1, HeaterState.ECO)

    if turn_off is not None and not turn_off_first:
        _set_segment(segments, turn_off.start, HeaterState.TURN_OFF)
        reactivate = turn_off.end + 1
        if reactivate <= latest_hour:
            _set_segment(segments, reactivate, HeaterState.ECO)

    segments.sort(key=lambda s: s.hour)

    index = 0
    while index < len(segments):
        segment = segments[index]
        if segment.state == HeaterState.TURN_OFF:
            following = segments[index + 1].hour if index + 1 < len(segments) else latest_hour + 1
            if following - segment.hour > MAX_TURN_OFF_HOURS:
                if len(segments) < activation_limit:
                    segments.insert(index + 1, Segment(segment.hour + MAX_TURN_OFF_HOURS, HeaterState.ECO))
                else:
                    del segments[index]
                    continue
        index += 1

    segments = _enforce_activation_limit(segments, comfort, earliest_hour, activation_limit)

    logger.debug(
        f"Day segments: comfort={comfort}, turn_off={turn_off}, "
        f"segments={segments}"
    )
    return segments


def _split_by_day(points: List[PricePoint], tz: Any, days: Sequence[date]) -> Dict[date, List[Tuple[int, Decimal]]]:
    split: Dict[date, List[Tuple[int, Decimal]]] = {day: [] for day in days}
    for point in points:
        local = point.start.astimezone(tz)
        if local.date() in split:
            split[local.date()].append((local.hour, point.price))
    return split


def _warn_comfort_gaps(
    day_segments: Dict[date, List[Segment]],
    tz: Any,
    max_comfort_gap_hours: float
) -> None:
    if not 0 < max_comfort_gap_hours < 72:
        return

    starts = []
    for day, segments in sorted(day_segments.items()):
        for segment in segments:
            if segment.state == HeaterState.COMFORT:
                starts.append(datetime(day.year, day.month, day.day, segment.hour, tzinfo=tz))

    for earlier, later in zip(starts, starts[1:]):
        gap_hours = (later - earlier).total_seconds() / 3600
        if gap_hours > max_comfort_gap_hours:
            logger.warning(
                f"Comfort gap of {gap_hours:.0f}h between {earlier.isoformat()} and "
                f"{later.isoformat()} exceeds {max_comfort_gap_hours}h"
            )


def _generate_per_day(
    points: List[PricePoint],
    now: datetime,
    comfort_hours: int,
    turn_off_percentile: float,
    turn_off_max_consecutive: int,
    activation_limit: int,
    spike_delta_pct: float,
    neighbor_window: int,
    next_hour_max_increase_pct: float,
    max_comfort_gap_hours: float
) -> Tuple[Optional[Dict[str, Any]], str]:
    tz = now.tzinfo or timezone.utc
    today = now.astimezone(tz).date()
    tomorrow = today + timedelta(days=1)
    cutoff = now - PAST_HOUR_GRACE
    points = [
        p for p in points
        if p.start >= cutoff or p.start.astimezone(tz).date() != today
    ]
    split = _split_by_day(points, tz, (today, tomorrow))

    actions = {}
    day_segments: Dict[date, List[Segment]] = {}
    for day in (today, tomorrow):
        if not split[day]:
            continue
        segments = build_day_segments(
            split[day], comfort_hours, turn_off_percentile, turn_off_max_consecutive,
            activation_limit, spike_delta_pct, neighbor_window, next_hour_max_increase_pct
        )
        day_segments[day] = segments
        actions[weekday_name(day)] = render_day(segments)

    if not actions:
        return None, NO_SCHEDULE_MESSAGE

    _warn_comfort_gaps(day_segments, tz, max_comfort_gap_hours)

    if today in day_segments and tomorrow in day_segments:
        message = "Schedule generated (today + tomorrow)"
    elif today in day_segments:
        message = "Schedule generated (today)"
    else:
        message = "Schedule generated (tomorrow)"

    return wrap_actions(actions), message


def _generate_cross_day(
    points: List[PricePoint],
    now: datetime,
    activation_limit: int
) -> Tuple[Optional[Dict[str, Any]], str]:
    tz = now.tzinfo or timezone.utc
    today = now.astimezone(tz).date()
    tomorrow = today + timedelta(days=1)

    future = [p for p in points if p.start >= now and p.start.astimezone(tz).date() in (today, tomorrow)]
    if not future:
        return None, NO_SCHEDULE_MESSAGE

    # Stable sort keeps time order among equal prices
    ascending = sorted(future, key=lambda p: p.price)
    index = min(int(math.floor(len(ascending) * CROSS_DAY_PERCENTILE)), len(ascending) - 1)
    threshold = ascending[index].price
    cheapest_point = ascending[0]

    chosen = [cheapest_point] + [
        p for p in future if p.price <= threshold and p is not cheapest_point
    ]

    per_day: Dict[date, List[int]] = {today: [], tomorrow: []}
    for point in chosen:
        local = point.start.astimezone(tz)
        per_day[local.date()].append(local.hour)

    actions = {}
    for label, day in (("today", today), ("tomorrow", tomorrow)):
        hours = sorted(set(per_day[day]))[:activation_limit]
        actions[label] = render_day(Segment(hour, HeaterState.COMFORT) for hour in hours)

    logger.debug(f"Cross-day threshold {threshold}, comfort hours {actions}")
    return wrap_actions(actions), "Schedule generated (cross-day, limited activations)"


def generate_schedule(
    today: Optional[List[Any]],
    tomorrow: Optional[List[Any]],
    comfort_hours: int,
    turn_off_percentile: float,
    turn_off_max_consecutive: int,
    activation_limit: int,
    spike_delta_pct: float,
    neighbor_window: int,
    next_hour_max_increase_pct: float,
    now: datetime,
    logic: LogicType = LogicType.PER_DAY_ORIGINAL,
    max_comfort_gap_hours: float = 0
) -> Tuple[Optional[Dict[str, Any]], str]:
    """
    Generate a classic schedule artifact from today's and tomorrow's prices.

    All numeric settings are expected to be clamped to their documented
    ranges already.

    Args:
        today: Raw price entries for today
        tomorrow: Raw price entries for tomorrow
        comfort_hours: Maximum comfort block length
        turn_off_percentile: Spike threshold percentile
        turn_off_max_consecutive: Longest consecutive turn-off run
        activation_limit: Maximum segments per day
        spike_delta_pct: Minimum spike height over neighbors, in percent
        neighbor_window: Neighbor hours on each side for spike detection
        next_hour_max_increase_pct: Comfort block extension limit, in percent
        now: Current time; its timezone defines the local day
        logic: Scheduling strategy
        max_comfort_gap_hours: Warn when comfort starts are further apart (0 disables)

    Returns:
        Tuple of (artifact or None, message)
    """
    if now.tzinfo is None:
        now = now.replace(tzinfo=timezone.utc)

    points = parse_hourly_prices(today, tomorrow)
    if not points:
        logger.info("No usable price points, no schedule generated")
        return None, NO_SCHEDULE_MESSAGE

    if logic == LogicType.CROSS_DAY_CHEAPEST_LIMITED:
        return _generate_cross_day(points, now, activation_limit)

    return _generate_per_day(
        points, now, comfort_hours, turn_off_percentile, turn_off_max_consecutive,
        activation_limit, spike_delta_pct, neighbor_window, next_hour_max_increase_pct,
        max_comfort_gap_hours
    )
