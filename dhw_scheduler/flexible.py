# SPDX-License-Identifier: MPL-2.0
"""
Flexible Window Scheduler

Instead of a fixed daily pattern, eco and comfort runs are scheduled once per
interval at the cheapest hour inside a flexibility window around the due
time. Comfort runs additionally wait for a historically cheap price, with the
acceptance threshold relaxing as the deadline approaches.
"""

import logging
from dataclasses import dataclass, replace
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from enum import Enum
from typing import Any, List, Optional, Tuple

from dhw_scheduler.historical import HistoricalPriceStats, compute_sliding_threshold
from dhw_scheduler.prices import PricePoint, cheapest, parse_hourly_prices

logger = logging.getLogger(__name__)

# Window progress at which comfort is scheduled regardless of price
FORCE_PROGRESS = 0.95


class EcoState(Enum):
    WAITING = "waiting"
    NO_PRICES = "no_prices"
    SCHEDULED = "scheduled"


class ComfortState(Enum):
    WAITING = "waiting"
    NO_PRICES = "no_prices"
    WAITING_FOR_CHEAPER = "waiting_for_cheaper"
    SCHEDULED = "scheduled"
    RESCHEDULED = "rescheduled"
    ALREADY_SCHEDULED = "already_scheduled"
    ALREADY_RAN = "already_ran"


@dataclass(frozen=True)
class FlexibleEcoResult:
    """Outcome of one eco scheduling pass."""
    scheduled_hour_utc: Optional[datetime]
    state: EcoState
    message: str


@dataclass(frozen=True)
class FlexibleComfortResult:
    """Outcome of one comfort scheduling pass."""
    scheduled_hour_utc: Optional[datetime]
    state: ComfortState
    window_progress: float
    effective_threshold: Optional[Decimal]
    message: str


@dataclass(frozen=True)
class FlexibleSettings:
    """Interval and flexibility knobs for both run types, already clamped."""
    eco_interval_hours: int = 24
    eco_flexibility_hours: int = 12
    comfort_interval_days: int = 21
    comfort_flexibility_days: int = 7


@dataclass(frozen=True)
class FlexibleScheduleState:
    """
    Persisted bookkeeping for flexible scheduling.

    The scheduler only reads this and returns an updated copy; storing it
    between runs is up to the caller.
    """
    last_eco_run_utc: Optional[datetime] = None
    last_comfort_run_utc: Optional[datetime] = None
    next_scheduled_comfort_utc: Optional[datetime] = None


def window_bounds(last_run: datetime, interval: timedelta, flexibility: timedelta) -> Tuple[datetime, datetime]:
    """Return the (start, end) of the window in which the next run is due."""
    return last_run + (interval - flexibility), last_run + (interval + flexibility)


def window_progress(now: datetime, start: datetime, end: datetime) -> float:
    """
    Fraction of the window that has elapsed, clamped to [0, 1].

    A zero-length window counts as fully elapsed once it has opened.
    """
    if now < start:
        return 0.0
    length = (end - start).total_seconds()
    if length <= 0:
        return 1.0
    return max(0.0, min(1.0, (now - start).total_seconds() / length))


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def _future_in_window(points: List[PricePoint], now: datetime, start: datetime, end: Optional[datetime]) -> List[PricePoint]:
    # end=None leaves the window open-ended
    return [
        p for p in points
        if p.start >= now and p.start >= start and (end is None or p.start <= end)
    ]


def _format_utc(value: datetime) -> str:
    return value.astimezone(timezone.utc).strftime('%Y-%m-%d %H:00')


def generate_flexible_eco(
    today: Optional[List[Any]],
    tomorrow: Optional[List[Any]],
    last_eco_run: datetime,
    interval_hours: int,
    flexibility_hours: int,
    now: datetime
) -> FlexibleEcoResult:
    """
    Schedule the next eco run at the cheapest hour of its window.

    Args:
        today: Raw price entries for today
        tomorrow: Raw price entries for tomorrow
        last_eco_run: When eco last ran
        interval_hours: Nominal hours between eco runs
        flexibility_hours: Hours the run may move either way
        now: Current time

    Returns:
        FlexibleEcoResult
    """
    now = _as_utc(now)
    start, end = window_bounds(
        _as_utc(last_eco_run), timedelta(hours=interval_hours), timedelta(hours=flexibility_hours)
    )

    if now < start:
        hours_until = (start - now).total_seconds() / 3600
        return FlexibleEcoResult(
            None, EcoState.WAITING,
            f"Eco window opens in {hours_until:.1f} hours (at {_format_utc(start)} UTC)"
        )

    candidates = _future_in_window(parse_hourly_prices(today, tomorrow), now, start, end)
    if not candidates:
        return FlexibleEcoResult(None, EcoState.NO_PRICES, "No price data available in eco window")

    best = cheapest(candidates)
    logger.debug(f"Eco window {start.isoformat()} - {end.isoformat()}, cheapest {best}")
    return FlexibleEcoResult(
        best.start, EcoState.SCHEDULED,
        f"Eco scheduled at {_format_utc(best.start)} UTC ({best.price:.2f}/kWh)"
    )


def generate_flexible_comfort(
    today: Optional[List[Any]],
    tomorrow: Optional[List[Any]],
    last_comfort_run: datetime,
    interval_days: int,
    flexibility_days: int,
    historical_base_threshold: Optional[Decimal],
    historical_max_price: Optional[Decimal],
    now: datetime,
    next_scheduled_comfort_utc: Optional[datetime] = None
) -> FlexibleComfortResult:
    """
    Decide when the next comfort run should happen.

    Early in the window only historically cheap prices are accepted; the
    threshold slides from `historical_base_threshold` to
    `historical_max_price` as the window elapses, and from 95% progress on
    the cheapest hour is taken regardless. Once past the deadline any future
    hour qualifies. An existing future booking is only moved to a strictly
    cheaper hour.

    Args:
        today: Raw price entries for today
        tomorrow: Raw price entries for tomorrow
        last_comfort_run: When comfort last ran
        interval_days: Nominal days between comfort runs
        flexibility_days: Days the run may move either way
        historical_base_threshold: Strict early-window threshold, or None
        historical_max_price: Lenient deadline threshold, or None
        now: Current time
        next_scheduled_comfort_utc: Previously booked comfort hour, if any

    Returns:
        FlexibleComfortResult
    """
    now = _as_utc(now)
    start, end = window_bounds(
        _as_utc(last_comfort_run), timedelta(days=interval_days), timedelta(days=flexibility_days)
    )

    if now < start:
        days_until = (start - now).total_seconds() / 86400
        return FlexibleComfortResult(
            None, ComfortState.WAITING, 0.0, None,
            f"Comfort window opens in {days_until:.1f} days (at {_format_utc(start)} UTC)"
        )

    progress = window_progress(now, start, end)
    threshold = None
    if historical_base_threshold is not None and historical_max_price is not None:
        threshold = compute_sliding_threshold(historical_base_threshold, historical_max_price, progress)

    points = parse_hourly_prices(today, tomorrow)
    overdue = now >= end
    candidates = _future_in_window(points, now, start, None if overdue else end)
    if not candidates:
        return FlexibleComfortResult(
            None, ComfortState.NO_PRICES, progress, threshold,
            "No price data available in comfort window"
        )

    if next_scheduled_comfort_utc is not None:
        booked = _as_utc(next_scheduled_comfort_utc)
        if booked <= now:
            return FlexibleComfortResult(
                booked, ComfortState.ALREADY_RAN, progress, threshold,
                f"Comfort already ran at {_format_utc(booked)} UTC"
            )

        best = cheapest(candidates)
        booked_price = next((p.price for p in points if p.start == booked), None)
        if booked_price is not None and best.price < booked_price:
            return FlexibleComfortResult(
                best.start, ComfortState.RESCHEDULED, progress, threshold,
                f"Comfort moved from {_format_utc(booked)} to {_format_utc(best.start)} UTC "
                f"({booked_price:.2f} -> {best.price:.2f}/kWh)"
            )
        return FlexibleComfortResult(
            booked, ComfortState.ALREADY_SCHEDULED, progress, threshold,
            f"Comfort stays at {_format_utc(booked)} UTC"
        )

    best = cheapest(candidates)
    if progress >= FORCE_PROGRESS:
        return FlexibleComfortResult(
            best.start, ComfortState.SCHEDULED, progress, threshold,
            f"Comfort forced at {_format_utc(best.start)} UTC near deadline "
            f"({progress:.0%} of window, {best.price:.2f}/kWh)"
        )

    if threshold is None or best.price <= threshold:
        return FlexibleComfortResult(
            best.start, ComfortState.SCHEDULED, progress, threshold,
            f"Comfort scheduled at {_format_utc(best.start)} UTC ({best.price:.2f}/kWh)"
        )

    return FlexibleComfortResult(
        None, ComfortState.WAITING_FOR_CHEAPER, progress, threshold,
        f"Cheapest price {best.price:.2f} is above threshold {threshold:.2f}, "
        f"waiting ({progress:.0%} of window elapsed)"
    )


def plan_flexible(
    today: Optional[List[Any]],
    tomorrow: Optional[List[Any]],
    state: FlexibleScheduleState,
    settings: FlexibleSettings,
    stats: HistoricalPriceStats,
    now: datetime
) -> Tuple[FlexibleEcoResult, FlexibleComfortResult, FlexibleScheduleState]:
    """
    Run both flexible schedulers and work out the state to persist.

    A run that has never happened is treated as due now, so its window is
    already open on the first pass.

    Returns:
        Tuple of (eco result, comfort result, updated state)
    """
    now = _as_utc(now)
    last_eco = state.last_eco_run_utc or now - timedelta(hours=settings.eco_interval_hours)
    last_comfort = state.last_comfort_run_utc or now - timedelta(days=settings.comfort_interval_days)

    eco = generate_flexible_eco(
        today, tomorrow, last_eco,
        settings.eco_interval_hours, settings.eco_flexibility_hours, now
    )
    comfort = generate_flexible_comfort(
        today, tomorrow, last_comfort,
        settings.comfort_interval_days, settings.comfort_flexibility_days,
        stats.percentile_threshold, stats.max_price, now,
        next_scheduled_comfort_utc=state.next_scheduled_comfort_utc
    )

    new_state = state
    # A booked eco hour becomes the last run
    if eco.state == EcoState.SCHEDULED:
        new_state = replace(new_state, last_eco_run_utc=eco.scheduled_hour_utc)

    if comfort.state in (ComfortState.SCHEDULED, ComfortState.RESCHEDULED):
        new_state = replace(new_state, next_scheduled_comfort_utc=comfort.scheduled_hour_utc)
    elif comfort.state == ComfortState.ALREADY_RAN:
        new_state = replace(
            new_state,
            last_comfort_run_utc=comfort.scheduled_hour_utc,
            next_scheduled_comfort_utc=None,
        )

    logger.info(f"Eco: {eco.state.value} - {eco.message}")
    logger.info(f"Comfort: {comfort.state.value} - {comfort.message}")
    return eco, comfort, new_state
