# SPDX-License-Identifier: MPL-2.0
"""
Schedule Composer

Renders scheduling decisions into the weekday -> time -> state action map
accepted by the heat pump's domestic hot water schedule endpoint:

    {"0": {"actions": {"<weekday>": {"HH:MM:SS": {"domesticHotWaterTemperature": "<state>"}}}}}

Artifacts are plain dicts built fresh on every call, so no part of a tree is
ever shared with another tree.
"""

import json
import logging
from dataclasses import dataclass
from datetime import date, datetime, timedelta, timezone
from enum import Enum
from typing import TYPE_CHECKING, Any, Dict, Iterable, List, Optional, Tuple

if TYPE_CHECKING:
    from dhw_scheduler.flexible import FlexibleComfortResult, FlexibleEcoResult

logger = logging.getLogger(__name__)

STATE_KEY = "domesticHotWaterTemperature"

WEEKDAYS = ("monday", "tuesday", "wednesday", "thursday", "friday", "saturday", "sunday")


class HeaterState(Enum):
    """Domestic hot water operating states."""
    COMFORT = "comfort"
    ECO = "eco"
    TURN_OFF = "turn_off"


@dataclass(frozen=True)
class Segment:
    """The heater switches to `state` at `hour` and stays there until the next segment."""
    hour: int
    state: HeaterState

    def __repr__(self) -> str:
        return f"Segment({self.hour:02d}:00, {self.state.value})"


def weekday_name(day: date) -> str:
    """Lowercase English weekday name, independent of the process locale."""
    return WEEKDAYS[day.weekday()]


def format_time_key(hour: int) -> str:
    """
    Format an hour as the HH:MM:SS key used in the action map.

    Raises:
        ValueError: If the hour is outside 0-23
    """
    if not 0 <= hour <= 23:
        raise ValueError(f"Hour must be 0-23, got {hour}")
    return f"{hour:02d}:00:00"


def render_day(segments: Iterable[Segment]) -> Dict[str, Dict[str, str]]:
    """Render a day's segments as a time-keyed dict in ascending hour order."""
    by_hour: Dict[int, HeaterState] = {}
    for segment in segments:
        by_hour[segment.hour] = segment.state
    return {
        format_time_key(hour): {STATE_KEY: by_hour[hour].value}
        for hour in sorted(by_hour)
    }


def wrap_actions(actions: Dict[str, Dict[str, Dict[str, str]]]) -> Dict[str, Any]:
    """Wrap per-day actions in the schedule envelope (schedule id "0")."""
    return {"0": {"actions": actions}}


def serialize_schedule(artifact: Dict[str, Any], indent: Optional[int] = None) -> str:
    """
    Serialize an artifact to JSON.

    Day keys keep their insertion order and time keys are already ascending,
    so identical inputs always produce identical bytes.
    """
    return json.dumps(artifact, indent=indent, ensure_ascii=True)


def _day_segments(
    day: date,
    picks: List[Tuple[Optional[datetime], HeaterState]],
    tz: Any
) -> List[Segment]:
    """
    Build one day of a flexible schedule.

    The day starts turned off; every pick that falls on the day switches to
    its state for one hour and back off afterwards. Later picks overwrite
    earlier ones on the same hour.
    """
    by_hour: Dict[int, HeaterState] = {0: HeaterState.TURN_OFF}
    for when, state in picks:
        if when is None:
            continue
        local = when.astimezone(tz)
        if local.date() != day:
            continue
        by_hour[local.hour] = state
        if local.hour < 23:
            by_hour[local.hour + 1] = HeaterState.TURN_OFF
    return [Segment(hour, state) for hour, state in sorted(by_hour.items())]


def compose_flexible_schedule(
    eco: Optional["FlexibleEcoResult"],
    comfort: Optional["FlexibleComfortResult"],
    now: datetime
) -> Tuple[Dict[str, Any], str]:
    """
    Combine flexible eco and comfort decisions into one schedule artifact.

    Both today's and tomorrow's weekday (relative to `now`) are emitted.
    Eco is placed first and comfort second, so comfort wins when both land
    on the same hour.

    Args:
        eco: Result of the eco scheduler, or None
        comfort: Result of the comfort scheduler, or None
        now: Current time; its timezone decides which day a pick falls on

    Returns:
        Tuple of (artifact, message)
    """
    tz = now.tzinfo or timezone.utc
    today = now.astimezone(tz).date()

    eco_hour = eco.scheduled_hour_utc if eco is not None else None
    comfort_hour = comfort.scheduled_hour_utc if comfort is not None else None
    picks = [(eco_hour, HeaterState.ECO), (comfort_hour, HeaterState.COMFORT)]

    actions = {}
    for day in (today, today + timedelta(days=1)):
        actions[weekday_name(day)] = render_day(_day_segments(day, picks, tz))

    included = []
    if eco_hour is not None:
        included.append(f"eco at {eco_hour.astimezone(tz).strftime('%a %H:%M')}")
    if comfort_hour is not None:
        included.append(f"comfort at {comfort_hour.astimezone(tz).strftime('%a %H:%M')}")

    if included:
        message = "Flexible schedule: " + ", ".join(included)
    else:
        message = "Flexible schedule: no eco or comfort run scheduled"

    logger.debug(message)
    return wrap_actions(actions), message


def compose_manual_comfort_schedule(comfort_time: datetime) -> Dict[str, Any]:
    """
    Build a schedule for a one-off comfort run.

    Covers the day of `comfort_time` and the following day, both starting
    turned off, with comfort at the requested hour and turn-off one hour
    later (omitted at 23:00 since the day has no 24:00 slot).
    """
    tz = comfort_time.tzinfo or timezone.utc
    day = comfort_time.astimezone(tz).date()
    picks: List[Tuple[Optional[datetime], HeaterState]] = [(comfort_time, HeaterState.COMFORT)]

    actions = {}
    for current in (day, day + timedelta(days=1)):
        actions[weekday_name(current)] = render_day(_day_segments(current, picks, tz))

    logger.info(f"Manual comfort run composed for {comfort_time.isoformat()}")
    return wrap_actions(actions)
