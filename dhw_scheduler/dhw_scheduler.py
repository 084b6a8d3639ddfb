# SPDX-License-Identifier: MPL-2.0
"""
Hot Water Scheduler

Fetches today's and tomorrow's spot prices and works out when the heat
pump's domestic hot water should run at comfort, eco or be turned off.

Three modes are supported:
1. classic: one day-shaped schedule per day (comfort block, spike turn-off, eco)
2. flexible: one eco run per interval and one comfort run per multi-day
   window, each at the cheapest hour available
3. manual: a one-off comfort run at a given time

The resulting schedule is printed as JSON in the shape the heat pump's
schedule endpoint accepts. Uploading it is left to the caller.
"""

import argparse
import configparser
import json
import logging
import os
from dataclasses import dataclass, field, fields, replace
from datetime import date, datetime, timedelta
from decimal import Decimal
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence, Tuple

from dhw_scheduler.classic import LogicType, generate_schedule
from dhw_scheduler.composer import (
    compose_flexible_schedule,
    compose_manual_comfort_schedule,
    serialize_schedule,
)
from dhw_scheduler.elpris import ElprisAPIError, ElprisClient
from dhw_scheduler.flexible import FlexibleScheduleState, FlexibleSettings, plan_flexible
from dhw_scheduler.historical import collect_historical_prices, get_historical_stats
from dhw_scheduler.prices import PricePoint, parse_hourly_prices, to_datetime

# Logger will be configured later based on config/CLI args
logger = logging.getLogger(__name__)

MODES = ('classic', 'flexible', 'manual')

SEARCH_PATHS = [
    "/etc/dhw-scheduler/dhw-scheduler.conf",
    "/run/dhw-scheduler/dhw-scheduler.conf",
    "/usr/lib/dhw-scheduler/dhw-scheduler.conf",
]

# Accepted (low, high) range per setting; out of range values are clamped
SCHEDULE_RANGES: Dict[str, Tuple[float, float]] = {
    'comfort_hours': (1, 12),
    'turn_off_percentile': (0.5, 0.99),
    'turn_off_max_consecutive': (1, 6),
    'activation_limit': (1, 24),
    'turn_off_spike_delta_pct': (1, 200),
    'turn_off_neighbor_window': (1, 4),
    'comfort_next_hour_max_increase_pct': (0, 500),
}

FLEXIBLE_RANGES: Dict[str, Tuple[float, float]] = {
    'eco_interval_hours': (6, 36),
    'eco_flexibility_hours': (1, 18),
    'comfort_interval_days': (7, 90),
    'comfort_flexibility_days': (1, 30),
}

EARLY_PERCENTILE_RANGE = (0.01, 0.50)

# Comfort gap warnings only make sense below three days
MAX_COMFORT_GAP_LIMIT = 72


class ConfigurationError(Exception):
    """Raised when configuration is invalid or missing."""
    pass


def clamp_settings(settings: Any, ranges: Dict[str, Tuple[float, float]]) -> Any:
    """
    Return a copy of a settings dataclass with every ranged field clamped.

    Args:
        settings: Dataclass instance
        ranges: Field name -> (low, high)

    Returns:
        New instance of the same type
    """
    changes = {}
    for name, (low, high) in ranges.items():
        value = getattr(settings, name)
        clamped = type(value)(max(low, min(high, value)))
        if clamped != value:
            logger.warning(f"{name}={value} is outside [{low}, {high}], using {clamped}")
            changes[name] = clamped
    return replace(settings, **changes)


@dataclass(frozen=True)
class ScheduleSettings:
    """Classic scheduler knobs."""
    comfort_hours: int = 3
    turn_off_percentile: float = 0.9
    turn_off_max_consecutive: int = 2
    activation_limit: int = 4
    turn_off_spike_delta_pct: float = 10.0
    turn_off_neighbor_window: int = 2
    comfort_next_hour_max_increase_pct: float = 25.0
    max_comfort_gap_hours: float = 0.0
    logic: LogicType = LogicType.PER_DAY_ORIGINAL

    def clamped(self) -> 'ScheduleSettings':
        """Clamp every knob to its accepted range."""
        settings = clamp_settings(self, SCHEDULE_RANGES)
        if settings.max_comfort_gap_hours < 0:
            logger.warning("max_comfort_gap_hours cannot be negative, disabling")
            settings = replace(settings, max_comfort_gap_hours=0.0)
        elif settings.max_comfort_gap_hours >= MAX_COMFORT_GAP_LIMIT:
            logger.warning(
                f"max_comfort_gap_hours={settings.max_comfort_gap_hours} is not below "
                f"{MAX_COMFORT_GAP_LIMIT}, gap warnings disabled"
            )
        return settings


@dataclass
class Config:
    """Application configuration."""
    # Price source
    zone: str = 'SE3'
    timeout: int = 30

    # Scheduling
    mode: str = 'classic'
    schedule: ScheduleSettings = field(default_factory=ScheduleSettings)
    flexible: FlexibleSettings = field(default_factory=FlexibleSettings)
    comfort_early_percentile: float = 0.10
    historical_lookback_days: int = 60
    history_dir: Optional[str] = None  # Directory of daily price snapshots
    state_file: Optional[str] = None  # JSON file holding FlexibleScheduleState
    state: FlexibleScheduleState = field(default_factory=FlexibleScheduleState)

    # Manual mode
    comfort_at: Optional[datetime] = None

    # Logging
    logging_level: str = 'WARNING'


def parse_logic(value: str) -> LogicType:
    """
    Parse a classic logic name.

    Raises:
        ValueError: If the name is unknown
    """
    normalized = value.strip().lower().replace('-', '_')
    for logic in LogicType:
        if logic.value == normalized:
            return logic
    raise ValueError(
        f"Invalid logic '{value}' (expected one of {', '.join(l.value for l in LogicType)})"
    )


def parse_timestamp(value: str, param_name: str = "timestamp") -> datetime:
    """
    Parse an ISO 8601 timestamp; naive values are taken as UTC.

    Raises:
        ValueError: If the value is not a valid timestamp
    """
    parsed = to_datetime(value)
    if parsed is None:
        raise ValueError(f"Invalid {param_name} '{value}', expected ISO 8601 (e.g. 2026-02-20T10:00:00Z)")
    return parsed


def _cli_timestamp(value: str) -> datetime:
    try:
        return parse_timestamp(value)
    except ValueError as e:
        raise argparse.ArgumentTypeError(str(e))


def find_default_config() -> Optional[str]:
    """
    Find configuration file using standard search paths.

    Search order:
    1. /etc/dhw-scheduler/dhw-scheduler.conf
    2. /run/dhw-scheduler/dhw-scheduler.conf
    3. /usr/lib/dhw-scheduler/dhw-scheduler.conf

    Returns:
        Path to first existing config file, or None if none found
    """
    for path in SEARCH_PATHS:
        if os.path.exists(path):
            logger.debug(f"Found configuration file: {path}")
            return path

    return None


def load_config(config_path: Optional[str] = None) -> Config:
    """
    Load configuration from an INI file.

    Every section and option is optional; missing values keep their
    defaults and numeric knobs are clamped to their accepted ranges.

    Args:
        config_path: Path to configuration INI file. If None, searches default locations.

    Returns:
        Config object with all settings

    Raises:
        ConfigurationError: If the file is missing or a value is invalid
    """
    if config_path is None:
        config_path = find_default_config()
        if config_path is None:
            raise ConfigurationError(
                "No configuration file found. Searched: " + ", ".join(SEARCH_PATHS)
            )

    if not os.path.exists(config_path):
        raise ConfigurationError(f"Configuration file not found: {config_path}")

    parser = configparser.ConfigParser(interpolation=None)
    try:
        parser.read(config_path)
    except configparser.Error as e:
        raise ConfigurationError(f"Invalid configuration: {e}")

    config = Config()

    try:
        if parser.has_option('prices', 'zone'):
            config.zone = ElprisClient.validate_zone(parser.get('prices', 'zone'))
        if parser.has_option('prices', 'timeout'):
            config.timeout = parser.getint('prices', 'timeout')

        if parser.has_section('schedule'):
            overrides: Dict[str, Any] = {}
            for f in fields(ScheduleSettings):
                if not parser.has_option('schedule', f.name):
                    continue
                if f.name == 'logic':
                    overrides['logic'] = parse_logic(parser.get('schedule', 'logic'))
                elif f.type in (int, 'int'):
                    overrides[f.name] = parser.getint('schedule', f.name)
                else:
                    overrides[f.name] = parser.getfloat('schedule', f.name)
            if parser.has_option('schedule', 'mode'):
                config.mode = parser.get('schedule', 'mode').strip().lower()
            config.schedule = replace(config.schedule, **overrides)

        if parser.has_section('flexible'):
            flexible_overrides = {
                f.name: parser.getint('flexible', f.name)
                for f in fields(FlexibleSettings)
                if parser.has_option('flexible', f.name)
            }
            config.flexible = replace(config.flexible, **flexible_overrides)

            if parser.has_option('flexible', 'comfort_early_percentile'):
                config.comfort_early_percentile = parser.getfloat('flexible', 'comfort_early_percentile')
            if parser.has_option('flexible', 'historical_lookback_days'):
                config.historical_lookback_days = parser.getint('flexible', 'historical_lookback_days')
            if parser.has_option('flexible', 'history_dir'):
                config.history_dir = parser.get('flexible', 'history_dir')
            if parser.has_option('flexible', 'state_file'):
                config.state_file = parser.get('flexible', 'state_file')

        if parser.has_option('logging', 'level'):
            config.logging_level = parser.get('logging', 'level').upper()

    except ValueError as e:
        raise ConfigurationError(f"Invalid configuration: {e}")

    if config.mode not in MODES:
        raise ConfigurationError(f"Invalid mode '{config.mode}' (expected one of {', '.join(MODES)})")

    config.schedule = config.schedule.clamped()
    config.flexible = clamp_settings(config.flexible, FLEXIBLE_RANGES)
    low, high = EARLY_PERCENTILE_RANGE
    if not low <= config.comfort_early_percentile <= high:
        clamped = max(low, min(high, config.comfort_early_percentile))
        logger.warning(
            f"comfort_early_percentile={config.comfort_early_percentile} is outside "
            f"[{low}, {high}], using {clamped}"
        )
        config.comfort_early_percentile = clamped
    if config.historical_lookback_days < 1:
        raise ConfigurationError("historical_lookback_days must be at least 1")

    return config


def apply_cli_overrides(config: Config, args: argparse.Namespace) -> None:
    """
    Apply command line argument overrides to configuration.

    Args:
        config: Configuration object to modify
        args: Parsed command line arguments
    """
    if args.mode is not None:
        config.mode = args.mode

    if args.zone is not None:
        logger.debug(f"Overriding price zone with: {args.zone}")
        config.zone = ElprisClient.validate_zone(args.zone)

    if args.logic is not None:
        config.schedule = replace(config.schedule, logic=parse_logic(args.logic))

    if args.comfort_at is not None:
        config.comfort_at = args.comfort_at

    if args.last_eco_run is not None:
        config.state = replace(config.state, last_eco_run_utc=args.last_eco_run)

    if args.last_comfort_run is not None:
        config.state = replace(config.state, last_comfort_run_utc=args.last_comfort_run)

    if args.next_comfort is not None:
        config.state = replace(config.state, next_scheduled_comfort_utc=args.next_comfort)

    if args.log_level is not None:
        config.logging_level = args.log_level.upper()


def configure_logging(level: str) -> None:
    """
    Configure logging level for all modules.

    Args:
        level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
    """
    level_map = {
        'DEBUG': logging.DEBUG,
        'INFO': logging.INFO,
        'WARNING': logging.WARNING,
        'ERROR': logging.ERROR,
        'CRITICAL': logging.CRITICAL,
    }

    log_level = level_map.get(level.upper(), logging.WARNING)

    logging.basicConfig(
        level=log_level,
        format='%(name)s - %(levelname)s - %(message)s',
        force=True,
    )

    for module in ('dhw_scheduler', 'classic', 'composer', 'elpris', 'flexible', 'historical', 'prices'):
        logging.getLogger(f'dhw_scheduler.{module}').setLevel(log_level)


def load_state(path: str) -> FlexibleScheduleState:
    """
    Read the flexible schedule state from a JSON file.

    A missing file means nothing has run yet.

    Raises:
        ConfigurationError: If the file exists but cannot be parsed
    """
    state_path = Path(path)
    if not state_path.exists():
        logger.debug(f"No state file at {path}, starting fresh")
        return FlexibleScheduleState()

    try:
        data = json.loads(state_path.read_text())
    except (OSError, ValueError) as e:
        raise ConfigurationError(f"Cannot read state file {path}: {e}")

    if not isinstance(data, dict):
        raise ConfigurationError(f"State file {path} must contain a JSON object")

    return FlexibleScheduleState(**{
        f.name: to_datetime(data.get(f.name)) for f in fields(FlexibleScheduleState)
    })


def save_state(path: str, state: FlexibleScheduleState) -> None:
    """Write the flexible schedule state as JSON."""
    data = {}
    for f in fields(FlexibleScheduleState):
        value = getattr(state, f.name)
        data[f.name] = value.isoformat() if value is not None else None
    Path(path).write_text(json.dumps(data, indent=2) + "\n")
    logger.debug(f"Saved flexible schedule state to {path}")


def snapshot_path(history_dir: str, day: date) -> Path:
    return Path(history_dir) / f"{day.isoformat()}.json"


def save_snapshot(history_dir: str, day: date, entries: Sequence[Dict[str, Any]]) -> None:
    """Store a day's raw price entries so later runs can use them as history."""
    if not entries:
        return
    path = snapshot_path(history_dir, day)
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps(list(entries)))
    logger.debug(f"Saved price snapshot {path}")


def load_history(history_dir: str, today: date, lookback_days: int) -> List[Decimal]:
    """
    Collect the prices of the `lookback_days` days before `today`.

    Days without a snapshot are skipped.
    """
    snapshots = []
    for offset in range(1, lookback_days + 1):
        path = snapshot_path(history_dir, today - timedelta(days=offset))
        if path.exists():
            snapshots.append(path.read_text())
    prices = collect_historical_prices(snapshots)
    logger.debug(f"Loaded {len(prices)} historical prices from {len(snapshots)} snapshots")
    return prices


def print_price_graph(prices: List[PricePoint]) -> None:
    """
    Print a text-based graph of hourly prices.

    Args:
        prices: List of price points to graph
    """
    if not prices:
        return

    values = [float(p.price) for p in prices]
    min_price = min(values)
    max_price = max(values)
    price_range = max_price - min_price

    graph_height = 12
    sampled = prices[:48]

    print("\n" + "=" * 70)
    print("  PRICE FLUCTUATION (SEK/kWh)")
    print("=" * 70)
    print()

    def level(point: PricePoint) -> float:
        if price_range > 0:
            return (float(point.price) - min_price) / price_range * graph_height
        return graph_height / 2

    for row in range(graph_height, -1, -1):
        row_price = min_price + (price_range * row / graph_height) if price_range > 0 else min_price
        marks = "".join("*" if abs(level(p) - row) < 0.5 else " " for p in sampled)

        if marks.strip() or row == graph_height or row == 0:
            print(f"  {row_price:6.2f} |{marks}")
        else:
            print(f"         |{marks}")

    print("         +" + "-" * len(sampled))

    print("          ", end="")
    for i, point in enumerate(sampled):
        if i % 6 == 0:
            hour = point.start.astimezone().strftime("%H:%M")
            print(hour, end=" " * (6 - len(hour)))
    print("\n")


def print_schedule(artifact: Optional[Dict[str, Any]], message: str) -> None:
    print("\n" + "=" * 70)
    print(f"  {message.upper()}")
    print("=" * 70)
    print()
    if artifact is not None:
        print(serialize_schedule(artifact, indent=2))
    print()


def run_classic(config: Config, today: List[Dict[str, Any]], tomorrow: List[Dict[str, Any]], now: datetime) -> int:
    """
    Generate and print a classic schedule.

    Returns:
        Exit code (0 for success, 1 if no schedule could be generated)
    """
    settings = config.schedule
    artifact, message = generate_schedule(
        today,
        tomorrow,
        comfort_hours=settings.comfort_hours,
        turn_off_percentile=settings.turn_off_percentile,
        turn_off_max_consecutive=settings.turn_off_max_consecutive,
        activation_limit=settings.activation_limit,
        spike_delta_pct=settings.turn_off_spike_delta_pct,
        neighbor_window=settings.turn_off_neighbor_window,
        next_hour_max_increase_pct=settings.comfort_next_hour_max_increase_pct,
        now=now,
        logic=settings.logic,
        max_comfort_gap_hours=settings.max_comfort_gap_hours,
    )

    print_schedule(artifact, message)
    if artifact is None:
        print("❌ ERROR: No usable prices, nothing scheduled")
        return 1
    return 0


def run_flexible(config: Config, today: List[Dict[str, Any]], tomorrow: List[Dict[str, Any]], now: datetime) -> int:
    """
    Plan the next eco and comfort runs and print the combined schedule.

    The updated state is written back to the state file when one is
    configured, otherwise it is printed so the caller can keep it.

    Returns:
        Exit code (0 for success, 1 on error)
    """
    state = config.state
    if config.state_file:
        try:
            stored = load_state(config.state_file)
        except ConfigurationError as e:
            logger.error(str(e))
            return 1
        # Values given on the command line win over the stored ones
        state = FlexibleScheduleState(
            last_eco_run_utc=state.last_eco_run_utc or stored.last_eco_run_utc,
            last_comfort_run_utc=state.last_comfort_run_utc or stored.last_comfort_run_utc,
            next_scheduled_comfort_utc=state.next_scheduled_comfort_utc or stored.next_scheduled_comfort_utc,
        )

    history: List[Decimal] = []
    if config.history_dir:
        history = load_history(config.history_dir, now.date(), config.historical_lookback_days)
    stats = get_historical_stats(history, config.comfort_early_percentile)

    eco, comfort, new_state = plan_flexible(today, tomorrow, state, config.flexible, stats, now)

    print("\n" + "=" * 70)
    print("  FLEXIBLE DECISIONS")
    print("=" * 70)
    print(f"\n  Eco:      {eco.state.value:<18} {eco.message}")
    print(f"  Comfort:  {comfort.state.value:<18} {comfort.message}")
    print(f"  Progress: {comfort.window_progress:.0%}")
    if comfort.effective_threshold is not None:
        print(f"  Threshold: {comfort.effective_threshold:.4f} SEK/kWh")

    artifact, message = compose_flexible_schedule(eco, comfort, now)
    print_schedule(artifact, message)

    if config.state_file:
        save_state(config.state_file, new_state)
    else:
        print("  State:")
        for f in fields(FlexibleScheduleState):
            value = getattr(new_state, f.name)
            print(f"    {f.name}: {value.isoformat() if value else '-'}")
        print()
    return 0


def run_manual(config: Config) -> int:
    """
    Print a schedule for a one-off comfort run at `config.comfort_at`.

    Returns:
        Exit code (0 for success, 1 if no time was given)
    """
    if config.comfort_at is None:
        logger.error("Manual mode requires --comfort-at")
        return 1

    artifact = compose_manual_comfort_schedule(config.comfort_at)
    print_schedule(artifact, f"Manual comfort at {config.comfort_at.isoformat()}")
    return 0


def run_once(config: Config, now: Optional[datetime] = None) -> int:
    """
    Run one scheduling pass in the configured mode.

    Args:
        config: Application configuration
        now: Current time (default: local now)

    Returns:
        Exit code (0 for success, 1 for error)
    """
    if config.mode == 'manual':
        return run_manual(config)

    now = now or datetime.now().astimezone()

    with ElprisClient(timeout=config.timeout) as client:
        try:
            print(f"📊 Fetching {config.zone} prices for {now.date().isoformat()} and the day after...")
            today, tomorrow = client.get_today_tomorrow(config.zone, now)
        except ElprisAPIError as e:
            print(f"\n❌ ERROR: {e}")
            return 1

    print(f"   ✓ Retrieved {len(today)} entries for today, {len(tomorrow)} for tomorrow")

    if config.history_dir:
        save_snapshot(config.history_dir, now.date(), today)
        save_snapshot(config.history_dir, now.date() + timedelta(days=1), tomorrow)

    print_price_graph([p for p in parse_hourly_prices(today, tomorrow) if p.start >= now - timedelta(hours=1)])

    if config.mode == 'flexible':
        return run_flexible(config, today, tomorrow, now)
    return run_classic(config, today, tomorrow, now)


def create_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description='Hot water scheduler - plans domestic hot water heating from spot prices'
    )
    parser.add_argument(
        '--config',
        type=str,
        default=None,
        help='Path to configuration file (default: searches /etc, /run, /usr/lib)'
    )
    parser.add_argument(
        '--mode',
        type=str,
        default=None,
        choices=MODES,
        help='Scheduling mode (default: classic)'
    )
    parser.add_argument(
        '--zone',
        type=str,
        default=None,
        help='Price zone SE1-SE4 (overrides config file)'
    )
    parser.add_argument(
        '--logic',
        type=str,
        default=None,
        choices=[l.value for l in LogicType],
        help='Classic scheduling logic (default: per_day_original)'
    )
    parser.add_argument(
        '--comfort-at',
        type=_cli_timestamp,
        default=None,
        help='Comfort run time for manual mode, ISO 8601 (e.g., "2026-02-20T23:00:00+01:00")'
    )
    parser.add_argument(
        '--last-eco-run',
        type=_cli_timestamp,
        default=None,
        help='Time of the last eco run, ISO 8601 (flexible mode)'
    )
    parser.add_argument(
        '--last-comfort-run',
        type=_cli_timestamp,
        default=None,
        help='Time of the last comfort run, ISO 8601 (flexible mode)'
    )
    parser.add_argument(
        '--next-comfort',
        type=_cli_timestamp,
        default=None,
        help='Already booked comfort run, ISO 8601 (flexible mode)'
    )
    parser.add_argument(
        '--log-level',
        type=str,
        default=None,
        choices=['DEBUG', 'INFO', 'WARNING', 'ERROR', 'CRITICAL'],
        help='Logging level (default: WARNING)'
    )
    return parser


def main(argv: Optional[Sequence[str]] = None) -> int:
    """
    Command line entry point.

    Returns:
        Exit code (0 for success, 1 for error)
    """
    args = create_parser().parse_args(argv)

    try:
        if args.config is None and find_default_config() is None:
            # No config file anywhere: run on defaults
            config = Config()
        else:
            config = load_config(args.config)
        apply_cli_overrides(config, args)
    except (ConfigurationError, ValueError) as e:
        configure_logging(args.log_level or 'WARNING')
        logger.error(f"Configuration error: {e}")
        return 1

    configure_logging(config.logging_level)
    logger.debug("Configuration loaded successfully")

    return run_once(config)


if __name__ == "__main__":
    exit(main())
