#SPDX-License-Identifier: MPL-2.0
"""
Unit tests for the hourly price series module.
"""

from datetime import datetime, timedelta, timezone
from decimal import Decimal

from dhw_scheduler.prices import (
    PricePoint,
    cheapest,
    parse_hourly_prices,
    parse_price_entry,
    to_datetime,
    to_decimal,
)

UTC = timezone.utc


def entry(start, value):
    return {'start': start, 'value': value}


class TestToDatetime:
    """Test cases for timestamp parsing."""

    def test_zulu_suffix(self) -> None:
        """Test that a trailing Z is read as UTC."""
        assert to_datetime('2026-02-20T10:00:00Z') == datetime(2026, 2, 20, 10, tzinfo=UTC)

    def test_offset_is_kept(self) -> None:
        """Test that an explicit offset is preserved."""
        parsed = to_datetime('2026-02-20T10:00:00+01:00')
        assert parsed.utcoffset() == timedelta(hours=1)
        assert parsed == datetime(2026, 2, 20, 9, tzinfo=UTC)

    def test_naive_is_utc(self) -> None:
        """Test that naive timestamps and datetimes are taken as UTC."""
        assert to_datetime('2026-02-20T10:00:00').tzinfo == UTC
        assert to_datetime(datetime(2026, 2, 20, 10)).tzinfo == UTC

    def test_invalid_values(self) -> None:
        """Test that garbage yields None instead of raising."""
        assert to_datetime('not a date') is None
        assert to_datetime('') is None
        assert to_datetime(None) is None
        assert to_datetime(12345) is None


class TestToDecimal:
    """Test cases for price parsing."""

    def test_strings_and_numbers(self) -> None:
        assert to_decimal('0.42') == Decimal('0.42')
        assert to_decimal(3) == Decimal(3)
        assert to_decimal(0.1) == Decimal('0.1')

    def test_rejected_values(self) -> None:
        """Test that non-numeric and non-finite values are rejected."""
        assert to_decimal(None) is None
        assert to_decimal(True) is None
        assert to_decimal('abc') is None
        assert to_decimal('NaN') is None
        assert to_decimal('Infinity') is None


class TestParsePriceEntry:
    """Test cases for single entry parsing."""

    def test_valid_entry(self) -> None:
        assert parse_price_entry(entry('2026-02-20T10:00:00Z', '1.5')) == (
            datetime(2026, 2, 20, 10, tzinfo=UTC), Decimal('1.5')
        )

    def test_missing_fields(self) -> None:
        assert parse_price_entry({'start': '2026-02-20T10:00:00Z'}) is None
        assert parse_price_entry({'value': '1.5'}) is None
        assert parse_price_entry(None) is None
        assert parse_price_entry('2026-02-20T10:00:00Z') is None


class TestParseHourlyPrices:
    """Test cases for merging the today and tomorrow feeds."""

    def test_tomorrow_wins_on_overlap(self) -> None:
        """Test that overlapping hours take tomorrow's values."""
        today = [
            entry('2026-02-20T22:00:00Z', '1.0'),
            entry('2026-02-20T23:00:00Z', '2.0'),
        ]
        tomorrow = [
            entry('2026-02-20T22:00:00Z', '5.0'),
            entry('2026-02-20T23:00:00Z', '6.0'),
            entry('2026-02-21T00:00:00Z', '7.0'),
            entry('2026-02-21T01:00:00Z', '8.0'),
        ]

        points = parse_hourly_prices(today, tomorrow)

        assert [p.price for p in points] == [Decimal('5.0'), Decimal('6.0'), Decimal('7.0'), Decimal('8.0')]
        assert [p.start.hour for p in points] == [22, 23, 0, 1]
        assert all(a.start < b.start for a, b in zip(points, points[1:]))

    def test_empty_inputs(self) -> None:
        """Test that missing feeds give an empty series."""
        assert parse_hourly_prices(None, None) == []
        assert parse_hourly_prices([], []) == []

    def test_invalid_entries_dropped(self) -> None:
        """Test that bad entries are skipped without aborting."""
        today = [
            entry('garbage', '1.0'),
            entry('2026-02-20T01:00:00Z', 'n/a'),
            {'start': '2026-02-20T02:00:00Z'},
            None,
            entry('2026-02-20T03:00:00Z', '0.75'),
        ]

        points = parse_hourly_prices(today, None)

        assert points == [PricePoint(datetime(2026, 2, 20, 3, tzinfo=UTC), Decimal('0.75'))]

    def test_all_invalid(self) -> None:
        assert parse_hourly_prices([entry('x', 'y')], [entry(None, None)]) == []

    def test_truncates_to_hour(self) -> None:
        points = parse_hourly_prices([entry('2026-02-20T10:00:00Z', '1')], None)
        assert points[0].start.minute == 0

    def test_quarter_hours_are_averaged(self) -> None:
        """Test that 15-minute entries collapse into one hourly average."""
        today = [
            entry('2026-02-20T00:00:00Z', '1'),
            entry('2026-02-20T00:15:00Z', '2'),
            entry('2026-02-20T00:30:00Z', '3'),
            entry('2026-02-20T00:45:00Z', '4'),
            entry('2026-02-20T01:00:00Z', '9'),
        ]

        points = parse_hourly_prices(today, None)

        assert len(points) == 2
        assert points[0].start == datetime(2026, 2, 20, 0, tzinfo=UTC)
        assert points[0].price == Decimal('2.5')
        assert points[1].price == Decimal('9')

    def test_same_instant_different_offsets(self) -> None:
        """Test that one instant written with two offsets is a single hour."""
        today = [entry('2026-02-20T10:00:00+01:00', '1')]
        tomorrow = [entry('2026-02-20T09:00:00Z', '2')]

        points = parse_hourly_prices(today, tomorrow)

        assert len(points) == 1
        assert points[0].price == Decimal('2')


class TestCheapest:
    """Test cases for the cheapest point selection."""

    def test_earliest_wins_ties(self) -> None:
        points = [
            PricePoint(datetime(2026, 2, 20, 10, tzinfo=UTC), Decimal('0.5')),
            PricePoint(datetime(2026, 2, 20, 8, tzinfo=UTC), Decimal('0.5')),
            PricePoint(datetime(2026, 2, 20, 9, tzinfo=UTC), Decimal('0.7')),
        ]
        assert cheapest(points).start.hour == 8

    def test_empty(self) -> None:
        assert cheapest([]) is None

    def test_repr(self) -> None:
        point = PricePoint(datetime(2026, 2, 20, 10, tzinfo=UTC), Decimal('0.5'))
        assert '2026-02-20T10:00:00+00:00' in repr(point)
        assert '0.5' in repr(point)
