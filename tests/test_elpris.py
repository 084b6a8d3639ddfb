#SPDX-License-Identifier: MPL-2.0
"""
Unit tests for the price API client module.

ALL TESTS RUN COMPLETELY OFFLINE - No real network requests are ever made.
Response data is loaded from fixture files in tests/fixtures/elpris/
"""

import json
import os
import socket
from datetime import date, datetime, timedelta, timezone
from decimal import Decimal
from unittest.mock import Mock, patch

import pytest
import requests

from dhw_scheduler.elpris import ElprisAPIError, ElprisClient
from dhw_scheduler.prices import parse_hourly_prices


def load_fixture(filename):
    """
    Load a JSON fixture file from the fixtures directory.

    Args:
        filename: Name of fixture file (e.g., 'SE3_2026-02-20.json')

    Returns:
        Parsed JSON data
    """
    fixtures_dir = os.path.join(os.path.dirname(__file__), 'fixtures', 'elpris')
    with open(os.path.join(fixtures_dir, filename), 'r') as f:
        return json.load(f)


@pytest.fixture(autouse=True)
def block_network_access(monkeypatch):
    """
    Pytest fixture that runs for ALL tests and prevents any real network access.

    If any code tries to open a socket or resolve a hostname, it will raise
    a RuntimeError.
    """
    def guard(*args, **kwargs):
        raise RuntimeError(
            "Network access is blocked in tests! "
            "All HTTP requests must be mocked."
        )

    monkeypatch.setattr(socket, 'socket', guard)
    monkeypatch.setattr(socket, 'getaddrinfo', guard)


@pytest.fixture
def client():
    """Fixture providing an ElprisClient instance."""
    return ElprisClient()


def ok_response(data):
    response = Mock()
    response.status_code = 200
    response.json.return_value = data
    return response


def error_response(status, text):
    response = Mock()
    response.status_code = status
    response.text = text
    response.raise_for_status.side_effect = requests.exceptions.HTTPError(response=response)
    return response


class TestElprisClientInitialization:
    """Test cases for client setup."""

    def test_init_default(self, client) -> None:
        assert client.base_url == "https://www.elprisetjustnu.se/api/v1/prices"
        assert client.timeout == 30
        assert isinstance(client.session, requests.Session)

    def test_init_custom_timeout(self) -> None:
        assert ElprisClient(timeout=5).timeout == 5

    def test_context_manager_closes_session(self) -> None:
        with patch.object(requests.Session, 'close') as mock_close:
            with ElprisClient() as client:
                assert isinstance(client, ElprisClient)
            mock_close.assert_called_once()


class TestZonesAndUrls:
    """Test cases for zone validation and URL building."""

    def test_validate_zone(self) -> None:
        assert ElprisClient.validate_zone(' se3 ') == 'SE3'

    @pytest.mark.parametrize('zone', ['SE5', 'NO1', ''])
    def test_invalid_zone(self, zone) -> None:
        with pytest.raises(ValueError):
            ElprisClient.validate_zone(zone)

    def test_build_url(self, client) -> None:
        assert client.build_url(date(2026, 2, 5), 'se4') == (
            "https://www.elprisetjustnu.se/api/v1/prices/2026/02-05_SE4.json"
        )


class TestGetDailyPrices:
    """Test cases for fetching one day."""

    @patch('dhw_scheduler.elpris.requests.Session.get')
    def test_success(self, mock_get, client) -> None:
        mock_get.return_value = ok_response(load_fixture('SE3_2026-02-20.json'))

        entries = client.get_daily_prices(date(2026, 2, 20), 'SE3')

        assert len(entries) == 24
        assert entries[0] == {'start': '2026-02-20T00:00:00+01:00', 'value': 0.41235}
        mock_get.assert_called_once_with(
            "https://www.elprisetjustnu.se/api/v1/prices/2026/02-20_SE3.json",
            timeout=30
        )

    @patch('dhw_scheduler.elpris.requests.Session.get')
    def test_entries_feed_the_normalizer(self, mock_get, client) -> None:
        mock_get.return_value = ok_response(load_fixture('SE3_2026-02-20.json'))

        points = parse_hourly_prices(client.get_daily_prices(date(2026, 2, 20), 'SE3'), None)

        assert len(points) == 24
        assert points[0].start == datetime(2026, 2, 19, 23, tzinfo=timezone.utc)
        assert points[0].price == Decimal('0.41235')
        assert max(points, key=lambda p: p.price).start.astimezone(timezone(timedelta(hours=1))).hour == 17

    @patch('dhw_scheduler.elpris.requests.Session.get')
    def test_quarter_hour_data(self, mock_get, client) -> None:
        mock_get.return_value = ok_response(load_fixture('quarter_hourly.json'))

        points = parse_hourly_prices(client.get_daily_prices(date(2026, 2, 20), 'SE3'), None)

        assert [p.price for p in points] == [Decimal('0.5'), Decimal('0.3')]

    @patch('dhw_scheduler.elpris.requests.Session.get')
    def test_timeout(self, mock_get, client) -> None:
        mock_get.side_effect = requests.exceptions.Timeout()

        with pytest.raises(ElprisAPIError) as exc_info:
            client.get_daily_prices(date(2026, 2, 20), 'SE3')

        assert 'timed out after 30 seconds' in str(exc_info.value)

    @patch('dhw_scheduler.elpris.requests.Session.get')
    def test_http_404(self, mock_get, client) -> None:
        """Test handling of a day that has not been published yet."""
        mock_get.return_value = error_response(404, "Not Found")

        with pytest.raises(ElprisAPIError) as exc_info:
            client.get_daily_prices(date(2026, 2, 21), 'SE3')

        assert '404' in str(exc_info.value)

    @patch('dhw_scheduler.elpris.requests.Session.get')
    def test_connection_error(self, mock_get, client) -> None:
        mock_get.side_effect = requests.exceptions.ConnectionError("Connection refused")

        with pytest.raises(ElprisAPIError) as exc_info:
            client.get_daily_prices(date(2026, 2, 20), 'SE3')

        assert 'Request failed' in str(exc_info.value)

    @patch('dhw_scheduler.elpris.requests.Session.get')
    def test_invalid_json(self, mock_get, client) -> None:
        response = ok_response(None)
        response.json.side_effect = ValueError("Expecting value")
        mock_get.return_value = response

        with pytest.raises(ElprisAPIError) as exc_info:
            client.get_daily_prices(date(2026, 2, 20), 'SE3')

        assert 'Invalid JSON response' in str(exc_info.value)

    @pytest.mark.parametrize('payload', [{'error': 'nope'}, [{'SEK_per_kWh': 1.0}]])
    @patch('dhw_scheduler.elpris.requests.Session.get')
    def test_unexpected_shape(self, mock_get, payload, client) -> None:
        mock_get.return_value = ok_response(payload)

        with pytest.raises(ElprisAPIError):
            client.get_daily_prices(date(2026, 2, 20), 'SE3')


class TestGetTodayTomorrow:
    """Test cases for fetching both days."""

    @patch('dhw_scheduler.elpris.requests.Session.get')
    def test_both_days(self, mock_get, client) -> None:
        data = load_fixture('SE3_2026-02-20.json')
        mock_get.side_effect = [ok_response(data), ok_response(data[:2])]

        today, tomorrow = client.get_today_tomorrow('SE3', datetime(2026, 2, 20, 14, tzinfo=timezone.utc))

        assert len(today) == 24
        assert len(tomorrow) == 2
        urls = [call.args[0] for call in mock_get.call_args_list]
        assert urls[0].endswith('/2026/02-20_SE3.json')
        assert urls[1].endswith('/2026/02-21_SE3.json')

    @patch('dhw_scheduler.elpris.requests.Session.get')
    def test_tomorrow_not_published(self, mock_get, client) -> None:
        mock_get.side_effect = [
            ok_response(load_fixture('SE3_2026-02-20.json')),
            error_response(404, "Not Found"),
        ]

        today, tomorrow = client.get_today_tomorrow('SE3', datetime(2026, 2, 20, 9, tzinfo=timezone.utc))

        assert len(today) == 24
        assert tomorrow == []

    @patch('dhw_scheduler.elpris.requests.Session.get')
    def test_today_failure_raises(self, mock_get, client) -> None:
        mock_get.side_effect = requests.exceptions.Timeout()

        with pytest.raises(ElprisAPIError):
            client.get_today_tomorrow('SE3', datetime(2026, 2, 20, 9, tzinfo=timezone.utc))
