# SPDX-License-Identifier: MPL-2.0
"""
Elpriset Just Nu API Client Module

This module fetches Swedish day-ahead spot prices from the public
elprisetjustnu.se API and hands them over as raw {"start", "value"} entries
ready for the price series normalizer.
"""

import logging
from datetime import date, datetime, timedelta
from typing import Any, Dict, List, Optional, Tuple

import requests

logger = logging.getLogger(__name__)

VALID_ZONES = ("SE1", "SE2", "SE3", "SE4")


class ElprisAPIError(Exception):
    """Custom exception for price API client errors."""
    pass


class ElprisClient:
    """
    Client for the elprisetjustnu.se day-ahead price API.

    Attributes:
        base_url (str): The base URL of the price API
        timeout (int): Request timeout in seconds
        session (requests.Session): HTTP session for connection pooling
    """

    BASE_URL = "https://www.elprisetjustnu.se/api/v1/prices"

    def __init__(self, timeout: int = 30):
        """
        Initialize the price API client.

        Args:
            timeout: Request timeout in seconds (default: 30)
        """
        self.base_url = self.BASE_URL
        self.timeout = timeout
        self.session = requests.Session()

    @staticmethod
    def validate_zone(zone: str) -> str:
        """
        Normalize and check a bidding zone name.

        Raises:
            ValueError: If the zone is not one of SE1-SE4
        """
        normalized = zone.strip().upper()
        if normalized not in VALID_ZONES:
            raise ValueError(f"Invalid price zone: {zone} (expected one of {', '.join(VALID_ZONES)})")
        return normalized

    def build_url(self, day: date, zone: str) -> str:
        """Build the URL of the price file for one day and zone."""
        return f"{self.base_url}/{day:%Y}/{day:%m-%d}_{self.validate_zone(zone)}.json"

    def get_daily_prices(self, day: date, zone: str) -> List[Dict[str, Any]]:
        """
        Fetch the prices of one day.

        Args:
            day: Delivery day
            zone: Bidding zone (SE1-SE4)

        Returns:
            List of {"start": ISO timestamp, "value": SEK/kWh} entries

        Raises:
            ElprisAPIError: If the request fails or the response is malformed
            ValueError: If the zone is invalid
        """
        url = self.build_url(day, zone)

        try:
            logger.debug(f"Fetching prices from {url}")
            response = self.session.get(url, timeout=self.timeout)
            response.raise_for_status()

            data = response.json()
            if not isinstance(data, list):
                raise ValueError("expected a JSON array")

            entries = [
                {'start': item['time_start'], 'value': item['SEK_per_kWh']}
                for item in data
            ]
            logger.debug(f"Successfully retrieved {len(entries)} price entries for {day.isoformat()}")
            return entries

        except requests.exceptions.Timeout:
            error_msg = f"Request to {url} timed out after {self.timeout} seconds"
            logger.error(error_msg)
            raise ElprisAPIError(error_msg)

        except requests.exceptions.HTTPError as e:
            error_msg = f"HTTP error occurred: {e.response.status_code} - {e.response.text}"
            logger.error(error_msg)
            raise ElprisAPIError(error_msg)

        except requests.exceptions.RequestException as e:
            error_msg = f"Request failed: {str(e)}"
            logger.error(error_msg)
            raise ElprisAPIError(error_msg)

        except (ValueError, KeyError, TypeError) as e:
            error_msg = f"Invalid JSON response: {str(e)}"
            logger.error(error_msg)
            raise ElprisAPIError(error_msg)

    def get_today_tomorrow(
        self,
        zone: str,
        now: Optional[datetime] = None
    ) -> Tuple[List[Dict[str, Any]], List[Dict[str, Any]]]:
        """
        Fetch today's and tomorrow's prices.

        Tomorrow's prices are published around midday, so a failure to fetch
        them yields an empty list rather than an error.

        Args:
            zone: Bidding zone (SE1-SE4)
            now: Reference time; its date is "today" (default: local now)

        Returns:
            Tuple of (today entries, tomorrow entries)

        Raises:
            ElprisAPIError: If today's prices cannot be fetched
        """
        today = (now or datetime.now().astimezone()).date()
        today_entries = self.get_daily_prices(today, zone)

        try:
            tomorrow_entries = self.get_daily_prices(today + timedelta(days=1), zone)
        except ElprisAPIError as e:
            logger.info(f"Tomorrow's prices not available yet: {e}")
            tomorrow_entries = []

        return today_entries, tomorrow_entries

    def close(self) -> None:
        """Close the HTTP session."""
        self.session.close()
        logger.debug("Price API client session closed")

    def __enter__(self) -> 'ElprisClient':
        """Context manager entry."""
        return self

    def __exit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        """Context manager exit."""
        self.close()
