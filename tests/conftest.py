"""Shared fixtures for the monitor test suite."""

from datetime import date
from unittest.mock import MagicMock

import pytest

from monitor import Config, ThresholdOverride


def api_payload(days: dict) -> dict:
    """Wrap {"MM/DD/YYYY": {code: entry}} the way the availability API does."""
    return {"availability": days}


def hotel(min_price, max_price=None, status="OPEN") -> dict:
    return {
        "status": status,
        "min": min_price,
        "max": min_price if max_price is None else max_price,
    }


def http_response(body: bytes) -> MagicMock:
    """A urlopen() return value usable as a context manager."""
    cm = MagicMock()
    cm.__enter__.return_value.read.return_value = body
    return cm


@pytest.fixture
def cfg() -> Config:
    return Config(
        start_date=date(2025, 6, 28),
        end_date=date(2025, 7, 1),
        price_threshold=225,
        excluded_codes=frozenset({"YLMH", "YLRL"}),
        excluded_suffixes=frozenset({":RV"}),
        threshold_overrides=(ThresholdOverride("YLRL", date(2025, 6, 29), 200),),
        webhook_url="https://discord.example/api/webhooks/1/abc",
    )
