"""
Unit tests for the exchange rate provider and refresher.

Tests HTTP error handling, fallback behavior and refresh coalescing.
"""

import asyncio
import threading
import time
from datetime import datetime
from decimal import Decimal
from unittest.mock import Mock

import pytest
import requests

from hotel_pricing.clients.exchange_rates import (
    ExchangeRateProvider,
    RateRefresher,
    TaskState,
)
from hotel_pricing.core.currency import FALLBACK_SNAPSHOT
from hotel_pricing.core.errors import RateUnavailable


def make_session(payload=None, error=None):
    """Create a mock requests session returning payload."""
    session = Mock()
    if error is not None:
        session.get.side_effect = error
    else:
        response = Mock()
        response.json.return_value = payload
        session.get.return_value = response
    return session


class CountingProvider:
    """Provider stub that records how often it was called."""

    def __init__(self, rates=None, delay=0.0, error=None):
        self.rates = rates if rates is not None else {"USD": 1.08, "GBP": 0.84}
        self.delay = delay
        self.error = error
        self.calls = 0
        self._lock = threading.Lock()

    def get_latest_rates(self, base_currency="EUR"):
        with self._lock:
            self.calls += 1
        time.sleep(self.delay)
        if self.error is not None:
            raise self.error
        return {"rates": self.rates, "fetched_at": datetime(2025, 5, 1, 12, 0)}


class TestExchangeRateProvider:
    """Test the HTTP provider."""

    def test_get_latest_rates(self):
        """Test a successful rate fetch."""
        session = make_session({"base": "EUR", "rates": {"USD": 1.08}})
        provider = ExchangeRateProvider("https://rates.example.com/{base}", timeout=3, session=session)

        result = provider.get_latest_rates("EUR")

        assert result["rates"] == {"USD": 1.08}
        assert isinstance(result["fetched_at"], datetime)
        session.get.assert_called_once_with("https://rates.example.com/EUR", timeout=3)

    def test_network_error(self):
        """Test that request failures become RateUnavailable."""
        session = make_session(error=requests.ConnectionError("connection refused"))
        provider = ExchangeRateProvider(session=session)

        with pytest.raises(RateUnavailable, match="request failed"):
            provider.get_latest_rates()

    def test_http_error(self):
        """Test that HTTP error statuses become RateUnavailable."""
        session = make_session({"rates": {}})
        session.get.return_value.raise_for_status.side_effect = requests.HTTPError("503")
        provider = ExchangeRateProvider(session=session)

        with pytest.raises(RateUnavailable):
            provider.get_latest_rates()

    def test_invalid_json(self):
        """Test that a non-JSON body becomes RateUnavailable."""
        session = make_session()
        session.get.return_value.json.side_effect = ValueError("No JSON")
        provider = ExchangeRateProvider(session=session)

        with pytest.raises(RateUnavailable, match="not JSON"):
            provider.get_latest_rates()

    @pytest.mark.parametrize("payload", [
        {"base": "EUR"},
        {"base": "EUR", "rates": {}},
        {"base": "USD", "rates": {"EUR": 0.92}},
        ["not", "a", "dict"],
    ])
    def test_malformed_payload(self, payload):
        """Test that unusable payloads become RateUnavailable."""
        provider = ExchangeRateProvider(session=make_session(payload))
        with pytest.raises(RateUnavailable):
            provider.get_latest_rates()


class TestRateRefresher:
    """Test coalesced refresh with fallback."""

    def test_snapshot_before_refresh_is_fallback(self):
        """Test that an unrefreshed refresher serves the fallback table."""
        refresher = RateRefresher(CountingProvider())
        assert refresher.snapshot is FALLBACK_SNAPSHOT

    def test_successful_refresh(self):
        """Test that a refresh produces and caches a live snapshot."""
        provider = CountingProvider()
        refresher = RateRefresher(provider)
        events = []
        refresher.add_listener(events.append)

        snapshot = asyncio.run(refresher.refresh())

        assert snapshot.is_fallback is False
        assert snapshot.rates == {"USD": Decimal("1.08"), "GBP": Decimal("0.84")}
        assert refresher.snapshot is snapshot
        assert [e.state for e in events] == [TaskState.STARTED, TaskState.PROGRESS, TaskState.COMPLETED]
        assert all(e.task == "exchange_rate_refresh" for e in events)

    def test_concurrent_refreshes_share_one_fetch(self):
        """Test that callers during an in-flight fetch share its result."""
        provider = CountingProvider(delay=0.1)
        refresher = RateRefresher(provider)

        async def refresh_many():
            return await asyncio.gather(*(refresher.refresh() for _ in range(5)))

        results = asyncio.run(refresh_many())

        assert provider.calls == 1
        assert all(result is results[0] for result in results)

    def test_sequential_refreshes_fetch_again(self):
        """Test that a finished refresh does not block the next cycle."""
        provider = CountingProvider()
        refresher = RateRefresher(provider)

        async def refresh_twice():
            await refresher.refresh()
            await refresher.refresh()

        asyncio.run(refresh_twice())
        assert provider.calls == 2

    def test_error_resolves_to_fallback(self):
        """Test that a provider error never reaches the caller."""
        provider = CountingProvider(error=RateUnavailable("service down"))
        refresher = RateRefresher(provider)
        events = []
        refresher.add_listener(events.append)

        snapshot = asyncio.run(refresher.refresh())

        assert snapshot is FALLBACK_SNAPSHOT
        assert [e.state for e in events] == [TaskState.STARTED, TaskState.FAILED]
        assert events[-1].detail == "service down"

    def test_timeout_resolves_to_fallback(self):
        """Test that a slow provider is abandoned after the timeout."""
        provider = CountingProvider(delay=0.5)
        refresher = RateRefresher(provider, timeout=0.05)

        snapshot = asyncio.run(refresher.refresh())

        assert snapshot is FALLBACK_SNAPSHOT
        assert snapshot.is_fallback is True

    def test_no_usable_rates_resolves_to_fallback(self):
        """Test that a response without valid rates uses the fallback."""
        provider = CountingProvider(rates={"USD": 0, "GBP": -1})
        refresher = RateRefresher(provider)

        assert asyncio.run(refresher.refresh()) is FALLBACK_SNAPSHOT

    def test_unexpected_provider_error_resolves_to_fallback(self):
        """Test that errors outside RateUnavailable also use the fallback."""
        provider = CountingProvider(error=ConnectionError("socket closed"))
        refresher = RateRefresher(provider)
        events = []
        refresher.add_listener(events.append)

        snapshot = asyncio.run(refresher.refresh())

        assert snapshot is FALLBACK_SNAPSHOT
        assert [e.state for e in events] == [TaskState.STARTED, TaskState.FAILED]
        assert events[-1].detail == "socket closed"

    def test_incomplete_response_resolves_to_fallback(self):
        """Test that a provider result without rates uses the fallback."""
        provider = CountingProvider()
        provider.get_latest_rates = lambda base_currency="EUR": {}
        refresher = RateRefresher(provider)

        assert asyncio.run(refresher.refresh()) is FALLBACK_SNAPSHOT
