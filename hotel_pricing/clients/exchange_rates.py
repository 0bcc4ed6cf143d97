"""
Exchange rate provider and coalescing refresher.

The refresher shares one in-flight fetch between concurrent callers and
resolves to the fallback snapshot on timeout or error, so a refresh never
fails from the caller's point of view.
"""

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

import requests

from ..core.currency import BASE_CURRENCY, FALLBACK_SNAPSHOT, ExchangeRateSnapshot, make_snapshot
from ..core.errors import RateUnavailable

logger = logging.getLogger(__name__)

DEFAULT_PROVIDER_URL = "https://api.exchangerate-api.com/v4/latest/{base}"


class TaskState(Enum):
    """Lifecycle states of an asynchronous operation."""
    STARTED = "started"
    PROGRESS = "progress"
    COMPLETED = "completed"
    FAILED = "failed"


@dataclass(frozen=True)
class TaskEvent:
    """State change emitted by a running asynchronous operation."""
    task: str
    state: TaskState
    detail: str = ""


TaskListener = Callable[[TaskEvent], None]


class ExchangeRateProvider:
    """HTTP client for the latest EUR-based exchange rates."""

    def __init__(self, url_template: str = DEFAULT_PROVIDER_URL, timeout: float = 5.0,
                 session: Optional[requests.Session] = None):
        """Initialize the provider.

        Args:
            url_template: Endpoint URL with a {base} placeholder
            timeout: Request timeout in seconds
            session: Optional requests session to reuse connections
        """
        self.url_template = url_template
        self.timeout = timeout
        self.session = session or requests.Session()

    def get_latest_rates(self, base_currency: str = BASE_CURRENCY) -> Dict[str, Any]:
        """Fetch the latest rates for a base currency.

        Returns:
            Dictionary with 'rates' (currency -> multiplier) and 'fetched_at'

        Raises:
            RateUnavailable: On network errors or malformed responses
        """
        url = self.url_template.format(base=base_currency)
        try:
            response = self.session.get(url, timeout=self.timeout)
            response.raise_for_status()
            payload = response.json()
        except requests.RequestException as e:
            raise RateUnavailable(f"Exchange rate request failed: {e}") from e
        except ValueError as e:
            raise RateUnavailable(f"Exchange rate response is not JSON: {e}") from e

        rates = payload.get("rates") if isinstance(payload, dict) else None
        if not isinstance(rates, dict) or not rates:
            raise RateUnavailable("Exchange rate response has no rates")
        if payload.get("base", base_currency) != base_currency:
            raise RateUnavailable(f"Expected {base_currency} rates, got {payload.get('base')}")

        return {"rates": rates, "fetched_at": datetime.now()}


class RateRefresher:
    """Caches the current snapshot and coalesces concurrent refreshes."""

    def __init__(
        self,
        provider: ExchangeRateProvider,
        fallback: ExchangeRateSnapshot = FALLBACK_SNAPSHOT,
        timeout: float = 5.0,
    ):
        self.provider = provider
        self.fallback = fallback
        self.timeout = timeout
        self._snapshot: Optional[ExchangeRateSnapshot] = None
        self._inflight: Optional[asyncio.Task] = None
        self._listeners: List[TaskListener] = []

    @property
    def snapshot(self) -> ExchangeRateSnapshot:
        """Most recent snapshot, or the fallback if never refreshed."""
        return self._snapshot or self.fallback

    def add_listener(self, listener: TaskListener) -> None:
        """Register a callback for refresh task events."""
        self._listeners.append(listener)

    async def refresh(self) -> ExchangeRateSnapshot:
        """Refresh rates, joining a fetch that is already in flight."""
        if self._inflight is None or self._inflight.done():
            self._inflight = asyncio.ensure_future(self._fetch())
        return await asyncio.shield(self._inflight)

    async def _fetch(self) -> ExchangeRateSnapshot:
        self._emit(TaskState.STARTED, f"Fetching {BASE_CURRENCY} rates")
        try:
            result = await asyncio.wait_for(
                asyncio.to_thread(self.provider.get_latest_rates, BASE_CURRENCY),
                timeout=self.timeout,
            )
            self._emit(TaskState.PROGRESS, "Rates received")
            snapshot = make_snapshot(result["rates"], result["fetched_at"])
            if not snapshot.rates:
                raise RateUnavailable("Provider returned no usable rates")
        except Exception as e:
            # Any failure resolves to the fallback table
            reason = str(e) or ("timed out" if isinstance(e, asyncio.TimeoutError) else type(e).__name__)
            logger.warning("Rate refresh failed (%s), using fallback rates from %s",
                           reason, self.fallback.fetched_at.date(), exc_info=True)
            self._emit(TaskState.FAILED, reason)
            snapshot = self.fallback
        else:
            self._emit(TaskState.COMPLETED, f"{len(snapshot.rates)} rates")

        self._snapshot = snapshot
        return snapshot

    def _emit(self, state: TaskState, detail: str) -> None:
        event = TaskEvent(task="exchange_rate_refresh", state=state, detail=detail)
        for listener in self._listeners:
            listener(event)
