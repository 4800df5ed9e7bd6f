from dataclasses import dataclass
from datetime import datetime, timedelta
from functools import lru_cache
from typing import Callable, Dict, Optional, Tuple
import logging
import threading

import requests

from savingsplan.app.config import get_settings
from savingsplan.app.exceptions import RateUnavailable
from savingsplan.app.models.models import utcnow

logger = logging.getLogger(__name__)


def rate_key(from_currency: str, to_currency: str) -> str:
    return f"{from_currency.upper()}->{to_currency.upper()}"


@dataclass
class RateQuote:
    rate: float
    fetched_at: datetime
    stale: bool = False


class HttpRateFetcher:
    """Fetches a spot rate from an exchangerate.host-compatible JSON API"""

    def __init__(self, base_url: str, api_key: str = "", timeout: float = 10.0):
        self.base_url = base_url
        self.api_key = api_key
        self.timeout = timeout

    def __call__(self, from_currency: str, to_currency: str) -> float:
        params = {"base": from_currency.upper(), "symbols": to_currency.upper()}
        if self.api_key:
            params["access_key"] = self.api_key
        try:
            response = requests.get(self.base_url, params=params, timeout=self.timeout)
            response.raise_for_status()
            payload = response.json()
        except (requests.RequestException, ValueError) as e:
            raise RateUnavailable(f"Failed to fetch {rate_key(from_currency, to_currency)}: {str(e)}")

        rate = (payload.get("rates") or {}).get(to_currency.upper())
        if rate is None or float(rate) <= 0:
            raise RateUnavailable(f"No rate returned for {rate_key(from_currency, to_currency)}")
        return float(rate)


class ExchangeRateService:
    """
    Caching front for an exchange-rate fetcher.

    Fresh rates are cached for `ttl_seconds`. When a fetch fails the last known
    rate is returned with `stale=True`; `RateUnavailable` is raised only when
    no rate for the pair has ever been seen.
    """

    def __init__(
        self,
        fetcher: Callable[[str, str], float],
        ttl_seconds: int = 300,
        clock: Callable[[], datetime] = utcnow
    ):
        self.fetcher = fetcher
        self.ttl = timedelta(seconds=ttl_seconds)
        self.clock = clock
        self._cache: Dict[Tuple[str, str], RateQuote] = {}
        self._lock = threading.Lock()

    def quote(self, from_currency: str, to_currency: str, force_refresh: bool = False) -> RateQuote:
        source, target = from_currency.upper(), to_currency.upper()
        now = self.clock()
        if source == target:
            return RateQuote(rate=1.0, fetched_at=now)

        with self._lock:
            cached = self._cache.get((source, target))
        if cached and not force_refresh and now - cached.fetched_at < self.ttl:
            return RateQuote(rate=cached.rate, fetched_at=cached.fetched_at)

        try:
            rate = self.fetcher(source, target)
        except RateUnavailable as e:
            if cached is None:
                logger.warning("Exchange rate %s unavailable and nothing cached: %s", rate_key(source, target), e)
                raise
            logger.warning("Using last known rate for %s from %s: %s", rate_key(source, target), cached.fetched_at, e)
            return RateQuote(rate=cached.rate, fetched_at=cached.fetched_at, stale=True)

        quote = RateQuote(rate=rate, fetched_at=now)
        with self._lock:
            self._cache[(source, target)] = quote
        return quote

    def rate(self, from_currency: str, to_currency: str) -> float:
        return self.quote(from_currency, to_currency).rate

    def rate_at_instant(self, from_currency: str, to_currency: str) -> RateQuote:
        """Rate fetched now, bypassing the cache. Used when a month is frozen."""
        return self.quote(from_currency, to_currency, force_refresh=True)

    def last_known(self, from_currency: str, to_currency: str) -> Optional[RateQuote]:
        with self._lock:
            return self._cache.get((from_currency.upper(), to_currency.upper()))

    def clear_cache(self):
        with self._lock:
            self._cache.clear()


@lru_cache()
def get_rate_service() -> ExchangeRateService:
    settings = get_settings()
    fetcher = HttpRateFetcher(
        settings.exchange_rate_api_url,
        api_key=settings.exchange_rate_api_key,
        timeout=settings.exchange_rate_timeout_seconds
    )
    return ExchangeRateService(fetcher, ttl_seconds=settings.rate_cache_ttl_seconds)
