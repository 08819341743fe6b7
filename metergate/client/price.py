# metergate/client/price.py
"""
Price lookups for the paid-request client.

Quotes are fetched from GET {provider}/.meter/price?route={route_id} and
memoized per (provider_url, route_id) for METER_PRICE_CACHE_TTL_SECONDS
(default: 60). A quote carrying expiresAt is never served past that instant,
even inside the TTL.
"""
import asyncio
import logging
import threading
import time
from dataclasses import dataclass
from typing import Callable, Dict, Optional, Tuple

import requests
from pydantic import ValidationError
from requests.exceptions import RequestException

from metergate.api.models.meter import RoutePriceQuote
from metergate.client.errors import NetworkError, PriceLookupError
from metergate.core.config import settings

logger = logging.getLogger(__name__)

PRICE_PATH = "/.meter/price"

# (provider_url, route_id) -> RoutePriceQuote
PriceFetcher = Callable[[str, str], RoutePriceQuote]


@dataclass
class _CacheEntry:
    quote: RoutePriceQuote
    expires_at: float


def fetch_price_quote(
    provider_url: str,
    route_id: str,
    session: Optional[requests.Session] = None,
    timeout: Optional[float] = None,
) -> RoutePriceQuote:
    """
    Fetch a quote from the provider's price endpoint.

    Raises:
        PriceLookupError: route unknown (404), other HTTP error, or a body
            that is not a valid quote
        NetworkError: the provider could not be reached
    """
    url = f"{provider_url.rstrip('/')}{PRICE_PATH}"
    http = session or requests
    try:
        response = http.get(
            url,
            params={"route": route_id},
            timeout=timeout if timeout is not None else settings.METER_HTTP_TIMEOUT_SECONDS,
        )
    except RequestException as e:
        logger.error(f"Error fetching price from {url} for {route_id}: {e}")
        raise NetworkError(details={"url": url, "route_id": route_id, "original_error": str(e)}) from e

    if response.status_code == 404:
        raise PriceLookupError(f"Route not found: {route_id}", details={"url": url, "route_id": route_id})
    if not response.ok:
        raise PriceLookupError(
            f"Failed to get price: {response.status_code} {response.reason}",
            details={"url": url, "route_id": route_id, "status": response.status_code},
        )

    try:
        data = response.json()
        if not isinstance(data, dict):
            raise ValueError(f"expected a JSON object, got {type(data).__name__}")
        return RoutePriceQuote.model_validate(data)
    except (ValueError, ValidationError) as e:
        logger.warning(f"Invalid price response from {url}: {e}")
        raise PriceLookupError(
            "Invalid price response format",
            details={"url": url, "route_id": route_id, "error": str(e)},
        ) from e


class PriceCache:
    """
    TTL cache of route quotes, shared by concurrent requests.

    Args:
        ttl_seconds: How long a fetched quote is reused
        fetcher: Callable (provider_url, route_id) -> RoutePriceQuote
        clock: Seconds since the epoch
    """

    def __init__(
        self,
        ttl_seconds: Optional[float] = None,
        fetcher: Optional[PriceFetcher] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.ttl_seconds = ttl_seconds if ttl_seconds is not None else settings.METER_PRICE_CACHE_TTL_SECONDS
        self._fetcher = fetcher or fetch_price_quote
        self._clock = clock
        self._entries: Dict[Tuple[str, str], _CacheEntry] = {}
        self._lock = threading.Lock()

    def get_cached(self, provider_url: str, route_id: str) -> Optional[RoutePriceQuote]:
        """Return a live cached quote without fetching."""
        key = (provider_url, route_id)
        now = self._clock()
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None
            if entry.expires_at <= now:
                del self._entries[key]
                return None
            return entry.quote

    def get_quote(self, provider_url: str, route_id: str) -> RoutePriceQuote:
        """Synchronous lookup: cached quote, or a fresh fetch stored for later calls."""
        if not provider_url or not route_id:
            raise ValueError("provider_url and route_id are required")

        cached = self.get_cached(provider_url, route_id)
        if cached is not None:
            return cached

        quote = self._fetcher(provider_url, route_id)
        self.put(provider_url, route_id, quote)
        logger.debug(f"Fetched price for {route_id} from {provider_url}: {quote.price} {quote.currency}")
        return quote

    async def get(self, provider_url: str, route_id: str) -> RoutePriceQuote:
        """Async lookup; a miss fetches in a worker thread."""
        cached = self.get_cached(provider_url, route_id)
        if cached is not None:
            return cached
        return await asyncio.to_thread(self.get_quote, provider_url, route_id)

    def put(self, provider_url: str, route_id: str, quote: RoutePriceQuote) -> None:
        now = self._clock()
        expires_at = now + self.ttl_seconds
        if quote.expires_at is not None:
            expires_at = min(expires_at, quote.expires_at / 1000)
        with self._lock:
            self._entries[(provider_url, route_id)] = _CacheEntry(quote=quote, expires_at=expires_at)

    def invalidate(self, provider_url: str, route_id: str) -> None:
        with self._lock:
            self._entries.pop((provider_url, route_id), None)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)


# Global default cache
_default_cache: Optional[PriceCache] = None
_default_cache_lock = threading.Lock()


def get_price_cache() -> PriceCache:
    global _default_cache

    if _default_cache is None:
        with _default_cache_lock:
            if _default_cache is None:
                _default_cache = PriceCache()

    return _default_cache


def clear_price_cache() -> None:
    """Clear the global price cache (useful for testing)."""
    get_price_cache().clear()
