"""Spot price lookups for trade entry/exit.

``get_price`` talks to Binance's public ticker endpoint and either returns a
strictly positive finite price or raises ``UpstreamUnavailable``.
``get_price_or_fallback`` is what the trade engine uses: on upstream failure
it answers from a static table of approximate last-known prices so that
settlement does not block on a flaky feed. Only a symbol missing from that
table surfaces as ``PriceUnavailable``.
"""

import math
from typing import Optional

import httpx

from config import settings
from services.errors import PriceUnavailable, UpstreamUnavailable
from utils.logger import get_logger
from utils.retry import RetryConfig, with_retry

logger = get_logger("price_oracle")


def normalize_pair(pair: str) -> str:
    return str(pair or "").strip().upper().replace("/", "").replace("-", "")


class PriceOracle:
    """Binance ticker client with retry and fallback"""

    def __init__(
        self,
        base_url: Optional[str] = None,
        timeout: Optional[float] = None,
        retry_config: Optional[RetryConfig] = None,
        fallback_prices: Optional[dict[str, float]] = None,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.base_url = (base_url or settings.BINANCE_API_URL).rstrip("/")
        self.timeout = timeout if timeout is not None else settings.PRICE_FETCH_TIMEOUT_SECONDS
        self.retry_config = retry_config or RetryConfig(
            max_attempts=settings.PRICE_RETRY_ATTEMPTS,
            base_delay=settings.PRICE_RETRY_BASE_DELAY,
            exponential_base=settings.PRICE_RETRY_BACKOFF_FACTOR,
        )
        source = settings.FALLBACK_PRICES if fallback_prices is None else fallback_prices
        self.fallback_prices = {normalize_pair(k): float(v) for k, v in source.items()}
        self._client = client

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(timeout=self.timeout)
        return self._client

    async def close(self):
        if self._client and not self._client.is_closed:
            await self._client.aclose()

    @with_retry()
    async def _fetch_ticker(self, symbol: str) -> float:
        client = await self._get_client()
        response = await client.get(
            f"{self.base_url}/api/v3/ticker/price",
            params={"symbol": symbol},
            headers={"User-Agent": "coinvade/1.0"},
        )
        response.raise_for_status()
        data = response.json()

        try:
            price = float(data.get("price"))
        except (AttributeError, TypeError, ValueError):
            raise UpstreamUnavailable(f"Binance returned no price for {symbol}")
        if not math.isfinite(price) or price <= 0:
            raise UpstreamUnavailable(f"Binance returned invalid price for {symbol}: {price}")
        return price

    async def get_price(self, pair: str) -> float:
        """Current spot price for ``pair`` or ``UpstreamUnavailable``."""
        symbol = normalize_pair(pair)
        if not symbol:
            raise UpstreamUnavailable("Missing symbol")
        try:
            return await self._fetch_ticker(symbol)
        except UpstreamUnavailable:
            raise
        except (httpx.HTTPError, ValueError) as e:
            raise UpstreamUnavailable(f"Binance price fetch failed for {symbol}: {e}") from e

    def fallback_price(self, pair: str) -> Optional[float]:
        return self.fallback_prices.get(normalize_pair(pair))

    async def get_price_or_fallback(self, pair: str) -> float:
        symbol = normalize_pair(pair)
        try:
            return await self.get_price(symbol)
        except UpstreamUnavailable as e:
            fallback = self.fallback_price(symbol)
            if fallback is None:
                logger.error("Price unavailable and no fallback", symbol=symbol, error=str(e))
                raise PriceUnavailable(f"Price unavailable for {symbol}") from e
            logger.warning(
                "Price feed unavailable, using fallback price",
                symbol=symbol,
                fallback=fallback,
                error=str(e),
            )
            return fallback


# Singleton instance
price_oracle = PriceOracle()
