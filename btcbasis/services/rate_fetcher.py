"""
btcbasis/services/rate_fetcher.py

Outbound BTC/USD price lookups.

 - Today: CoinGecko simple/price (live spot). Sends x_cg_demo_api_key when
   COINGECKO_API_KEY is set.
 - Past days: Coinbase spot?date=YYYY-MM-DD (no auth). Setting
   HISTORICAL_RATE_PROVIDER=coingecko switches to CoinGecko's
   coins/bitcoin/history?date=DD-MM-YYYY instead.

Every request, whichever branch, first passes one shared RateLimiter so the
process never calls out more than once per MIN_CALL_INTERVAL. Failures of
any kind surface as UpstreamFetchError; this module never retries.
"""

import asyncio
import logging
import math
import os
import time
from datetime import date as date_cls
from decimal import Decimal, InvalidOperation

import httpx

from btcbasis.constants import (
    COINBASE_SPOT_URL,
    COINGECKO_PRICE_URL,
    MIN_CALL_INTERVAL,
    RATE_FETCH_TIMEOUT,
    USD_QUANT,
)
from btcbasis.services.errors import UpstreamFetchError

logger = logging.getLogger(__name__)

COINGECKO_HISTORY_URL = "https://api.coingecko.com/api/v3/coins/bitcoin/history"


def format_provider_date(day) -> str:
    """DD-MM-YYYY, the form CoinGecko's history endpoint expects."""
    return day.strftime("%d-%m-%Y")


class RateLimiter:
    """
    Minimum spacing between outbound calls. The last-call time is read and
    written under an asyncio.Lock, so concurrent callers queue up and each
    one waits out the remaining gap before it is released.

    The timestamp is taken when a call is released, not when it finishes,
    and is never rewritten after a failure.
    """

    def __init__(self, min_interval: float = MIN_CALL_INTERVAL, clock=time.monotonic, sleep=asyncio.sleep):
        self.min_interval = min_interval
        self._clock = clock
        self._sleep = sleep
        self._lock = asyncio.Lock()
        self._last_call = None

    async def wait(self):
        async with self._lock:
            now = self._clock()
            if self._last_call is not None:
                delay = self.min_interval - (now - self._last_call)
                if delay > 0:
                    logger.debug(f"Rate limiting: waiting {delay:.3f}s before API call")
                    await self._sleep(delay)
                    now = self._clock()
            self._last_call = now


def parse_price(raw, provider: str) -> Decimal:
    """Coerce a provider price field to a positive 2-decimal Decimal."""
    if raw is None or isinstance(raw, bool):
        raise UpstreamFetchError(f"{provider}: price missing from response", provider)
    if isinstance(raw, float) and not math.isfinite(raw):
        raise UpstreamFetchError(f"{provider}: non-finite price {raw!r}", provider)
    try:
        price = Decimal(str(raw))
    except (InvalidOperation, ValueError):
        raise UpstreamFetchError(f"{provider}: could not parse price {raw!r}", provider)
    if not price.is_finite() or price <= 0:
        raise UpstreamFetchError(f"{provider}: invalid price {raw!r}", provider)
    return price.quantize(USD_QUANT)


class RateFetcher:
    """
    Holds the shared limiter and provider settings. Build one per process
    (main.py stores it on app.state) and pass it to every ExchangeRateService.
    """

    def __init__(
        self,
        limiter: RateLimiter | None = None,
        api_key: str | None = None,
        timeout: float = RATE_FETCH_TIMEOUT,
        historical_provider: str | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.limiter = limiter or RateLimiter()
        self.api_key = api_key if api_key is not None else os.getenv("COINGECKO_API_KEY")
        self.timeout = timeout
        self.historical_provider = (
            historical_provider or os.getenv("HISTORICAL_RATE_PROVIDER", "coinbase")
        ).lower()
        if self.historical_provider not in ("coinbase", "coingecko"):
            raise ValueError(f"Unknown historical rate provider: {self.historical_provider}")
        self.transport = transport

    async def fetch(self, day: date_cls, is_today: bool) -> Decimal:
        if is_today:
            return await self.fetch_live()
        return await self.fetch_historical(day)

    async def fetch_live(self) -> Decimal:
        params = {"ids": "bitcoin", "vs_currencies": "usd"}
        if self.api_key:
            params["x_cg_demo_api_key"] = self.api_key
        data = await self._get_json(COINGECKO_PRICE_URL, params, "coingecko")
        # {"bitcoin": {"usd": <price>}}
        try:
            raw = data["bitcoin"]["usd"]
        except (KeyError, TypeError):
            raise UpstreamFetchError("coingecko: unexpected response shape", "coingecko")
        rate = parse_price(raw, "coingecko")
        logger.info(f"Fetched current rate: ${rate}")
        return rate

    async def fetch_historical(self, day: date_cls) -> Decimal:
        if self.historical_provider == "coingecko":
            data = await self._get_json(
                COINGECKO_HISTORY_URL,
                {"date": format_provider_date(day), "localization": "false"},
                "coingecko",
            )
            # {"market_data": {"current_price": {"usd": <price>}}}
            try:
                raw = data["market_data"]["current_price"]["usd"]
            except (KeyError, TypeError):
                raise UpstreamFetchError(f"coingecko: no market data for {day}", "coingecko")
            provider = "coingecko"
        else:
            data = await self._get_json(COINBASE_SPOT_URL, {"date": day.isoformat()}, "coinbase")
            # {"data": {"amount": "42587.32", ...}}
            try:
                raw = data["data"]["amount"]
            except (KeyError, TypeError):
                raise UpstreamFetchError(f"coinbase: no rate data for {day}", "coinbase")
            provider = "coinbase"

        rate = parse_price(raw, provider)
        logger.info(f"Fetched historical rate for {day}: ${rate} ({provider})")
        return rate

    async def _get_json(self, url: str, params: dict, provider: str):
        await self.limiter.wait()
        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self.transport) as client:
                resp = await client.get(url, params=params)
        except httpx.TimeoutException as e:
            raise UpstreamFetchError(f"{provider}: request timed out", provider) from e
        except httpx.HTTPError as e:
            raise UpstreamFetchError(f"{provider}: request failed: {e}", provider) from e

        if resp.status_code != 200:
            raise UpstreamFetchError(f"{provider}: API error {resp.status_code}", provider)
        try:
            return resp.json()
        except ValueError as e:
            raise UpstreamFetchError(f"{provider}: response was not JSON", provider) from e
