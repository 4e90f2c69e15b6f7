"""
btcbasis/services/exchange_rate.py

Cache-first BTC/USD rates by calendar day.

Algorithm for get_rate():
 1) Normalize the requested moment to UTC midnight (the cache granularity)
 2) Look up (source, currency, day) in the exchange_rates table
 3) Hit => return it, no network
 4) Miss => RateFetcher (live endpoint for today, historical otherwise)
 5) Cache the fetched value, then return it

A failed fetch caches nothing and propagates UpstreamFetchError.
batch_get_rates() is the bulk variant used when importing many
transactions: it dedupes by day, goes strictly one date at a time, and
drops (after logging) any date that fails.
"""

import logging
from datetime import datetime, date as date_cls, time as time_cls, timezone
from decimal import Decimal
from typing import Callable, Dict, Iterable, Optional

from sqlalchemy.orm import Session

from btcbasis.constants import RATE_CURRENCY_USD, RATE_SOURCE_PRIMARY
from btcbasis.services import rate_store
from btcbasis.services.errors import InvalidInputError, UpstreamFetchError
from btcbasis.services.rate_fetcher import RateFetcher

logger = logging.getLogger(__name__)


def normalize_date(value) -> datetime:
    """
    datetime / date / ISO string -> offset-aware datetime at 00:00 UTC of
    that UTC day. Naive datetimes are taken as UTC.
    """
    if isinstance(value, str):
        text = value.strip()
        try:
            if len(text) == 10:
                value = date_cls.fromisoformat(text)
            else:
                value = datetime.fromisoformat(text.replace("Z", "+00:00"))
        except ValueError:
            raise InvalidInputError(f"Invalid date '{value}'. Use YYYY-MM-DD or ISO 8601.")

    if isinstance(value, datetime):
        if value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        day = value.astimezone(timezone.utc).date()
    elif isinstance(value, date_cls):
        day = value
    else:
        raise InvalidInputError(f"Unsupported date value: {value!r}")

    return datetime.combine(day, time_cls.min, tzinfo=timezone.utc)


def date_key(day: datetime) -> str:
    """Day string used as the batch result key, e.g. '2024-01-05'."""
    return day.date().isoformat()


class ExchangeRateService:
    """
    One per request/session. The fetcher (and its limiter) is shared across
    all instances.
    """

    def __init__(
        self,
        db: Session,
        fetcher: RateFetcher,
        now: Optional[Callable[[], datetime]] = None,
        source: str = RATE_SOURCE_PRIMARY,
        currency: str = RATE_CURRENCY_USD,
    ):
        self.db = db
        self.fetcher = fetcher
        self._now = now or (lambda: datetime.now(timezone.utc))
        self.source = source
        self.currency = currency

    def today(self) -> datetime:
        return normalize_date(self._now())

    async def get_rate(self, value) -> Decimal:
        day = normalize_date(value)
        today = self.today()
        if day > today:
            raise InvalidInputError(f"Date {date_key(day)} cannot be in the future.")

        cached = rate_store.get_cached_rate(self.db, self.source, self.currency, day)
        if cached is not None:
            logger.debug(f"[RateCache] hit {date_key(day)}: ${cached.rate}")
            return Decimal(str(cached.rate))

        logger.info(f"[RateCache] miss {date_key(day)}; fetching")
        rate = await self.fetcher.fetch(day.date(), is_today=(day == today))

        stored = rate_store.save_rate_observation(self.db, self.source, self.currency, day, rate)
        return Decimal(str(stored.rate))

    async def get_current_rate(self) -> Decimal:
        return await self.get_rate(self._now())

    async def batch_get_rates(self, values: Iterable) -> Dict[str, Decimal]:
        """
        Rates for many dates. Inputs are deduplicated by UTC day and fetched
        sequentially in first-seen order; the result holds only the days
        that succeeded.
        """
        unique_days = []
        seen = set()
        for value in values:
            try:
                day = normalize_date(value)
            except InvalidInputError as e:
                logger.error(f"[RateBatch] skipping {value!r}: {e}")
                continue
            key = date_key(day)
            if key not in seen:
                seen.add(key)
                unique_days.append(day)

        logger.info(f"[RateBatch] fetching rates for {len(unique_days)} unique dates")

        rates: Dict[str, Decimal] = {}
        for day in unique_days:
            key = date_key(day)
            try:
                rates[key] = await self.get_rate(day)
            except (UpstreamFetchError, InvalidInputError) as e:
                logger.error(f"[RateBatch] failed to get rate for {key}: {e}")

        logger.info(f"[RateBatch] fetched {len(rates)} of {len(unique_days)} rates")
        return rates
