"""
btcbasis/services/rate_store.py

Cache of fetched BTC prices keyed by (source, currency, UTC-midnight day).
Observations are written once and never updated.
"""

import logging
from datetime import datetime, timezone
from decimal import Decimal
from typing import Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from btcbasis.models.exchange_rate import ExchangeRate

logger = logging.getLogger(__name__)


def get_cached_rate(db: Session, source: str, currency: str, day: datetime) -> Optional[ExchangeRate]:
    return (
        db.query(ExchangeRate)
        .filter(
            ExchangeRate.source == source,
            ExchangeRate.currency == currency,
            ExchangeRate.timestamp == day,
        )
        .first()
    )


def save_rate_observation(db: Session, source: str, currency: str, day: datetime, rate: Decimal) -> ExchangeRate:
    """
    Insert a new observation and commit. If another request cached the same
    key first, the unique constraint fires; the stored row wins and is
    returned instead.
    """
    observation = ExchangeRate(
        source=source,
        currency=currency,
        timestamp=day,
        rate=rate,
        created_at=datetime.now(timezone.utc),
    )
    db.add(observation)
    try:
        db.commit()
    except IntegrityError:
        db.rollback()
        existing = get_cached_rate(db, source, currency, day)
        if existing is None:
            raise
        logger.info(f"[RateCache] {source}/{currency} {day.date()} cached concurrently; keeping stored value")
        return existing
    db.refresh(observation)
    return observation
