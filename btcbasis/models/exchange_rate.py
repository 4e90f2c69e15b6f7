"""
btcbasis/models/exchange_rate.py

One cached BTC price observation. 'timestamp' is always UTC midnight of the
observed day; together with 'source' and 'currency' it forms the cache key.
"""

from datetime import datetime, timezone
from sqlalchemy import Column, Integer, String, Numeric, UniqueConstraint

from btcbasis.database import Base, UTCDateTime


class ExchangeRate(Base):
    __tablename__ = "exchange_rates"
    __table_args__ = (
        UniqueConstraint("source", "currency", "timestamp", name="uq_exchange_rate_key"),
    )

    id = Column(Integer, primary_key=True)
    source = Column(String(32), nullable=False, doc="Provider key, e.g. 'coingecko'.")
    currency = Column(String(8), nullable=False, default="USD")
    timestamp = Column(UTCDateTime, nullable=False, doc="Observed day, normalized to UTC midnight.")
    rate = Column(Numeric(18, 2), nullable=False, doc="Price of 1 BTC in 'currency'.")
    created_at = Column(
        UTCDateTime,
        default=lambda: datetime.now(timezone.utc),
        nullable=False,
        doc="When the observation was fetched."
    )

    def __repr__(self):
        return (
            f"<ExchangeRate(source={self.source}, currency={self.currency}, "
            f"day={self.timestamp.date() if self.timestamp else None}, rate={self.rate})>"
        )
