"""
btcbasis/models/company.py

Company is the tenant boundary. Every Purchase and Transaction belongs to
exactly one Company, and FIFO matching never crosses companies.
"""

from datetime import datetime, timezone
from sqlalchemy import Column, Integer, String
from sqlalchemy.orm import relationship

from btcbasis.database import Base, UTCDateTime


class Company(Base):
    __tablename__ = "companies"

    id = Column(Integer, primary_key=True, index=True)
    name = Column(String, nullable=False)
    created_at = Column(
        UTCDateTime,
        default=lambda: datetime.now(timezone.utc),
        nullable=False
    )

    purchases = relationship(
        "Purchase",
        back_populates="company",
        doc="Acquisition lots owned by this company."
    )
    transactions = relationship(
        "Transaction",
        back_populates="company",
        doc="Normalized received/sent transactions for this company."
    )

    def __repr__(self):
        return f"<Company(id={self.id}, name={self.name})>"
