"""
btcbasis/models/purchase.py

A Purchase is one acquisition lot: BTC bought at a known total USD cost.
'remaining_btc' starts equal to 'amount_btc' and is only ever reduced by the
cost basis engine when a disposal is committed against it.

The 'version' column is wired into SQLAlchemy's version_id_col, so every
UPDATE of a lot carries "WHERE version = <read version>". Two writers that
both read the same lot cannot both decrement it; the second flush raises
StaleDataError instead of double-spending the same satoshis.
"""

from datetime import datetime, timezone
from sqlalchemy import (
    Column,
    Integer,
    Numeric,
    ForeignKey,
    CheckConstraint,
    Index,
)
from sqlalchemy.orm import relationship

from btcbasis.database import Base, UTCDateTime


class Purchase(Base):
    __tablename__ = "purchases"
    __table_args__ = (
        CheckConstraint("amount_btc > 0", name="ck_purchase_amount_positive"),
        CheckConstraint("remaining_btc >= 0", name="ck_purchase_remaining_non_negative"),
        CheckConstraint("remaining_btc <= amount_btc", name="ck_purchase_remaining_le_amount"),
        Index("ix_purchases_fifo", "company_id", "purchase_date", "id"),
    )

    id = Column(Integer, primary_key=True, index=True)

    company_id = Column(
        Integer,
        ForeignKey("companies.id"),
        nullable=False,
        doc="Tenant that owns this lot."
    )

    purchase_date = Column(
        UTCDateTime,
        nullable=False,
        doc="When the BTC was acquired. Primary FIFO sort key."
    )

    amount_btc = Column(
        Numeric(18, 8),
        nullable=False,
        doc="How many BTC were originally acquired in this lot."
    )
    cost_basis_usd = Column(
        Numeric(18, 2),
        nullable=False,
        doc="Total USD cost basis for the entire lot (including fees)."
    )
    remaining_btc = Column(
        Numeric(18, 8),
        nullable=False,
        doc="How many BTC remain unconsumed after committed disposals."
    )

    version = Column(Integer, nullable=False)

    created_at = Column(
        UTCDateTime,
        default=lambda: datetime.now(timezone.utc),
        nullable=False
    )

    __mapper_args__ = {"version_id_col": version}

    company = relationship("Company", back_populates="purchases")

    transaction_lots = relationship(
        "TransactionLot",
        back_populates="purchase",
        doc="Allocation records that consumed part of this lot."
    )

    def __repr__(self):
        return (
            f"<Purchase(id={self.id}, company={self.company_id}, amount_btc={self.amount_btc}, "
            f"remaining_btc={self.remaining_btc}, cost_basis_usd={self.cost_basis_usd}, "
            f"purchase_date={self.purchase_date})>"
        )
