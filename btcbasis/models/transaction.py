"""
transaction.py

Two models:
1) Transaction (normalized received/sent BTC movement, immutable to this core)
2) TransactionLot (one slice of a disposal matched against one Purchase)

A sent Transaction is matched FIFO against Purchases. Each slice is recorded
as a TransactionLot, which together form the audit trail for that disposal.
TransactionLots are written once per disposal and never updated or deleted.
"""

from datetime import datetime, timezone
from sqlalchemy import (
    Column,
    Integer,
    String,
    Numeric,
    ForeignKey,
    CheckConstraint,
    UniqueConstraint,
)
from sqlalchemy.orm import relationship

from btcbasis.database import Base, UTCDateTime


# ------------------------------------------------------------------------
# TRANSACTION
# ------------------------------------------------------------------------

class Transaction(Base):
    """
    A normalized on-chain movement for one company. Only 'sent' transactions
    are disposals; 'received' ones never produce allocations.
    """

    __tablename__ = "transactions"
    __table_args__ = (
        CheckConstraint("tx_type IN ('received', 'sent')", name="ck_transaction_type"),
    )

    id = Column(Integer, primary_key=True, index=True)

    company_id = Column(
        Integer,
        ForeignKey("companies.id"),
        nullable=False,
        index=True
    )

    tx_type = Column(String(16), nullable=False, doc="Direction: 'received' or 'sent'.")

    amount_btc = Column(
        Numeric(18, 8),
        nullable=False,
        doc="BTC moved by this transaction."
    )

    usd_value = Column(
        Numeric(18, 2),
        nullable=True,
        doc="USD value at the time of the movement (sale proceeds for sent)."
    )

    timestamp = Column(
        UTCDateTime,
        nullable=False,
        doc="When the transaction occurred."
    )

    created_at = Column(
        UTCDateTime,
        default=lambda: datetime.now(timezone.utc),
        nullable=False
    )

    company = relationship("Company", back_populates="transactions")

    transaction_lots = relationship(
        "TransactionLot",
        back_populates="transaction",
        order_by="TransactionLot.id",
        doc="FIFO slices recorded for this disposal."
    )

    def __repr__(self):
        return (
            f"<Transaction(id={self.id}, company={self.company_id}, type={self.tx_type}, "
            f"amount_btc={self.amount_btc}, timestamp={self.timestamp})>"
        )


# ------------------------------------------------------------------------
# TRANSACTION LOT (allocation record)
# ------------------------------------------------------------------------

class TransactionLot(Base):
    """
    Logs how a disposal consumed part of a Purchase. If a company sends
    0.6 BTC and the oldest lot has 0.5 left, one row takes 0.5 from that lot
    and a second row takes 0.1 from the next one.
    """

    __tablename__ = "transaction_lots"
    __table_args__ = (
        UniqueConstraint("transaction_id", "purchase_id", name="uq_transaction_lot_pair"),
        CheckConstraint("btc_amount_used > 0", name="ck_transaction_lot_positive"),
    )

    id = Column(Integer, primary_key=True)

    transaction_id = Column(
        Integer,
        ForeignKey("transactions.id"),
        nullable=False,
        index=True,
        doc="Disposal that consumed these BTC."
    )

    purchase_id = Column(
        Integer,
        ForeignKey("purchases.id"),
        nullable=False,
        index=True,
        doc="Lot the BTC were taken from."
    )

    btc_amount_used = Column(
        Numeric(18, 8),
        nullable=False,
        doc="BTC from this lot applied to the disposal."
    )

    cost_basis_used = Column(
        Numeric(18, 2),
        nullable=False,
        doc="Portion of the lot's basis attributed to this slice."
    )

    created_at = Column(
        UTCDateTime,
        default=lambda: datetime.now(timezone.utc),
        nullable=False
    )

    transaction = relationship("Transaction", back_populates="transaction_lots")
    purchase = relationship("Purchase", back_populates="transaction_lots")

    def __repr__(self):
        return (
            f"<TransactionLot(id={self.id}, txn_id={self.transaction_id}, purchase_id={self.purchase_id}, "
            f"btc_amount_used={self.btc_amount_used}, cost_basis_used={self.cost_basis_used})>"
        )
