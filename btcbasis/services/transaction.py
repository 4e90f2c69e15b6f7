"""
btcbasis/services/transaction.py

Storage of normalized received/sent transactions handed over by ingestion.
Transactions are immutable here: there is no update path, and cost basis
for a sent transaction is handled by services/cost_basis.py.
"""

import logging
from datetime import datetime, timezone
from decimal import Decimal

from sqlalchemy.orm import Session

from btcbasis.constants import BTC_QUANT, TX_RECEIVED, TX_SENT
from btcbasis.models.transaction import Transaction
from btcbasis.services.errors import InvalidInputError
from btcbasis.services.ledger import get_transaction, to_usd

logger = logging.getLogger(__name__)


def get_company_transactions(db: Session, company_id: int):
    """
    Return all Transactions for a company, newest first.
    """
    return (
        db.query(Transaction)
        .filter(Transaction.company_id == company_id)
        .order_by(Transaction.timestamp.desc(), Transaction.id.desc())
        .all()
    )


def get_transaction_by_id(db: Session, company_id: int, transaction_id: int):
    """
    Retrieve a single Transaction by its ID (returns None if not found).
    """
    return get_transaction(db, company_id, transaction_id)


def create_transaction_record(db: Session, company_id: int, tx_data: dict) -> Transaction:
    """
    Insert one normalized transaction.

    Values are re-checked here as well as in the pydantic schema so that
    non-HTTP callers (scripts, tests) cannot store a zero or negative
    disposal.
    """
    tx_type = getattr(tx_data.get("tx_type"), "value", tx_data.get("tx_type"))
    if tx_type not in (TX_RECEIVED, TX_SENT):
        raise InvalidInputError(f"Unknown transaction direction: {tx_type!r}")

    amount = Decimal(str(tx_data.get("amount_btc", 0))).quantize(BTC_QUANT)
    if amount <= 0:
        raise InvalidInputError("Transaction amount_btc must be positive.")

    usd_value = tx_data.get("usd_value")
    timestamp = tx_data.get("timestamp") or datetime.now(timezone.utc)

    new_tx = Transaction(
        company_id=company_id,
        tx_type=tx_type,
        amount_btc=amount,
        usd_value=to_usd(usd_value) if usd_value is not None else None,
        timestamp=timestamp,
    )
    db.add(new_tx)
    db.commit()
    db.refresh(new_tx)
    logger.info(f"[Tx] company={company_id} tx={new_tx.id} {tx_type} {amount} BTC at {new_tx.timestamp}")
    return new_tx
