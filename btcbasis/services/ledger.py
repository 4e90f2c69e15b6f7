"""
btcbasis/services/ledger.py

The lot pool and its persistence contracts:
 - Purchase (acquisition lot) creation and listing
 - FIFO-ordered open lot selection (oldest first, id as tie-break)
 - Allocation record reads/writes (TransactionLot)
 - Version-guarded lot decrements

Quantities are converted to integer satoshis before any arithmetic so long
FIFO chains never accumulate binary floating point drift. SQLite stores
Numeric columns as REAL; rounding to the nearest satoshi on the way in
absorbs that noise.

Nothing in this module commits. Callers (the cost basis engine, the
routers) own the transaction boundary.
"""

import logging
import threading
from decimal import Decimal, ROUND_HALF_EVEN
from typing import Iterable, List, Optional, Tuple

from sqlalchemy import func
from sqlalchemy.orm import Session
from sqlalchemy.orm.exc import StaleDataError

from btcbasis.constants import SATS_PER_BTC, BTC_QUANT, USD_QUANT, DUST_THRESHOLD
from btcbasis.models.purchase import Purchase
from btcbasis.models.transaction import Transaction, TransactionLot
from btcbasis.services.errors import AllocationConflictError, InvalidInputError

logger = logging.getLogger(__name__)


# ------------------------------------------------------------------------------
# Satoshi helpers
# ------------------------------------------------------------------------------
def to_sats(btc) -> int:
    """BTC amount (Decimal, str, float, int) -> integer satoshis."""
    if btc is None:
        return 0
    value = btc if isinstance(btc, Decimal) else Decimal(str(btc))
    return int((value * SATS_PER_BTC).quantize(Decimal("1"), rounding=ROUND_HALF_EVEN))


def from_sats(sats: int) -> Decimal:
    return (Decimal(sats) / SATS_PER_BTC).quantize(BTC_QUANT)


def to_usd(value) -> Decimal:
    if value is None:
        return Decimal("0.00")
    value = value if isinstance(value, Decimal) else Decimal(str(value))
    return value.quantize(USD_QUANT)


# ------------------------------------------------------------------------------
# Per-tenant commit serialization
# ------------------------------------------------------------------------------
class TenantLockRegistry:
    """
    One re-entrant lock per company. Commits for the same company run one at
    a time inside this process; the version column on Purchase covers writers
    in other processes.
    """

    def __init__(self):
        self._guard = threading.Lock()
        self._locks = {}

    def lock_for(self, company_id: int) -> threading.RLock:
        with self._guard:
            lock = self._locks.get(company_id)
            if lock is None:
                lock = threading.RLock()
                self._locks[company_id] = lock
            return lock


# ------------------------------------------------------------------------------
# Lots (Purchases)
# ------------------------------------------------------------------------------
def create_purchase(db: Session, company_id: int, lot_data: dict) -> Purchase:
    """
    Record a new acquisition lot. remaining_btc always starts at amount_btc.
    """
    amount_btc = Decimal(str(lot_data["amount_btc"])).quantize(BTC_QUANT)
    if amount_btc <= 0:
        raise InvalidInputError("Purchase amount_btc must be positive.")
    cost_basis = to_usd(lot_data["cost_basis_usd"])
    if cost_basis < 0:
        raise InvalidInputError("Purchase cost_basis_usd cannot be negative.")

    lot = Purchase(
        company_id=company_id,
        purchase_date=lot_data["purchase_date"],
        amount_btc=amount_btc,
        cost_basis_usd=cost_basis,
        remaining_btc=amount_btc,
    )
    db.add(lot)
    db.flush()
    logger.info(
        f"[Lot] company={company_id} lot={lot.id} acquired {amount_btc} BTC "
        f"for ${cost_basis} on {lot.purchase_date}"
    )
    return lot


def list_purchases(db: Session, company_id: int, open_only: bool = False) -> List[Purchase]:
    if open_only:
        return list_open_lots(db, company_id)
    return (
        db.query(Purchase)
        .filter(Purchase.company_id == company_id)
        .order_by(Purchase.purchase_date.asc(), Purchase.id.asc())
        .all()
    )


def list_open_lots(db: Session, company_id: int) -> List[Purchase]:
    """
    Lots with at least one satoshi left, oldest first. Equal timestamps fall
    back to id so repeated runs always walk lots in the same order.
    """
    return (
        db.query(Purchase)
        .filter(
            Purchase.company_id == company_id,
            Purchase.remaining_btc >= DUST_THRESHOLD,
        )
        .order_by(Purchase.purchase_date.asc(), Purchase.id.asc())
        .all()
    )


def allocated_totals(db: Session, purchase_id: int) -> Tuple[int, Decimal]:
    """
    (satoshis, cost basis) already attributed to recorded slices of this lot.
    Lots imported part-consumed have no rows for the earlier consumption, so
    the satoshi total can be below amount_btc - remaining_btc.
    """
    sats, basis = (
        db.query(
            func.sum(TransactionLot.btc_amount_used),
            func.sum(TransactionLot.cost_basis_used),
        )
        .filter(TransactionLot.purchase_id == purchase_id)
        .one()
    )
    return to_sats(sats), to_usd(basis)


def decrement_lot(db: Session, company_id: int, lot_id: int, amount: Decimal) -> Purchase:
    """
    remaining_btc -= amount, clamped at zero, flushed under the lot's version
    guard. Raises AllocationConflictError if the lot is gone, belongs to
    another company, no longer holds 'amount', or was updated by another
    writer since this session read it.
    """
    lot = db.get(Purchase, lot_id)
    if lot is None or lot.company_id != company_id:
        raise AllocationConflictError(f"Lot {lot_id} is not available to company {company_id}")

    used = to_sats(amount)
    remaining = to_sats(lot.remaining_btc)
    if used <= 0:
        raise InvalidInputError(f"Allocation against lot {lot_id} must be positive.")
    if used > remaining:
        raise AllocationConflictError(
            f"Lot {lot_id} holds {from_sats(remaining)} BTC, cannot consume {from_sats(used)}"
        )

    lot.remaining_btc = from_sats(max(0, remaining - used))
    try:
        db.flush()
    except StaleDataError as e:
        raise AllocationConflictError(
            f"Lot {lot_id} was modified concurrently; re-run the match."
        ) from e
    logger.debug(f"[Lot] lot={lot_id} remaining {from_sats(remaining)} => {lot.remaining_btc}")
    return lot


# ------------------------------------------------------------------------------
# Transactions & allocation records
# ------------------------------------------------------------------------------
def get_transaction(db: Session, company_id: int, transaction_id: int) -> Optional[Transaction]:
    """
    Retrieve a Transaction scoped to its company (None if absent or foreign).
    """
    return (
        db.query(Transaction)
        .filter(Transaction.id == transaction_id, Transaction.company_id == company_id)
        .first()
    )


def get_allocation_records(db: Session, transaction_id: int) -> List[TransactionLot]:
    return (
        db.query(TransactionLot)
        .filter(TransactionLot.transaction_id == transaction_id)
        .order_by(TransactionLot.id.asc())
        .all()
    )


def has_allocation_records(db: Session, transaction_id: int) -> bool:
    return (
        db.query(TransactionLot.id)
        .filter(TransactionLot.transaction_id == transaction_id)
        .first()
        is not None
    )


def save_allocation_records(db: Session, transaction_id: int, allocations: Iterable) -> List[TransactionLot]:
    """
    Insert one TransactionLot per allocation (objects exposing purchase_id,
    btc_used, cost_basis_used). Flushed, not committed.
    """
    records = []
    for alloc in allocations:
        record = TransactionLot(
            transaction_id=transaction_id,
            purchase_id=alloc.purchase_id,
            btc_amount_used=from_sats(to_sats(alloc.btc_used)),
            cost_basis_used=to_usd(alloc.cost_basis_used),
        )
        db.add(record)
        records.append(record)
    db.flush()
    return records
