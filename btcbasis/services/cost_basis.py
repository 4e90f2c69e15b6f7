"""
btcbasis/services/cost_basis.py

FIFO cost basis for sent transactions.

Two phases, kept apart so a caller can preview before committing:
 1) compute_cost_basis(): read-only match of a disposal against the
    company's open lots, oldest first. Returns plain dataclasses.
 2) commit_allocation(): re-runs the match under the company lock, and if
    the submitted allocations still equal it, writes the TransactionLot rows
    and decrements the consumed lots in a single DB transaction.

get_or_create_cost_basis() runs both under one lock hold (the write-through
path the API uses), so the match can never go stale between the phases.

Running out of lots is not an error. The result carries
insufficient_btc=True and amount_matched < amount_requested; callers decide
whether a short position is a data problem.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal, ROUND_HALF_DOWN
from typing import Iterable, List, Optional

from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from btcbasis.constants import TX_SENT, USD_QUANT
from btcbasis.models.transaction import Transaction, TransactionLot
from btcbasis.services import ledger
from btcbasis.services.errors import (
    AllocationConflictError,
    CostBasisError,
    DisposalNotFoundError,
    InvalidInputError,
)

logger = logging.getLogger(__name__)


# ------------------------------------------------------------------------------
# Result types (plain data, no ORM or framework objects)
# ------------------------------------------------------------------------------
@dataclass
class LotAllocation:
    purchase_id: int
    purchase_date: datetime
    btc_used: Decimal
    cost_basis_used: Decimal
    price_per_btc: Decimal


@dataclass
class CostBasisResult:
    transaction_id: int
    total_cost_basis_usd: Decimal
    allocations: List[LotAllocation]
    amount_matched: Decimal
    amount_requested: Decimal
    insufficient_btc: bool


@dataclass
class CostBasisSummary:
    transaction_id: int
    tx_type: str
    amount_btc: Decimal
    cost_basis_usd: Decimal
    sale_value_usd: Optional[Decimal] = None
    gain_loss_usd: Optional[Decimal] = None
    lots: List[LotAllocation] = field(default_factory=list)
    insufficient_btc: bool = False
    amount_matched: Decimal = Decimal("0")
    amount_requested: Decimal = Decimal("0")
    message: Optional[str] = None


def _slice_cost(db: Session, lot, used: int, remaining: int, lot_total: int) -> Decimal:
    """
    used x cost_basis_usd / amount_btc, in cents.

    A slice that drains the lot absorbs the rounding residual of the earlier
    slices, but only when every earlier satoshi of the lot is on record as a
    TransactionLot. Otherwise the plain proportional share is used.
    """
    basis = ledger.to_usd(lot.cost_basis_usd)
    share = (basis * used / lot_total).quantize(USD_QUANT, rounding=ROUND_HALF_DOWN)
    if used != remaining:
        return share

    recorded_sats, recorded_basis = ledger.allocated_totals(db, lot.id)
    if recorded_sats != lot_total - remaining:
        return share
    return max(Decimal("0.00"), basis - recorded_basis)


def _price_per_btc(purchase) -> Decimal:
    amount = Decimal(str(purchase.amount_btc))
    if amount <= 0:
        return Decimal("0.00")
    return (ledger.to_usd(purchase.cost_basis_usd) / amount).quantize(USD_QUANT, rounding=ROUND_HALF_DOWN)


class CostBasisEngine:
    """
    Construct once per process and share; the tenant lock registry only
    serializes commits that go through the same engine instance.
    """

    def __init__(self, locks: Optional[ledger.TenantLockRegistry] = None):
        self.locks = locks or ledger.TenantLockRegistry()

    # --------------------------------------------------------------------------
    # Phase 1: read-only FIFO match
    # --------------------------------------------------------------------------
    def compute_cost_basis(self, db: Session, company_id: int, transaction_id: int) -> Optional[CostBasisResult]:
        """
        Match a sent transaction against open lots, oldest first.

        Returns None when the transaction does not exist for this company,
        is not 'sent', or moves a non-positive amount.
        """
        tx = ledger.get_transaction(db, company_id, transaction_id)
        if tx is None:
            return None
        if tx.tx_type != TX_SENT:
            return None

        requested = ledger.to_sats(tx.amount_btc)
        if requested <= 0:
            return None

        lots = ledger.list_open_lots(db, company_id)
        needed = requested
        allocations: List[LotAllocation] = []
        total_cost = Decimal("0.00")

        for lot in lots:
            if needed <= 0:
                break

            lot_total = ledger.to_sats(lot.amount_btc)
            remaining = ledger.to_sats(lot.remaining_btc)
            if lot_total <= 0:
                logger.warning(f"[FIFO] lot={lot.id} has zero amount_btc; excluded from matching")
                continue
            if remaining <= 0:
                continue

            used = min(remaining, needed)
            cost_used = _slice_cost(db, lot, used, remaining, lot_total)

            allocations.append(LotAllocation(
                purchase_id=lot.id,
                purchase_date=lot.purchase_date,
                btc_used=ledger.from_sats(used),
                cost_basis_used=cost_used,
                price_per_btc=_price_per_btc(lot),
            ))
            total_cost += cost_used
            needed -= used

        result = CostBasisResult(
            transaction_id=tx.id,
            total_cost_basis_usd=total_cost.quantize(USD_QUANT),
            allocations=allocations,
            amount_matched=ledger.from_sats(requested - needed),
            amount_requested=ledger.from_sats(requested),
            insufficient_btc=needed > 0,
        )
        if result.insufficient_btc:
            logger.warning(
                f"[FIFO] company={company_id} tx={tx.id} short by {ledger.from_sats(needed)} BTC "
                f"(matched {result.amount_matched} of {result.amount_requested})"
            )
        else:
            logger.debug(
                f"[FIFO] company={company_id} tx={tx.id} matched {result.amount_matched} BTC "
                f"across {len(allocations)} lot(s), basis=${result.total_cost_basis_usd}"
            )
        return result

    # --------------------------------------------------------------------------
    # Phase 2: persist
    # --------------------------------------------------------------------------
    def commit_allocation(
        self,
        db: Session,
        company_id: int,
        transaction_id: int,
        allocations: Iterable[LotAllocation],
    ) -> List[TransactionLot]:
        """
        Persist allocation rows and decrement the referenced lots as one unit.

        If the disposal already has allocation rows they are returned and
        nothing is written. A submitted set that differs from the current
        FIFO match (wrong lots, amounts or cents) raises
        AllocationConflictError; what gets written is always the freshly
        computed match. Either every row and every decrement lands, or
        the session is rolled back and the error propagates.
        """
        allocations = list(allocations)
        with self.locks.lock_for(company_id):
            db.expire_all()
            tx = ledger.get_transaction(db, company_id, transaction_id)
            if tx is None:
                raise DisposalNotFoundError(company_id, transaction_id)

            existing = ledger.get_allocation_records(db, transaction_id)
            if existing:
                logger.info(
                    f"[Commit] tx={transaction_id} already has {len(existing)} allocation(s); skipping"
                )
                return existing

            if tx.tx_type != TX_SENT:
                raise InvalidInputError(f"Transaction {transaction_id} is not a disposal ('{tx.tx_type}').")
            if not allocations:
                return []

            _check_allocations(tx, allocations)

            # Only the current FIFO match may be written.
            fresh = self.compute_cost_basis(db, company_id, transaction_id)
            if fresh is None or _allocation_key(allocations) != _allocation_key(fresh.allocations):
                logger.warning(
                    f"[Commit] company={company_id} tx={transaction_id} submitted allocations "
                    f"differ from the current FIFO match; rejected"
                )
                raise AllocationConflictError(
                    f"Allocations for transaction {transaction_id} no longer match the FIFO "
                    f"lot state; preview again and resubmit."
                )
            return self._write_allocations(db, company_id, transaction_id, fresh.allocations)

    def _write_allocations(self, db: Session, company_id: int, transaction_id: int, allocations) -> List[TransactionLot]:
        try:
            for alloc in allocations:
                ledger.decrement_lot(db, company_id, alloc.purchase_id, alloc.btc_used)
            records = ledger.save_allocation_records(db, transaction_id, allocations)
            db.commit()
        except CostBasisError:
            db.rollback()
            raise
        except IntegrityError as e:
            db.rollback()
            # Another process wrote this disposal's rows first.
            raise AllocationConflictError(
                f"Allocation rows for transaction {transaction_id} were written concurrently."
            ) from e
        except SQLAlchemyError:
            db.rollback()
            logger.exception(f"[Commit] tx={transaction_id} failed; rolled back")
            raise

        logger.info(
            f"[Commit] company={company_id} tx={transaction_id} wrote {len(records)} allocation(s)"
        )
        return records

    # --------------------------------------------------------------------------
    # Write-through & audit views
    # --------------------------------------------------------------------------
    def get_allocation_records(self, db: Session, company_id: int, transaction_id: int) -> List[TransactionLot]:
        """Stored audit trail for a disposal; empty if the tx is absent or foreign."""
        if ledger.get_transaction(db, company_id, transaction_id) is None:
            return []
        return ledger.get_allocation_records(db, transaction_id)

    def has_allocations(self, db: Session, company_id: int, transaction_id: int) -> bool:
        if ledger.get_transaction(db, company_id, transaction_id) is None:
            return False
        return ledger.has_allocation_records(db, transaction_id)

    def get_or_create_cost_basis(self, db: Session, company_id: int, transaction_id: int) -> Optional[CostBasisSummary]:
        """
        Stored allocations if the disposal was already matched, otherwise
        match and commit now. Returns None if the transaction is absent.
        """
        tx = ledger.get_transaction(db, company_id, transaction_id)
        if tx is None:
            return None
        if tx.tx_type != TX_SENT:
            return CostBasisSummary(
                transaction_id=tx.id,
                tx_type=tx.tx_type,
                amount_btc=ledger.from_sats(ledger.to_sats(tx.amount_btc)),
                cost_basis_usd=Decimal("0.00"),
                gain_loss_usd=Decimal("0.00"),
                message="Cost basis only applies to sent transactions",
            )

        with self.locks.lock_for(company_id):
            db.expire_all()
            existing = ledger.get_allocation_records(db, transaction_id)
            if existing:
                result = _result_from_records(tx, existing)
            else:
                result = self.compute_cost_basis(db, company_id, transaction_id)
                if result is None:
                    return None
                if result.allocations:
                    self._write_allocations(db, company_id, transaction_id, result.allocations)

        return _summarize(tx, result)

    def batch_cost_basis(self, db: Session, company_id: int, transaction_ids: Iterable[int]) -> List[CostBasisSummary]:
        """
        Write-through for several disposals. Processed in chronological order
        so earlier disposals consume earlier lots. Unknown ids are skipped;
        a failure on one disposal is logged and the rest continue.
        """
        ids = sorted({int(i) for i in transaction_ids})
        if not ids:
            return []
        txs = (
            db.query(Transaction)
            .filter(Transaction.company_id == company_id, Transaction.id.in_(ids))
            .order_by(Transaction.timestamp.asc(), Transaction.id.asc())
            .all()
        )
        tx_ids = [t.id for t in txs]
        summaries = []
        for tx_id in tx_ids:
            try:
                summary = self.get_or_create_cost_basis(db, company_id, tx_id)
            except CostBasisError as e:
                logger.error(f"[Batch] company={company_id} tx={tx_id} failed: {e}")
                continue
            if summary is not None:
                summaries.append(summary)
        return summaries


# ------------------------------------------------------------------------------
# Internal Helpers
# ------------------------------------------------------------------------------
def _check_allocations(tx: Transaction, allocations: List[LotAllocation]):
    """
    A commit may not take more than the disposal moved, and may not name the
    same lot twice.
    """
    requested = ledger.to_sats(tx.amount_btc)
    total = sum(ledger.to_sats(a.btc_used) for a in allocations)
    if total > requested:
        raise InvalidInputError(
            f"Allocations total {ledger.from_sats(total)} BTC exceeds transaction amount "
            f"{ledger.from_sats(requested)} BTC."
        )
    lot_ids = [a.purchase_id for a in allocations]
    if len(lot_ids) != len(set(lot_ids)):
        raise InvalidInputError("Each lot may appear at most once per disposal.")


def _allocation_key(allocations) -> List[tuple]:
    return [
        (a.purchase_id, ledger.to_sats(a.btc_used), ledger.to_usd(a.cost_basis_used))
        for a in allocations
    ]


def _result_from_records(tx: Transaction, records: List[TransactionLot]) -> CostBasisResult:
    requested = ledger.to_sats(tx.amount_btc)
    matched = sum(ledger.to_sats(r.btc_amount_used) for r in records)
    allocations = [
        LotAllocation(
            purchase_id=r.purchase_id,
            purchase_date=r.purchase.purchase_date,
            btc_used=ledger.from_sats(ledger.to_sats(r.btc_amount_used)),
            cost_basis_used=ledger.to_usd(r.cost_basis_used),
            price_per_btc=_price_per_btc(r.purchase),
        )
        for r in records
    ]
    return CostBasisResult(
        transaction_id=tx.id,
        total_cost_basis_usd=sum((a.cost_basis_used for a in allocations), Decimal("0.00")),
        allocations=allocations,
        amount_matched=ledger.from_sats(matched),
        amount_requested=ledger.from_sats(requested),
        insufficient_btc=matched < requested,
    )


def _summarize(tx: Transaction, result: CostBasisResult) -> CostBasisSummary:
    sale_value = ledger.to_usd(tx.usd_value) if tx.usd_value is not None else None
    gain_loss = None
    if sale_value is not None:
        gain_loss = (sale_value - result.total_cost_basis_usd).quantize(USD_QUANT)
    return CostBasisSummary(
        transaction_id=tx.id,
        tx_type=tx.tx_type,
        amount_btc=result.amount_requested,
        sale_value_usd=sale_value,
        cost_basis_usd=result.total_cost_basis_usd,
        gain_loss_usd=gain_loss,
        lots=result.allocations,
        insufficient_btc=result.insufficient_btc,
        amount_matched=result.amount_matched,
        amount_requested=result.amount_requested,
    )
