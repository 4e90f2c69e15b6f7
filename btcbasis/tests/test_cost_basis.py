#!/usr/bin/env python3
"""
btcbasis/tests/test_cost_basis.py

FIFO matching and allocation commits, exercised directly against the
service layer with an isolated SQLite database.

Reference lots (fixture 'fifo_lots'):
  L1  2024-01-01  0.5 BTC  $10,000
  L2  2024-01-02  0.3 BTC  $7,000
  L3  2024-01-03  0.2 BTC  $5,000

Usage:
    pytest btcbasis/tests/test_cost_basis.py -v
"""

import threading
from dataclasses import replace
from datetime import datetime, timezone
from decimal import Decimal

import pytest

from btcbasis.models import Purchase, TransactionLot
from btcbasis.services import ledger
from btcbasis.services.cost_basis import LotAllocation
from btcbasis.services.errors import (
    AllocationConflictError,
    DisposalNotFoundError,
    InvalidInputError,
)


def _remaining(db, lot_id) -> Decimal:
    db.expire_all()
    return db.get(Purchase, lot_id).remaining_btc


# =============================================================================
# compute_cost_basis (read-only)
# =============================================================================

class TestFifoMatching:

    def test_consumes_oldest_lots_first(self, test_db, company, fifo_lots, make_tx, cost_engine):
        l1, l2, l3 = fifo_lots
        tx = make_tx(company.id, "0.6")

        result = cost_engine.compute_cost_basis(test_db, company.id, tx.id)

        assert [a.purchase_id for a in result.allocations] == [l1.id, l2.id]
        assert result.allocations[0].btc_used == Decimal("0.5")
        assert result.allocations[0].cost_basis_used == Decimal("10000.00")
        assert result.allocations[1].btc_used == Decimal("0.1")
        assert result.allocations[1].cost_basis_used == Decimal("2333.33")
        assert result.total_cost_basis_usd == Decimal("12333.33")
        assert result.amount_matched == Decimal("0.6")
        assert result.amount_requested == Decimal("0.6")
        assert result.insufficient_btc is False

    def test_price_per_btc_comes_from_the_lot(self, test_db, company, fifo_lots, make_tx, cost_engine):
        tx = make_tx(company.id, "0.6")
        result = cost_engine.compute_cost_basis(test_db, company.id, tx.id)
        assert result.allocations[0].price_per_btc == Decimal("20000.00")
        assert result.allocations[1].price_per_btc == Decimal("23333.33")

    def test_compute_does_not_touch_lots(self, test_db, company, fifo_lots, make_tx, cost_engine):
        tx = make_tx(company.id, "0.6")
        cost_engine.compute_cost_basis(test_db, company.id, tx.id)
        cost_engine.compute_cost_basis(test_db, company.id, tx.id)

        assert [_remaining(test_db, lot.id) for lot in fifo_lots] == [
            Decimal("0.5"), Decimal("0.3"), Decimal("0.2")
        ]
        assert test_db.query(TransactionLot).count() == 0

    def test_insufficient_lots_is_flagged_not_raised(self, test_db, company, fifo_lots, make_tx, cost_engine):
        tx = make_tx(company.id, "2.0")
        result = cost_engine.compute_cost_basis(test_db, company.id, tx.id)

        assert result.insufficient_btc is True
        assert result.amount_matched == Decimal("1.0")
        assert result.amount_requested == Decimal("2.0")
        assert len(result.allocations) == 3
        assert result.total_cost_basis_usd == Decimal("22000.00")

    def test_no_lots_at_all(self, test_db, company, make_tx, cost_engine):
        tx = make_tx(company.id, "0.1")
        result = cost_engine.compute_cost_basis(test_db, company.id, tx.id)
        assert result.allocations == []
        assert result.amount_matched == Decimal("0")
        assert result.insufficient_btc is True

    def test_dust_lot_is_skipped(self, test_db, company, make_lot, make_tx, cost_engine):
        dusty = make_lot(company.id, datetime(2023, 1, 1, tzinfo=timezone.utc), "1", "30000",
                         remaining="0.000000005")
        fresh = make_lot(company.id, datetime(2023, 6, 1, tzinfo=timezone.utc), "1", "25000")
        tx = make_tx(company.id, "0.1")

        result = cost_engine.compute_cost_basis(test_db, company.id, tx.id)

        assert [a.purchase_id for a in result.allocations] == [fresh.id]
        assert dusty.id not in [lot.id for lot in ledger.list_open_lots(test_db, company.id)]

    def test_exactly_one_satoshi_is_still_usable(self, test_db, company, make_lot, make_tx, cost_engine):
        sat = make_lot(company.id, datetime(2023, 1, 1, tzinfo=timezone.utc), "1", "30000",
                       remaining="0.00000001")
        tx = make_tx(company.id, "0.00000001")
        result = cost_engine.compute_cost_basis(test_db, company.id, tx.id)
        assert [a.purchase_id for a in result.allocations] == [sat.id]
        assert result.insufficient_btc is False

    def test_equal_timestamps_fall_back_to_id(self, test_db, company, make_lot, make_tx, cost_engine):
        same_time = datetime(2024, 5, 5, 12, 0, tzinfo=timezone.utc)
        first = make_lot(company.id, same_time, "0.1", "6000")
        second = make_lot(company.id, same_time, "0.1", "7000")
        tx = make_tx(company.id, "0.15")

        result = cost_engine.compute_cost_basis(test_db, company.id, tx.id)

        assert [a.purchase_id for a in result.allocations] == [first.id, second.id]
        assert result.allocations[1].btc_used == Decimal("0.05")

    def test_part_consumed_lot_without_records_is_proportional(self, test_db, company, make_lot, make_tx,
                                                               cost_engine):
        # imported with half already gone and no allocation rows for that half
        lot = make_lot(company.id, datetime(2023, 1, 1, tzinfo=timezone.utc), "1.0", "10000", remaining="0.5")
        tx = make_tx(company.id, "0.5")

        result = cost_engine.compute_cost_basis(test_db, company.id, tx.id)

        assert [a.purchase_id for a in result.allocations] == [lot.id]
        assert result.total_cost_basis_usd == Decimal("5000.00")

    def test_part_consumed_lot_drained_in_two_slices(self, test_db, company, make_lot, make_tx, cost_engine):
        lot = make_lot(company.id, datetime(2023, 1, 1, tzinfo=timezone.utc), "1.0", "10000", remaining="0.5")
        first = make_tx(company.id, "0.25", when=datetime(2024, 2, 1, tzinfo=timezone.utc))
        second = make_tx(company.id, "0.25", when=datetime(2024, 3, 1, tzinfo=timezone.utc))

        costs = [cost_engine.get_or_create_cost_basis(test_db, company.id, t.id).cost_basis_usd
                 for t in (first, second)]

        assert costs == [Decimal("2500.00"), Decimal("2500.00")]
        assert _remaining(test_db, lot.id) == Decimal("0")

    def test_received_transaction_is_a_no_op(self, test_db, company, fifo_lots, make_tx, cost_engine):
        tx = make_tx(company.id, "0.1", tx_type="received")
        assert cost_engine.compute_cost_basis(test_db, company.id, tx.id) is None

    def test_missing_transaction_returns_none(self, test_db, company, cost_engine):
        assert cost_engine.compute_cost_basis(test_db, company.id, 9999) is None

    def test_other_company_cannot_see_transaction_or_lots(self, test_db, company, fifo_lots, make_tx, cost_engine):
        from btcbasis.models import Company
        other = Company(name="Other")
        test_db.add(other)
        test_db.commit()

        tx = make_tx(company.id, "0.1")
        assert cost_engine.compute_cost_basis(test_db, other.id, tx.id) is None

        other_tx = make_tx(other.id, "0.1")
        result = cost_engine.compute_cost_basis(test_db, other.id, other_tx.id)
        assert result.allocations == []
        assert result.insufficient_btc is True


# =============================================================================
# commit_allocation
# =============================================================================

class TestCommitAllocation:

    def test_commit_writes_records_and_decrements_lots(self, test_db, company, fifo_lots, make_tx, cost_engine):
        l1, l2, l3 = fifo_lots
        tx = make_tx(company.id, "0.6")
        result = cost_engine.compute_cost_basis(test_db, company.id, tx.id)

        records = cost_engine.commit_allocation(test_db, company.id, tx.id, result.allocations)

        assert len(records) == 2
        assert sum(Decimal(str(r.btc_amount_used)) for r in records) == Decimal("0.6")
        assert _remaining(test_db, l1.id) == Decimal("0")
        assert _remaining(test_db, l2.id) == Decimal("0.2")
        assert _remaining(test_db, l3.id) == Decimal("0.2")

    def test_commit_twice_is_idempotent(self, test_db, company, fifo_lots, make_tx, cost_engine):
        l1, l2, _ = fifo_lots
        tx = make_tx(company.id, "0.6")
        result = cost_engine.compute_cost_basis(test_db, company.id, tx.id)

        first = cost_engine.commit_allocation(test_db, company.id, tx.id, result.allocations)
        second = cost_engine.commit_allocation(test_db, company.id, tx.id, result.allocations)

        assert [r.id for r in second] == [r.id for r in first]
        assert test_db.query(TransactionLot).filter_by(transaction_id=tx.id).count() == 2
        assert _remaining(test_db, l1.id) == Decimal("0")
        assert _remaining(test_db, l2.id) == Decimal("0.2")
        assert cost_engine.has_allocations(test_db, company.id, tx.id) is True

    def test_insufficient_commit_drains_every_lot(self, test_db, company, fifo_lots, make_tx, cost_engine):
        tx = make_tx(company.id, "2.0")
        result = cost_engine.compute_cost_basis(test_db, company.id, tx.id)
        cost_engine.commit_allocation(test_db, company.id, tx.id, result.allocations)

        assert [_remaining(test_db, lot.id) for lot in fifo_lots] == [Decimal("0")] * 3
        assert ledger.list_open_lots(test_db, company.id) == []

    def test_stale_preview_is_rejected_and_rolled_back(self, test_db, company, fifo_lots, make_tx, cost_engine):
        l1, l2, _ = fifo_lots
        first = make_tx(company.id, "0.6")
        second = make_tx(company.id, "0.6")

        preview_first = cost_engine.compute_cost_basis(test_db, company.id, first.id)
        preview_second = cost_engine.compute_cost_basis(test_db, company.id, second.id)
        cost_engine.commit_allocation(test_db, company.id, first.id, preview_first.allocations)

        with pytest.raises(AllocationConflictError):
            cost_engine.commit_allocation(test_db, company.id, second.id, preview_second.allocations)

        assert test_db.query(TransactionLot).filter_by(transaction_id=second.id).count() == 0
        assert _remaining(test_db, l1.id) == Decimal("0")
        assert _remaining(test_db, l2.id) == Decimal("0.2")

    def test_partial_out_of_order_set_is_rejected(self, test_db, company, fifo_lots, make_tx, cost_engine):
        _, _, l3 = fifo_lots
        tx = make_tx(company.id, "0.6")
        skipped_ahead = LotAllocation(l3.id, l3.purchase_date, Decimal("0.1"), Decimal("0"), Decimal("25000.00"))

        with pytest.raises(AllocationConflictError):
            cost_engine.commit_allocation(test_db, company.id, tx.id, [skipped_ahead])

        assert cost_engine.has_allocations(test_db, company.id, tx.id) is False
        assert [_remaining(test_db, lot.id) for lot in fifo_lots] == [
            Decimal("0.5"), Decimal("0.3"), Decimal("0.2")
        ]
        # the disposal is still open to the proper FIFO match
        summary = cost_engine.get_or_create_cost_basis(test_db, company.id, tx.id)
        assert summary.cost_basis_usd == Decimal("12333.33")
        assert summary.insufficient_btc is False

    def test_tampered_cost_is_rejected(self, test_db, company, fifo_lots, make_tx, cost_engine):
        tx = make_tx(company.id, "0.6")
        preview = cost_engine.compute_cost_basis(test_db, company.id, tx.id)
        tampered = [preview.allocations[0], replace(preview.allocations[1], cost_basis_used=Decimal("1.00"))]

        with pytest.raises(AllocationConflictError):
            cost_engine.commit_allocation(test_db, company.id, tx.id, tampered)
        assert test_db.query(TransactionLot).count() == 0

    def test_backdated_lot_after_preview_is_rejected(self, test_db, company, fifo_lots, make_tx, make_lot,
                                                    cost_engine):
        tx = make_tx(company.id, "0.6")
        preview = cost_engine.compute_cost_basis(test_db, company.id, tx.id)
        older = make_lot(company.id, datetime(2023, 6, 1, tzinfo=timezone.utc), "1.0", "20000")

        with pytest.raises(AllocationConflictError):
            cost_engine.commit_allocation(test_db, company.id, tx.id, preview.allocations)
        assert test_db.query(TransactionLot).count() == 0
        assert _remaining(test_db, fifo_lots[0].id) == Decimal("0.5")

        fresh = cost_engine.compute_cost_basis(test_db, company.id, tx.id)
        records = cost_engine.commit_allocation(test_db, company.id, tx.id, fresh.allocations)
        assert [r.purchase_id for r in records] == [older.id]
        assert Decimal(str(records[0].cost_basis_used)) == Decimal("12000.00")

    def test_commit_for_missing_disposal_raises(self, test_db, company, fifo_lots, cost_engine):
        alloc = LotAllocation(fifo_lots[0].id, fifo_lots[0].purchase_date,
                              Decimal("0.1"), Decimal("2000.00"), Decimal("20000.00"))
        with pytest.raises(DisposalNotFoundError):
            cost_engine.commit_allocation(test_db, company.id, 424242, [alloc])

    def test_commit_for_received_transaction_raises(self, test_db, company, fifo_lots, make_tx, cost_engine):
        tx = make_tx(company.id, "0.1", tx_type="received")
        alloc = LotAllocation(fifo_lots[0].id, fifo_lots[0].purchase_date,
                              Decimal("0.1"), Decimal("2000.00"), Decimal("20000.00"))
        with pytest.raises(InvalidInputError):
            cost_engine.commit_allocation(test_db, company.id, tx.id, [alloc])

    def test_commit_cannot_exceed_disposal_amount(self, test_db, company, fifo_lots, make_tx, cost_engine):
        tx = make_tx(company.id, "0.1")
        alloc = LotAllocation(fifo_lots[0].id, fifo_lots[0].purchase_date,
                              Decimal("0.2"), Decimal("4000.00"), Decimal("20000.00"))
        with pytest.raises(InvalidInputError):
            cost_engine.commit_allocation(test_db, company.id, tx.id, [alloc])
        assert _remaining(test_db, fifo_lots[0].id) == Decimal("0.5")

    def test_slices_of_a_lot_add_up_to_its_basis(self, test_db, company, make_lot, make_tx, cost_engine):
        lot = make_lot(company.id, datetime(2024, 1, 1, tzinfo=timezone.utc), "0.3", "7000")
        slices = []
        for day in (2, 3, 4):
            tx = make_tx(company.id, "0.1", when=datetime(2024, 2, day, tzinfo=timezone.utc))
            summary = cost_engine.get_or_create_cost_basis(test_db, company.id, tx.id)
            slices.append(summary.cost_basis_usd)

        assert slices == [Decimal("2333.33"), Decimal("2333.33"), Decimal("2333.34")]
        assert sum(slices) == Decimal("7000.00")
        assert _remaining(test_db, lot.id) == Decimal("0")

    def test_concurrent_disposals_never_double_spend(self, session_factory, test_db, company, fifo_lots,
                                                     make_tx, cost_engine):
        tx_ids = [make_tx(company.id, "0.6").id, make_tx(company.id, "0.6").id]
        errors = []
        barrier = threading.Barrier(len(tx_ids))

        def worker(tx_id):
            db = session_factory()
            try:
                barrier.wait()
                cost_engine.get_or_create_cost_basis(db, company.id, tx_id)
            except Exception as e:  # surfaced below
                errors.append(e)
            finally:
                db.close()

        threads = [threading.Thread(target=worker, args=(i,)) for i in tx_ids]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert errors == []
        test_db.expire_all()
        used = sum(Decimal(str(r.btc_amount_used)) for r in test_db.query(TransactionLot).all())
        assert used == Decimal("1.0")
        assert all(_remaining(test_db, lot.id) == Decimal("0") for lot in fifo_lots)


# =============================================================================
# Write-through summaries & batch
# =============================================================================

class TestWriteThrough:

    def test_summary_includes_gain_loss(self, test_db, company, fifo_lots, make_tx, cost_engine):
        tx = make_tx(company.id, "0.6", usd_value="39000")
        summary = cost_engine.get_or_create_cost_basis(test_db, company.id, tx.id)

        assert summary.cost_basis_usd == Decimal("12333.33")
        assert summary.sale_value_usd == Decimal("39000.00")
        assert summary.gain_loss_usd == Decimal("26666.67")
        assert len(summary.lots) == 2

    def test_second_call_reads_stored_records(self, test_db, company, fifo_lots, make_tx, cost_engine):
        tx = make_tx(company.id, "0.6", usd_value="39000")
        first = cost_engine.get_or_create_cost_basis(test_db, company.id, tx.id)
        # A later purchase must not change an already-matched disposal.
        ledger.create_purchase(test_db, company.id, {
            "purchase_date": datetime(2020, 1, 1, tzinfo=timezone.utc),
            "amount_btc": Decimal("5"),
            "cost_basis_usd": Decimal("1000"),
        })
        test_db.commit()
        second = cost_engine.get_or_create_cost_basis(test_db, company.id, tx.id)

        assert second.cost_basis_usd == first.cost_basis_usd
        assert [a.purchase_id for a in second.lots] == [a.purchase_id for a in first.lots]
        assert test_db.query(TransactionLot).filter_by(transaction_id=tx.id).count() == 2

    def test_received_summary_has_message(self, test_db, company, make_tx, cost_engine):
        tx = make_tx(company.id, "0.2", tx_type="received")
        summary = cost_engine.get_or_create_cost_basis(test_db, company.id, tx.id)
        assert summary.cost_basis_usd == Decimal("0.00")
        assert summary.message == "Cost basis only applies to sent transactions"
        assert cost_engine.get_allocation_records(test_db, company.id, tx.id) == []

    def test_batch_processes_in_time_order(self, test_db, company, fifo_lots, make_tx, cost_engine):
        later = make_tx(company.id, "0.3", when=datetime(2024, 8, 1, tzinfo=timezone.utc))
        earlier = make_tx(company.id, "0.5", when=datetime(2024, 7, 1, tzinfo=timezone.utc))

        summaries = cost_engine.batch_cost_basis(test_db, company.id, [later.id, earlier.id, 9999])

        assert [s.transaction_id for s in summaries] == [earlier.id, later.id]
        assert summaries[0].cost_basis_usd == Decimal("10000.00")
        assert summaries[1].cost_basis_usd == Decimal("7000.00")


# =============================================================================
# Lot creation guards
# =============================================================================

def test_zero_amount_purchase_is_rejected(test_db, company):
    with pytest.raises(InvalidInputError):
        ledger.create_purchase(test_db, company.id, {
            "purchase_date": datetime(2024, 1, 1, tzinfo=timezone.utc),
            "amount_btc": Decimal("0"),
            "cost_basis_usd": Decimal("100"),
        })


def test_satoshi_conversion_absorbs_float_noise():
    assert ledger.to_sats(0.1 + 0.2) == 30_000_000
    assert ledger.from_sats(12_345) == Decimal("0.00012345")
