"""
btcbasis/routers/cost_basis.py

FIFO cost basis endpoints for sent transactions.

 - GET  .../cost-basis/{id}/preview  read-only match, nothing written
 - POST .../cost-basis/{id}/commit   write a previewed match
 - POST .../cost-basis/{id}          write-through: stored result or match+commit
 - GET  .../cost-basis/{id}/lots     the stored allocation rows
 - GET  .../cost-basis?transaction_ids=1,2,3   batch write-through

All matching happens in services/cost_basis.py; this module only maps
results and errors onto HTTP.
"""

from fastapi import APIRouter, Depends, HTTPException, Query
from typing import List, Optional
from sqlalchemy.orm import Session

from btcbasis.database import get_db
from btcbasis.schemas.cost_basis import (
    AllocationCommitRequest,
    BatchCostBasisRead,
    CostBasisPreview,
    CostBasisSummaryRead,
    TransactionLotRead,
)
from btcbasis.services import ledger
from btcbasis.services.cost_basis import CostBasisEngine
from btcbasis.services.errors import CostBasisError
from btcbasis.utils.deps import get_cost_basis_engine, http_error, require_company

router = APIRouter(tags=["cost-basis"])


def _require_transaction(db: Session, company_id: int, transaction_id: int):
    tx = ledger.get_transaction(db, company_id, transaction_id)
    if tx is None:
        raise HTTPException(status_code=404, detail="Transaction not found")
    return tx


@router.get("/{company_id}/cost-basis", response_model=BatchCostBasisRead)
def batch_cost_basis(
    transaction_ids: str = Query(..., description="Comma-separated ids, e.g. 1,2,3"),
    company_id: int = Depends(require_company),
    db: Session = Depends(get_db),
    engine: CostBasisEngine = Depends(get_cost_basis_engine),
):
    """
    Cost basis for several disposals at once (e.g. for an accounting export).
    Unknown ids are skipped; received transactions come back with a message
    and zero basis.
    """
    ids = []
    for part in transaction_ids.split(","):
        part = part.strip()
        if part.isdigit() and int(part) > 0:
            ids.append(int(part))
    if not ids:
        raise HTTPException(
            status_code=400,
            detail="Invalid transaction_ids. Must be comma-separated positive integers",
        )

    results = engine.batch_cost_basis(db, company_id, ids)
    return {"success": True, "count": len(results), "transactions": results}


@router.get("/{company_id}/cost-basis/{transaction_id}/preview", response_model=Optional[CostBasisPreview])
def preview_cost_basis(
    transaction_id: int,
    company_id: int = Depends(require_company),
    db: Session = Depends(get_db),
    engine: CostBasisEngine = Depends(get_cost_basis_engine),
):
    """
    FIFO match without side effects. Returns null for transactions that are
    not disposals. Check 'insufficient_btc' before trusting the total.
    """
    _require_transaction(db, company_id, transaction_id)
    return engine.compute_cost_basis(db, company_id, transaction_id)


@router.post("/{company_id}/cost-basis/{transaction_id}/commit", response_model=List[TransactionLotRead])
def commit_cost_basis(
    transaction_id: int,
    body: AllocationCommitRequest,
    company_id: int = Depends(require_company),
    db: Session = Depends(get_db),
    engine: CostBasisEngine = Depends(get_cost_basis_engine),
):
    """
    Persist a previewed allocation. Idempotent: if the disposal already has
    allocation rows, those are returned and nothing changes. 409 if a lot no
    longer holds what the preview assumed, or if the submitted allocations
    differ from the current FIFO match.
    """
    try:
        return engine.commit_allocation(db, company_id, transaction_id, body.allocations)
    except CostBasisError as e:
        raise http_error(e)


@router.post("/{company_id}/cost-basis/{transaction_id}", response_model=CostBasisSummaryRead)
def get_or_create_cost_basis(
    transaction_id: int,
    company_id: int = Depends(require_company),
    db: Session = Depends(get_db),
    engine: CostBasisEngine = Depends(get_cost_basis_engine),
):
    """
    The usual entry point: returns stored allocations when present,
    otherwise matches FIFO and commits in the same step. Includes
    gain_loss_usd when the transaction carries a USD sale value.
    """
    try:
        summary = engine.get_or_create_cost_basis(db, company_id, transaction_id)
    except CostBasisError as e:
        raise http_error(e)
    if summary is None:
        raise HTTPException(status_code=404, detail="Transaction not found")
    return summary


@router.get("/{company_id}/cost-basis/{transaction_id}/lots", response_model=List[TransactionLotRead])
def list_allocation_records(
    transaction_id: int,
    company_id: int = Depends(require_company),
    db: Session = Depends(get_db),
    engine: CostBasisEngine = Depends(get_cost_basis_engine),
):
    _require_transaction(db, company_id, transaction_id)
    return engine.get_allocation_records(db, company_id, transaction_id)
