"""
btcbasis/routers/transaction.py

Normalized transaction records for one company. There is no update
or delete route; a disposal with allocations is part of the audit trail.
"""

from fastapi import APIRouter, Depends, HTTPException
from typing import List
from sqlalchemy.orm import Session

from btcbasis.database import get_db
from btcbasis.schemas.transaction import TransactionCreate, TransactionRead
from btcbasis.services import transaction as tx_service
from btcbasis.services.errors import InvalidInputError
from btcbasis.utils.deps import http_error, require_company

router = APIRouter(tags=["transactions"])


@router.get("/{company_id}/transactions", response_model=List[TransactionRead])
def list_transactions(company_id: int = Depends(require_company), db: Session = Depends(get_db)):
    return tx_service.get_company_transactions(db, company_id)


@router.post("/{company_id}/transactions", response_model=TransactionRead, status_code=201)
def create_transaction(
    tx: TransactionCreate,
    company_id: int = Depends(require_company),
    db: Session = Depends(get_db),
):
    try:
        return tx_service.create_transaction_record(db, company_id, tx.model_dump())
    except InvalidInputError as e:
        raise http_error(e)


@router.get("/{company_id}/transactions/{transaction_id}", response_model=TransactionRead)
def get_transaction(
    transaction_id: int,
    company_id: int = Depends(require_company),
    db: Session = Depends(get_db),
):
    tx = tx_service.get_transaction_by_id(db, company_id, transaction_id)
    if not tx:
        raise HTTPException(status_code=404, detail="Transaction not found.")
    return tx
