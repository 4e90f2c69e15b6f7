"""
btcbasis/routers/company.py

Tenant and acquisition-lot endpoints. Purchases live under their company so
every lot query is naturally scoped to one tenant.
"""

from fastapi import APIRouter, Depends, HTTPException
from typing import List
from sqlalchemy.orm import Session

from btcbasis.database import get_db
from btcbasis.schemas.company import CompanyCreate, CompanyRead
from btcbasis.schemas.purchase import PurchaseCreate, PurchaseRead
from btcbasis.services import company as company_service
from btcbasis.services import ledger
from btcbasis.services.errors import InvalidInputError
from btcbasis.utils.deps import http_error, require_company

router = APIRouter(tags=["companies"])


@router.get("/", response_model=List[CompanyRead])
def list_companies(db: Session = Depends(get_db)):
    return company_service.get_all_companies(db)


@router.post("/", response_model=CompanyRead, status_code=201)
def create_company(company: CompanyCreate, db: Session = Depends(get_db)):
    return company_service.create_company(db, company.name)


@router.get("/{company_id}", response_model=CompanyRead)
def get_company(company_id: int, db: Session = Depends(get_db)):
    company = company_service.get_company(db, company_id)
    if not company:
        raise HTTPException(status_code=404, detail="Company not found.")
    return company


@router.post("/{company_id}/purchases", response_model=PurchaseRead, status_code=201)
def create_purchase(
    purchase: PurchaseCreate,
    company_id: int = Depends(require_company),
    db: Session = Depends(get_db),
):
    """
    Record an acquisition lot. The new lot starts with remaining_btc equal
    to amount_btc and becomes available to FIFO matching immediately.
    """
    try:
        lot = ledger.create_purchase(db, company_id, purchase.model_dump())
        db.commit()
    except InvalidInputError as e:
        db.rollback()
        raise http_error(e)
    db.refresh(lot)
    return lot


@router.get("/{company_id}/purchases", response_model=List[PurchaseRead])
def list_purchases(
    open_only: bool = False,
    company_id: int = Depends(require_company),
    db: Session = Depends(get_db),
):
    """
    Lots in FIFO order (oldest first). With open_only=true, lots below one
    satoshi remaining are left out, exactly as the matcher sees them.
    """
    return ledger.list_purchases(db, company_id, open_only=open_only)
