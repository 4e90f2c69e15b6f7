"""
btcbasis/utils/deps.py

FastAPI dependencies shared by the routers, plus the one place where
service-layer errors are mapped onto HTTP status codes.
"""

from fastapi import Depends, HTTPException, Request
from sqlalchemy.orm import Session

from btcbasis.database import get_db
from btcbasis.services import company as company_service
from btcbasis.services.cost_basis import CostBasisEngine
from btcbasis.services.errors import (
    AllocationConflictError,
    CostBasisError,
    DisposalNotFoundError,
    InvalidInputError,
    UpstreamFetchError,
)
from btcbasis.services.rate_fetcher import RateFetcher


def get_cost_basis_engine(request: Request) -> CostBasisEngine:
    """The process-wide engine built in main.py (owns the tenant locks)."""
    return request.app.state.cost_basis_engine


def get_rate_fetcher(request: Request) -> RateFetcher:
    """The process-wide fetcher built in main.py (owns the rate limiter)."""
    return request.app.state.rate_fetcher


def require_company(company_id: int, db: Session = Depends(get_db)) -> int:
    """
    Path dependency: 404 unless the company exists. Returns the id so
    handlers can keep passing plain ints to the services.
    """
    if company_service.get_company(db, company_id) is None:
        raise HTTPException(status_code=404, detail="Company not found.")
    return company_id


def http_error(e: CostBasisError) -> HTTPException:
    if isinstance(e, InvalidInputError):
        return HTTPException(status_code=400, detail=str(e))
    if isinstance(e, DisposalNotFoundError):
        return HTTPException(status_code=404, detail=str(e))
    if isinstance(e, AllocationConflictError):
        return HTTPException(status_code=409, detail=str(e))
    if isinstance(e, UpstreamFetchError):
        return HTTPException(status_code=502, detail=str(e))
    return HTTPException(status_code=500, detail=str(e))
