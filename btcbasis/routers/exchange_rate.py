"""
btcbasis/routers/exchange_rate.py

BTC/USD rate endpoints backed by the cached ExchangeRateService.
Raises HTTP 502 when the provider cannot supply a price.
"""

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from btcbasis.database import get_db
from btcbasis.schemas.exchange_rate import BatchRateRead, BatchRateRequest, RateRead
from btcbasis.services.errors import CostBasisError
from btcbasis.services.exchange_rate import ExchangeRateService, normalize_date
from btcbasis.services.rate_fetcher import RateFetcher
from btcbasis.utils.deps import get_rate_fetcher, http_error

router = APIRouter(tags=["rates"])


def get_exchange_rate_service(
    db: Session = Depends(get_db),
    fetcher: RateFetcher = Depends(get_rate_fetcher),
) -> ExchangeRateService:
    return ExchangeRateService(db, fetcher)


@router.get("/current", response_model=RateRead, summary="Get today's BTC price in USD")
async def get_current_rate(service: ExchangeRateService = Depends(get_exchange_rate_service)):
    try:
        rate = await service.get_current_rate()
    except CostBasisError as e:
        raise http_error(e)
    return {"date": service.today().date(), "currency": service.currency, "rate": rate}


@router.post("/batch", response_model=BatchRateRead, summary="Get BTC prices for many dates")
async def batch_rates(body: BatchRateRequest, service: ExchangeRateService = Depends(get_exchange_rate_service)):
    """
    Dates are deduplicated and fetched one at a time. Dates that fail are
    left out of 'rates' rather than failing the whole request.
    """
    rates = await service.batch_get_rates(body.dates)
    return {"requested": len(body.dates), "fetched": len(rates), "rates": rates}


@router.get("/{date}", response_model=RateRead, summary="Get BTC price in USD for one date")
async def get_rate(date: str, service: ExchangeRateService = Depends(get_exchange_rate_service)):
    """
    Format: YYYY-MM-DD. Future dates are rejected with 400.
    """
    try:
        day = normalize_date(date)
        rate = await service.get_rate(day)
    except CostBasisError as e:
        raise http_error(e)
    return {"date": day.date(), "currency": service.currency, "rate": rate}
