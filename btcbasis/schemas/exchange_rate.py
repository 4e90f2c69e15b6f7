from pydantic import BaseModel, Field
from typing import Dict, List
from datetime import date as date_cls
from decimal import Decimal


class RateRead(BaseModel):
    date: date_cls
    currency: str = "USD"
    rate: Decimal


class BatchRateRequest(BaseModel):
    dates: List[date_cls] = Field(..., min_length=1, max_length=366)


class BatchRateRead(BaseModel):
    requested: int
    fetched: int
    rates: Dict[str, Decimal]
