"""
btcbasis/schemas/purchase.py

Schemas for acquisition lots. 'remaining_btc' is never accepted on input:
a new lot always starts fully unconsumed.
"""

from pydantic import BaseModel, Field, field_validator
from datetime import datetime
from decimal import Decimal

from btcbasis.schemas.transaction import (
    validate_btc_decimal,
    validate_usd_decimal,
    force_utc,
)


class PurchaseBase(BaseModel):
    purchase_date: datetime
    amount_btc: Decimal = Field(
        ...,
        gt=0,
        description="BTC acquired in this lot (up to 8 decimals)."
    )
    cost_basis_usd: Decimal = Field(
        ...,
        ge=0,
        description="Total USD cost for the entire lot, fees included."
    )

    @field_validator("amount_btc")
    def validate_lot_btc(cls, v: Decimal) -> Decimal:
        return validate_btc_decimal(v)

    @field_validator("cost_basis_usd")
    def validate_lot_usd(cls, v: Decimal) -> Decimal:
        return validate_usd_decimal(v)

    @field_validator("purchase_date")
    def force_utc_purchase_date(cls, v: datetime) -> datetime:
        """
        Ensures purchase_date is UTC so FIFO order is the same regardless of
        the offset the caller sent.
        """
        return force_utc(v)


class PurchaseCreate(PurchaseBase):
    pass


class PurchaseRead(PurchaseBase):
    id: int
    company_id: int
    remaining_btc: Decimal

    class Config:
        from_attributes = True
