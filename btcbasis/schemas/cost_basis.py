"""
btcbasis/schemas/cost_basis.py

Shapes for the cost-basis endpoints. Responses mirror the plain dataclasses
returned by services/cost_basis.py so routers can hand those objects
straight to FastAPI.
"""

from pydantic import BaseModel, Field, field_validator
from typing import List, Optional
from datetime import datetime
from decimal import Decimal

from btcbasis.schemas.transaction import validate_btc_decimal, validate_usd_decimal


class LotAllocationRead(BaseModel):
    purchase_id: int
    purchase_date: datetime
    btc_used: Decimal
    cost_basis_used: Decimal
    price_per_btc: Decimal

    class Config:
        from_attributes = True


class CostBasisPreview(BaseModel):
    """
    Read-only FIFO match. Nothing has been written when this is returned.
    """
    transaction_id: int
    total_cost_basis_usd: Decimal
    allocations: List[LotAllocationRead]
    amount_matched: Decimal
    amount_requested: Decimal
    insufficient_btc: bool

    class Config:
        from_attributes = True


class CostBasisSummaryRead(BaseModel):
    transaction_id: int
    tx_type: str
    amount_btc: Decimal
    sale_value_usd: Optional[Decimal] = None
    cost_basis_usd: Decimal
    gain_loss_usd: Optional[Decimal] = None
    lots: List[LotAllocationRead]
    insufficient_btc: bool
    amount_matched: Decimal
    amount_requested: Decimal
    message: Optional[str] = None

    class Config:
        from_attributes = True


class BatchCostBasisRead(BaseModel):
    success: bool = True
    count: int
    transactions: List[CostBasisSummaryRead]


class TransactionLotRead(BaseModel):
    id: int
    transaction_id: int
    purchase_id: int
    btc_amount_used: Decimal
    cost_basis_used: Decimal
    created_at: datetime

    class Config:
        from_attributes = True


class AllocationIn(BaseModel):
    purchase_id: int
    btc_used: Decimal = Field(..., gt=0)
    cost_basis_used: Decimal = Field(..., ge=0)

    @field_validator("btc_used")
    def validate_btc_used(cls, v: Decimal) -> Decimal:
        return validate_btc_decimal(v)

    @field_validator("cost_basis_used")
    def validate_cost_basis_used(cls, v: Decimal) -> Decimal:
        return validate_usd_decimal(v)


class AllocationCommitRequest(BaseModel):
    """
    Allocations from a previous preview, sent back unchanged to be written.
    """
    allocations: List[AllocationIn] = Field(..., min_length=1)
