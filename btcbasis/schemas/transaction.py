"""
btcbasis/schemas/transaction.py

Pydantic v2 schemas for normalized transactions, plus the precision
validators shared by every schema that carries BTC or USD amounts.

- TxType: direction enum ('received' / 'sent')
- TransactionCreate: inbound record; amount must be positive
- TransactionRead: output, includes 'id', 'company_id', 'created_at'
"""

from enum import Enum
from pydantic import BaseModel, Field, field_validator
from typing import Optional
from datetime import datetime, timezone
from decimal import Decimal

# -------------------------------------------------
# TRANSACTION TYPE ENUM
# -------------------------------------------------

class TxType(str, Enum):
    RECEIVED = "received"
    SENT = "sent"

# -------------------------------------------------
# CUSTOM VALIDATORS
# -------------------------------------------------
# These enforce IRS-compatible precision: BTC up to 8 decimals, USD up to 2.

def validate_btc_decimal(value: Decimal) -> Decimal:
    """
    Enforces max 8 decimal places for BTC amounts and max 18 total digits.
    """
    s = format(value, "f")
    if '.' in s:
        integer_part, frac_part = s.split('.', 1)
        if len(frac_part.rstrip('0')) > 8:
            raise ValueError("BTC amount cannot exceed 8 decimal places.")
        if len(integer_part.replace('-', '')) > 10:  # 10 + 8 = 18 digits total
            raise ValueError("BTC amount cannot exceed 18 total digits.")
    return value

def validate_usd_decimal(value: Decimal) -> Decimal:
    """
    Enforces max 2 decimal places for USD amounts and max 18 total digits.
    """
    s = format(value, "f")
    if '.' in s:
        integer_part, frac_part = s.split('.', 1)
        if len(frac_part.rstrip('0')) > 2:
            raise ValueError("USD amount cannot exceed 2 decimal places.")
        if len(integer_part.replace('-', '')) > 16:  # 16 + 2 = 18
            raise ValueError("USD amount cannot exceed 18 total digits.")
    return value

def force_utc(v: datetime | None) -> datetime | None:
    """Naive datetimes are taken as UTC; aware ones are converted."""
    if v is None:
        return None
    if v.tzinfo is None:
        return v.replace(tzinfo=timezone.utc)
    return v.astimezone(timezone.utc)

# -------------------------------------------------
# TRANSACTION SCHEMAS
# -------------------------------------------------

class TransactionBase(BaseModel):
    tx_type: TxType
    amount_btc: Decimal = Field(
        ...,
        gt=0,
        description="BTC moved, up to 8 decimals. Must be positive."
    )
    usd_value: Optional[Decimal] = Field(
        default=None,
        ge=0,
        description="USD value at the time (sale proceeds for 'sent')."
    )
    timestamp: datetime

    @field_validator("amount_btc")
    def validate_amount(cls, v: Decimal) -> Decimal:
        return validate_btc_decimal(v)

    @field_validator("usd_value")
    def validate_usd(cls, v: Decimal | None) -> Decimal | None:
        if v is not None:
            return validate_usd_decimal(v)
        return v

    @field_validator("timestamp")
    def ensure_utc_timestamp(cls, v: datetime) -> datetime:
        return force_utc(v)


class TransactionCreate(TransactionBase):
    """
    Schema for recording a normalized transaction handed over by ingestion.
    """
    pass


class TransactionRead(TransactionBase):
    id: int
    company_id: int
    created_at: datetime

    class Config:
        from_attributes = True
