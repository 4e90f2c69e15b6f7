# btcbasis/models/__init__.py

"""
Centralizes model imports so Base.metadata knows every table as soon as
the package is imported (create_tables() relies on this).
"""

from btcbasis.database import Base

# Tenant boundary
from .company import Company

# Acquisition lots
from .purchase import Purchase

# Disposals and their allocation trail
from .transaction import Transaction, TransactionLot

# Cached rate observations
from .exchange_rate import ExchangeRate
