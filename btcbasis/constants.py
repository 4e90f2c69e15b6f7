"""
Precision, rate-limit, and provider constants shared by the cost basis engine
and the exchange-rate service. Values that operators may tune are read from
the environment (see .env at the project root).
"""

import os
from decimal import Decimal

# BTC precision: 8 decimals (1 satoshi). USD precision: 2 decimals.
SATS_PER_BTC = 100_000_000
BTC_QUANT = Decimal("0.00000001")
USD_QUANT = Decimal("0.01")

# Anything below one satoshi is dust and treated as zero.
DUST_THRESHOLD = Decimal("0.00000001")

# Transaction directions
TX_RECEIVED = "received"
TX_SENT = "sent"

# Rate cache key parts
RATE_SOURCE_PRIMARY = "coingecko"
RATE_CURRENCY_USD = "USD"

# Shared gate across both provider branches (~50 calls/minute free tier).
MIN_CALL_INTERVAL = float(os.getenv("RATE_MIN_CALL_INTERVAL", "1.2"))
RATE_FETCH_TIMEOUT = float(os.getenv("RATE_FETCH_TIMEOUT", "10.0"))

# Live spot price (today only). Accepts an optional demo API key.
COINGECKO_PRICE_URL = "https://api.coingecko.com/api/v3/simple/price"
# Historical daily spot, no auth required.
COINBASE_SPOT_URL = "https://api.coinbase.com/v2/prices/BTC-USD/spot"
