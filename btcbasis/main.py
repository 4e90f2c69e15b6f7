#!/usr/bin/env python
"""
btcbasis/main.py

Sets up the FastAPI application for the BTC cost basis service.

Key Roles:
 - Loads environment variables & configures CORS for frontend integration
 - Builds the process-wide CostBasisEngine (tenant commit locks) and
   RateFetcher (shared outbound rate limiter) and stores them on app.state
 - Includes the companies, transactions, cost-basis and rates routers
"""

import os
from dotenv import load_dotenv
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from btcbasis.database import create_tables
from btcbasis.services.cost_basis import CostBasisEngine
from btcbasis.services.rate_fetcher import RateFetcher

# Load environment variables from a .env file at the project root
load_dotenv()

# Default CORS origins if none specified (dev environment)
default_origins = (
    "http://127.0.0.1:3000,"
    "http://localhost:3000,"
    "http://127.0.0.1:5173,"
    "http://localhost:5173"
)
raw_origins = os.getenv("CORS_ALLOW_ORIGINS", default_origins)
ALLOWED_ORIGINS = [origin.strip() for origin in raw_origins.split(",") if origin.strip()]

# ---------------------------------------------------------
# Initialize the FastAPI application
# ---------------------------------------------------------
app = FastAPI(
    title="BTC Cost Basis API",
    description=(
        "FIFO cost basis for Bitcoin disposals and cached BTC/USD "
        "exchange rates by calendar day."
    ),
    version="1.0",
    redirect_slashes=True
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=ALLOWED_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# ---------------------------------------------------------
# Shared service objects (one per process)
# ---------------------------------------------------------
app.state.cost_basis_engine = CostBasisEngine()
app.state.rate_fetcher = RateFetcher()


@app.on_event("startup")
def startup_event():
    """
    Ensures tables are created (if not already) when FastAPI starts.
    This won't delete or overwrite existing data; it's idempotent.
    """
    create_tables()

# ---------------------------------------------------------
# Routers
# ---------------------------------------------------------
from btcbasis.routers import company, transaction, cost_basis, exchange_rate

app.include_router(company.router, prefix="/api/companies", tags=["companies"])
app.include_router(transaction.router, prefix="/api/companies", tags=["transactions"])
app.include_router(cost_basis.router, prefix="/api/companies", tags=["cost-basis"])
app.include_router(exchange_rate.router, prefix="/api/rates", tags=["rates"])


@app.get("/")
def read_root():
    """
    Basic root path to confirm the API is running.
    """
    return {"message": "BTC Cost Basis API is running."}


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "btcbasis.main:app",
        host=os.getenv("HOST", "127.0.0.1"),
        port=int(os.getenv("PORT", "8000")),
        reload=False,
    )
