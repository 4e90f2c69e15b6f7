"""
Shared pytest fixtures for the cost basis test suite.

Every test gets its own temporary SQLite file, so lot balances and cached
rates never leak between tests. Outbound price requests go to an
httpx.MockTransport and the rate limiter runs on a fake clock, so nothing
touches the network or really sleeps.
"""

import pytest
import httpx
from datetime import datetime, timezone
from decimal import Decimal
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from fastapi.testclient import TestClient

from btcbasis.database import Base, get_db
from btcbasis.main import app
from btcbasis.models import Company, Purchase, Transaction  # noqa: F401
from btcbasis.services.cost_basis import CostBasisEngine
from btcbasis.services.rate_fetcher import RateFetcher, RateLimiter


class FakeClock:
    """Monotonic clock + sleep pair; sleeping just advances time."""

    def __init__(self, start: float = 1000.0):
        self.now = start
        self.sleeps = []

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float):
        self.now += seconds

    async def sleep(self, seconds: float):
        self.sleeps.append(seconds)
        self.now += seconds


class PriceProvider:
    """
    Stand-in for CoinGecko (live + history) and Coinbase (historical spot).
    Records every request it sees.
    """

    def __init__(self):
        self.live_price = 65000.12
        self.historical = {}
        self.default_historical = "42000.00"
        self.failing = {}
        self.requests = []

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        host, path = request.url.host, request.url.path

        if host == "api.coingecko.com" and path.endswith("/simple/price"):
            if "live" in self.failing:
                return self.failing["live"](request)
            return httpx.Response(200, json={"bitcoin": {"usd": self.live_price}})

        if host == "api.coingecko.com" and path.endswith("/coins/bitcoin/history"):
            day = request.url.params["date"]  # DD-MM-YYYY
            if day in self.failing:
                return self.failing[day](request)
            price = self.historical.get(day, self.default_historical)
            return httpx.Response(200, json={"market_data": {"current_price": {"usd": float(price)}}})

        if host == "api.coinbase.com":
            day = request.url.params["date"]  # YYYY-MM-DD
            if day in self.failing:
                return self.failing[day](request)
            price = self.historical.get(day, self.default_historical)
            return httpx.Response(200, json={"data": {"amount": price, "base": "BTC", "currency": "USD"}})

        return httpx.Response(404, json={"error": "unknown endpoint"})

    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handler)


@pytest.fixture
def test_engine(tmp_path):
    """Create a temporary SQLite database for a single test."""
    engine = create_engine(
        f"sqlite:///{tmp_path / 'test.db'}",
        connect_args={"check_same_thread": False},
    )
    Base.metadata.create_all(bind=engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(test_engine):
    return sessionmaker(bind=test_engine, autocommit=False, autoflush=False)


@pytest.fixture
def test_db(session_factory):
    """Direct SQLAlchemy session for tests that need DB access."""
    db = session_factory()
    yield db
    db.close()


@pytest.fixture
def company(test_db):
    c = Company(name="Acme Treasury")
    test_db.add(c)
    test_db.commit()
    return c


@pytest.fixture
def make_lot(test_db):
    """Insert a Purchase directly; remaining defaults to the full amount."""

    def _make(company_id, when, amount, basis, remaining=None):
        lot = Purchase(
            company_id=company_id,
            purchase_date=when,
            amount_btc=Decimal(str(amount)),
            cost_basis_usd=Decimal(str(basis)),
            remaining_btc=Decimal(str(amount if remaining is None else remaining)),
        )
        test_db.add(lot)
        test_db.commit()
        return lot

    return _make


@pytest.fixture
def make_tx(test_db):
    def _make(company_id, amount, tx_type="sent", when=None, usd_value=None):
        tx = Transaction(
            company_id=company_id,
            tx_type=tx_type,
            amount_btc=Decimal(str(amount)),
            usd_value=Decimal(str(usd_value)) if usd_value is not None else None,
            timestamp=when or datetime(2024, 6, 1, tzinfo=timezone.utc),
        )
        test_db.add(tx)
        test_db.commit()
        return tx

    return _make


@pytest.fixture
def fifo_lots(company, make_lot):
    """The three reference lots: 0.5/$10k, 0.3/$7k, 0.2/$5k, oldest first."""
    return [
        make_lot(company.id, datetime(2024, 1, 1, tzinfo=timezone.utc), "0.5", "10000"),
        make_lot(company.id, datetime(2024, 1, 2, tzinfo=timezone.utc), "0.3", "7000"),
        make_lot(company.id, datetime(2024, 1, 3, tzinfo=timezone.utc), "0.2", "5000"),
    ]


@pytest.fixture
def cost_engine():
    return CostBasisEngine()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def provider():
    return PriceProvider()


@pytest.fixture
def rate_fetcher(clock, provider):
    limiter = RateLimiter(min_interval=1.2, clock=clock, sleep=clock.sleep)
    return RateFetcher(limiter=limiter, api_key="", transport=provider.transport())


@pytest.fixture
def client(session_factory, rate_fetcher):
    """TestClient wired to the per-test database and the mock price provider."""

    def override_get_db():
        db = session_factory()
        try:
            yield db
        finally:
            db.close()

    app.dependency_overrides[get_db] = override_get_db
    saved = (app.state.cost_basis_engine, app.state.rate_fetcher)
    app.state.cost_basis_engine = CostBasisEngine()
    app.state.rate_fetcher = rate_fetcher
    yield TestClient(app)
    app.state.cost_basis_engine, app.state.rate_fetcher = saved
    app.dependency_overrides.clear()
