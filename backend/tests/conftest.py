import os
import sys
from datetime import datetime, timedelta, timezone

import pytest

# Add backend directory to path
sys.path.append(os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

# Must be set before auction_house.config is imported (it fails fast otherwise).
os.environ["DATABASE_URL"] = "sqlite+pysqlite:///:memory:"

from fastapi.testclient import TestClient  # noqa: E402

from auction_house.models.auction import AuctionCreate  # noqa: E402
from auction_house.models.user import UserCreate  # noqa: E402
from auction_house.models_sqlalchemy import Base, SessionLocal, engine  # noqa: E402
from auction_house.services import auction_actions  # noqa: E402
from auction_house.services.auth import create_access_token, register_user  # noqa: E402
from auction_house.services.data_client import DataClient  # noqa: E402
from auction_house.services.policies import Caller  # noqa: E402
from auction_house.utils import clock  # noqa: E402

NOW = datetime(2025, 8, 20, 12, 0, 0, tzinfo=timezone.utc)


class FrozenClock:
    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


@pytest.fixture(autouse=True)
def frozen_clock(monkeypatch):
    fc = FrozenClock(NOW)
    monkeypatch.setattr(clock, "now_utc", fc)
    return fc


@pytest.fixture(autouse=True)
def schema():
    Base.metadata.create_all(bind=engine)
    yield
    Base.metadata.drop_all(bind=engine)


@pytest.fixture
def db():
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def make_user(db):
    def _make(email: str, full_name: str = None) -> str:
        user = register_user(db, UserCreate(email=email, password="password123", full_name=full_name))
        return user.id

    return _make


@pytest.fixture
def seller(make_user):
    return make_user("seller@example.com", "Sam Seller")


@pytest.fixture
def bidder(make_user):
    return make_user("bidder@example.com", "Bea Bidder")


@pytest.fixture
def other_bidder(make_user):
    return make_user("other@example.com", "Otto Other")


@pytest.fixture
def client_for(db):
    def _client(user_id: str = None) -> DataClient:
        if user_id is None:
            return DataClient(db, Caller.anonymous())
        return DataClient(db, Caller.authenticated(user_id))

    return _client


@pytest.fixture
def make_auction(client_for):
    def _make(seller_id: str, starting_price="10.00", bid_increment="1.00", starts_in=timedelta(minutes=5),
              duration=timedelta(days=1), title="Vintage camera", description="A 1970s rangefinder"):
        start = clock.now_utc() + starts_in
        payload = AuctionCreate(
            title=title,
            description=description,
            starting_price=starting_price,
            bid_increment=bid_increment,
            start_time=start,
            end_time=start + duration,
        )
        return auction_actions.create_auction(client_for(seller_id), payload)

    return _make


@pytest.fixture
def active_auction(make_auction, client_for, frozen_clock, seller):
    """A 10.00 / 1.00 auction that has been written to after its start time."""

    auction = make_auction(seller)
    frozen_clock.advance(minutes=10)
    rows = client_for(seller).update("auctions", {"description": "Now live"}, {"id": auction["id"]})
    assert rows[0]["status"] == "active"
    return rows[0]


@pytest.fixture
def api():
    from auction_house.main import app

    return TestClient(app)


@pytest.fixture
def auth_headers():
    def _headers(user_id: str) -> dict:
        return {"Authorization": f"Bearer {create_access_token(data={'sub': user_id})}"}

    return _headers
