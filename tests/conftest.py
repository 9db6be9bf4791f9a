"""
Pytest fixtures for testing
"""
import json
from urllib.parse import urlsplit

import pytest
import requests
from sqlalchemy import create_engine, JSON
from sqlalchemy.orm import sessionmaker, Session
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.pool import StaticPool

from finsync.config import Settings
from finsync.infrastructure.db.session import Base
from finsync.infrastructure.db import models  # noqa: F401  (registers tables)
from finsync.infrastructure.upstream.client import build_proxy

LOGIN_PATH = "/pfm/api/v2/user-login"
HOLDINGS_PATH = "/pfm/api/v2/deposit/user-linked-accounts"
STATEMENT_PATH = "/pfm/api/v2/deposit/user-account-statement"
TEST_IDENTITY = "8956545791"


def make_response(status: int = 200, payload=None, text: str | None = None) -> requests.Response:
    """Real requests.Response with a canned body"""
    if text is None:
        text = "" if payload is None else json.dumps(payload)
    response = requests.Response()
    response.status_code = status
    response._content = text.encode("utf-8")
    response.encoding = "utf-8"
    return response


class FakeUpstream:
    """
    Stands in for requests.Session: POSTs are routed by URL path

    Each route holds a queue of responses (or exceptions to raise); the last item repeats.
    """

    def __init__(self):
        self.routes: dict[str, list] = {}
        self.calls: list[dict] = []

    def add(self, path: str, *items):
        self.routes.setdefault(path, []).extend(items)

    def replace(self, path: str, *items):
        self.routes[path] = list(items)

    def post(self, url, json=None, headers=None, timeout=None):
        path = urlsplit(url).path
        self.calls.append({"path": path, "json": json, "headers": headers or {}, "timeout": timeout})
        queue = self.routes.get(path)
        if not queue:
            return make_response(404, {"message": f"No route for {path}"})
        item = queue.pop(0) if len(queue) > 1 else queue[0]
        if isinstance(item, Exception):
            raise item
        return item

    def calls_to(self, path: str) -> list[dict]:
        return [call for call in self.calls if call["path"] == path]


class ManualClock:
    """Epoch-seconds clock moved by hand"""

    def __init__(self, now: float = 1_700_000_000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float):
        self.now += seconds


def deposit_holdings(balances=("10500.50", "2499.495")) -> dict:
    """Holdings body as the deposit linked-accounts endpoint returns it"""
    return {
        "totalFiData": len(balances),
        "fipData": [
            {
                "fipId": "HDFC-FIP",
                "fipName": "HDFC Bank",
                "linkedAccounts": [
                    {
                        "fiDataId": f"fi-dep-{index:03d}",
                        "accountRefNumber": f"ref-{index:03d}",
                        "maskedAccNumber": f"XXXXXX{1000 + index}",
                        "accType": "SAVINGS",
                        "dataFetched": True,
                        "lastFetchDateTime": "2025-01-10T10:00:00Z",
                        "Summary": {
                            "currentBalance": balance,
                            "availableBalance": balance,
                            "currency": "INR",
                        },
                        "Profile": {"branch": "MG Road", "ifsc": "HDFC0000123", "openingDate": "2019-04-01"},
                    }
                    for index, balance in enumerate(balances, start=1)
                ],
            }
        ],
    }


@pytest.fixture
def db_engine():
    """Create in-memory SQLite engine for tests, with JSONB→JSON mapping."""
    # StaticPool: TestClient runs sync routes in worker threads, all must see one database
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )

    # Monkey-patch JSONB columns to JSON for SQLite compatibility
    for table in Base.metadata.tables.values():
        for col in table.columns:
            if isinstance(col.type, JSONB):
                col.type = JSON()
    Base.metadata.create_all(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def db_session(db_engine) -> Session:
    """Create database session for tests"""
    SessionLocal = sessionmaker(bind=db_engine, autoflush=False)
    session = SessionLocal()
    try:
        yield session
    finally:
        session.rollback()
        session.close()


@pytest.fixture
def clock():
    return ManualClock()


@pytest.fixture
def upstream():
    """Fake upstream with a working login and the deposit holdings endpoint"""
    fake = FakeUpstream()
    fake.add(LOGIN_PATH, make_response(200, {"success": True, "data": {"token": "tok-1"}}))
    fake.add(HOLDINGS_PATH, make_response(200, deposit_holdings()))
    return fake


@pytest.fixture
def settings():
    return Settings(
        STORE_URL="sqlite://",
        UPSTREAM_BASE_URL="https://aa.example.test",
        UPSTREAM_USER_ID="tsp-user",
        UPSTREAM_PASSWORD="tsp-secret",
        UPSTREAM_TIMEOUT_SECONDS=5.0,
        SYNC_TEST_IDENTITY=TEST_IDENTITY,
        SYNC_ENDPOINT=HOLDINGS_PATH,
        SYNC_FI_TYPE="DEPOSIT",
        INSIGHTS_ENDPOINT=STATEMENT_PATH,
    )


@pytest.fixture
def proxy(settings, upstream, clock):
    """AuthenticatedProxy wired to the fake upstream"""
    return build_proxy(settings, http=upstream, clock=clock)
