import os
import sys
from datetime import datetime
from pathlib import Path
from typing import Any, Optional
import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

# Ensure project root on sys.path so 'settlement' resolves without an editable install
ROOT_DIR = Path(__file__).resolve().parents[1]
if str(ROOT_DIR) not in sys.path:
    sys.path.insert(0, str(ROOT_DIR))

"""Pytest fixtures and fakes.

Every settlement component takes a session factory, so tests hand them
``TestingSessionLocal`` directly. The module attributes are rebound as well so
anything that resolves ``settlement.database.SessionLocal`` lazily (health
checks, the get_db dependency) hits the test database too.
"""
# Use file-based SQLite for thread-safe multi-connection access (worker thread + test thread)
SQLALCHEMY_TEST_URL = "sqlite+pysqlite:///./test_settlement.db"
engine = create_engine(
    SQLALCHEMY_TEST_URL,
    connect_args={"check_same_thread": False, "timeout": 30},
)
TestingSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine, expire_on_commit=False)

import settlement.database as _settlement_database  # noqa: E402
_settlement_database.SessionLocal = TestingSessionLocal  # type: ignore
_settlement_database.engine = engine  # type: ignore

from settlement.database import Base  # noqa: E402
from settlement.main import app  # noqa: E402
from settlement.api import deps  # noqa: E402
from settlement.config import FEE_PARAMETERS  # noqa: E402
from settlement.models.db import LedgerEntry, PostTradeJob, RevenueEvent, RevenueStream  # noqa: E402,F401
from settlement.models.db.sources import TradeRecord, TransactionRecord  # noqa: E402,F401
from settlement.jobs.aggregator import LedgerAggregator  # noqa: E402
from settlement.jobs.job_store import JobStore  # noqa: E402
from settlement.models.schemas.jobs import CompletedTrade  # noqa: E402
from settlement.runtime import build_runtime  # noqa: E402
from settlement.services.alerting import clear_alerts  # noqa: E402
from settlement.services.defense import SourceRecord  # noqa: E402
from settlement.services.onchain_retry import StaticPriceConverter  # noqa: E402
from settlement.services.revenue_recorder import RevenueRecorder  # noqa: E402
from settlement.utils.circuit_breaker import GLOBAL_CIRCUIT_BREAKER  # noqa: E402
from settlement.utils.log_throttle import FailureLogThrottle, InMemoryCounterStore  # noqa: E402


@pytest.fixture(scope="session", autouse=True)
def create_test_db():
    Base.metadata.create_all(bind=engine)
    yield
    Base.metadata.drop_all(bind=engine)
    engine.dispose()
    try:
        os.remove("test_settlement.db")
    except OSError:
        pass


def _wipe_tables() -> None:
    session = TestingSessionLocal()
    try:
        for table in reversed(Base.metadata.sorted_tables):
            session.execute(table.delete())
        session.commit()
    finally:
        session.close()


@pytest.fixture(autouse=True)
def _isolate_test_state(create_test_db):  # type: ignore[unused-argument]
    """Ensure per-test isolation for tables and in-memory process state.

    Resets:
        - Every table (rows only; schema is session-scoped).
        - Recent operator alerts ring.
        - Global circuit breaker counters.
        - Active fee parameters (the default timelock mutates the module dict).
    """
    fee_snapshot = dict(FEE_PARAMETERS)
    _wipe_tables()
    clear_alerts()
    GLOBAL_CIRCUIT_BREAKER.reset()
    yield
    FEE_PARAMETERS.clear()
    FEE_PARAMETERS.update(fee_snapshot)
    clear_alerts()
    GLOBAL_CIRCUIT_BREAKER.reset()


@pytest.fixture()
def db_session():
    session = TestingSessionLocal()
    try:
        yield session
    finally:
        session.close()


# Override dependency
def _override_get_db():
    session = TestingSessionLocal()
    try:
        yield session
    finally:
        session.close()

app.dependency_overrides[deps.get_db] = _override_get_db


# ---------- Fakes for external collaborators ----------

class FakeCollaborators:
    """Records fee/reward/referral calls; ``fail_with`` makes fee distribution raise."""

    def __init__(self, fail_with: Optional[Exception] = None):
        self.fail_with = fail_with
        self.fee_distributions: list[tuple[float, str]] = []
        self.rewards: list[tuple[str, float, dict[str, Any]]] = []
        self.referral_checks: list[tuple[str, float]] = []

    def distribute_fees(self, amount: float, correlation_id: str) -> None:
        if self.fail_with is not None:
            raise self.fail_with
        self.fee_distributions.append((amount, correlation_id))

    def grant_trading_reward(self, user_id: str, notional: float, context: dict[str, Any]) -> None:
        self.rewards.append((user_id, notional, context))

    def check_referral_milestones(self, user_id: str, notional: float) -> None:
        self.referral_checks.append((user_id, notional))


class FakeChainClient:
    """Succeeds with a fake tx hash unless ``fail`` is set."""

    def __init__(self, fail: bool = False):
        self.fail = fail
        self.calls: list[tuple[int, float]] = []

    def collect_revenue(self, stream_id: int, amount_native: float) -> Optional[str]:
        self.calls.append((stream_id, amount_native))
        if self.fail:
            raise ConnectionError("rpc endpoint unreachable")
        return f"0xtx{len(self.calls)}"


class FakeSourceProvider:
    def __init__(self, records: Optional[list[SourceRecord]] = None, error: Optional[Exception] = None):
        self.records = records or []
        self.error = error

    def records_since(self, since: datetime) -> list[SourceRecord]:
        if self.error is not None:
            raise self.error
        return [r for r in self.records if r.occurred_at >= since]


@pytest.fixture()
def session_factory():
    return TestingSessionLocal


@pytest.fixture()
def collaborators_factory():
    return FakeCollaborators


@pytest.fixture()
def chain_client_factory():
    return FakeChainClient


@pytest.fixture()
def source_provider_factory():
    return FakeSourceProvider


@pytest.fixture()
def collaborators():
    return FakeCollaborators()


@pytest.fixture()
def chain_client():
    return FakeChainClient()


@pytest.fixture()
def store():
    return JobStore(TestingSessionLocal)


@pytest.fixture()
def recorder():
    rec = RevenueRecorder(TestingSessionLocal)
    rec.ensure_streams()
    return rec


@pytest.fixture()
def aggregator():
    return LedgerAggregator(TestingSessionLocal, settle_lag_seconds=0)


@pytest.fixture()
def runtime(collaborators, chain_client):
    """Runtime wired to the test database; threads are not started.

    The production app builds this in lifespan. Tests bypass lifespan so we replicate here.
    """
    rt = build_runtime(
        TestingSessionLocal,
        collaborators=collaborators,
        converter=StaticPriceConverter(1.0),
        chain_client=chain_client,
        source_provider=FakeSourceProvider(),
        throttle=FailureLogThrottle(InMemoryCounterStore()),
    )
    rt.recorder.ensure_streams()
    app.state.settlement = rt  # type: ignore[attr-defined]
    yield rt
    rt.stop()
    app.state.settlement = None  # type: ignore[attr-defined]


@pytest.fixture()
def client(runtime):
    return TestClient(app)


# ---------- Data factory helpers ----------

@pytest.fixture()
def trade_factory():
    counter = {"n": 0}

    def _create(**overrides) -> CompletedTrade:
        counter["n"] += 1
        data: dict[str, Any] = {
            "trade_id": f"trade-{counter['n']}",
            "buyer_id": "buyer-1",
            "seller_id": "seller-1",
            "buy_order_id": f"bo-{counter['n']}",
            "sell_order_id": f"so-{counter['n']}",
            "notional": 1000.0,
            "total_fees": 10.0,
            "holder_share": 1.5,
            "platform_share": 8.5,
        }
        data.update(overrides)
        return CompletedTrade(**data)
    return _create
