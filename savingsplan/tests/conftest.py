import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from fastapi.testclient import TestClient
from datetime import timedelta
import os

# Point the app at the test database before it builds its engine
os.environ.setdefault("DATABASE_URL", "sqlite:///./test.db")

from savingsplan.app.models.models import (
    Base, Goal, Asset, AssetTransaction, AllocationTarget, AllocationHistoryEntry, FlexPreference,
    ExecutionRecord, ExecutionSnapshot, CompletedExecution
)
from savingsplan.app.database import get_db_session
from savingsplan.app.main import app
from savingsplan.app.services.exchange_rate_service import ExchangeRateService, get_rate_service
from savingsplan.app.services.recalculation_service import RecalculationScheduler, get_recalculation_scheduler
from savingsplan.tests.helpers import MONTH_START, StaticRateFetcher, make_asset, make_goal

# Use a test database
TEST_DATABASE_URL = "sqlite:///./test.db"

@pytest.fixture(scope="session")
def db_engine():
    engine = create_engine(TEST_DATABASE_URL, connect_args={"check_same_thread": False})
    Base.metadata.create_all(bind=engine)
    yield engine
    # Teardown - drop all tables
    Base.metadata.drop_all(bind=engine)
    engine.dispose()
    if os.path.exists("./test.db"):
        os.remove("./test.db")

@pytest.fixture(scope="function")
def db_session(db_engine):
    """Returns a fresh SQLAlchemy session for each test"""
    Session = sessionmaker(bind=db_engine, autocommit=False, autoflush=False)
    session = Session()

    # Clear out test data from previous run
    session.query(CompletedExecution).delete()
    session.query(ExecutionSnapshot).delete()
    session.query(ExecutionRecord).delete()
    session.query(FlexPreference).delete()
    session.query(AllocationHistoryEntry).delete()
    session.query(AllocationTarget).delete()
    session.query(AssetTransaction).delete()
    session.query(Asset).delete()
    session.query(Goal).delete()
    session.commit()

    yield session
    session.close()

@pytest.fixture
def rate_fetcher():
    return StaticRateFetcher({
        ("BTC", "USD"): 50000.0,
        ("USD", "BTC"): 0.00002,
        ("EUR", "USD"): 1.1,
        ("USD", "EUR"): 0.9,
    })

@pytest.fixture
def rate_service(rate_fetcher):
    return ExchangeRateService(rate_fetcher, ttl_seconds=300)

@pytest.fixture
def recalculation_calls():
    return []

@pytest.fixture
def scheduler(recalculation_calls):
    """Scheduler that records recalculations instead of touching the database"""
    scheduler = RecalculationScheduler(recalculation_calls.append, debounce_seconds=60)
    yield scheduler
    scheduler.flush()

@pytest.fixture
def client(db_session, rate_service, scheduler):
    """Test client fixture that uses the db_session fixture"""
    def override_get_db():
        try:
            yield db_session
        finally:
            pass

    app.dependency_overrides[get_db_session] = override_get_db
    app.dependency_overrides[get_rate_service] = lambda: rate_service
    app.dependency_overrides[get_recalculation_scheduler] = lambda: scheduler
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()

@pytest.fixture
def test_goal(db_session):
    """Creates a USD goal due in about three weeks and returns it"""
    return make_goal(db_session, "Emergency Fund", 600.0, (MONTH_START + timedelta(days=20)).date())

@pytest.fixture
def test_asset(db_session):
    """Creates an empty USD asset and returns it"""
    return make_asset(db_session)
