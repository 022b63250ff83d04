"""Pytest configuration and shared fixtures"""
import pytest
import sys
from pathlib import Path
from typing import Generator
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker, Session
from sqlalchemy.pool import StaticPool
from fastapi.testclient import TestClient

# Add parent directory to path
sys.path.insert(0, str(Path(__file__).parent.parent))

from careflow.database import Base, get_db
from careflow.api.main import app
from careflow.api.dependencies import get_bridge, get_lifecycle
from careflow.models import MedicalQuery, QueryTransition, ReviewQueueEntry, AuditEntry  # noqa: F401
from careflow.services.audit_sink import AuditSink
from careflow.services.draft_requester import DraftRequester
from careflow.services.notification_bridge import NotificationBridge
from careflow.services.query_lifecycle import QueryLifecycle
from careflow.services.rate_limiter import RateLimiter
from careflow.services.record_store import RecordStore
from careflow.services.review_queue import ReviewQueue
from careflow.services.safety_routing_service import ReviewRouter, SafetyScorer, UrgencyClassifier
from tests.fixtures.sample_data import (
    BENIGN_DRAFT, HYPOGLYCEMIA_DRAFT, MODEL_URL, FakeClock, FakeModelSession, RecordingNotifier
)

# Test database URL (in-memory SQLite shared across threads)
TEST_DATABASE_URL = "sqlite:///:memory:"

@pytest.fixture(scope="function")
def test_engine():
    """Create a test database engine"""
    engine = create_engine(
        TEST_DATABASE_URL,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    yield engine
    Base.metadata.drop_all(bind=engine)

@pytest.fixture(scope="function")
def session_factory(test_engine) -> sessionmaker:
    return sessionmaker(autocommit=False, autoflush=False, expire_on_commit=False, bind=test_engine)

@pytest.fixture(scope="function")
def test_db(session_factory) -> Generator[Session, None, None]:
    """Create a test database session"""
    session = session_factory()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()

@pytest.fixture(scope="function")
def store(session_factory) -> RecordStore:
    return RecordStore(session_factory)

@pytest.fixture(scope="function")
def model_session() -> FakeModelSession:
    """Stand-in for the HTTP session used by DraftRequester; replies with a benign draft"""
    return FakeModelSession(reply=BENIGN_DRAFT)

@pytest.fixture(scope="function")
def draft_requester(model_session) -> DraftRequester:
    return DraftRequester(
        endpoint_url=MODEL_URL,
        api_key="test-key",
        timeout=1.0,
        max_retries=2,
        backoff_base=0.5,
        session=model_session,
        sleep=lambda seconds: None,
    )

@pytest.fixture(scope="function")
def clock() -> FakeClock:
    return FakeClock()

@pytest.fixture(scope="function")
def rate_limiter(clock) -> RateLimiter:
    return RateLimiter(max_requests=10, window_seconds=3600, clock=clock)

@pytest.fixture(scope="function")
def notifier() -> RecordingNotifier:
    return RecordingNotifier()

@pytest.fixture(scope="function")
def audit_sink(session_factory) -> AuditSink:
    return AuditSink(session_factory, salt="test-salt")

def build_lifecycle(session_factory, draft_requester, rate_limiter, audit_sink, notifier) -> QueryLifecycle:
    return QueryLifecycle(
        store=RecordStore(session_factory),
        rate_limiter=rate_limiter,
        draft_requester=draft_requester,
        scorer=SafetyScorer(),
        classifier=UrgencyClassifier(high_below=40, medium_below=70),
        router=ReviewRouter(score_threshold=70, medium_score_floor=30),
        review_queue=ReviewQueue(),
        audit=audit_sink,
        notifier=notifier,
        retry_delay=0.5,
        sleep=lambda seconds: None,
    )

@pytest.fixture(scope="function")
def lifecycle(session_factory, draft_requester, rate_limiter, audit_sink, notifier) -> QueryLifecycle:
    """Pipeline wired to the test database, a fake model and a recording notifier"""
    return build_lifecycle(session_factory, draft_requester, rate_limiter, audit_sink, notifier)

@pytest.fixture(scope="function")
def bridge() -> NotificationBridge:
    return NotificationBridge(heartbeat_interval=30.0, max_missed_heartbeats=3, buffer_size=100)

@pytest.fixture(scope="function")
def api_lifecycle(session_factory, draft_requester, rate_limiter, audit_sink, bridge) -> QueryLifecycle:
    """Pipeline that notifies through the real bridge, for API and WebSocket tests"""
    return build_lifecycle(session_factory, draft_requester, rate_limiter, audit_sink, bridge)

@pytest.fixture(scope="function")
def api_client(session_factory, api_lifecycle, bridge) -> TestClient:
    """Create a FastAPI test client with test database and service overrides"""
    def override_get_db():
        db = session_factory()
        try:
            yield db
        finally:
            db.close()

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_lifecycle] = lambda: api_lifecycle
    app.dependency_overrides[get_bridge] = lambda: bridge
    client = TestClient(app)
    yield client
    app.dependency_overrides.clear()

@pytest.fixture(scope="function")
def queued_query(lifecycle, model_session) -> MedicalQuery:
    """A hypoglycemia query that the pipeline routed to clinician review"""
    model_session.reply = HYPOGLYCEMIA_DRAFT
    return lifecycle.submit_and_process(
        "P1", "Low sugar", "I feel shaky and my glucose reads 60",
        vitals={"blood_glucose": 60},
    )
