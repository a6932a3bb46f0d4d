"""Pytest configuration and shared fixtures."""
from datetime import datetime

import pytest
from fastapi import Depends
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from app.config import Settings, get_settings
from app.database import Base, get_db
# Import models to register them with SQLAlchemy Base
from app.models.domain import ActivationRequest, VerificationAttempt, EmergencyAccessToken, AccessLog
from app.models.audit import AuditEntry
from app.models.enums import ActivationType, InitiatorRole, UrgencyLevel
from app.services.emergency_access import EmergencyAccessService
from app.services.state_machine import ActivationWorkflow
from app.services.store import Initiator, RequestLocks

TEST_CODE = "123456"


def fixed_code():
    return TEST_CODE


@pytest.fixture
def db_session():
    """Create a fresh in-memory database for each test."""
    # In-memory SQLite for fast tests
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    TestingSessionLocal = sessionmaker(bind=engine)
    session = TestingSessionLocal()

    yield session

    session.close()
    engine.dispose()


@pytest.fixture
def file_session_factory(tmp_path):
    """
    Sessions on a file-backed SQLite database, for tests that need more
    than one connection (threads, competing sessions).
    """
    engine = create_engine(
        f"sqlite:///{tmp_path / 'emergency_test.db'}",
        connect_args={"check_same_thread": False, "timeout": 30}
    )
    Base.metadata.create_all(engine)

    yield sessionmaker(autocommit=False, autoflush=False, bind=engine)

    engine.dispose()


@pytest.fixture
def settings():
    return Settings(
        JWT_SECRET="test-secret-key-with-at-least-32-bytes!",
        VERIFICATION_WINDOW_MINUTES=5,
        MAX_VERIFICATION_ATTEMPTS=3,
        TOKEN_EXPIRATION_HOURS=72,
        TOKEN_MAX_USES=10,
        ACCESS_LOG_RETENTION=10000
    )


@pytest.fixture
def now():
    """Fixed clock for workflow tests."""
    return datetime(2025, 3, 14, 9, 30, 0)


@pytest.fixture
def locks():
    return RequestLocks()


@pytest.fixture
def tokens(db_session, settings):
    return EmergencyAccessService(db_session, settings)


@pytest.fixture
def workflow(db_session, settings, locks, tokens):
    return ActivationWorkflow(
        db_session,
        settings,
        locks=locks,
        token_issuer=tokens,
        code_generator=fixed_code
    )


@pytest.fixture
def contact():
    return Initiator(id="contact_42", name="Alex Rivera", role=InitiatorRole.TRUSTED_CONTACT)


@pytest.fixture
def pending_request(workflow, contact, now):
    """A trusted-contact request waiting for verification."""
    return workflow.request_activation(
        ActivationType.TRUSTED_CONTACT,
        initiator=contact,
        user_id="user_123",
        reason="Cannot reach the account holder after the accident",
        urgency_level=UrgencyLevel.HIGH,
        now=now
    )


@pytest.fixture
def client(settings):
    """TestClient wired to a private in-memory database."""
    from app.api.dependencies import get_request_locks, get_token_service, get_workflow
    from app.main import app

    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool
    )
    Base.metadata.create_all(engine)
    TestingSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

    def override_get_db():
        db = TestingSessionLocal()
        try:
            yield db
        finally:
            db.close()

    def override_get_workflow(
        db=Depends(get_db),
        settings=Depends(get_settings),
        locks=Depends(get_request_locks),
        tokens=Depends(get_token_service)
    ):
        return ActivationWorkflow(db, settings, locks=locks, token_issuer=tokens, code_generator=fixed_code)

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_settings] = lambda: settings
    app.dependency_overrides[get_workflow] = override_get_workflow

    yield TestClient(app)

    app.dependency_overrides.clear()
    engine.dispose()
