"""Pytest configuration and fixtures."""

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

import models  # noqa: F401  (registers mappers)
from database import Base, get_db
from main import app
from api.sync import get_sync_orchestrator
from services.credential_vault import CredentialVault
from services.cursor_tracker import CursorTracker
from services.job_recorder import JobRecorder
from services.reconciler import Reconciler
from services.staging_service import StagingService
from services.sync_orchestrator import SyncOrchestrator
# Pytest fixtures - imported to make them available to tests
from tests.fixtures import connection, fernet  # noqa: F401
from tests.fixtures.mocks import FakeClock, MockProviderAdapter, MockProviderRegistry


@pytest.fixture(name="engine")
def engine_fixture():
    """Create an in-memory SQLite database for testing.

    StaticPool keeps one connection so every session (including the
    orchestrator's worker sessions) sees the same database.
    """
    engine = create_engine(
        "sqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    try:
        yield engine
    finally:
        Base.metadata.drop_all(bind=engine)
        engine.dispose()


@pytest.fixture(name="session_factory")
def session_factory_fixture(engine):
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)


@pytest.fixture(name="file_session_factory")
def file_session_factory_fixture(tmp_path):
    """Sessions on a file database, one connection per thread.

    Used by tests that run sessions concurrently from several threads.
    """
    engine = create_engine(
        f"sqlite:///{tmp_path / 'concurrency.db'}",
        connect_args={"check_same_thread": False, "timeout": 30},
    )
    Base.metadata.create_all(bind=engine)
    try:
        yield sessionmaker(autocommit=False, autoflush=False, bind=engine)
    finally:
        engine.dispose()


@pytest.fixture(name="db")
def db_fixture(session_factory):
    session = session_factory()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture(name="clock")
def clock_fixture():
    return FakeClock()


@pytest.fixture(name="adapter")
def adapter_fixture():
    return MockProviderAdapter()


@pytest.fixture(name="registry")
def registry_fixture(adapter):
    return MockProviderRegistry({"mock": adapter})


@pytest.fixture(name="vault")
def vault_fixture(registry, fernet, clock):
    return CredentialVault(registry, fernet=fernet, clock=clock)


@pytest.fixture(name="sleeps")
def sleeps_fixture():
    """Records backoff delays instead of sleeping."""
    return []


@pytest.fixture(name="orchestrator")
def orchestrator_fixture(session_factory, registry, vault, clock, sleeps):
    orchestrator = SyncOrchestrator(
        session_factory=session_factory,
        provider_registry=registry,
        vault=vault,
        staging=StagingService(clock=clock),
        reconciler=Reconciler(clock=clock),
        cursor_tracker=CursorTracker(lookback_days=90, overlap_days=3, clock=clock),
        job_recorder=JobRecorder(failure_threshold=3, stale_after_minutes=60, clock=clock),
        max_concurrency=2,
        fetch_timeout=30,
        reconcile_timeout=30,
        rate_limit_attempts=4,
        backoff_seconds=2.0,
        max_backoff_seconds=60.0,
        sleep=sleeps.append,
        clock=clock,
    )
    yield orchestrator
    orchestrator.shutdown(wait=True)


@pytest.fixture(name="client")
def client_fixture(db, orchestrator):
    """Create a test client with the test database and mock providers."""

    def override_get_db():
        # Worker sessions commit behind this session's back
        db.expire_all()
        try:
            yield db
        finally:
            pass

    def override_get_sync_orchestrator():
        return orchestrator

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_sync_orchestrator] = override_get_sync_orchestrator
    client = TestClient(app)
    yield client
    app.dependency_overrides.clear()
