"""Pytest configuration and fixtures."""

import os
import secrets

import pytest

_TEST_JWT_SECRET = f"test-only-{secrets.token_urlsafe(32)}"

# Settings are read at import time; point them at throwaway values first
os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("PAYMENT_PROVIDER", "sandbox")
os.environ.setdefault("JWT_SECRET_KEY", _TEST_JWT_SECRET)
os.environ.setdefault("AUTO_RELEASE_IN_PROCESS", "false")

from datetime import datetime, timedelta  # noqa: E402

from fastapi.testclient import TestClient  # noqa: E402
from sqlalchemy.orm import sessionmaker  # noqa: E402

from auth.dependencies import create_access_token  # noqa: E402
from core.sandbox_provider import SandboxProvider  # noqa: E402
from database.config import build_engine, init_db, get_db  # noqa: E402
from database.models import User, UserType  # noqa: E402
from services.auto_release import AutoReleaseWorker  # noqa: E402
from services.escrow_service import EscrowService  # noqa: E402
from services.milestone_service import MilestoneService  # noqa: E402

WEBHOOK_SECRET = "test-webhook-secret"


@pytest.fixture
def engine(tmp_path):
    """File-backed SQLite so separate sessions see each other's commits."""
    engine = build_engine(f"sqlite:///{tmp_path / 'escrow.db'}")
    init_db(bind=engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)


@pytest.fixture
def db(session_factory):
    session = session_factory()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def provider():
    return SandboxProvider(webhook_secret=WEBHOOK_SECRET)


def _make_user(db, email, user_type, **extra):
    user = User(email=email, name=email.split("@")[0], user_type=user_type, **extra)
    db.add(user)
    db.commit()
    db.refresh(user)
    return user


@pytest.fixture
def brand(db):
    return _make_user(db, "brand@example.com", UserType.BRAND, payment_authorization_code="AUTH_brand")


@pytest.fixture
def creator(db):
    return _make_user(
        db, "creator@example.com", UserType.CREATOR,
        payment_recipient_code="RCP_creator", payouts_enabled=True
    )


@pytest.fixture
def other_creator(db):
    return _make_user(db, "other.creator@example.com", UserType.CREATOR, payment_recipient_code="RCP_other")


@pytest.fixture
def admin(db):
    return _make_user(db, "admin@example.com", UserType.ADMIN)


@pytest.fixture
def escrow(db, provider):
    return EscrowService(db, provider)


@pytest.fixture
def milestone_service(db, provider):
    return MilestoneService(db, provider)


@pytest.fixture
def worker(provider, session_factory):
    return AutoReleaseWorker(provider, session_factory=session_factory, backoff_seconds=60, backoff_max_seconds=600)


@pytest.fixture
def make_deal(escrow, brand, creator):
    """Create, accept and (optionally) fund a deal. Returns the deal."""
    def _make(amounts=(3000, 2000), fund=True, auto_release_days=5, auto_release_enabled=True):
        deal = escrow.create_deal(
            brand_id=brand.id,
            milestones=[{"title": f"Milestone {i + 1}", "amount": amount} for i, amount in enumerate(amounts)],
            currency="KES",
            title="Launch campaign",
            auto_release_enabled=auto_release_enabled,
            auto_release_days=auto_release_days
        )
        escrow.accept_deal(deal.id, creator.id)
        if fund:
            escrow.fund_deal(deal.id, brand.id)
        return escrow.get_deal(deal.id)
    return _make


@pytest.fixture
def submit(milestone_service, creator):
    def _submit(milestone_id, description="Posted the launch reel on all channels"):
        return milestone_service.submit(
            milestone_id,
            creator.id,
            description=description,
            content_url="https://cdn.example.com/reel.mp4",
            submission_type="url"
        )
    return _submit


@pytest.fixture
def later():
    """A point in time past the default five-day auto-release delay."""
    return datetime.utcnow() + timedelta(days=5, minutes=1)


# ============================================================================
# API
# ============================================================================

@pytest.fixture
def client(session_factory, provider):
    """Create a test client bound to the test database and the sandbox provider."""
    from server import create_app

    app = create_app(provider=provider, session_factory=session_factory, run_scheduler=False)

    def override_get_db():
        session = session_factory()
        try:
            yield session
        finally:
            session.close()

    app.dependency_overrides[get_db] = override_get_db
    return TestClient(app)


@pytest.fixture
def auth_headers():
    def _headers(user):
        return {"Authorization": f"Bearer {create_access_token(user.email)}"}
    return _headers
