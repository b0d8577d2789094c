"""
Shared fixtures: an in-memory database per test with the default catalog,
a few extra promo codes, one user per payment region and an API client bound
to the same database.
"""

from datetime import datetime, timedelta, timezone
from decimal import Decimal
from types import SimpleNamespace

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from app import models  # noqa: F401
from app.db import Base, get_db
from app.main import app
from app.models import PromoCode, PromoType, User
from app.payments import PaymentInit
from app.services import seed_catalog


@pytest.fixture
def session_factory():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    yield sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)
    Base.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture
def db(session_factory):
    session = session_factory()
    seed_catalog(session)
    now = datetime.now(timezone.utc)
    session.add_all([
        PromoCode(code="EXPIRED5", type=PromoType.percent, value=Decimal("5"), is_active=True,
                  expires_at=now - timedelta(days=1)),
        PromoCode(code="PAUSED15", type=PromoType.percent, value=Decimal("15"), is_active=False),
        PromoCode(code="LATER25", type=PromoType.percent, value=Decimal("25"), is_active=True,
                  expires_at=now + timedelta(days=30)),
        PromoCode(code="HUGE500", type=PromoType.fixed, value=Decimal("500"), is_active=True),
    ])
    session.commit()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def users(db):
    rows = SimpleNamespace(
        ua=User(email="user.ua@test.com", region="UA"),
        br=User(email="user.br@test.com", region="BR"),
        us=User(email="user.us@test.com", region="US"),
        inactive=User(email="gone@test.com", region="US", is_active=False),
    )
    db.add_all([rows.ua, rows.br, rows.us, rows.inactive])
    db.commit()
    return rows


@pytest.fixture
def client(session_factory, db):
    def override_get_db():
        session = session_factory()
        try:
            yield session
        finally:
            session.close()

    app.dependency_overrides[get_db] = override_get_db
    yield TestClient(app)
    app.dependency_overrides.clear()


class RecordingProvider:
    """Provider double that remembers what it was asked to charge."""

    def __init__(self, ref="ref_1", checkout_url=None, error=None):
        self.ref = ref
        self.checkout_url = checkout_url
        self.error = error
        self.calls = []

    def init_payment(self, amount, currency):
        self.calls.append((amount, currency))
        if self.error is not None:
            raise self.error
        return PaymentInit(provider_ref=self.ref, checkout_url=self.checkout_url)

    def factory(self, provider_name):
        return self


@pytest.fixture
def provider():
    return RecordingProvider()
