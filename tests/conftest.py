from __future__ import annotations

from datetime import date
from decimal import Decimal
from typing import Callable, Generator
from uuid import UUID, uuid4

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from zira_api.api.deps import get_db
from zira_api.app import create_app
from zira_api.core import config as config_module
from zira_api.core.config import Settings
from zira_api.core.db_base import Base
from zira_api.modules.mpesa.models import Invoice, Lease, Property, Unit
from zira_api.modules.mpesa.providers import token_cache

TEST_ENCRYPTION_KEY = "zira-test-encryption-passphrase"
SANDBOX_PASSKEY = "bfb279f9aa9bdbcf158e97dd71a467cd2e0c893059b10f78e6b72ada1ed2c919"


def make_settings(**overrides) -> Settings:
    values = dict(
        DATABASE_URL=None,
        REDIS_URL=None,
        DEBUG=False,
        MPESA_ENCRYPTION_KEY=TEST_ENCRYPTION_KEY,
        MPESA_CALLBACK_URL="https://zira.example.com/api/v1/mpesa/callbacks/daraja",
        KOPOKOPO_CALLBACK_URL="https://zira.example.com/api/v1/mpesa/callbacks/kopokopo",
        MPESA_PLATFORM_CONSUMER_KEY="platform-consumer-key",
        MPESA_PLATFORM_CONSUMER_SECRET="platform-consumer-secret",
        MPESA_PLATFORM_SHORTCODE="174379",
        MPESA_PLATFORM_PASSKEY=SANDBOX_PASSKEY,
        MPESA_PLATFORM_ENVIRONMENT="sandbox",
        MPESA_SERVER_POLLING=False,
    )
    values.update(overrides)
    return Settings(**values)


@pytest.fixture(autouse=True)
def settings(monkeypatch: pytest.MonkeyPatch) -> Settings:
    test_settings = make_settings()
    monkeypatch.setattr(config_module, "_settings", test_settings)
    return test_settings


@pytest.fixture(autouse=True)
def _reset_token_cache() -> Generator[None, None, None]:
    token_cache.clear()
    yield
    token_cache.clear()


@pytest.fixture()
def session_factory() -> sessionmaker:
    engine = create_engine(
        "sqlite://",
        future=True,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(engine)
    return sessionmaker(bind=engine, autoflush=False, autocommit=False)


@pytest.fixture()
def db_session(session_factory: sessionmaker) -> Generator[Session, None, None]:
    session = session_factory()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture()
def account_id() -> UUID:
    return uuid4()


@pytest.fixture()
def seed_invoice(db_session: Session, account_id: UUID) -> Callable[..., Invoice]:
    """Create an invoice owned by ``account_id`` through property, unit and lease."""

    def _seed(
        amount: str | Decimal,
        due_date: date,
        status: str = "pending",
        owner_id: UUID | None = None,
        invoice_number: str | None = None,
    ) -> Invoice:
        prop = Property(owner_id=owner_id or account_id, name="Sunrise Apartments")
        unit = Unit(property=prop, unit_number="A1")
        lease = Lease(unit=unit, tenant_id=uuid4())
        invoice = Invoice(
            lease=lease,
            tenant_id=lease.tenant_id,
            invoice_number=invoice_number or f"INV-{uuid4().hex[:8].upper()}",
            amount=Decimal(str(amount)),
            due_date=due_date,
            status=status,
        )
        db_session.add_all([prop, unit, lease, invoice])
        db_session.commit()
        db_session.refresh(invoice)
        return invoice

    return _seed


@pytest.fixture()
def client(settings: Settings, session_factory: sessionmaker) -> Generator[TestClient, None, None]:
    app = create_app(settings=settings)
    app.state.test_session_local = session_factory

    def _get_db_override() -> Generator[Session, None, None]:
        session = session_factory()
        try:
            yield session
            session.commit()
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    app.dependency_overrides[get_db] = _get_db_override

    with TestClient(app) as test_client:
        yield test_client
