"""Shared test fixtures."""

from datetime import datetime, timedelta
from decimal import Decimal

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from ledgerly.config import get_settings
from ledgerly.database import Base, get_db
from ledgerly.main import app
from ledgerly.app import models
from ledgerly.app.auth import create_access_token, get_password_hash
from ledgerly.app.seeders import seed_expense_categories
from ledgerly.app.bank_integration.encryption import TokenEncryption
from ledgerly.app.bank_integration.factory import ProviderFactory, get_provider_factory, get_session_store
from ledgerly.app.bank_integration.session_store import InMemorySessionStore
from tests.fake_banks import FakeUpstream

TEST_ENV = {
    'SECRET_KEY': 'test-secret-key',
    'ENVIRONMENT': 'development',
    'FRONTEND_URL': 'http://frontend.test',
    'TRUELAYER_CLIENT_ID': 'tl-client',
    'TRUELAYER_CLIENT_SECRET': 'tl-secret',
    'TRUELAYER_REDIRECT_URI': 'http://api.test/api/banking/callback',
    'SIBS_CLIENT_ID': 'sibs-client',
    'SIBS_CLIENT_SECRET': 'sibs-secret',
    'SIBS_REDIRECT_URI': 'http://api.test/api/banking/callback',
    'PROVIDER_TIMEOUT_SECONDS': '2',
    'STRIPE_SECRET_KEY': 'sk_test_123',
    'STRIPE_WEBHOOK_SECRET': 'whsec_test_secret',
}


@pytest.fixture(autouse=True)
def settings(monkeypatch):
    for key, value in TEST_ENV.items():
        monkeypatch.setenv(key, value)
    get_settings.cache_clear()
    yield get_settings()
    get_settings.cache_clear()


@pytest.fixture
def engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    yield engine
    Base.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)


@pytest.fixture
def db(session_factory):
    session = session_factory()
    seed_expense_categories(session)
    yield session
    session.close()


@pytest.fixture
def categories(db):
    return {c.name: c for c in db.query(models.ExpenseCategory).all()}


@pytest.fixture
def encryption(settings):
    return TokenEncryption(settings.secret_key)


@pytest.fixture
def upstream():
    return FakeUpstream()


@pytest.fixture
def session_store():
    return InMemorySessionStore()


@pytest.fixture
def provider_factory(settings, session_store, upstream):
    return ProviderFactory(settings, session_store, transport=upstream.transport())


def make_user(db, email="alex@example.com", plan=models.SubscriptionPlan.PRO, **kwargs):
    user = models.User(
        email=email,
        hashed_password=get_password_hash("correct-horse"),
        full_name=kwargs.pop('full_name', "Alex Doe"),
        subscription_plan=plan,
        **kwargs
    )
    db.add(user)
    db.commit()
    db.refresh(user)
    return user


@pytest.fixture
def user(db):
    return make_user(db)


@pytest.fixture
def other_user(db):
    return make_user(db, email="sam@example.com", full_name="Sam Roe")


def headers_for(user):
    return {"Authorization": f"Bearer {create_access_token(user)}"}


@pytest.fixture
def auth_headers(user):
    return headers_for(user)


def make_connection(db, encryption, user, provider_name="truelayer", **kwargs):
    defaults = dict(
        user_id=user.id,
        provider_name=provider_name,
        provider_account_id="ob-mock",
        access_token=encryption.encrypt("access-1"),
        refresh_token=encryption.encrypt("refresh-1"),
        expires_at=datetime.utcnow() + timedelta(hours=1),
        status=models.BankConnectionStatus.ACTIVE,
    )
    defaults.update(kwargs)
    connection = models.BankConnection(**defaults)
    db.add(connection)
    db.commit()
    db.refresh(connection)
    return connection


def make_account(db, connection, account_id="acc-1", **kwargs):
    defaults = dict(
        id=account_id,
        connection_id=connection.id,
        account_name="Everyday",
        account_type="Current",
        account_number="12345678",
        balance=Decimal("100.00"),
        currency="GBP",
        last_updated=datetime.utcnow(),
    )
    defaults.update(kwargs)
    account = models.BankAccount(**defaults)
    db.add(account)
    db.commit()
    return account


def make_transaction(db, account, transaction_id, amount="-10.00", date=None, **kwargs):
    defaults = dict(
        id=transaction_id,
        account_id=account.id,
        amount=Decimal(amount),
        date=date or datetime.utcnow(),
        description="Card payment",
        merchant_name="Acme Corp",
        pending=False,
        synced=False,
    )
    defaults.update(kwargs)
    transaction = models.BankTransaction(**defaults)
    db.add(transaction)
    db.commit()
    return transaction


@pytest.fixture
def client(session_factory, session_store, provider_factory):
    def override_get_db():
        session = session_factory()
        try:
            yield session
        finally:
            session.close()

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_session_store] = lambda: session_store
    app.dependency_overrides[get_provider_factory] = lambda: provider_factory

    yield TestClient(app)

    app.dependency_overrides.clear()
