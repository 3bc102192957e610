import os

# Must be set before billing.* is imported: config reads them at import time
os.environ.setdefault("DATABASE_URL", "sqlite:///./test_billing.db")
os.environ.setdefault("JWT_SECRET", "test-jwt-secret")
os.environ.setdefault("INTERNAL_API_KEY", "test-internal-key")
os.environ.setdefault("STRIPE_SECRET_KEY", "sk_test_dummy")
os.environ.setdefault("STRIPE_WEBHOOK_SECRET", "whsec_test")
os.environ.setdefault("PAYPAL_CLIENT_ID", "paypal-client")
os.environ.setdefault("PAYPAL_CLIENT_SECRET", "paypal-secret")
os.environ.setdefault("PAYPAL_WEBHOOK_ID", "WH-TEST")

from datetime import datetime  # noqa: E402

import pytest  # noqa: E402

from billing.database import Base, SessionLocal, engine  # noqa: E402
from billing.errors import PermanentProviderError  # noqa: E402
from billing.gateway import ChargeResult, ProviderGateway, RecurringResult, VaultRef  # noqa: E402
from billing.models import (  # noqa: E402
    BillingFrequency, Order, Provider, Subscription, SubscriptionStatus, User, VaultCredential
)
from billing.notifications import Notifier  # noqa: E402

TestingSessionLocal = SessionLocal


@pytest.fixture(autouse=True)
def setup_db():
    Base.metadata.create_all(bind=engine)
    yield
    Base.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture
def db():
    session = TestingSessionLocal()
    try:
        yield session
    finally:
        session.close()


class RecordingNotifier(Notifier):
    def __init__(self):
        self.sent = []

    def send(self, kind, payload):
        self.sent.append((kind, payload))

    def kinds(self):
        return [kind for kind, _ in self.sent]


class FakeGateway(ProviderGateway):
    """In-memory provider. Set ``charge_error``/``recurring_error`` to simulate failures."""

    def __init__(self, provider, managed_recurring=False):
        self.provider = provider
        self.managed_recurring = managed_recurring
        self.charges = []
        self.recurring = []
        self.cancelled = []
        self.resumed = []
        self.charge_error = None
        self.recurring_error = None
        self.cancel_error = None
        self.initial_charge = True
        self.event = None

    def attach_credential(self, payment_ref, customer_ref=None, email=None, name=None):
        if payment_ref.startswith("bad"):
            raise PermanentProviderError("Card was declined", code="card_declined")
        return VaultRef(external_customer_id=customer_ref or "cus_new",
                        external_vault_id=payment_ref)

    def charge_off_session(self, vault, amount, currency, description, idempotency_key,
                           reference=None):
        self.charges.append({"vault": vault, "amount": amount, "currency": currency,
                             "idempotency_key": idempotency_key, "reference": reference})
        if self.charge_error is not None:
            raise self.charge_error
        return ChargeResult(transaction_id=f"tx-{idempotency_key}", amount=amount,
                            currency=currency)

    def create_recurring(self, vault, amount, currency, interval, trial_end, name,
                         idempotency_key, metadata=None):
        self.recurring.append({"vault": vault, "amount": amount, "interval": interval,
                               "trial_end": trial_end, "idempotency_key": idempotency_key,
                               "metadata": metadata})
        if self.recurring_error is not None:
            raise self.recurring_error
        start = datetime(2025, 1, 11)
        return RecurringResult(
            external_id=f"sub_{idempotency_key}",
            status=SubscriptionStatus.ACTIVE,
            current_period_start=start,
            current_period_end=datetime(2025, 2, 11),
            initial_charge=ChargeResult(f"pi_{idempotency_key}", amount, currency)
            if self.initial_charge else None,
        )

    def cancel_recurring(self, external_id):
        if self.cancel_error is not None:
            raise self.cancel_error
        self.cancelled.append(external_id)

    def resume_recurring(self, external_id):
        self.resumed.append(external_id)

    def parse_webhook(self, payload, headers):
        return self.event


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def card_gateway():
    return FakeGateway(Provider.CARD_NETWORK, managed_recurring=True)


@pytest.fixture
def wallet_gateway():
    return FakeGateway(Provider.WALLET)


@pytest.fixture
def gateways(card_gateway, wallet_gateway):
    return {Provider.CARD_NETWORK: card_gateway, Provider.WALLET: wallet_gateway}


@pytest.fixture
def user(db):
    u = User(id="user-1", email="ada@example.com", name="Ada Lovelace")
    db.add(u)
    db.commit()
    return u


@pytest.fixture
def order(db, user):
    o = Order(id="ORDER-100", user_id=user.id, amount=5000, currency="usd")
    db.add(o)
    db.commit()
    return o


def add_credential(db, user_id, provider, vault_id="pm_card", customer_id="cus_1"):
    credential = VaultCredential(user_id=user_id, provider=provider,
                                 external_customer_id=customer_id,
                                 external_vault_id=vault_id, is_active=True)
    db.add(credential)
    db.commit()
    return credential


def add_subscription(db, user_id, provider=Provider.CARD_NETWORK, **kwargs):
    values = dict(
        user_id=user_id,
        provider=provider,
        name="Cloud Backup",
        status=SubscriptionStatus.ACTIVE,
        amount=1000,
        currency="usd",
        interval=BillingFrequency.MONTHLY,
        current_period_start=datetime(2025, 5, 30),
        current_period_end=datetime(2025, 6, 30),
    )
    values.update(kwargs)
    subscription = Subscription(**values)
    db.add(subscription)
    db.commit()
    return subscription
