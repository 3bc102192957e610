import hashlib
import hmac
import json
import time
from types import SimpleNamespace

import pytest
import stripe
from conftest import TestingSessionLocal
from fastapi.testclient import TestClient

from billing import config
from billing.auth import verify_token
from billing.main import app as fastapi_app
from billing.models import (
    IntentStatus, Payment, Provider, Subscription, SubscriptionIntent, SubscriptionStatus,
    VaultCredential
)
from billing.notifications import get_notifier


def signed_stripe_event(event_type, obj, created=None):
    payload = json.dumps({"id": f"evt_{event_type}", "type": event_type,
                          "created": created or int(time.time()),
                          "data": {"object": obj}})
    timestamp = int(time.time())
    digest = hmac.new(config.STRIPE_WEBHOOK_SECRET.encode(), f"{timestamp}.{payload}".encode(),
                      hashlib.sha256).hexdigest()
    return payload, {"stripe-signature": f"t={timestamp},v1={digest}"}


@pytest.fixture
def client(notifier):
    # Real gateways, Stripe SDK calls are patched per test
    fastapi_app.dependency_overrides[verify_token] = lambda: "user-1"
    fastapi_app.dependency_overrides[get_notifier] = lambda: notifier
    with TestClient(fastapi_app) as c:
        yield c
    fastapi_app.dependency_overrides.clear()


def test_full_card_subscription_lifecycle(client, order, notifier, mocker):
    """
    1. Store a card (API -> Stripe mocked -> vault)
    2. Schedule and process the intent (API -> Stripe mocked -> subscription + ledger)
    3. Replay the first invoice webhook (no second ledger row)
    4. Cancel at period end, then Stripe deletes the subscription
    """
    # --- 1. VAULT ---
    mocker.patch("stripe.Customer.create", return_value=SimpleNamespace(id="cus_int"))
    mocker.patch("stripe.PaymentMethod.attach")
    mocker.patch("stripe.Customer.modify")

    response = client.post("/vault-credentials",
                           json={"provider": "CARD_NETWORK", "payment_ref": "pm_int"})
    assert response.status_code == 200

    # --- 2. SCHEDULE + PROCESS ---
    response = client.post("/intents", json={
        "order_id": order.id, "provider": "CARD_NETWORK",
        "items": [{"service_name": "Cloud Backup", "amount": 1000, "frequency": "MONTHLY",
                   "delay_days": 0}],
    })
    assert response.status_code == 200
    intent_id = response.json()["intents"][0]["id"]

    now = int(time.time())
    mocker.patch("stripe.Price.create", return_value=SimpleNamespace(id="price_int"))
    create_subscription = mocker.patch("stripe.Subscription.create", return_value=SimpleNamespace(
        id="sub_int", status="active",
        current_period_start=now, current_period_end=now + 30 * 86400,
        latest_invoice={"id": "in_int", "status": "paid", "amount_paid": 1000,
                        "currency": "usd", "payment_intent": "pi_int"},
    ))

    response = client.post("/jobs/process-due-intents",
                           headers={"Authorization": f"Bearer {config.INTERNAL_API_KEY}"})
    assert response.status_code == 200
    assert response.json()["summary"]["successful"] == 1
    assert create_subscription.call_args.kwargs["idempotency_key"] == f"intent-{intent_id}"
    assert create_subscription.call_args.kwargs["customer"] == "cus_int"

    db = TestingSessionLocal()
    intent = db.get(SubscriptionIntent, intent_id)
    assert intent.status == IntentStatus.ACTIVE
    subscription = db.query(Subscription).filter_by(external_id="sub_int").one()
    assert db.query(Payment).one().external_transaction_id == "pi_int"
    assert db.query(VaultCredential).one().external_customer_id == "cus_int"
    subscription_id = subscription.id
    db.close()

    # --- 3. WEBHOOK REPLAY ---
    payload, headers = signed_stripe_event("invoice.payment_succeeded", {
        "id": "in_int", "amount_paid": 1000, "currency": "usd", "customer": "cus_int",
        "subscription": "sub_int", "payment_intent": "pi_int",
    })
    response = client.post("/webhooks/stripe", content=payload, headers=headers)
    assert response.status_code == 200
    assert response.json()["result"] == "duplicate"

    # --- 4. CANCEL ---
    modify = mocker.patch("stripe.Subscription.modify")
    response = client.post(f"/subscriptions/{subscription_id}/cancel",
                           json={"acknowledged_consequences": True})
    assert response.status_code == 200
    modify.assert_called_once_with("sub_int", cancel_at_period_end=True)

    payload, headers = signed_stripe_event("customer.subscription.deleted", {"id": "sub_int"})
    response = client.post("/webhooks/stripe", content=payload, headers=headers)
    assert response.json()["result"] == "cancelled"

    response = client.post(f"/subscriptions/{subscription_id}/reactivate")
    assert response.status_code == 409

    db = TestingSessionLocal()
    assert db.get(Subscription, subscription_id).status == SubscriptionStatus.CANCELLED
    assert db.query(Payment).count() == 1
    db.close()
    assert notifier.kinds() == ["subscription_activated", "cancellation_confirmed"]


def test_declined_card_fails_intent_and_notifies(client, db, order, notifier, mocker):
    db.add(VaultCredential(user_id="user-1", provider=Provider.CARD_NETWORK,
                           external_customer_id="cus_int", external_vault_id="pm_int"))
    db.commit()
    client.post("/intents", json={
        "order_id": order.id, "provider": "CARD_NETWORK",
        "items": [{"service_name": "Cloud Backup", "amount": 1000, "frequency": "MONTHLY",
                   "delay_days": 0}],
    })
    mocker.patch("stripe.Price.create", return_value=SimpleNamespace(id="price_int"))
    mocker.patch("stripe.Subscription.create",
                 side_effect=stripe.CardError("Your card was declined.", None, "card_declined"))

    response = client.post("/jobs/process-due-intents",
                           headers={"Authorization": f"Bearer {config.INTERNAL_API_KEY}"})

    assert response.json()["summary"] == {"successful": 0, "failed": 1, "rescheduled": 0}
    assert db.query(Subscription).count() == 0
    assert db.query(Payment).count() == 0
    assert notifier.kinds() == ["subscription_failed"]


def test_tampered_stripe_webhook_is_rejected(client):
    payload, headers = signed_stripe_event("invoice.payment_succeeded", {"id": "in_1"})

    response = client.post("/webhooks/stripe", content=payload + " ", headers=headers)

    assert response.status_code == 400
    assert response.json()["detail"] == "Invalid signature"


def test_signed_unknown_event_with_odd_timestamp_is_acknowledged(client):
    payload, headers = signed_stripe_event("billing_portal.session.created", {"id": "bps_1"},
                                           created="soon")

    response = client.post("/webhooks/stripe", content=payload, headers=headers)

    assert response.status_code == 200
    assert response.json() == {"ok": True, "result": "ignored"}
