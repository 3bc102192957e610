import json
from datetime import datetime

import httpx
import pytest

from billing.errors import (
    PermanentProviderError, TransientProviderError, WebhookVerificationError
)
from billing.events import ChargeFailed, ChargeSucceeded, CredentialRevoked, IgnoredEvent
from billing.gateway import VaultRef
from billing.paypal_service import (
    PayPalGateway, decode_event, format_amount, parse_amount, parse_reference
)

VAULT = VaultRef(external_customer_id="payer_1", external_vault_id="vt_1")

WEBHOOK_HEADERS = {
    "paypal-auth-algo": "SHA256withRSA",
    "paypal-cert-url": "https://api.paypal.com/cert.pem",
    "paypal-transmission-id": "tid-1",
    "paypal-transmission-sig": "sig",
    "paypal-transmission-time": "2025-06-01T00:00:00Z",
}


def _completed_order(capture_status="COMPLETED"):
    return {
        "id": "ORD-1",
        "status": "COMPLETED",
        "purchase_units": [{"payments": {"captures": [{"id": "CAP-1",
                                                       "status": capture_status}]}}],
    }


class FakePayPal:
    """Routes requests to canned responses and records what was sent."""

    def __init__(self):
        self.requests = []
        self.responses = {}
        self.token_calls = 0

    def __call__(self, request: httpx.Request):
        self.requests.append(request)
        if request.url.path == "/v1/oauth2/token":
            self.token_calls += 1
            return httpx.Response(200, json={"access_token": "A21", "expires_in": 32400})
        response = self.responses[(request.method, request.url.path)]
        if isinstance(response, Exception):
            raise response
        return response

    def gateway(self):
        client = httpx.Client(base_url="https://api-m.sandbox.paypal.com",
                              transport=httpx.MockTransport(self))
        return PayPalGateway(client=client, client_id="client", client_secret="secret",
                             webhook_id="WH-1")


@pytest.fixture
def paypal():
    return FakePayPal()


def test_amount_helpers():
    assert format_amount(1000) == "10.00"
    assert format_amount(5) == "0.05"
    assert parse_amount("19.99") == 1999
    assert parse_reference("intent:abc") == {"intent_ref": "abc"}
    assert parse_reference("coupon:abc") == {}
    assert parse_reference(None) == {}


def test_charge_off_session_with_vault_token(paypal):
    paypal.responses[("POST", "/v2/checkout/orders")] = httpx.Response(201, json=_completed_order())
    gateway = paypal.gateway()

    result = gateway.charge_off_session(VAULT, 1000, "usd", "Cloud Backup", "intent-abc",
                                        reference="intent:abc")
    gateway.charge_off_session(VAULT, 1000, "usd", "Cloud Backup", "intent-def")

    assert result.transaction_id == "CAP-1"
    assert paypal.token_calls == 1

    order_request = paypal.requests[1]
    assert order_request.headers["PayPal-Request-Id"] == "intent-abc"
    assert order_request.headers["Authorization"] == "Bearer A21"
    body = json.loads(order_request.content)
    assert body["payment_source"]["paypal"]["vault_id"] == "vt_1"
    unit = body["purchase_units"][0]
    assert unit["amount"] == {"currency_code": "USD", "value": "10.00"}
    assert unit["custom_id"] == "intent:abc"


def test_created_order_is_captured(paypal):
    paypal.responses[("POST", "/v2/checkout/orders")] = httpx.Response(
        201, json={"id": "ORD-1", "status": "CREATED"})
    paypal.responses[("POST", "/v2/checkout/orders/ORD-1/capture")] = httpx.Response(
        201, json=_completed_order())

    result = paypal.gateway().charge_off_session(VAULT, 1000, "usd", "Cloud Backup",
                                                 "intent-abc")

    assert result.transaction_id == "CAP-1"
    assert paypal.requests[-1].headers["PayPal-Request-Id"] == "intent-abc-capture"


def test_declined_capture_is_permanent(paypal):
    paypal.responses[("POST", "/v2/checkout/orders")] = httpx.Response(
        201, json=_completed_order("DECLINED"))

    with pytest.raises(PermanentProviderError):
        paypal.gateway().charge_off_session(VAULT, 1000, "usd", "Cloud Backup", "intent-abc")


def test_pending_capture_is_transient(paypal):
    paypal.responses[("POST", "/v2/checkout/orders")] = httpx.Response(
        201, json=_completed_order("PENDING"))

    with pytest.raises(TransientProviderError):
        paypal.gateway().charge_off_session(VAULT, 1000, "usd", "Cloud Backup", "intent-abc")


def test_unprocessable_request_is_permanent_with_issue_code(paypal):
    paypal.responses[("POST", "/v2/checkout/orders")] = httpx.Response(
        422, json={"name": "UNPROCESSABLE_ENTITY",
                   "details": [{"issue": "PAYER_ACTION_REQUIRED"}]})

    with pytest.raises(PermanentProviderError) as exc:
        paypal.gateway().charge_off_session(VAULT, 1000, "usd", "Cloud Backup", "intent-abc")
    assert exc.value.code == "PAYER_ACTION_REQUIRED"


@pytest.mark.parametrize("response", [
    httpx.Response(503, json={}),
    httpx.Response(429, json={}),
    httpx.ConnectTimeout("timed out"),
    httpx.ConnectError("refused"),
])
def test_outages_are_transient(paypal, response):
    paypal.responses[("POST", "/v2/checkout/orders")] = response

    with pytest.raises(TransientProviderError):
        paypal.gateway().charge_off_session(VAULT, 1000, "usd", "Cloud Backup", "intent-abc")


def test_attach_credential_reads_vault_from_order(paypal):
    paypal.responses[("GET", "/v2/checkout/orders/ORD-9")] = httpx.Response(200, json={
        "id": "ORD-9",
        "payment_source": {"paypal": {"attributes": {"vault": {
            "id": "vt_9", "status": "VAULTED", "customer": {"id": "cust_9"},
        }}}},
    })

    vault = paypal.gateway().attach_credential("ORD-9")

    assert vault == VaultRef(external_customer_id="cust_9", external_vault_id="vt_9")


def test_attach_without_vault_is_permanent(paypal):
    paypal.responses[("GET", "/v2/checkout/orders/ORD-9")] = httpx.Response(
        200, json={"id": "ORD-9", "payment_source": {"paypal": {}}})

    with pytest.raises(PermanentProviderError):
        paypal.gateway().attach_credential("ORD-9")


def test_parse_webhook_verifies_with_paypal(paypal):
    paypal.responses[("POST", "/v1/notifications/verify-webhook-signature")] = httpx.Response(
        200, json={"verification_status": "SUCCESS"})
    event = {
        "id": "WH-EVT-1",
        "event_type": "PAYMENT.CAPTURE.COMPLETED",
        "create_time": "2025-06-01T10:00:00Z",
        "resource": {"id": "CAP-1", "amount": {"value": "10.00", "currency_code": "USD"},
                     "custom_id": "subscription:sub-1"},
    }

    parsed = paypal.gateway().parse_webhook(json.dumps(event).encode(), WEBHOOK_HEADERS)

    assert isinstance(parsed, ChargeSucceeded)
    assert parsed.transaction_id == "CAP-1"
    assert parsed.amount == 1000
    assert parsed.currency == "usd"
    assert parsed.subscription_ref == "sub-1"
    assert parsed.occurred_at.tzinfo is None

    verification = json.loads(paypal.requests[-1].content)
    assert verification["webhook_id"] == "WH-1"
    assert verification["transmission_id"] == "tid-1"
    assert verification["webhook_event"]["id"] == "WH-EVT-1"


def test_parse_webhook_rejects_failed_verification(paypal):
    paypal.responses[("POST", "/v1/notifications/verify-webhook-signature")] = httpx.Response(
        200, json={"verification_status": "FAILURE"})

    with pytest.raises(WebhookVerificationError):
        paypal.gateway().parse_webhook(b'{"event_type": "PAYMENT.CAPTURE.COMPLETED"}',
                                       WEBHOOK_HEADERS)


def test_parse_webhook_requires_transmission_headers(paypal):
    with pytest.raises(WebhookVerificationError):
        paypal.gateway().parse_webhook(b"{}", {})
    assert paypal.requests == []


def test_decode_denied_capture_and_revoked_token():
    denied = decode_event({"id": "E1", "event_type": "PAYMENT.CAPTURE.DENIED",
                           "resource": {"id": "CAP-2", "custom_id": "subscription:sub-1",
                                        "amount": {"value": "5.00", "currency_code": "EUR"}}})
    revoked = decode_event({"id": "E2", "event_type": "VAULT.PAYMENT-TOKEN.DELETED",
                            "resource": {"id": "vt_1"}})
    other = decode_event({"id": "E3", "event_type": "CHECKOUT.ORDER.APPROVED", "resource": {}})

    assert isinstance(denied, ChargeFailed)
    assert denied.subscription_ref == "sub-1"
    assert denied.amount == 500
    assert isinstance(revoked, CredentialRevoked)
    assert revoked.external_vault_id == "vt_1"
    assert isinstance(other, IgnoredEvent)


def test_unknown_event_with_unreadable_time_is_still_ignored():
    event = decode_event({"id": "E4", "event_type": "CHECKOUT.ORDER.NEW_THING",
                          "create_time": "yesterday", "resource": {}})

    assert isinstance(event, IgnoredEvent)
    assert event.occurred_at is None


def test_event_time_is_naive_utc():
    event = decode_event({"id": "E5", "event_type": "CHECKOUT.ORDER.APPROVED",
                          "create_time": "2025-06-01T02:00:00+02:00"})

    assert event.occurred_at == datetime(2025, 6, 1)


@pytest.mark.parametrize("response", [
    httpx.Response(201, text="<html>ok</html>"),
    httpx.Response(201, json={"status": "CREATED"}),
])
def test_unreadable_success_response_is_permanent(paypal, response):
    paypal.responses[("POST", "/v2/checkout/orders")] = response

    with pytest.raises(PermanentProviderError) as exc:
        paypal.gateway().charge_off_session(VAULT, 1000, "usd", "Cloud Backup", "intent-abc")
    assert exc.value.code == "invalid_response"


def test_close_releases_http_client(paypal):
    gateway = paypal.gateway()

    gateway.close()

    assert gateway.client.is_closed
