"""PayPal wallet adapter.

PayPal has no provider-side subscription in this flow: every cycle is an
off-session order against the stored vault token, captured immediately. The
``custom_id`` of each purchase unit carries our reference (``intent:<id>``,
``subscription:<id>`` or ``order:<id>``) so capture webhooks can be tied back.
"""
import json
import logging
import time
from decimal import Decimal, InvalidOperation
from typing import Dict, Mapping, Optional

import httpx
from pydantic import ValidationError

from billing import config
from billing.errors import (
    PermanentProviderError, TransientProviderError, WebhookVerificationError
)
from billing.events import (
    ChargeFailed, ChargeSucceeded, CredentialRevoked, IgnoredEvent, parse_event_time
)
from billing.gateway import ChargeResult, ProviderGateway, VaultRef
from billing.models import Provider

logger = logging.getLogger(__name__)

SIGNATURE_HEADERS = {
    "auth_algo": "paypal-auth-algo",
    "cert_url": "paypal-cert-url",
    "transmission_id": "paypal-transmission-id",
    "transmission_sig": "paypal-transmission-sig",
    "transmission_time": "paypal-transmission-time",
}


def format_amount(cents: int) -> str:
    return f"{cents // 100}.{cents % 100:02d}"


def parse_amount(value: str) -> int:
    return int((Decimal(value) * 100).to_integral_value())


def parse_reference(custom_id: Optional[str]) -> Dict[str, str]:
    if not custom_id or ":" not in custom_id:
        return {}
    kind, _, ref = custom_id.partition(":")
    if kind not in ("intent", "subscription", "order") or not ref:
        return {}
    return {f"{kind}_ref": ref}


def _first_capture(order: dict) -> Optional[dict]:
    for unit in order.get("purchase_units") or []:
        captures = (unit.get("payments") or {}).get("captures") or []
        if captures:
            return captures[0]
    return None


class PayPalGateway(ProviderGateway):
    provider = Provider.WALLET
    managed_recurring = False

    def __init__(self, client: httpx.Client = None, client_id: str = None,
                 client_secret: str = None, webhook_id: str = None):
        self.client_id = client_id or config.PAYPAL_CLIENT_ID
        self.client_secret = client_secret or config.PAYPAL_CLIENT_SECRET
        self.webhook_id = webhook_id or config.PAYPAL_WEBHOOK_ID
        self.client = client or httpx.Client(
            base_url=config.paypal_base_url(),
            timeout=config.PROVIDER_TIMEOUT_SECONDS,
        )
        self._token = None
        self._token_expires_at = 0.0

    def _send(self, method: str, path: str, action: str, **kwargs) -> dict:
        try:
            response = self.client.request(method, path, **kwargs)
        except httpx.TimeoutException as e:
            logger.warning("PayPal %s timed out", action)
            raise TransientProviderError(
                f"Wallet provider timed out during {action}", code="timeout"
            ) from e
        except httpx.TransportError as e:
            logger.warning("PayPal %s network error: %s", action, type(e).__name__)
            raise TransientProviderError(
                f"Wallet provider unreachable during {action}", code="network"
            ) from e

        if response.status_code == 429 or response.status_code >= 500:
            logger.warning("PayPal %s failed with HTTP %s", action, response.status_code)
            raise TransientProviderError(
                f"Wallet provider unavailable during {action}", code=str(response.status_code)
            )
        if response.status_code >= 400:
            code = self._issue(response)
            logger.info("PayPal %s rejected: HTTP %s issue=%s", action, response.status_code, code)
            raise PermanentProviderError(f"Wallet provider rejected {action}", code=code)

        if not response.content:
            return {}
        try:
            body = response.json()
        except ValueError as e:
            logger.warning("PayPal %s returned an unreadable body", action)
            raise PermanentProviderError(
                f"Wallet provider sent an invalid response during {action}", code="invalid_response"
            ) from e
        if not isinstance(body, dict):
            raise PermanentProviderError(
                f"Wallet provider sent an invalid response during {action}", code="invalid_response"
            )
        return body

    @staticmethod
    def _issue(response: httpx.Response) -> str:
        try:
            body = response.json()
        except ValueError:
            return str(response.status_code)
        details = body.get("details") or []
        if details and details[0].get("issue"):
            return details[0]["issue"]
        return body.get("name") or body.get("error") or str(response.status_code)

    def _access_token(self) -> str:
        if self._token and time.monotonic() < self._token_expires_at:
            return self._token
        if not self.client_id or not self.client_secret:
            raise RuntimeError("PayPal credentials not configured")
        data = self._send(
            "POST", "/v1/oauth2/token", "authenticate",
            data={"grant_type": "client_credentials"},
            auth=(self.client_id, self.client_secret),
        )
        if not data.get("access_token"):
            raise PermanentProviderError("Wallet provider returned no access token",
                                         code="invalid_response")
        self._token = data["access_token"]
        # refresh a minute early
        self._token_expires_at = time.monotonic() + max(int(data.get("expires_in", 0)) - 60, 0)
        return self._token

    def _request(self, method: str, path: str, action: str, headers: dict = None, **kwargs) -> dict:
        all_headers = {"Authorization": f"Bearer {self._access_token()}"}
        all_headers.update(headers or {})
        return self._send(method, path, action, headers=all_headers, **kwargs)

    def attach_credential(self, payment_ref, customer_ref=None, email=None, name=None):
        order = self._request("GET", f"/v2/checkout/orders/{payment_ref}", "attach")
        paypal = (order.get("payment_source") or {}).get("paypal") or {}
        vault = (paypal.get("attributes") or {}).get("vault") or {}
        vault_id = vault.get("id") or paypal.get("billing_agreement_id")
        if not vault_id:
            raise PermanentProviderError("Wallet did not store a reusable credential",
                                         code="vault_missing")
        customer_id = ((vault.get("customer") or {}).get("id")
                       or (order.get("payer") or {}).get("payer_id")
                       or customer_ref)
        return VaultRef(external_customer_id=customer_id, external_vault_id=vault_id)

    def charge_off_session(self, vault, amount, currency, description, idempotency_key,
                           reference=None):
        body = {
            "intent": "CAPTURE",
            "purchase_units": [{
                "amount": {"currency_code": currency.upper(), "value": format_amount(amount)},
                "description": description[:127],
                "invoice_id": idempotency_key,
                "custom_id": reference,
            }],
            "payment_source": {"paypal": {"vault_id": vault.external_vault_id}},
        }
        headers = {"PayPal-Request-Id": idempotency_key, "Prefer": "return=representation"}
        order = self._request("POST", "/v2/checkout/orders", "charge", headers=headers, json=body)

        if order.get("status") in ("CREATED", "APPROVED"):
            if not order.get("id"):
                raise PermanentProviderError("Wallet provider returned no order id",
                                             code="invalid_response")
            order = self._request(
                "POST", f"/v2/checkout/orders/{order['id']}/capture", "capture",
                headers={"PayPal-Request-Id": f"{idempotency_key}-capture",
                         "Prefer": "return=representation"},
                json={},
            )

        capture = _first_capture(order)
        capture_status = (capture or {}).get("status")
        if capture_status == "COMPLETED":
            return ChargeResult(transaction_id=capture["id"], amount=amount, currency=currency)
        if capture_status == "PENDING":
            raise TransientProviderError("Wallet payment is pending", code="capture_pending")
        raise PermanentProviderError("Wallet payment was declined",
                                     code=capture_status or order.get("status") or "not_captured")

    def create_recurring(self, vault, amount, currency, interval, trial_end, name,
                         idempotency_key, metadata=None):
        raise PermanentProviderError("Wallet provider has no managed recurring billing",
                                     code="unsupported")

    def close(self):
        self.client.close()

    def cancel_recurring(self, external_id):
        # Renewals are driven locally; nothing is scheduled at PayPal
        logger.debug("PayPal cancel for %s is local only", external_id)

    def resume_recurring(self, external_id):
        logger.debug("PayPal resume for %s is local only", external_id)

    def parse_webhook(self, payload: bytes, headers: Mapping[str, str]):
        if not self.webhook_id:
            raise RuntimeError("PAYPAL_WEBHOOK_ID not configured")
        missing = [h for h in SIGNATURE_HEADERS.values() if not headers.get(h)]
        if missing:
            raise WebhookVerificationError("Missing PayPal signature headers")
        try:
            event = json.loads(payload)
        except ValueError:
            raise WebhookVerificationError("Invalid payload")
        if not isinstance(event, dict):
            raise WebhookVerificationError("Invalid payload")

        verification = {key: headers.get(name) for key, name in SIGNATURE_HEADERS.items()}
        verification["webhook_id"] = self.webhook_id
        verification["webhook_event"] = event
        result = self._request(
            "POST", "/v1/notifications/verify-webhook-signature", "verify webhook",
            json=verification,
        )
        if result.get("verification_status") != "SUCCESS":
            raise WebhookVerificationError("Invalid signature")
        return decode_event(event)


def decode_event(event: dict):
    """Map a verified PayPal event body onto a ``billing.events`` model."""
    event_type = event.get("event_type")
    if not event_type:
        raise WebhookVerificationError("Invalid payload")
    common = {"provider": Provider.WALLET, "event_id": event.get("id"),
              "occurred_at": parse_event_time(event.get("create_time")),
              "event_type": event_type}

    try:
        resource = event.get("resource") or {}

        if event_type == "PAYMENT.CAPTURE.COMPLETED":
            refs = parse_reference(resource.get("custom_id"))
            return ChargeSucceeded(
                transaction_id=resource["id"],
                amount=parse_amount(resource["amount"]["value"]),
                currency=resource["amount"]["currency_code"].lower(),
                description="Payment via PayPal",
                **refs,
                **common,
            )

        if event_type in ("PAYMENT.CAPTURE.DENIED", "PAYMENT.CAPTURE.DECLINED"):
            refs = parse_reference(resource.get("custom_id"))
            amount = resource.get("amount") or {}
            return ChargeFailed(
                subscription_ref=refs.get("subscription_ref"),
                amount=parse_amount(amount["value"]) if amount.get("value") else 0,
                currency=(amount.get("currency_code") or "").lower() or None,
                **common,
            )

        if event_type == "VAULT.PAYMENT-TOKEN.DELETED":
            return CredentialRevoked(external_vault_id=resource["id"], **common)

        return IgnoredEvent(**common)
    except (KeyError, TypeError, AttributeError, InvalidOperation, ValidationError) as e:
        logger.warning("Malformed PayPal %s event %s: %s", event_type, event.get("id"), e)
        raise WebhookVerificationError(f"Malformed {event_type} payload")
