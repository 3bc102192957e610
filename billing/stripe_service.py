import json
import logging
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Dict, Mapping, Optional

import stripe
from pydantic import ValidationError

from billing import config
from billing.errors import (
    PermanentProviderError, TransientProviderError, WebhookVerificationError
)
from billing.events import (
    ChargeFailed, ChargeSucceeded, IgnoredEvent, SubscriptionChanged, SubscriptionEnded,
    parse_event_time
)
from billing.gateway import ChargeResult, ProviderGateway, RecurringResult, VaultRef
from billing.models import BillingFrequency, Provider, SubscriptionStatus

logger = logging.getLogger(__name__)

stripe.api_key = config.STRIPE_SECRET_KEY

STATUS_MAP = {
    "active": SubscriptionStatus.ACTIVE,
    "trialing": SubscriptionStatus.ACTIVE,
    "past_due": SubscriptionStatus.SUSPENDED,
    "unpaid": SubscriptionStatus.SUSPENDED,
    "paused": SubscriptionStatus.PAUSED,
    "canceled": SubscriptionStatus.CANCELLED,
    # first invoice still unpaid, or never paid within the 23h window
    "incomplete": SubscriptionStatus.SUSPENDED,
    "incomplete_expired": SubscriptionStatus.CANCELLED,
}


def map_status(stripe_status: str) -> SubscriptionStatus:
    return STATUS_MAP.get(stripe_status, SubscriptionStatus.ACTIVE)


def _from_ts(value) -> Optional[datetime]:
    if not value:
        return None
    return datetime.fromtimestamp(int(value), tz=timezone.utc).replace(tzinfo=None)


def _to_ts(value: datetime) -> int:
    return int(value.replace(tzinfo=timezone.utc).timestamp())


def _field(obj, name, default=None):
    if isinstance(obj, dict):
        return obj.get(name, default)
    return getattr(obj, name, default)


def _period(subscription):
    """Period bounds live on the subscription in older API versions, on the item in newer ones."""
    start = _field(subscription, "current_period_start")
    end = _field(subscription, "current_period_end")
    if start is None or end is None:
        items = _field(_field(subscription, "items"), "data") or []
        if items:
            start = start or _field(items[0], "current_period_start")
            end = end or _field(items[0], "current_period_end")
    return _from_ts(start), _from_ts(end)


def _invoice_transaction_id(invoice) -> str:
    # Same key from the API response and from the webhook, so the ledger dedups
    payment_intent = _field(invoice, "payment_intent")
    if isinstance(payment_intent, str):
        return payment_intent
    if payment_intent is not None:
        return _field(payment_intent, "id")
    return _field(invoice, "id")


def _invoice_subscription(invoice) -> Optional[str]:
    subscription = _field(invoice, "subscription")
    if subscription:
        return subscription if isinstance(subscription, str) else _field(subscription, "id")
    details = _field(_field(invoice, "parent") or {}, "subscription_details") or {}
    return _field(details, "subscription")


@contextmanager
def stripe_errors(action: str):
    """Translate Stripe SDK errors into the billing error taxonomy."""
    try:
        yield
    except (stripe.RateLimitError, stripe.APIConnectionError) as e:
        logger.warning("Stripe %s transient failure: %s", action, type(e).__name__)
        raise TransientProviderError(
            f"Card processor unavailable during {action}", code=type(e).__name__
        ) from e
    except stripe.CardError as e:
        logger.info("Stripe %s declined: code=%s", action, e.code)
        raise PermanentProviderError("Card was declined", code=e.code or "card_declined") from e
    except stripe.APIError as e:
        logger.warning("Stripe %s API error: %s", action, e.http_status)
        raise TransientProviderError(
            f"Card processor error during {action}", code="api_error"
        ) from e
    except stripe.StripeError as e:
        logger.error("Stripe %s rejected: %s", action, type(e).__name__)
        raise PermanentProviderError(
            f"Card processor rejected {action}", code=e.code or type(e).__name__
        ) from e


def create_customer(email: str, name: str):
    return stripe.Customer.create(email=email, name=name)


def attach_payment_method(customer_id: str, payment_method_id: str):
    stripe.PaymentMethod.attach(payment_method_id, customer=customer_id)
    return stripe.Customer.modify(
        customer_id,
        invoice_settings={"default_payment_method": payment_method_id},
    )


def create_price(amount: int, currency: str, interval: BillingFrequency, name: str,
                 metadata: Dict[str, str], idempotency_key: str):
    return stripe.Price.create(
        currency=currency,
        unit_amount=amount,
        recurring={"interval": "year" if interval == BillingFrequency.YEARLY else "month"},
        product_data={"name": name, "metadata": metadata},
        idempotency_key=idempotency_key,
    )


def create_subscription(customer_id: str, price_id: str, payment_method_id: str,
                        trial_end: Optional[datetime], metadata: Dict[str, str],
                        idempotency_key: str):
    params = dict(
        customer=customer_id,
        items=[{"price": price_id}],
        default_payment_method=payment_method_id,
        metadata=metadata,
        # A declined first invoice raises instead of leaving an incomplete subscription
        payment_behavior="error_if_incomplete",
        expand=["latest_invoice"],
        idempotency_key=idempotency_key,
    )
    if trial_end is not None:
        params["trial_end"] = _to_ts(trial_end)
    return stripe.Subscription.create(**params)


def create_off_session_payment(customer_id: str, payment_method_id: str, amount: int,
                               currency: str, description: str, metadata: Dict[str, str],
                               idempotency_key: str):
    return stripe.PaymentIntent.create(
        amount=amount,
        currency=currency,
        customer=customer_id,
        payment_method=payment_method_id,
        off_session=True,
        confirm=True,
        description=description,
        metadata=metadata,
        idempotency_key=idempotency_key,
    )


def set_cancel_at_period_end(subscription_id: str, cancel: bool):
    return stripe.Subscription.modify(subscription_id, cancel_at_period_end=cancel)


class StripeGateway(ProviderGateway):
    provider = Provider.CARD_NETWORK
    managed_recurring = True

    def __init__(self, webhook_secret: str = None):
        self.webhook_secret = webhook_secret or config.STRIPE_WEBHOOK_SECRET

    def attach_credential(self, payment_ref, customer_ref=None, email=None, name=None):
        with stripe_errors("attach"):
            if not customer_ref:
                customer_ref = create_customer(email, name).id
                logger.info("Created Stripe customer %s", customer_ref)
            attach_payment_method(customer_ref, payment_ref)
        return VaultRef(external_customer_id=customer_ref, external_vault_id=payment_ref)

    def charge_off_session(self, vault, amount, currency, description, idempotency_key,
                           reference=None):
        metadata = {}
        if reference:
            # "intent:<id>" -> {"intent_id": "<id>"}, read back by decode_event
            kind, _, ref = reference.partition(":")
            metadata[f"{kind}_id"] = ref
        with stripe_errors("charge"):
            intent = create_off_session_payment(
                vault.external_customer_id, vault.external_vault_id, amount, currency,
                description, metadata, idempotency_key,
            )
        if intent.status != "succeeded":
            raise PermanentProviderError(
                "Card payment requires customer authentication", code=intent.status
            )
        return ChargeResult(transaction_id=intent.id, amount=amount, currency=currency)

    def create_recurring(self, vault, amount, currency, interval, trial_end, name,
                         idempotency_key, metadata=None):
        metadata = dict(metadata or {})
        with stripe_errors("subscribe"):
            price = create_price(amount, currency, interval, name, metadata,
                                 f"{idempotency_key}-price")
            subscription = create_subscription(
                vault.external_customer_id, price.id, vault.external_vault_id,
                trial_end, metadata, idempotency_key,
            )

        start, end = _period(subscription)
        initial_charge = None
        invoice = _field(subscription, "latest_invoice")
        if invoice is not None and not isinstance(invoice, str):
            if _field(invoice, "status") == "paid" and (_field(invoice, "amount_paid") or 0) > 0:
                initial_charge = ChargeResult(
                    transaction_id=_invoice_transaction_id(invoice),
                    amount=_field(invoice, "amount_paid"),
                    currency=_field(invoice, "currency") or currency,
                )
        return RecurringResult(
            external_id=subscription.id,
            status=map_status(subscription.status),
            current_period_start=start,
            current_period_end=end,
            initial_charge=initial_charge,
            metadata=metadata,
        )

    def cancel_recurring(self, external_id):
        with stripe_errors("cancel"):
            set_cancel_at_period_end(external_id, True)

    def resume_recurring(self, external_id):
        with stripe_errors("resume"):
            set_cancel_at_period_end(external_id, False)

    def parse_webhook(self, payload: bytes, headers: Mapping[str, str]):
        if not self.webhook_secret:
            raise RuntimeError("STRIPE_WEBHOOK_SECRET not configured")
        signature = headers.get("stripe-signature")
        if not signature:
            raise WebhookVerificationError("Missing stripe-signature header")

        try:
            body = payload.decode("utf-8")
            stripe.WebhookSignature.verify_header(
                body, signature, self.webhook_secret, tolerance=stripe.Webhook.DEFAULT_TOLERANCE
            )
        except UnicodeDecodeError:
            raise WebhookVerificationError("Invalid payload")
        except stripe.SignatureVerificationError:
            raise WebhookVerificationError("Invalid signature")

        try:
            event = json.loads(body)
        except ValueError:
            raise WebhookVerificationError("Invalid payload")
        return decode_event(event)


def decode_event(event: dict):
    """Map a verified Stripe event body onto a ``billing.events`` model."""
    event_type = event.get("type") if isinstance(event, dict) else None
    if not event_type:
        raise WebhookVerificationError("Invalid payload")
    common = {"provider": Provider.CARD_NETWORK, "event_id": event.get("id"),
              "occurred_at": parse_event_time(event.get("created")),
              "event_type": event_type}

    try:
        obj = (event.get("data") or {}).get("object") or {}
        metadata = obj.get("metadata") or {}

        if event_type == "payment_intent.succeeded":
            if obj.get("invoice"):
                # Subscription invoices are recorded from the invoice event
                return IgnoredEvent(**common)
            return ChargeSucceeded(
                transaction_id=obj["id"],
                amount=obj.get("amount_received") or obj["amount"],
                currency=obj["currency"],
                customer_ref=obj.get("customer"),
                order_ref=metadata.get("order_id"),
                subscription_ref=metadata.get("subscription_id"),
                intent_ref=metadata.get("intent_id"),
                description=obj.get("description") or "Payment via Stripe",
                **common,
            )

        if event_type in ("invoice.payment_succeeded", "invoice.paid"):
            if not obj.get("amount_paid"):
                return IgnoredEvent(**common)
            return ChargeSucceeded(
                transaction_id=_invoice_transaction_id(obj),
                amount=obj["amount_paid"],
                currency=obj.get("currency") or config.DEFAULT_CURRENCY,
                customer_ref=obj.get("customer"),
                external_subscription_id=_invoice_subscription(obj),
                description="Subscription payment",
                **common,
            )

        if event_type == "invoice.payment_failed":
            return ChargeFailed(
                customer_ref=obj.get("customer"),
                external_subscription_id=_invoice_subscription(obj),
                amount=obj.get("amount_due") or 0,
                currency=obj.get("currency"),
                **common,
            )

        if event_type in ("customer.subscription.created", "customer.subscription.updated"):
            start, end = _period(obj)
            return SubscriptionChanged(
                external_subscription_id=obj["id"],
                customer_ref=obj.get("customer"),
                status=map_status(obj["status"]),
                current_period_start=start,
                current_period_end=end,
                cancel_at_period_end=bool(obj.get("cancel_at_period_end")),
                cancelled_at=_from_ts(obj.get("canceled_at")),
                intent_ref=metadata.get("intent_id"),
                **common,
            )

        if event_type == "customer.subscription.deleted":
            return SubscriptionEnded(external_subscription_id=obj["id"], **common)

        return IgnoredEvent(**common)
    except (KeyError, TypeError, AttributeError, ValidationError) as e:
        logger.warning("Malformed Stripe %s event %s: %s", event_type, event.get("id"), e)
        raise WebhookVerificationError(f"Malformed {event_type} payload")
