"""Customer notifications.

The orchestrator only hands structured data to the notification collaborator;
rendering and delivery of the actual email live elsewhere.
"""
import logging
from datetime import datetime
from functools import lru_cache
from typing import Optional

import httpx

from billing import config
from billing.models import User

logger = logging.getLogger(__name__)

UPDATE_PAYMENT_METHOD = "update_payment_method"


class Notifier:
    """Base notifier. ``send`` is the only delivery hook."""

    def send(self, kind: str, payload: dict):
        raise NotImplementedError

    def close(self):
        pass

    def _deliver(self, kind: str, payload: dict):
        try:
            self.send(kind, payload)
        except Exception:
            # Billing state is already committed; a lost email must not undo it
            logger.exception("Notification %s failed for %s", kind, payload.get("email"))

    def subscription_activated(self, email: str, customer_name: str, service_name: str,
                               amount: int, currency: str, frequency: str,
                               subscription_id: str, next_billing_date: Optional[datetime]):
        self._deliver("subscription_activated", {
            "email": email,
            "customer_name": customer_name,
            "service_name": service_name,
            "amount": amount,
            "currency": currency,
            "frequency": frequency.lower(),
            "subscription_id": subscription_id,
            "next_billing_date": next_billing_date.isoformat() if next_billing_date else None,
        })

    def subscription_failed(self, email: str, customer_name: str, service_name: str,
                            amount: int, currency: str, reason: str):
        self._deliver("subscription_failed", {
            "email": email,
            "customer_name": customer_name,
            "service_name": service_name,
            "amount": amount,
            "currency": currency,
            "reason": reason,
            "action": UPDATE_PAYMENT_METHOD,
        })

    def cancellation_confirmed(self, email: str, customer_name: str, service_name: str,
                               amount: int, currency: str, service_ends_at: Optional[datetime]):
        self._deliver("cancellation_confirmed", {
            "email": email,
            "customer_name": customer_name,
            "service_name": service_name,
            "amount": amount,
            "currency": currency,
            "service_ends_at": service_ends_at.isoformat() if service_ends_at else None,
        })

    def payment_failed(self, email: str, customer_name: str, service_name: str,
                       amount: int, currency: str):
        self._deliver("payment_failed", {
            "email": email,
            "customer_name": customer_name,
            "service_name": service_name,
            "amount": amount,
            "currency": currency,
            "action": UPDATE_PAYMENT_METHOD,
        })


class LoggingNotifier(Notifier):
    def send(self, kind, payload):
        logger.info("notification %s %s", kind, payload)


class HttpNotifier(Notifier):
    """POSTs each notification as JSON to the mailer service."""

    def __init__(self, url: str, client: httpx.Client = None):
        self.url = url
        self.client = client or httpx.Client(timeout=config.PROVIDER_TIMEOUT_SECONDS)

    def send(self, kind, payload):
        response = self.client.post(self.url, json={"type": kind, "data": payload})
        response.raise_for_status()

    def close(self):
        self.client.close()


@lru_cache(maxsize=None)
def get_notifier() -> Notifier:
    if config.NOTIFICATION_WEBHOOK_URL:
        return HttpNotifier(config.NOTIFICATION_WEBHOOK_URL)
    return LoggingNotifier()


def close_notifier():
    if get_notifier.cache_info().currsize:
        get_notifier().close()
    get_notifier.cache_clear()


def owner_contact(db, user_id: str):
    """(email, name) of the subscription owner, for notification payloads."""
    user = db.get(User, user_id) if user_id else None
    if user is None:
        return None, None
    return user.email, user.name
