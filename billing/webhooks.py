"""Webhook Reconciler.

Applies verified provider events to local state. Every handler is
idempotent: ledger rows dedup on the external transaction id, milestones on
(order, type), and subscription updates overwrite the mutable projection
instead of incrementing anything. Replays and concurrent deliveries of the
same event converge on the same rows.
"""
import logging
from datetime import datetime

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from billing import ledger, vault
from billing.events import (
    ChargeFailed, ChargeSucceeded, CredentialRevoked, IgnoredEvent, SubscriptionChanged,
    SubscriptionEnded, WebhookEvent
)
from billing.models import (
    ORDER_RECEIVED, IntentStatus, Order, OrderMilestone, OrderStatus, Subscription,
    SubscriptionIntent, SubscriptionStatus, utcnow
)
from billing.notifications import Notifier, owner_contact
from billing.processor import activate_intent

logger = logging.getLogger(__name__)


def _find_subscription(db: Session, subscription_ref: str = None, external_id: str = None):
    subscription = None
    if subscription_ref:
        subscription = db.get(Subscription, subscription_ref)
    if subscription is None and external_id:
        subscription = db.query(Subscription).filter_by(external_id=external_id).first()
    return subscription


def mark_order_received(db: Session, order: Order, now: datetime = None):
    """PENDING -> PROCESSING plus an ORDER_RECEIVED milestone, both idempotent."""
    if order.status == OrderStatus.PENDING:
        order.status = OrderStatus.PROCESSING
        db.commit()

    exists = db.query(OrderMilestone).filter_by(
        order_id=order.id, milestone_type=ORDER_RECEIVED
    ).first()
    if exists:
        return
    db.add(OrderMilestone(order_id=order.id, milestone_type=ORDER_RECEIVED,
                          created_at=now or utcnow()))
    try:
        db.commit()
    except IntegrityError:
        db.rollback()
        logger.info("Milestone %s for order %s recorded concurrently", ORDER_RECEIVED, order.id)


def _charge_succeeded(db: Session, event: ChargeSucceeded, notifier: Notifier, now: datetime):
    subscription = _find_subscription(db, event.subscription_ref, event.external_subscription_id)
    intent = db.get(SubscriptionIntent, event.intent_ref) if event.intent_ref else None
    if subscription is None and intent is not None and intent.subscription_id:
        subscription = db.get(Subscription, intent.subscription_id)
    order = db.get(Order, event.order_ref) if event.order_ref else None

    user_id = (
        vault.find_owner(db, event.provider, event.customer_ref)
        or (subscription.user_id if subscription else None)
        or (intent.user_id if intent else None)
        or (order.user_id if order else None)
    )
    if user_id is None:
        logger.warning("No owner for %s transaction %s, ignoring",
                       event.provider.value, event.transaction_id)
        return "unmatched"

    order_id = order.id if order else None
    if order_id is None and subscription is not None:
        order_id = subscription.order_id
    if order_id is None and intent is not None:
        order_id = intent.order_id

    if subscription is not None:
        description = f"Subscription payment: {subscription.name}"
    else:
        description = event.description

    _, created = ledger.record_payment(
        db,
        user_id=user_id,
        provider=event.provider,
        amount=event.amount,
        currency=event.currency,
        external_transaction_id=event.transaction_id,
        description=description,
        subscription_id=subscription.id if subscription else None,
        order_id=order_id,
    )

    # Only a charge tied to nothing but an order is the order's initial payment
    if order is not None and subscription is None and intent is None:
        mark_order_received(db, order, now)

    return "recorded" if created else "duplicate"


def _charge_failed(db: Session, event: ChargeFailed, notifier: Notifier, now: datetime):
    subscription = _find_subscription(db, event.subscription_ref, event.external_subscription_id)
    user_id = subscription.user_id if subscription else vault.find_owner(
        db, event.provider, event.customer_ref
    )
    if user_id is None:
        logger.warning("No owner for failed %s charge (%s)", event.provider.value, event.event_id)
        return "unmatched"

    email, name = owner_contact(db, user_id)
    notifier.payment_failed(
        email=email,
        customer_name=name,
        service_name=subscription.name if subscription else None,
        amount=event.amount,
        currency=event.currency or (subscription.currency if subscription else None),
    )
    return "notified"


def _subscription_changed(db: Session, event: SubscriptionChanged, notifier: Notifier,
                          now: datetime):
    subscription = _find_subscription(db, external_id=event.external_subscription_id)

    if subscription is None:
        intent = db.get(SubscriptionIntent, event.intent_ref) if event.intent_ref else None
        if intent is None or intent.subscription_id:
            logger.info("Unknown subscription %s, ignoring", event.external_subscription_id)
            return "unmatched"
        if intent.status not in (IntentStatus.SCHEDULED, IntentStatus.PROCESSING):
            # A FAILED intent stays FAILED; the stray provider subscription needs an operator
            logger.error("Provider subscription %s belongs to %s intent %s, not adopting",
                         event.external_subscription_id, intent.status.value, intent.id)
            return "terminal"
        # Charged at the provider but never persisted here
        logger.warning("Adopting provider subscription %s for intent %s",
                       event.external_subscription_id, intent.id)
        subscription = activate_intent(
            db, intent, now=now,
            external_id=event.external_subscription_id,
            status=event.status,
            period_start=event.current_period_start,
            period_end=event.current_period_end,
        )

    if subscription.status == SubscriptionStatus.CANCELLED:
        return "terminal"
    if event.occurred_at and subscription.last_event_at \
            and event.occurred_at < subscription.last_event_at:
        logger.info("Stale update for subscription %s, ignoring", subscription.id)
        return "stale"

    subscription.status = event.status
    if event.current_period_start:
        subscription.current_period_start = event.current_period_start
    if event.current_period_end:
        subscription.current_period_end = event.current_period_end
    subscription.cancel_at_period_end = event.cancel_at_period_end
    if event.cancelled_at:
        subscription.cancelled_at = event.cancelled_at
    elif not event.cancel_at_period_end and event.status != SubscriptionStatus.CANCELLED:
        subscription.cancelled_at = None
    if event.occurred_at:
        subscription.last_event_at = event.occurred_at
    db.commit()
    return "updated"


def _subscription_ended(db: Session, event: SubscriptionEnded, notifier: Notifier,
                        now: datetime):
    subscription = _find_subscription(db, external_id=event.external_subscription_id)
    if subscription is None:
        logger.info("Unknown subscription %s ended, ignoring", event.external_subscription_id)
        return "unmatched"
    if subscription.status == SubscriptionStatus.CANCELLED and subscription.cancelled_at:
        return "duplicate"

    subscription.status = SubscriptionStatus.CANCELLED
    if subscription.cancelled_at is None:
        subscription.cancelled_at = now
    if event.occurred_at:
        subscription.last_event_at = event.occurred_at
    db.commit()
    logger.info("Subscription %s cancelled by provider", subscription.id)
    return "cancelled"


def _credential_revoked(db: Session, event: CredentialRevoked, notifier: Notifier,
                        now: datetime):
    count = vault.deactivate_credential(db, event.provider, event.external_vault_id)
    return "deactivated" if count else "unmatched"


def _ignored(db: Session, event: IgnoredEvent, notifier: Notifier, now: datetime):
    logger.info("Unhandled %s event type: %s", event.provider.value, event.event_type)
    return "ignored"


HANDLERS = {
    "charge_succeeded": _charge_succeeded,
    "charge_failed": _charge_failed,
    "subscription_changed": _subscription_changed,
    "subscription_ended": _subscription_ended,
    "credential_revoked": _credential_revoked,
    "ignored": _ignored,
}


def reconcile(db: Session, event: WebhookEvent, notifier: Notifier,
              now: datetime = None) -> str:
    """Apply one verified event. Returns a short outcome label for logs/responses."""
    now = now or utcnow()
    outcome = HANDLERS[event.kind](db, event, notifier, now)
    logger.info("Webhook %s %s (%s): %s", event.provider.value, event.event_type,
                event.event_id, outcome)
    return outcome
