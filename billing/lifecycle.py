"""Subscription Lifecycle Manager.

States: ACTIVE, ACTIVE with ``cancel_at_period_end``, PAUSED, SUSPENDED and
the terminal CANCELLED. User actions only ever toggle the period-end flag;
CANCELLED is reached through the webhook reconciler (or, for providers that
do not renew on their own, the period-end sweep) once the paid period is over.
"""
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Dict, Optional

from sqlalchemy.orm import Session

from billing.errors import (
    ForbiddenError, InputValidationError, InvariantViolation, NotFoundError
)
from billing.gateway import ProviderGateway
from billing.models import Provider, Subscription, SubscriptionStatus, utcnow
from billing.notifications import Notifier, owner_contact

logger = logging.getLogger(__name__)


@dataclass
class CancellationAck:
    acknowledged_consequences: bool
    reason: Optional[str] = None


@dataclass
class CancellationResult:
    subscription: Subscription
    service_ends_at: Optional[datetime]


def _load_owned(db: Session, subscription_id: str, user_id: str = None) -> Subscription:
    subscription = db.get(Subscription, subscription_id)
    if subscription is None:
        raise NotFoundError("Subscription not found")
    if user_id is not None and subscription.user_id != user_id:
        raise ForbiddenError("Subscription belongs to another account")
    return subscription


def request_cancellation(db: Session, subscription_id: str, ack: CancellationAck,
                         gateways: Dict[Provider, ProviderGateway], notifier: Notifier,
                         user_id: str = None, now: datetime = None) -> CancellationResult:
    """Cancel at period end. Status stays ACTIVE until the period is over.

    The provider is told first; if it refuses, nothing is persisted, so a
    local "cancelling" flag never hides a renewal the provider will still bill.
    """
    if ack is None or not ack.acknowledged_consequences:
        raise InputValidationError("Cancellation consequences must be acknowledged")

    subscription = _load_owned(db, subscription_id, user_id)
    if subscription.status == SubscriptionStatus.CANCELLED:
        raise InvariantViolation("Subscription is already cancelled")
    if subscription.cancel_at_period_end:
        return CancellationResult(subscription, subscription.current_period_end)

    if subscription.external_id:
        gateways[subscription.provider].cancel_recurring(subscription.external_id)

    subscription.cancel_at_period_end = True
    subscription.cancelled_at = now or utcnow()
    db.commit()
    logger.info("Subscription %s will cancel at %s (reason=%s)", subscription.id,
                subscription.current_period_end, ack.reason)

    email, name = owner_contact(db, subscription.user_id)
    notifier.cancellation_confirmed(
        email=email,
        customer_name=name,
        service_name=subscription.name,
        amount=subscription.amount,
        currency=subscription.currency,
        service_ends_at=subscription.current_period_end,
    )
    return CancellationResult(subscription, subscription.current_period_end)


def reactivate(db: Session, subscription_id: str, gateways: Dict[Provider, ProviderGateway],
               user_id: str = None) -> Subscription:
    subscription = _load_owned(db, subscription_id, user_id)
    if subscription.status == SubscriptionStatus.CANCELLED:
        raise InvariantViolation("Cancelled subscriptions cannot be reactivated")
    if not subscription.cancel_at_period_end:
        raise InvariantViolation("Subscription is not scheduled for cancellation")

    if subscription.external_id:
        gateways[subscription.provider].resume_recurring(subscription.external_id)

    subscription.cancel_at_period_end = False
    subscription.cancelled_at = None
    db.commit()
    logger.info("Subscription %s reactivated", subscription.id)
    return subscription


def expire_cancelled_subscriptions(db: Session, gateways: Dict[Provider, ProviderGateway],
                                   now: datetime = None) -> int:
    """Period-end sweep for providers that will never send a cancellation webhook."""
    now = now or utcnow()
    local_providers = [p for p, g in gateways.items() if not g.managed_recurring]
    if not local_providers:
        return 0

    expired = (
        db.query(Subscription)
        .filter(Subscription.provider.in_(local_providers),
                Subscription.status != SubscriptionStatus.CANCELLED,
                Subscription.cancel_at_period_end.is_(True),
                Subscription.current_period_end <= now)
        .all()
    )
    for subscription in expired:
        subscription.status = SubscriptionStatus.CANCELLED
        if subscription.cancelled_at is None:
            subscription.cancelled_at = now
        logger.info("Subscription %s reached period end and is now cancelled", subscription.id)
    db.commit()
    return len(expired)
