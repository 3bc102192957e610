import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import List, Optional

from sqlalchemy.orm import Session

from billing import config
from billing.errors import InputValidationError
from billing.models import (
    BillingFrequency, IntentStatus, Order, Provider, SubscriptionIntent, User, utcnow
)

logger = logging.getLogger(__name__)


@dataclass
class ScheduledItem:
    service_name: str
    amount: int                         # cents
    frequency: BillingFrequency
    delay_days: Optional[int] = None
    currency: Optional[str] = None


def schedule_intents(db: Session, order: Order, provider: Provider, items: List[ScheduledItem],
                     now: datetime = None) -> List[SubscriptionIntent]:
    """Persist one SCHEDULED intent per item; never talks to a provider.

    Storage errors propagate: an order whose follow-on billing could not be
    recorded must fail, otherwise it would silently never be charged.
    """
    if not items:
        raise InputValidationError("At least one subscription item is required")
    for item in items:
        if not item.service_name:
            raise InputValidationError("Service name is required")
        if item.amount <= 0:
            raise InputValidationError(f"Amount for {item.service_name} must be positive")
        if item.delay_days is not None and item.delay_days < 0:
            raise InputValidationError(f"Delay for {item.service_name} cannot be negative")

    now = now or utcnow()
    owner = db.get(User, order.user_id)
    intents = []
    for item in items:
        delay_days = config.SUBSCRIPTION_DELAY_DAYS if item.delay_days is None else item.delay_days
        intent = SubscriptionIntent(
            order_id=order.id,
            user_id=order.user_id,
            provider=provider,
            service_name=item.service_name,
            amount=item.amount,
            currency=(item.currency or order.currency or config.DEFAULT_CURRENCY).lower(),
            frequency=item.frequency,
            delay_days=delay_days,
            scheduled_date=now + timedelta(days=delay_days),
            status=IntentStatus.SCHEDULED,
            retry_count=0,
            customer_email=owner.email if owner else None,
            customer_name=owner.name if owner else None,
        )
        db.add(intent)
        intents.append(intent)

    try:
        db.commit()
    except Exception:
        db.rollback()
        logger.exception("Failed to store %d subscription intents for order %s",
                         len(intents), order.id)
        raise

    logger.info("Scheduled %d %s subscription intents for order %s",
                len(intents), provider.value, order.id)
    return intents
