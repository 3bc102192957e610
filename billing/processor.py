"""Intent Processor: turns due subscription intents into live subscriptions.

Each intent is claimed with a conditional ``SCHEDULED -> PROCESSING`` update
before any provider call, so overlapping sweeps never charge the same intent
twice. Provider calls use ``intent-<id>`` as idempotency key; re-running an
intent whose outcome was unknown returns the provider's original object.
"""
import logging
from dataclasses import asdict, dataclass, field
from datetime import datetime, timedelta
from typing import Dict, List, Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from billing import config, ledger, vault
from billing.errors import ProviderError
from billing.gateway import ProviderGateway, add_interval
from billing.models import (
    IntentStatus, Provider, Subscription, SubscriptionIntent, SubscriptionStatus, utcnow
)
from billing.notifications import Notifier, owner_contact

logger = logging.getLogger(__name__)

NO_VAULT = "no vault"


@dataclass
class ItemResult:
    ref: str
    service: str
    status: str                     # success | failed | rescheduled
    subscription_id: Optional[str] = None
    amount: Optional[int] = None
    error: Optional[str] = None


@dataclass
class ProcessingReport:
    results: List[ItemResult] = field(default_factory=list)

    def _count(self, status):
        return len([r for r in self.results if r.status == status])

    @property
    def processed(self):
        return len(self.results)

    @property
    def successful(self):
        return self._count("success")

    @property
    def failed(self):
        return self._count("failed")

    @property
    def rescheduled(self):
        return self._count("rescheduled")

    def to_dict(self):
        return {
            "processed": self.processed,
            "results": [asdict(r) for r in self.results],
            "summary": {
                "successful": self.successful,
                "failed": self.failed,
                "rescheduled": self.rescheduled,
            },
        }


def due_intent_ids(db: Session, now: datetime, order_id: str = None,
                   provider: Provider = None, lookahead: timedelta = None) -> List[str]:
    horizon = now + (lookahead or timedelta(0))
    query = db.query(SubscriptionIntent.id).filter(
        SubscriptionIntent.status == IntentStatus.SCHEDULED,
        SubscriptionIntent.scheduled_date <= horizon,
    )
    if order_id:
        query = query.filter(SubscriptionIntent.order_id == order_id)
    if provider:
        query = query.filter(SubscriptionIntent.provider == provider)
    return [row.id for row in query.order_by(SubscriptionIntent.scheduled_date)]


def claim_intent(db: Session, intent_id: str) -> bool:
    """Single-writer guard. Only the caller that flips SCHEDULED wins."""
    updated = (
        db.query(SubscriptionIntent)
        .filter(SubscriptionIntent.id == intent_id,
                SubscriptionIntent.status == IntentStatus.SCHEDULED)
        .update({SubscriptionIntent.status: IntentStatus.PROCESSING,
                 SubscriptionIntent.updated_at: utcnow()},
                synchronize_session=False)
    )
    db.commit()
    return updated == 1


def activate_intent(db: Session, intent: SubscriptionIntent, *, now: datetime,
                    external_id: str = None, status: SubscriptionStatus = SubscriptionStatus.ACTIVE,
                    period_start: datetime = None, period_end: datetime = None) -> Subscription:
    """Create (or adopt) the Subscription for ``intent`` and mark it ACTIVE.

    Shared with the webhook reconciler, which may see the provider
    subscription before this process persists it.
    """
    intent_id = intent.id

    def _link(intent_row):
        subscription = None
        if external_id:
            subscription = db.query(Subscription).filter_by(external_id=external_id).first()
        if subscription is None:
            subscription = Subscription(
                user_id=intent_row.user_id,
                order_id=intent_row.order_id,
                intent_id=intent_row.id,
                provider=intent_row.provider,
                name=intent_row.service_name,
                description=f"{intent_row.service_name} ({intent_row.frequency.value.lower()})",
                status=status,
                amount=intent_row.amount,
                currency=intent_row.currency,
                interval=intent_row.frequency,
                external_id=external_id,
                current_period_start=period_start,
                current_period_end=period_end,
            )
            db.add(subscription)
            db.flush()
        intent_row.status = IntentStatus.ACTIVE
        intent_row.subscription_id = subscription.id
        intent_row.processed_at = now
        intent_row.failure_reason = None
        db.commit()
        return subscription

    try:
        return _link(intent)
    except IntegrityError:
        db.rollback()
        if not external_id:
            raise
        # The reconciler created it first
        logger.info("Subscription %s already recorded, linking intent %s", external_id, intent_id)
        return _link(db.get(SubscriptionIntent, intent_id))


def _fail(db: Session, intent: SubscriptionIntent, notifier: Notifier, now: datetime,
          reason: str, retryable: bool, max_attempts: int) -> ItemResult:
    intent.retry_count = (intent.retry_count or 0) + 1
    intent.last_retry_at = now
    intent.failure_reason = reason
    terminal = not retryable or intent.retry_count >= max_attempts
    intent.status = IntentStatus.FAILED if terminal else IntentStatus.SCHEDULED
    db.commit()

    if terminal:
        logger.warning("Intent %s (%s) failed: %s", intent.id, intent.service_name, reason)
        notifier.subscription_failed(
            email=intent.customer_email,
            customer_name=intent.customer_name,
            service_name=intent.service_name,
            amount=intent.amount,
            currency=intent.currency,
            reason=reason,
        )
    else:
        logger.info("Intent %s rescheduled after attempt %d: %s",
                    intent.id, intent.retry_count, reason)
    return ItemResult(
        ref=intent.id,
        service=intent.service_name,
        status="failed" if terminal else "rescheduled",
        error=reason,
    )


def _start_managed(db, intent, gateway, credential, now):
    # scheduled_date only gates eligibility; once handed over, the provider's
    # trial end decides when the first charge happens
    trial_end = intent.scheduled_date if intent.scheduled_date > now else None
    result = gateway.create_recurring(
        vault.as_vault_ref(credential),
        amount=intent.amount,
        currency=intent.currency,
        interval=intent.frequency,
        trial_end=trial_end,
        name=intent.service_name,
        idempotency_key=f"intent-{intent.id}",
        metadata={"order_id": intent.order_id, "intent_id": intent.id,
                  "service": intent.service_name},
    )
    subscription = activate_intent(
        db, intent, now=now,
        external_id=result.external_id,
        status=result.status,
        period_start=result.current_period_start,
        period_end=result.current_period_end,
    )
    if result.initial_charge is not None:
        ledger.record_payment(
            db,
            user_id=subscription.user_id,
            provider=intent.provider,
            amount=result.initial_charge.amount,
            currency=result.initial_charge.currency,
            external_transaction_id=result.initial_charge.transaction_id,
            description=f"Subscription payment: {subscription.name}",
            subscription_id=subscription.id,
            order_id=intent.order_id,
        )
    return subscription


def _start_off_session(db, intent, gateway, credential, now):
    charge = gateway.charge_off_session(
        vault.as_vault_ref(credential),
        amount=intent.amount,
        currency=intent.currency,
        description=f"{intent.service_name} - {intent.frequency.value.lower()} subscription",
        idempotency_key=f"intent-{intent.id}",
        reference=f"intent:{intent.id}",
    )
    subscription = activate_intent(
        db, intent, now=now,
        period_start=now,
        period_end=add_interval(now, intent.frequency),
    )
    ledger.record_payment(
        db,
        user_id=subscription.user_id,
        provider=intent.provider,
        amount=charge.amount,
        currency=charge.currency,
        external_transaction_id=charge.transaction_id,
        description=f"Subscription payment: {subscription.name}",
        subscription_id=subscription.id,
        order_id=intent.order_id,
    )
    return subscription


def process_intent(db: Session, intent: SubscriptionIntent,
                   gateways: Dict[Provider, ProviderGateway], notifier: Notifier,
                   now: datetime, max_attempts: int) -> ItemResult:
    """Charge one already-claimed intent."""
    gateway = gateways.get(intent.provider)
    if gateway is None:
        return _fail(db, intent, notifier, now, "provider not configured", False, max_attempts)

    credential = vault.get_active_credential(db, intent.user_id, intent.provider)
    if credential is None:
        return _fail(db, intent, notifier, now, NO_VAULT, False, max_attempts)

    try:
        if gateway.managed_recurring:
            subscription = _start_managed(db, intent, gateway, credential, now)
        else:
            subscription = _start_off_session(db, intent, gateway, credential, now)
    except ProviderError as e:
        return _fail(db, intent, notifier, now, e.message, e.retryable, max_attempts)
    except Exception as e:
        # Never leave a claimed intent in PROCESSING
        logger.exception("Unexpected error processing intent %s", intent.id)
        db.rollback()
        return _fail(db, intent, notifier, now, f"unexpected error: {type(e).__name__}",
                     True, max_attempts)

    logger.info("Intent %s activated as subscription %s", intent.id, subscription.id)
    notifier.subscription_activated(
        email=intent.customer_email,
        customer_name=intent.customer_name,
        service_name=intent.service_name,
        amount=intent.amount,
        currency=intent.currency,
        frequency=intent.frequency.value,
        subscription_id=subscription.id,
        next_billing_date=subscription.current_period_end,
    )
    return ItemResult(
        ref=intent.id,
        service=intent.service_name,
        status="success",
        subscription_id=subscription.id,
        amount=intent.amount,
    )


def process_due_intents(db: Session, gateways: Dict[Provider, ProviderGateway],
                        notifier: Notifier, order_id: str = None, provider: Provider = None,
                        now: datetime = None, lookahead: timedelta = None,
                        max_attempts: int = None) -> ProcessingReport:
    """Process every SCHEDULED intent with ``scheduled_date <= now + lookahead``.

    Safe to call repeatedly and concurrently for the same due set.
    """
    now = now or utcnow()
    max_attempts = max_attempts or config.INTENT_MAX_ATTEMPTS
    report = ProcessingReport()

    intent_ids = due_intent_ids(db, now, order_id=order_id, provider=provider,
                                lookahead=lookahead)
    if not intent_ids:
        logger.info("No due subscription intents (order=%s provider=%s)", order_id,
                    provider.value if provider else None)
        return report

    logger.info("Processing %d due subscription intents", len(intent_ids))
    for intent_id in intent_ids:
        if not claim_intent(db, intent_id):
            logger.info("Intent %s already claimed, skipping", intent_id)
            continue
        intent = db.get(SubscriptionIntent, intent_id)
        report.results.append(process_intent(db, intent, gateways, notifier, now, max_attempts))
    return report


def _suspend(db: Session, subscription: Subscription, notifier: Notifier,
             reason: str) -> ItemResult:
    db.query(Subscription).filter(
        Subscription.id == subscription.id,
        Subscription.status == SubscriptionStatus.ACTIVE,
    ).update({Subscription.status: SubscriptionStatus.SUSPENDED,
              Subscription.updated_at: utcnow()}, synchronize_session=False)
    db.commit()
    email, name = owner_contact(db, subscription.user_id)
    logger.warning("Subscription %s suspended: %s", subscription.id, reason)
    notifier.payment_failed(
        email=email,
        customer_name=name,
        service_name=subscription.name,
        amount=subscription.amount,
        currency=subscription.currency,
    )
    return ItemResult(ref=subscription.id, service=subscription.name, status="failed",
                      subscription_id=subscription.id, error=reason)


def _defer_renewal(db: Session, subscription: Subscription, notifier: Notifier,
                   reason: str, max_attempts: int) -> ItemResult:
    # Counted per cycle; reset when the period advances
    subscription.renewal_attempts = (subscription.renewal_attempts or 0) + 1
    db.commit()
    if subscription.renewal_attempts >= max_attempts:
        return _suspend(db, subscription, notifier, reason)
    logger.info("Renewal of %s deferred after attempt %d: %s",
                subscription.id, subscription.renewal_attempts, reason)
    return ItemResult(ref=subscription.id, service=subscription.name, status="rescheduled",
                      subscription_id=subscription.id, error=reason)


def renew_due_subscriptions(db: Session, gateways: Dict[Provider, ProviderGateway],
                            notifier: Notifier, now: datetime = None,
                            max_attempts: int = None) -> ProcessingReport:
    """Bill the next cycle of subscriptions whose provider does not renew on its own.

    The idempotency key is derived from the cycle being billed, so a cycle is
    charged at most once however many sweeps overlap; the period only advances
    through a conditional update on the old period end. Transient failures are
    retried on later sweeps, up to ``max_attempts`` per cycle, then the
    subscription is suspended.
    """
    now = now or utcnow()
    max_attempts = max_attempts or config.INTENT_MAX_ATTEMPTS
    report = ProcessingReport()

    due = (
        db.query(Subscription)
        .filter(Subscription.status == SubscriptionStatus.ACTIVE,
                Subscription.cancel_at_period_end.is_(False),
                Subscription.current_period_end <= now)
        .order_by(Subscription.current_period_end)
        .all()
    )
    for subscription in due:
        gateway = gateways.get(subscription.provider)
        if gateway is None or gateway.managed_recurring:
            continue

        cycle_end = subscription.current_period_end
        credential = vault.get_active_credential(db, subscription.user_id, subscription.provider)
        if credential is None:
            report.results.append(_suspend(db, subscription, notifier, NO_VAULT))
            continue

        try:
            charge = gateway.charge_off_session(
                vault.as_vault_ref(credential),
                amount=subscription.amount,
                currency=subscription.currency,
                description=f"{subscription.name} - renewal",
                idempotency_key=f"renewal-{subscription.id}-{cycle_end:%Y%m%d%H%M%S}",
                reference=f"subscription:{subscription.id}",
            )
        except ProviderError as e:
            if e.retryable:
                report.results.append(
                    _defer_renewal(db, subscription, notifier, e.message, max_attempts)
                )
            else:
                report.results.append(_suspend(db, subscription, notifier, e.message))
            continue
        except Exception as e:
            logger.exception("Unexpected error renewing subscription %s", subscription.id)
            db.rollback()
            report.results.append(_defer_renewal(
                db, subscription, notifier, f"unexpected error: {type(e).__name__}", max_attempts
            ))
            continue

        ledger.record_payment(
            db,
            user_id=subscription.user_id,
            provider=subscription.provider,
            amount=charge.amount,
            currency=charge.currency,
            external_transaction_id=charge.transaction_id,
            description=f"Subscription payment: {subscription.name}",
            subscription_id=subscription.id,
            order_id=subscription.order_id,
        )
        db.query(Subscription).filter(
            Subscription.id == subscription.id,
            Subscription.current_period_end == cycle_end,
        ).update({Subscription.current_period_start: cycle_end,
                  Subscription.current_period_end: add_interval(cycle_end, subscription.interval),
                  Subscription.renewal_attempts: 0,
                  Subscription.updated_at: utcnow()}, synchronize_session=False)
        db.commit()
        logger.info("Renewed subscription %s for cycle ending %s", subscription.id, cycle_end)
        report.results.append(ItemResult(ref=subscription.id, service=subscription.name,
                                         status="success", subscription_id=subscription.id,
                                         amount=charge.amount))
    return report
