import logging

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from billing.models import Payment, PaymentStatus, Provider

logger = logging.getLogger(__name__)


def get_by_transaction(db: Session, external_transaction_id: str):
    return db.query(Payment).filter_by(external_transaction_id=external_transaction_id).first()


def record_payment(db: Session, *, user_id: str, provider: Provider, amount: int,
                   currency: str, external_transaction_id: str, description: str = None,
                   subscription_id: str = None, order_id: str = None):
    """Append a COMPLETED ledger row, or return the existing one.

    Returns ``(payment, created)``. The unique external transaction id is the
    only dedup mechanism; a concurrent insert of the same id loses on commit and
    gets the winner's row back. Commits on its own.
    """
    existing = get_by_transaction(db, external_transaction_id)
    if existing:
        return existing, False

    payment = Payment(
        user_id=user_id,
        provider=provider,
        amount=amount,
        currency=currency,
        status=PaymentStatus.COMPLETED,
        external_transaction_id=external_transaction_id,
        description=description,
        subscription_id=subscription_id,
        order_id=order_id,
    )
    db.add(payment)
    try:
        db.commit()
    except IntegrityError:
        db.rollback()
        existing = get_by_transaction(db, external_transaction_id)
        if existing is None:
            raise
        logger.info("Ledger entry %s already recorded concurrently", external_transaction_id)
        return existing, False

    logger.info("Recorded payment %s for user %s (%s %s)",
                external_transaction_id, user_id, amount, currency)
    return payment, True
