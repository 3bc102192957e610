import logging

from sqlalchemy.orm import Session

from billing.errors import PermanentProviderError
from billing.gateway import VaultRef
from billing.models import Provider, VaultCredential, utcnow

logger = logging.getLogger(__name__)


def get_active_credential(db: Session, user_id: str, provider: Provider):
    return (
        db.query(VaultCredential)
        .filter_by(user_id=user_id, provider=provider, is_active=True)
        .order_by(VaultCredential.created_at.desc())
        .first()
    )


def as_vault_ref(credential: VaultCredential) -> VaultRef:
    return VaultRef(
        external_customer_id=credential.external_customer_id,
        external_vault_id=credential.external_vault_id,
    )


def store_credential(db: Session, *, user_id: str, provider: Provider, vault: VaultRef,
                     customer_email: str = None, customer_name: str = None):
    """Make ``vault`` the one active credential for (user, provider).

    Previous active credentials are deactivated, never edited in place.
    Storing the currently active token again is a no-op.
    """
    current = get_active_credential(db, user_id, provider)
    if current and current.external_vault_id == vault.external_vault_id \
            and current.external_customer_id == vault.external_customer_id:
        return current

    now = utcnow()
    superseded = (
        db.query(VaultCredential)
        .filter_by(user_id=user_id, provider=provider, is_active=True)
        .all()
    )
    for old in superseded:
        old.is_active = False
        old.deactivated_at = now

    credential = VaultCredential(
        user_id=user_id,
        provider=provider,
        external_customer_id=vault.external_customer_id,
        external_vault_id=vault.external_vault_id,
        customer_email=customer_email,
        customer_name=customer_name,
        is_active=True,
    )
    db.add(credential)
    db.commit()
    logger.info("Stored %s credential for user %s (superseded %d)",
                provider.value, user_id, len(superseded))
    return credential


def deactivate_credential(db: Session, provider: Provider, external_vault_id: str) -> int:
    credentials = (
        db.query(VaultCredential)
        .filter_by(provider=provider, external_vault_id=external_vault_id, is_active=True)
        .all()
    )
    now = utcnow()
    for credential in credentials:
        credential.is_active = False
        credential.deactivated_at = now
    db.commit()
    return len(credentials)


def invalidate_customer(db: Session, provider: Provider, external_customer_id: str) -> int:
    """Deactivate every credential bound to a provider customer that was recreated."""
    credentials = (
        db.query(VaultCredential)
        .filter_by(provider=provider, external_customer_id=external_customer_id, is_active=True)
        .all()
    )
    now = utcnow()
    for credential in credentials:
        credential.is_active = False
        credential.deactivated_at = now
    db.commit()
    return len(credentials)


def find_owner(db: Session, provider: Provider, external_customer_id: str):
    """User id behind a provider customer id, active or not."""
    if not external_customer_id:
        return None
    credential = (
        db.query(VaultCredential)
        .filter_by(provider=provider, external_customer_id=external_customer_id)
        .order_by(VaultCredential.created_at.desc())
        .first()
    )
    return credential.user_id if credential else None


def attach_and_store(db: Session, gateway, user, payment_ref: str, customer_ref: str = None):
    """Ask the provider to keep ``payment_ref`` on file, then store the pointer.

    A permanent attach failure deactivates any credential already pointing at
    ``payment_ref``. A new provider customer id invalidates credentials bound
    to the previous one.
    """
    provider = gateway.provider
    current = get_active_credential(db, user.id, provider)
    if customer_ref is None and current is not None:
        customer_ref = current.external_customer_id

    try:
        vault = gateway.attach_credential(payment_ref, customer_ref, email=user.email,
                                          name=user.name)
    except PermanentProviderError:
        if deactivate_credential(db, provider, payment_ref):
            logger.info("Deactivated %s credential after failed attach", provider.value)
        raise

    if current is not None and current.external_customer_id \
            and vault.external_customer_id != current.external_customer_id:
        invalidate_customer(db, provider, current.external_customer_id)

    return store_credential(db, user_id=user.id, provider=provider, vault=vault,
                            customer_email=user.email, customer_name=user.name)
