"""Provider Gateway: one capability interface, one adapter per provider."""
import calendar
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from functools import lru_cache
from typing import Dict, Mapping, Optional

from billing.models import BillingFrequency, Provider


@dataclass
class VaultRef:
    external_customer_id: Optional[str]
    external_vault_id: str


@dataclass
class ChargeResult:
    transaction_id: str
    amount: int
    currency: str
    status: str = "COMPLETED"


@dataclass
class RecurringResult:
    external_id: str
    status: str
    current_period_start: Optional[datetime]
    current_period_end: Optional[datetime]
    # Set when the provider billed the first cycle synchronously
    initial_charge: Optional[ChargeResult] = None
    metadata: Dict[str, str] = field(default_factory=dict)


def add_interval(start: datetime, frequency: BillingFrequency) -> datetime:
    """Advance by one billing cycle, clamping to the end of shorter months."""
    months = 12 if frequency == BillingFrequency.YEARLY else 1
    month_index = start.month - 1 + months
    year = start.year + month_index // 12
    month = month_index % 12 + 1
    day = min(start.day, calendar.monthrange(year, month)[1])
    return start.replace(year=year, month=month, day=day)


class ProviderGateway(ABC):
    provider: Provider
    # True when the provider itself renews and bills the subscription
    managed_recurring: bool = False

    @abstractmethod
    def attach_credential(self, payment_ref: str, customer_ref: Optional[str] = None,
                          email: Optional[str] = None, name: Optional[str] = None) -> VaultRef:
        ...

    @abstractmethod
    def charge_off_session(self, vault: VaultRef, amount: int, currency: str,
                           description: str, idempotency_key: str,
                           reference: Optional[str] = None) -> ChargeResult:
        ...

    @abstractmethod
    def create_recurring(self, vault: VaultRef, amount: int, currency: str,
                         interval: BillingFrequency, trial_end: Optional[datetime],
                         name: str, idempotency_key: str,
                         metadata: Optional[Dict[str, str]] = None) -> RecurringResult:
        ...

    @abstractmethod
    def cancel_recurring(self, external_id: str) -> None:
        """Schedule cancellation at period end, never immediate."""

    @abstractmethod
    def resume_recurring(self, external_id: str) -> None:
        """Undo a scheduled cancellation."""

    @abstractmethod
    def parse_webhook(self, payload: bytes, headers: Mapping[str, str]):
        """Verify the signature and decode into a ``billing.events`` model.

        Raises ``WebhookVerificationError`` for bad signatures or unparseable
        bodies of known event types.
        """

    def close(self) -> None:
        """Release network resources held by the adapter."""


@lru_cache(maxsize=None)
def get_gateways() -> Dict[Provider, ProviderGateway]:
    """FastAPI dependency; tests override it with fakes.

    Built once per process so HTTP connection pools and the PayPal access
    token are reused across requests.
    """
    from billing.paypal_service import PayPalGateway
    from billing.stripe_service import StripeGateway

    return {
        Provider.CARD_NETWORK: StripeGateway(),
        Provider.WALLET: PayPalGateway(),
    }


def close_gateways():
    """Release provider clients; the next ``get_gateways()`` builds fresh ones."""
    if get_gateways.cache_info().currsize:
        for gateway in get_gateways().values():
            gateway.close()
    get_gateways.cache_clear()
