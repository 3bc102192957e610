"""Verified provider webhook events.

Adapters decode raw provider bodies into exactly one of these models right
after signature verification; nothing downstream touches provider JSON.
"""
from datetime import datetime, timezone
from typing import Annotated, Literal, Optional, Union

from pydantic import BaseModel, Field, TypeAdapter, ValidationError, field_validator

from billing.models import Provider, SubscriptionStatus

_TIMESTAMP = TypeAdapter(datetime)


def _naive_utc(value: datetime) -> datetime:
    if value.tzinfo is not None:
        return value.astimezone(timezone.utc).replace(tzinfo=None)
    return value


def parse_event_time(value) -> Optional[datetime]:
    """Provider event time (ISO string or unix seconds) as naive UTC.

    Unreadable values give ``None``; the event still decodes, it just cannot
    be ordered against other events.
    """
    if value is None or value == "":
        return None
    try:
        return _naive_utc(_TIMESTAMP.validate_python(value))
    except ValidationError:
        return None


class _Event(BaseModel):
    provider: Provider
    event_id: Optional[str] = None
    event_type: str
    occurred_at: Optional[datetime] = None

    @field_validator("occurred_at")
    @classmethod
    def naive_utc(cls, value):
        # stored datetimes are naive UTC
        return _naive_utc(value) if value is not None else None


class ChargeSucceeded(_Event):
    kind: Literal["charge_succeeded"] = "charge_succeeded"
    transaction_id: str
    amount: int                                     # cents
    currency: str
    customer_ref: Optional[str] = None              # provider customer id
    external_subscription_id: Optional[str] = None
    order_ref: Optional[str] = None
    subscription_ref: Optional[str] = None          # local subscription id
    intent_ref: Optional[str] = None
    description: Optional[str] = None


class ChargeFailed(_Event):
    kind: Literal["charge_failed"] = "charge_failed"
    customer_ref: Optional[str] = None
    external_subscription_id: Optional[str] = None
    amount: int = 0
    currency: Optional[str] = None
    subscription_ref: Optional[str] = None


class SubscriptionChanged(_Event):
    kind: Literal["subscription_changed"] = "subscription_changed"
    external_subscription_id: str
    customer_ref: Optional[str] = None
    status: SubscriptionStatus
    current_period_start: Optional[datetime] = None
    current_period_end: Optional[datetime] = None
    cancel_at_period_end: bool = False
    cancelled_at: Optional[datetime] = None
    intent_ref: Optional[str] = None


class SubscriptionEnded(_Event):
    kind: Literal["subscription_ended"] = "subscription_ended"
    external_subscription_id: str


class CredentialRevoked(_Event):
    kind: Literal["credential_revoked"] = "credential_revoked"
    external_vault_id: str


class IgnoredEvent(_Event):
    kind: Literal["ignored"] = "ignored"


WebhookEvent = Annotated[
    Union[
        ChargeSucceeded,
        ChargeFailed,
        SubscriptionChanged,
        SubscriptionEnded,
        CredentialRevoked,
        IgnoredEvent,
    ],
    Field(discriminator="kind"),
]
