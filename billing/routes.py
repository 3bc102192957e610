from contextlib import contextmanager
from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, Field, field_validator
from sqlalchemy.orm import Session

from billing import lifecycle, vault
from billing.auth import verify_internal_key, verify_token
from billing.database import get_db
from billing.errors import BillingError, ProviderError
from billing.gateway import get_gateways
from billing.models import BillingFrequency, Order, Provider, User
from billing.notifications import get_notifier
from billing.processor import process_due_intents, renew_due_subscriptions
from billing.scheduler import ScheduledItem, schedule_intents

router = APIRouter()


class IntentItem(BaseModel):
    service_name: str = Field(min_length=1)
    amount: int = Field(gt=0)                   # cents
    frequency: BillingFrequency
    delay_days: Optional[int] = Field(default=None, ge=0)
    currency: Optional[str] = None

    @field_validator("frequency", mode="before")
    @classmethod
    def upper_frequency(cls, value):
        return value.upper() if isinstance(value, str) else value


class ScheduleRequest(BaseModel):
    order_id: str
    provider: Provider
    items: List[IntentItem] = Field(min_length=1)


class CancelRequest(BaseModel):
    acknowledged_consequences: bool = False
    reason: Optional[str] = None


class VaultRequest(BaseModel):
    provider: Provider
    payment_ref: str                            # Stripe payment method / PayPal order id
    customer_ref: Optional[str] = None


class ProcessRequest(BaseModel):
    order_id: Optional[str] = None
    provider: Optional[Provider] = None


@contextmanager
def http_errors():
    """Turn domain errors into HTTP responses without leaking provider payloads."""
    try:
        yield
    except ProviderError as e:
        if e.retryable:
            raise HTTPException(status_code=503,
                                detail="Payment provider is unavailable, please try again")
        raise HTTPException(status_code=502, detail=e.message)
    except BillingError as e:
        raise HTTPException(status_code=e.status_code, detail=e.message)


def _subscription_body(subscription, service_ends_at=None):
    return {
        "subscription_id": subscription.id,
        "status": subscription.status.value,
        "cancel_at_period_end": subscription.cancel_at_period_end,
        "current_period_end": subscription.current_period_end,
        "service_ends_at": service_ends_at,
    }


@router.post("/intents")
def schedule_intents_api(
    request: ScheduleRequest,
    user_id: str = Depends(verify_token),
    db: Session = Depends(get_db),
):
    order = db.get(Order, request.order_id)
    if not order:
        raise HTTPException(status_code=404, detail="Order not found")
    if order.user_id != user_id:
        raise HTTPException(status_code=403, detail="Order belongs to another account")

    items = [ScheduledItem(**item.model_dump()) for item in request.items]
    with http_errors():
        intents = schedule_intents(db, order, request.provider, items)

    return {
        "scheduled": len(intents),
        "intents": [
            {
                "id": intent.id,
                "service_name": intent.service_name,
                "amount": intent.amount,
                "frequency": intent.frequency.value,
                "scheduled_date": intent.scheduled_date,
            }
            for intent in intents
        ],
    }


@router.post("/subscriptions/{subscription_id}/cancel")
def cancel_subscription(
    subscription_id: str,
    request: CancelRequest,
    user_id: str = Depends(verify_token),
    db: Session = Depends(get_db),
    gateways=Depends(get_gateways),
    notifier=Depends(get_notifier),
):
    ack = lifecycle.CancellationAck(request.acknowledged_consequences, request.reason)
    with http_errors():
        result = lifecycle.request_cancellation(db, subscription_id, ack, gateways, notifier,
                                                user_id=user_id)
    return _subscription_body(result.subscription, result.service_ends_at)


@router.post("/subscriptions/{subscription_id}/reactivate")
def reactivate_subscription(
    subscription_id: str,
    user_id: str = Depends(verify_token),
    db: Session = Depends(get_db),
    gateways=Depends(get_gateways),
):
    with http_errors():
        subscription = lifecycle.reactivate(db, subscription_id, gateways, user_id=user_id)
    return _subscription_body(subscription)


@router.post("/vault-credentials")
def store_vault_credential(
    request: VaultRequest,
    user_id: str = Depends(verify_token),
    db: Session = Depends(get_db),
    gateways=Depends(get_gateways),
):
    user = db.get(User, user_id)
    if not user:
        raise HTTPException(status_code=404, detail="User not found")

    with http_errors():
        credential = vault.attach_and_store(db, gateways[request.provider], user,
                                            request.payment_ref, request.customer_ref)
    return {"credential_id": credential.id, "provider": credential.provider.value}


@router.post("/jobs/process-due-intents", dependencies=[Depends(verify_internal_key)])
def process_due_intents_job(
    request: ProcessRequest = None,
    db: Session = Depends(get_db),
    gateways=Depends(get_gateways),
    notifier=Depends(get_notifier),
):
    request = request or ProcessRequest()
    report = process_due_intents(db, gateways, notifier, order_id=request.order_id,
                                 provider=request.provider)
    return {"success": True, **report.to_dict()}


@router.post("/jobs/renew-subscriptions", dependencies=[Depends(verify_internal_key)])
def renew_subscriptions_job(
    db: Session = Depends(get_db),
    gateways=Depends(get_gateways),
    notifier=Depends(get_notifier),
):
    report = renew_due_subscriptions(db, gateways, notifier)
    return {"success": True, **report.to_dict()}


@router.post("/jobs/expire-cancelled", dependencies=[Depends(verify_internal_key)])
def expire_cancelled_job(
    db: Session = Depends(get_db),
    gateways=Depends(get_gateways),
):
    return {"success": True, "expired": lifecycle.expire_cancelled_subscriptions(db, gateways)}
