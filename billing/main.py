import logging
from contextlib import asynccontextmanager

from fastapi import Depends, FastAPI, HTTPException, Request
from fastapi.concurrency import run_in_threadpool
from sqlalchemy.orm import Session

from billing.config import configure_logging
from billing.database import Base, engine, get_db
from billing.errors import ProviderError, WebhookVerificationError
from billing.gateway import close_gateways, get_gateways
from billing.models import Provider
from billing.notifications import close_notifier, get_notifier
from billing.routes import router
from billing.webhooks import reconcile

configure_logging()
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    yield
    close_gateways()
    close_notifier()


app = FastAPI(title="Subscription Billing Service", lifespan=lifespan)

app.include_router(router)

Base.metadata.create_all(bind=engine)


def receive_webhook(provider: Provider, payload: bytes, headers, db: Session, gateways, notifier):
    gateway = gateways.get(provider)
    if gateway is None:
        raise HTTPException(status_code=404, detail="Unknown provider")

    try:
        event = gateway.parse_webhook(payload, headers)
    except WebhookVerificationError as e:
        logger.warning("Rejected %s webhook: %s", provider.value, e.message)
        raise HTTPException(status_code=400, detail=e.message)
    except ProviderError:
        # Non-2xx makes the provider redeliver later
        raise HTTPException(status_code=503, detail="Webhook verification unavailable")

    outcome = reconcile(db, event, notifier)
    return {"ok": True, "result": outcome}


@app.post("/webhooks/stripe")
async def stripe_webhook(
    request: Request,
    db: Session = Depends(get_db),
    gateways=Depends(get_gateways),
    notifier=Depends(get_notifier),
):
    payload = await request.body()
    return await run_in_threadpool(
        receive_webhook, Provider.CARD_NETWORK, payload, request.headers, db, gateways, notifier
    )


@app.post("/webhooks/paypal")
async def paypal_webhook(
    request: Request,
    db: Session = Depends(get_db),
    gateways=Depends(get_gateways),
    notifier=Depends(get_notifier),
):
    payload = await request.body()
    return await run_in_threadpool(
        receive_webhook, Provider.WALLET, payload, request.headers, db, gateways, notifier
    )
