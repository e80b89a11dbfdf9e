import asyncio
import logging
from datetime import timedelta

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from marketplace_shared.idempotency import EventLedger
from marketplace_shared.rabbitmq import RabbitPublisher
from marketplace_shared.redis_client import create_redis

from .catalog import ServiceCatalogClient
from .config import (
    CONFLICT_SCOPE,
    ENVIRONMENT,
    GATEWAY_TIMEOUT_SECONDS,
    HTTP_TIMEOUT,
    LOG_LEVEL,
    PAYMENT_GATEWAY,
    RABBIT_URL,
    REDIS_URL,
    RESERVATION_SWEEP_SECONDS,
    RESERVATION_TTL_MINUTES,
    SERVICE_CATALOG_URL,
    SERVICE_NAME,
    STRIPE_SECRET_KEY,
    STRIPE_WEBHOOK_SECRET,
    WORKDAY_CLOSE,
    WORKDAY_OPEN,
)
from .core import BookingCore
from .db import SessionLocal, engine
from .errors import BookingError
from .expiry_worker import expiry_loop
from .gateway import build_gateway
from .middleware import RequestLoggingMiddleware
from .notifications import Notifier
from .routes import router
from .slots import WorkingHours
from .webhook_security import WebhookSignatureError

logging.basicConfig(
    level=LOG_LEVEL.upper(),
    format="%(asctime)s %(levelname)s %(name)s %(message)s",
)
logger = logging.getLogger(__name__)

app = FastAPI(title="Booking Service")
app.add_middleware(RequestLoggingMiddleware)
app.include_router(router)

publisher = RabbitPublisher(RABBIT_URL, SERVICE_NAME)

_stop_event = asyncio.Event()
_expiry_task = None


@app.exception_handler(BookingError)
async def booking_error_handler(request: Request, exc: BookingError):
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.detail})


@app.exception_handler(WebhookSignatureError)
async def webhook_signature_handler(request: Request, exc: WebhookSignatureError):
    logger.warning("[%s] rejected webhook: %s", SERVICE_NAME, exc)
    return JSONResponse(status_code=400, content={"detail": "Invalid webhook signature"})


@app.get("/health")
async def health():
    return {"status": "ok", "service": SERVICE_NAME, "events_enabled": publisher.enabled}


def build_core() -> BookingCore:
    ledger = EventLedger(create_redis(REDIS_URL)) if REDIS_URL else None
    if ledger is None:
        logger.warning("[%s] REDIS_URL not set; payment webhooks are disabled", SERVICE_NAME)

    return BookingCore(
        SessionLocal,
        ServiceCatalogClient(SERVICE_CATALOG_URL, timeout=HTTP_TIMEOUT),
        build_gateway(
            PAYMENT_GATEWAY,
            environment=ENVIRONMENT,
            stripe_key=STRIPE_SECRET_KEY,
            timeout=GATEWAY_TIMEOUT_SECONDS,
        ),
        Notifier(publisher),
        ledger,
        hours=WorkingHours.from_clock(WORKDAY_OPEN, WORKDAY_CLOSE),
        scope=CONFLICT_SCOPE,
        reservation_ttl=timedelta(minutes=RESERVATION_TTL_MINUTES),
        gateway_timeout=GATEWAY_TIMEOUT_SECONDS,
        webhook_secret=STRIPE_WEBHOOK_SECRET,
    )


@app.on_event("startup")
async def startup():
    global _expiry_task
    try:
        await publisher.connect()
    except Exception as e:
        logger.warning("[%s] RabbitMQ connect failed at startup; continuing: %s", SERVICE_NAME, e)

    app.state.core = build_core()
    _stop_event.clear()
    _expiry_task = asyncio.create_task(
        expiry_loop(app.state.core.holder, _stop_event, interval_seconds=RESERVATION_SWEEP_SECONDS)
    )


@app.on_event("shutdown")
async def shutdown():
    global _expiry_task
    _stop_event.set()
    if _expiry_task:
        try:
            await _expiry_task
        except Exception:
            logger.exception("[%s] expiry worker stopped with an error", SERVICE_NAME)
        _expiry_task = None

    core = getattr(app.state, "core", None)
    if core is not None:
        dropped = await core.close()
        if dropped:
            logger.info("[%s] dropped %d unconfirmed reservations on shutdown", SERVICE_NAME, dropped)

    try:
        await publisher.close()
    except Exception as e:
        logger.warning("[%s] RabbitMQ close failed: %s", SERVICE_NAME, e)
    await engine.dispose()
