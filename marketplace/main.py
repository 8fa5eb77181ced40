from typing import Optional

import structlog
from fastapi import FastAPI, Header, Request
from fastapi.concurrency import run_in_threadpool
from fastapi.responses import JSONResponse

from marketplace.checkout import CheckoutService
from marketplace.config import Settings, load_settings
from marketplace.database import Base, make_engine, make_session_factory
from marketplace.errors import (
    Forbidden,
    GatewayError,
    InvalidSignature,
    InvalidTransition,
    MalformedEvent,
    MarketplaceError,
    OrderNotFound,
    PaymentAlreadyInFlight,
    PreconditionFailed,
    StorageUnavailable,
)
from marketplace.ledger import LedgerStore
from marketplace.lifecycle import OrderLifecycle
from marketplace.logging_config import setup_logging
from marketplace.routes import router
from marketplace.stripe_service import StripeGateway

logger = structlog.get_logger(__name__)

ERROR_STATUS = {
    PreconditionFailed: 409,
    PaymentAlreadyInFlight: 409,
    InvalidTransition: 409,
    OrderNotFound: 404,
    Forbidden: 403,
    InvalidSignature: 400,
    MalformedEvent: 400,
    GatewayError: 502,
    StorageUnavailable: 503,
}


def status_for(exc: MarketplaceError) -> int:
    for cls in type(exc).__mro__:
        if cls in ERROR_STATUS:
            return ERROR_STATUS[cls]
    return 500


def create_app(settings: Optional[Settings] = None, gateway: Optional[StripeGateway] = None) -> FastAPI:
    """Build the service. Run with ``uvicorn marketplace.main:create_app --factory``."""
    settings = settings or load_settings()
    setup_logging(settings.log_level)

    engine = make_engine(settings.database_url)
    Base.metadata.create_all(bind=engine)

    lifecycle = OrderLifecycle(
        LedgerStore(make_session_factory(engine)),
        gateway or StripeGateway(settings),
        settings,
    )

    app = FastAPI(title="Marketplace Payments")
    app.state.settings = settings
    app.state.checkout = CheckoutService(lifecycle)
    app.include_router(router)

    @app.exception_handler(MarketplaceError)
    async def marketplace_error(request: Request, exc: MarketplaceError):
        status_code = status_for(exc)
        if status_code >= 500:
            logger.error("request_failed", path=request.url.path, code=exc.code, detail=exc.detail)
        return JSONResponse(status_code=status_code, content={"detail": exc.message, "code": exc.code})

    @app.post("/webhook")
    async def stripe_webhook(request: Request, stripe_signature: str = Header(None)):
        payload = await request.body()
        result = await run_in_threadpool(
            app.state.checkout.reconcile_webhook, payload, stripe_signature
        )
        return {"ok": True, "outcome": result.outcome.value}

    return app
