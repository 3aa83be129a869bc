import logging

import sentry_sdk
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from coachpay.config import Config
from coachpay.config.logging_config import configure_logging
from coachpay.routes import credits, health, maintenance, webhooks
from coachpay.services.startup import lifespan
from coachpay.utils.exceptions import BillingError

logger = logging.getLogger(__name__)


def init_sentry() -> bool:
    """Initialise Sentry when a DSN is configured. Returns True if enabled."""
    if not (Config.SENTRY_ENABLED and Config.SENTRY_DSN):
        return False

    def traces_sampler(sampling_context):
        if sampling_context.get("parent_sampled") is not None:
            return 1.0
        path = sampling_context.get("asgi_scope", {}).get("path", "")
        if path == "/health":
            return 0.0
        if path.startswith("/api/stripe/webhook"):
            return 1.0
        return Config.SENTRY_TRACES_SAMPLE_RATE

    sentry_sdk.init(
        dsn=Config.SENTRY_DSN,
        send_default_pii=False,
        environment=Config.SENTRY_ENVIRONMENT,
        release=Config.SENTRY_RELEASE,
        traces_sampler=traces_sampler,
    )
    logger.info(f"Sentry initialized (environment={Config.SENTRY_ENVIRONMENT})")
    return True


async def billing_error_handler(request: Request, exc: BillingError) -> JSONResponse:
    if exc.status_code >= 500:
        logger.error(f"{exc.error_code} on {request.url.path}: {exc.detail}")
    else:
        logger.info(f"{exc.error_code} on {request.url.path}: {exc.message}")
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


async def request_validation_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    errors = exc.errors()
    field = ".".join(str(part) for part in errors[0].get("loc", ())[1:]) if errors else ""
    message = f"Invalid request: {field}" if field else "Invalid request"
    return JSONResponse(status_code=400, content={"error": message})


def create_app() -> FastAPI:
    configure_logging()
    init_sentry()

    app = FastAPI(
        title="CoachPay Billing API",
        description="Payment and credit-ledger reconciliation for the coaching platform",
        version="0.1.0",
        lifespan=lifespan,
    )

    app.add_exception_handler(BillingError, billing_error_handler)
    app.add_exception_handler(RequestValidationError, request_validation_handler)

    app.include_router(health.router)
    app.include_router(credits.router)
    app.include_router(webhooks.router)
    app.include_router(maintenance.router)

    return app


app = create_app()
