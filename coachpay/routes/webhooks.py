"""
Stripe webhook route

Status codes returned to Stripe:
    200 - processed, duplicate, ignored, or rejected as unprocessable data
    401 - signature missing or invalid
    500 - store or gateway failure; Stripe redelivers and handlers are idempotent
"""

import logging
from functools import lru_cache

from fastapi import APIRouter, Depends, Header, Request
from fastapi.responses import JSONResponse
from starlette.concurrency import run_in_threadpool

from coachpay.services.webhook_router import WebhookRouter
from coachpay.utils.exceptions import BillingError, WebhookSignatureError
from coachpay.utils.sentry_context import capture_payment_error

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/stripe", tags=["Stripe Webhooks"])


@lru_cache(maxsize=1)
def get_webhook_router() -> WebhookRouter:
    return WebhookRouter()


@router.post("/webhook")
async def stripe_webhook(
    request: Request,
    stripe_signature: str | None = Header(None, alias="stripe-signature"),
    webhook_router: WebhookRouter = Depends(get_webhook_router),
):
    payload = await request.body()

    try:
        result = await run_in_threadpool(webhook_router.handle, payload, stripe_signature)
    except WebhookSignatureError as e:
        return JSONResponse(status_code=401, content=e.to_dict())
    except BillingError as e:
        if e.status_code >= 500:
            logger.error(f"Webhook processing failed, requesting redelivery: {e.detail}")
            capture_payment_error(e, operation="webhook")
            return JSONResponse(status_code=500, content=e.to_dict())
        logger.warning(f"Webhook event rejected: {e.message}")
        return JSONResponse(status_code=200, content={"success": False, "message": e.message})
    except Exception as e:
        logger.error(f"Unexpected webhook processing error: {e}", exc_info=True)
        capture_payment_error(e, operation="webhook")
        return JSONResponse(status_code=500, content={"error": "Webhook processing failed"})

    logger.info(f"Webhook processed: {result.event_type} - {result.message}")
    return {
        "success": result.success,
        "event_type": result.event_type,
        "event_id": result.event_id,
        "message": result.message,
        "duplicate": result.duplicate,
        "processed_at": result.processed_at.isoformat(),
    }
