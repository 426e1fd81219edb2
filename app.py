"""
HTTP entry point for the Adyen webhook receiver when it runs as a container.

Behind API Gateway the same WebhookProcessor is driven by
``webhook_handler.lambda_handler``; this app only adds the HTTP concerns:
audit logging, response hardening headers and a liveness probe.

There is no caller authentication on the webhook route. Each notification
item carries its own HMAC signature, checked by the processor.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse, PlainTextResponse

from config import configure_logging, load_settings
from middleware.audit_logger import RequestAuditor
from webhook_handler import ACK_BODY, ACK_HEADERS, build_webhook_processor

logger = logging.getLogger(__name__)

SECURITY_HEADERS = {
    "X-Content-Type-Options": "nosniff",
    "X-Frame-Options": "DENY",
    "Strict-Transport-Security": "max-age=31536000; includeSubDomains; preload",
    "Content-Security-Policy": "default-src 'none'; frame-ancestors 'none'",
    "Cache-Control": "no-store, no-cache, must-revalidate",
}


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Load settings, install sanitized logging and wire the processor once per process."""
    settings = load_settings()
    configure_logging(settings.LOG_LEVEL)
    app.state.settings = settings
    app.state.webhook_processor = build_webhook_processor(settings)
    logger.info("WEBHOOK_RECEIVER_READY db_writes=%s require_valid_hmac=%s",
                settings.WEBHOOK_ENABLE_DB_WRITES, settings.WEBHOOK_REQUIRE_VALID_HMAC)
    yield
    logger.info("WEBHOOK_RECEIVER_STOPPED")


app = FastAPI(
    title="KeyPay Webhook Receiver",
    description="Adyen notification receiver with per-tenant HMAC verification",
    version="1.0.0",
    docs_url=None,
    redoc_url=None,
    openapi_url=None,
    lifespan=lifespan,
)

auditor = RequestAuditor(service_name="keypay-webhook")


# Registered first, so it runs innermost; the auditor then sees the final response.
@app.middleware("http")
async def hardening_headers(request: Request, call_next):
    response = await call_next(request)
    response.headers.update(SECURITY_HEADERS)
    return response


app.middleware("http")(auditor)


@app.exception_handler(Exception)
async def unhandled_error(request: Request, exc: Exception):
    """Opaque 500 with a request id; details only go to the log."""
    request_id = request.headers.get("x-request-id") or str(uuid.uuid4())
    logger.exception("UNHANDLED_EXCEPTION request_id=%s route=%s", request_id, request.url.path)
    return JSONResponse({"error": "internal_error", "request_id": request_id}, status_code=500)


@app.get("/health")
def health():
    return {"status": "ok"}


@app.post("/webhooks/adyen")
async def adyen_webhook(request: Request):
    """
    Accept an Adyen notification batch.

    The answer is ``200 [accepted]`` whatever happens to the items: Adyen
    retries anything else, and a retry cannot repair a bad signature or an
    unparseable body.
    """
    processor = getattr(request.app.state, "webhook_processor", None)
    try:
        body = await request.body()
        if processor is None:
            logger.error("WEBHOOK_NOT_READY")
        else:
            # Secret-store and Postgres calls block; run them off the event loop.
            await asyncio.to_thread(processor.process, body)
    except Exception:
        logger.exception("WEBHOOK_ROUTE_ERROR")
    return PlainTextResponse(ACK_BODY, status_code=200, headers=dict(ACK_HEADERS))
