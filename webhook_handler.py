"""
Adyen webhook processing.

Pipeline per notification item: resolve the merchant's HMAC key -> verify
signature -> (optionally) project the event onto the transaction row.

The sender only ever sees ``200 [accepted]``. Adyen retries anything else,
and a retry cannot fix a bad signature or a payload we cannot parse, so
every outcome is recorded in the logs and the WebhookResult instead of the
HTTP status.
"""

from __future__ import annotations

import base64
import logging
import time
import uuid
from dataclasses import dataclass
from typing import Any, Mapping, Optional, Union

from adyen_hmac import verify_hmac
from config import Settings, configure_logging, load_settings
from db import TransactionRepository, build_database
from notifications import NotificationItem, parse_notification_request
from secrets_manager import TTLCache, build_secrets_manager
from tenants import TenantConfigResolver

logger = logging.getLogger(__name__)

ACK_BODY = "[accepted]"
ACK_HEADERS = {"Content-Type": "text/plain"}

_AUTHORISATION = "AUTHORISATION"
_EVENT_STATUSES = {
    "CAPTURE": "Captured",
    "CANCELLATION": "Cancelled",
    "REFUND": "Refunded",
}


def status_for_event(event_code: Optional[str], success: Optional[str]) -> Optional[str]:
    """Transaction status implied by an event, or None when the event changes nothing."""
    if event_code == _AUTHORISATION:
        outcome = (success or "").lower()
        if outcome == "true":
            return "Authorised"
        if outcome == "false":
            return "Refused"
        return None
    return _EVENT_STATUSES.get(event_code or "")


@dataclass
class WebhookResult:
    """Summary of one delivery; the HTTP response does not depend on it."""
    correlation_id: str
    items: int = 0
    verified: int = 0
    rejected: int = 0
    updated: int = 0
    malformed: bool = False
    failed: bool = False


class WebhookProcessor:
    """
    Verifies and applies Adyen notification items.

    ``require_valid_hmac=False`` only logs signature failures and keeps going;
    it exists for test environments whose keys are not provisioned.
    """

    def __init__(self, resolver: TenantConfigResolver, default_hmac_key: str = "",
                 key_encoding: str = "hex", require_valid_hmac: bool = True,
                 transactions: Optional[TransactionRepository] = None,
                 enable_db_writes: bool = False) -> None:
        self._resolver = resolver
        self._default_key = default_hmac_key
        self._key_encoding = key_encoding
        self._require_valid_hmac = require_valid_hmac
        self._transactions = transactions
        self._enable_db_writes = enable_db_writes

    def process(self, body: Union[bytes, str, None]) -> WebhookResult:
        """Never raises; every failure is logged and reflected in the result."""
        result = WebhookResult(correlation_id=str(uuid.uuid4()))
        start = time.monotonic()
        logger.info("WEBHOOK_RECEIVED correlation_id=%s", result.correlation_id)
        try:
            self._process(body, result)
        except Exception:
            result.failed = True
            logger.exception("WEBHOOK_PROCESSING_FAILED correlation_id=%s", result.correlation_id)
        elapsed_ms = (time.monotonic() - start) * 1000
        logger.info("WEBHOOK_DONE correlation_id=%s items=%d verified=%d rejected=%d updated=%d "
                    "elapsed_ms=%.1f", result.correlation_id, result.items, result.verified,
                    result.rejected, result.updated, elapsed_ms)
        return result

    def _process(self, body: Union[bytes, str, None], result: WebhookResult) -> None:
        try:
            request = parse_notification_request(body)
        except ValueError as exc:
            result.malformed = True
            logger.warning("WEBHOOK_PARSE_FAIL correlation_id=%s reason=%s", result.correlation_id, exc)
            return

        if not request.items:
            logger.warning("WEBHOOK_EMPTY correlation_id=%s", result.correlation_id)
            return

        for item in request.items:
            result.items += 1
            if item is None:
                result.rejected += 1
                logger.warning("WEBHOOK_ITEM_MISSING correlation_id=%s", result.correlation_id)
                continue

            if self._verify(item, result.correlation_id):
                result.verified += 1
            else:
                result.rejected += 1
                if self._require_valid_hmac:
                    continue

            logger.info("WEBHOOK_ITEM event=%s success=%s psp=%s original=%s merchant_ref=%s "
                        "correlation_id=%s", item.event_code, item.success, item.psp_reference,
                        item.original_reference, item.merchant_reference, result.correlation_id)

            if self._apply(item, request.payload, result.correlation_id):
                result.updated += 1

    def _verify(self, item: NotificationItem, correlation_id: str) -> bool:
        merchant = item.merchant_account_code or ""
        key = self._resolver.hmac_key_for_merchant(merchant)
        key_source = "tenant"
        if not key:
            key, key_source = self._default_key, "default"
        if verify_hmac(item, key, self._key_encoding):
            return True
        logger.warning("WEBHOOK_HMAC_INVALID event=%s psp=%s merchant=%s key_source=%s correlation_id=%s",
                       item.event_code, item.psp_reference, merchant,
                       key_source if key else "none", correlation_id)
        return False

    def _apply(self, item: NotificationItem, payload: Mapping[str, Any], correlation_id: str) -> bool:
        if not self._enable_db_writes:
            return False
        if self._transactions is None:
            logger.warning("WEBHOOK_DB_UNAVAILABLE correlation_id=%s", correlation_id)
            return False
        if not item.merchant_reference or not item.event_code:
            return False

        transaction = self._transactions.find_transaction_by_merchant_reference(item.merchant_reference)
        if transaction is None:
            logger.info("WEBHOOK_TX_NOT_FOUND merchant_ref=%s correlation_id=%s",
                        item.merchant_reference, correlation_id)
            return False

        status = status_for_event(item.event_code, item.success)
        if status is None:
            return False

        self._transactions.update_status_with_operation(
            transaction,
            status=status,
            psp_reference=item.psp_reference,
            result_code=item.event_code,
            operation_type=f"WEBHOOK_{item.event_code}",
            raw_payload=payload,
        )
        logger.info("WEBHOOK_TX_UPDATED transaction=%s status=%s correlation_id=%s",
                    transaction.transaction_id, status, correlation_id)
        return True


def build_webhook_processor(settings: Settings, database: Optional[Any] = None,
                            secrets: Optional[Any] = None) -> WebhookProcessor:
    """
    Wire a processor from settings. ``database`` serves both tenant lookups and
    status updates; without one the Postgres database from settings is used.
    """
    secrets = secrets or build_secrets_manager(settings)
    if database is None:
        database = build_database(settings, secrets)
    resolver = TenantConfigResolver(database, secrets,
                                    hmac_keys=TTLCache(settings.SECRET_CACHE_TTL_SECONDS))
    return WebhookProcessor(
        resolver,
        default_hmac_key=settings.ADYEN_HMAC_KEY,
        key_encoding=settings.HMAC_KEY_ENCODING,
        require_valid_hmac=settings.WEBHOOK_REQUIRE_VALID_HMAC,
        transactions=database,
        enable_db_writes=settings.WEBHOOK_ENABLE_DB_WRITES,
    )


def acknowledgement() -> dict[str, Any]:
    return {"statusCode": 200, "headers": dict(ACK_HEADERS), "body": ACK_BODY}


# Reused across warm invocations of the same Lambda container.
_processor: Optional[WebhookProcessor] = None


def _get_processor() -> WebhookProcessor:
    global _processor
    if _processor is None:
        settings = load_settings()
        configure_logging(settings.LOG_LEVEL)
        _processor = build_webhook_processor(settings)
    return _processor


def lambda_handler(event: Mapping[str, Any], context: Any) -> dict[str, Any]:
    """API Gateway proxy integration entry point; always acknowledges."""
    try:
        body = (event or {}).get("body")
        if body and (event or {}).get("isBase64Encoded"):
            body = base64.b64decode(body)
        _get_processor().process(body)
    except Exception:
        logger.exception("WEBHOOK_BOOTSTRAP_ERROR")
    return acknowledgement()
