"""
Tests for Adyen webhook processing.

Validates:
- valid items are verified with the tenant key and projected onto the transaction
- items failing HMAC are skipped when verification is required
- the global key is used when the tenant has none
- malformed bodies never reach the database and are still acknowledged
"""

import base64
import json
import uuid

import pytest

import webhook_handler
from conftest import HEX_KEY, MERCHANT, TENANT_ID, FakeDatabase, notification_body, sign_item
from db import TransactionRecord
from secrets_manager import InMemoryBackend, SecretsManager, TTLCache
from tenants import TenantConfigResolver
from webhook_handler import ACK_BODY, WebhookProcessor, lambda_handler, status_for_event

OTHER_KEY = "FFEEDDCCBBAA99887766554433221100"


@pytest.fixture
def transaction(database) -> TransactionRecord:
    record = TransactionRecord(transaction_id=uuid.uuid4(), tenant_id=TENANT_ID)
    database.transactions["Order-123"] = record
    return record


def _processor(database, secrets, **overrides) -> WebhookProcessor:
    options = {"default_hmac_key": "", "transactions": database, "enable_db_writes": True}
    options.update(overrides)
    return WebhookProcessor(TenantConfigResolver(database, secrets, TTLCache(60)), **options)


class TestStatusMapping:

    @pytest.mark.parametrize("event_code,success,expected", [
        ("AUTHORISATION", "true", "Authorised"),
        ("AUTHORISATION", "TRUE", "Authorised"),
        ("AUTHORISATION", "false", "Refused"),
        ("AUTHORISATION", "", None),
        ("CAPTURE", "true", "Captured"),
        ("CANCELLATION", "true", "Cancelled"),
        ("REFUND", "false", "Refunded"),
        ("REPORT_AVAILABLE", "true", None),
        (None, None, None),
    ])
    def test_event_to_status(self, event_code, success, expected):
        assert status_for_event(event_code, success) == expected


class TestProcessing:

    def test_valid_item_updates_transaction(self, database, secrets, transaction, notification_fields):
        body = notification_body(sign_item(notification_fields))
        result = _processor(database, secrets).process(body)

        assert (result.items, result.verified, result.rejected, result.updated) == (1, 1, 0, 1)
        update = database.updates[0]
        assert update["transaction"] == transaction
        assert update["status"] == "Authorised"
        assert update["psp_reference"] == "8815329842815468"
        assert update["result_code"] == "AUTHORISATION"
        assert update["operation_type"] == "WEBHOOK_AUTHORISATION"
        assert update["raw_payload"] == json.loads(body)

    def test_invalid_signature_skipped(self, database, secrets, transaction, notification_fields):
        signed = sign_item(notification_fields, key=OTHER_KEY)
        result = _processor(database, secrets).process(notification_body(signed))
        assert result.rejected == 1
        assert result.updated == 0
        assert database.updates == []

    def test_unsigned_item_skipped(self, database, secrets, transaction, notification_fields):
        result = _processor(database, secrets).process(notification_body(notification_fields))
        assert result.rejected == 1
        assert database.updates == []

    def test_verification_optional(self, database, secrets, transaction, notification_fields):
        processor = _processor(database, secrets, require_valid_hmac=False)
        result = processor.process(notification_body(notification_fields))
        assert result.rejected == 1
        assert result.updated == 1

    def test_mixed_batch(self, database, secrets, transaction, notification_fields):
        good = sign_item(notification_fields)
        bad = sign_item(dict(notification_fields, pspReference="other"), key=OTHER_KEY)
        result = _processor(database, secrets).process(notification_body(bad, good))
        assert (result.items, result.verified, result.rejected, result.updated) == (2, 1, 1, 1)

    def test_db_writes_disabled(self, database, secrets, transaction, notification_fields):
        processor = _processor(database, secrets, enable_db_writes=False)
        result = processor.process(notification_body(sign_item(notification_fields)))
        assert result.verified == 1
        assert database.updates == []

    def test_unknown_transaction(self, database, secrets, notification_fields):
        result = _processor(database, secrets).process(notification_body(sign_item(notification_fields)))
        assert result.verified == 1
        assert result.updated == 0

    def test_event_without_status_change(self, database, secrets, transaction, notification_fields):
        fields = dict(notification_fields, eventCode="REPORT_AVAILABLE")
        result = _processor(database, secrets).process(notification_body(sign_item(fields)))
        assert result.verified == 1
        assert database.updates == []

    def test_refund_event(self, database, secrets, transaction, notification_fields):
        fields = dict(notification_fields, eventCode="REFUND", originalReference="8815329842815468",
                      pspReference="9915329842815999")
        _processor(database, secrets).process(notification_body(sign_item(fields)))
        assert database.updates[0]["status"] == "Refunded"
        assert database.updates[0]["operation_type"] == "WEBHOOK_REFUND"


class TestKeyResolution:

    def test_tenant_key_cached(self, database, secrets, notification_fields):
        processor = _processor(database, secrets)
        body = notification_body(sign_item(notification_fields))
        processor.process(body)
        processor.process(body)
        assert database.lookups == [MERCHANT]

    def test_falls_back_to_default_key(self, database, notification_fields):
        secrets = SecretsManager(backend=InMemoryBackend({f"tenant-{MERCHANT}-config": "{}"}))
        processor = _processor(database, secrets, default_hmac_key=OTHER_KEY)
        result = processor.process(notification_body(sign_item(notification_fields, key=OTHER_KEY)))
        assert result.verified == 1

    def test_unknown_merchant_uses_default_key(self, database, secrets, notification_fields):
        fields = dict(notification_fields, merchantAccountCode="SomeoneElse")
        processor = _processor(database, secrets, default_hmac_key=OTHER_KEY)
        assert processor.process(notification_body(sign_item(fields, key=OTHER_KEY))).verified == 1

    def test_tenant_key_takes_precedence(self, database, secrets, notification_fields):
        processor = _processor(database, secrets, default_hmac_key=OTHER_KEY)
        result = processor.process(notification_body(sign_item(notification_fields, key=OTHER_KEY)))
        assert result.rejected == 1

    def test_no_key_anywhere_rejects(self, notification_fields):
        secrets = SecretsManager(backend=InMemoryBackend())
        processor = _processor(FakeDatabase(), secrets)
        result = processor.process(notification_body(sign_item(notification_fields)))
        assert result.rejected == 1

    def test_base64_keys(self, database, notification_fields):
        b64_key = base64.b64encode(bytes.fromhex(HEX_KEY)).decode()
        secrets = SecretsManager(backend=InMemoryBackend({
            f"tenant-{MERCHANT}-config": json.dumps({"adyenHmacKey": b64_key}),
        }))
        processor = _processor(database, secrets, key_encoding="base64")
        body = notification_body(sign_item(notification_fields, key=b64_key, encoding="base64"))
        assert processor.process(body).verified == 1


class TestMalformedInput:

    @pytest.mark.parametrize("body", [b"{not json", b"[1, 2]", b'{"notificationItems": "x"}', b"\xff\xfe"])
    def test_malformed_body(self, database, secrets, transaction, body):
        result = _processor(database, secrets).process(body)
        assert result.malformed is True
        assert database.updates == []
        assert database.lookups == []

    @pytest.mark.parametrize("body", [None, b"", b"{}", b'{"notificationItems": []}'])
    def test_empty_delivery(self, database, secrets, body):
        result = _processor(database, secrets).process(body)
        assert result.malformed is False
        assert result.items == 0

    def test_malformed_container_counted(self, database, secrets, transaction, notification_fields):
        body = json.dumps({"notificationItems": [
            {"Other": {}},
            {"NotificationRequestItem": sign_item(notification_fields)},
        ]}).encode()
        result = _processor(database, secrets).process(body)
        assert (result.items, result.rejected, result.updated) == (2, 1, 1)

    def test_database_error_is_contained(self, secrets, notification_fields):
        class BrokenDatabase(FakeDatabase):
            def get_tenant_by_merchant(self, merchant_account):
                raise RuntimeError("connection refused")

        result = _processor(BrokenDatabase(), secrets).process(
            notification_body(sign_item(notification_fields)))
        assert result.failed is True


class TestLambdaHandler:

    @pytest.fixture
    def installed(self, monkeypatch, database, secrets):
        processor = _processor(database, secrets)
        monkeypatch.setattr(webhook_handler, "_processor", processor)
        return processor

    def test_malformed_json_acknowledged(self, installed, database):
        response = lambda_handler({"body": "{not json"}, None)
        assert response == {"statusCode": 200, "headers": {"Content-Type": "text/plain"}, "body": ACK_BODY}
        assert database.updates == []

    def test_base64_body(self, installed, database, transaction, notification_fields):
        raw = notification_body(sign_item(notification_fields))
        event = {"body": base64.b64encode(raw).decode(), "isBase64Encoded": True}
        assert lambda_handler(event, None)["statusCode"] == 200
        assert database.updates[0]["status"] == "Authorised"

    def test_bootstrap_failure_acknowledged(self, monkeypatch):
        def broken():
            raise RuntimeError("secret store unreachable")

        monkeypatch.setattr(webhook_handler, "_get_processor", broken)
        assert lambda_handler({"body": "{}"}, None)["body"] == ACK_BODY
