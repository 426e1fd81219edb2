"""Shared fixtures for authorizer and webhook tests."""

import datetime
import json
import os
import uuid

import jwt
import pytest

# Keep boto3 and settings away from real credentials before importing app modules
os.environ.setdefault("AWS_ACCESS_KEY_ID", "testing")
os.environ.setdefault("AWS_SECRET_ACCESS_KEY", "testing")
os.environ.setdefault("AWS_DEFAULT_REGION", "us-east-1")

import sys
sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))

from adyen_hmac import build_signing_string, calculate_hmac
from db import TenantRecord, TenantRepository, TransactionRecord, TransactionRepository
from secrets_manager import InMemoryBackend, SecretsManager, TTLCache

HEX_KEY = "00112233445566778899AABBCCDDEEFF"
JWT_SECRET = "UnitTestSecret_This_Is_A_32+_Byte_Key_For_HS256!!!"
TENANT_ID = uuid.UUID("6f1c2d3e-4b5a-4c6d-8e7f-901a2b3c4d5e")
MERCHANT = "TestMerchant"


class FakeDatabase(TenantRepository, TransactionRepository):
    """In-memory tenants/transactions with call recording."""

    def __init__(self):
        self.tenants: list[TenantRecord] = []
        self.transactions: dict[str, TransactionRecord] = {}
        self.updates: list[dict] = []
        self.lookups: list[str] = []

    def get_tenant_by_id(self, tenant_id):
        return next((t for t in self.tenants if t.tenant_id == tenant_id), None)

    def get_tenant_by_merchant(self, merchant_account):
        self.lookups.append(merchant_account)
        return next((t for t in self.tenants if t.merchant_account == merchant_account), None)

    def find_transaction_by_merchant_reference(self, merchant_reference):
        return self.transactions.get(merchant_reference)

    def update_status_with_operation(self, transaction, status, psp_reference, result_code,
                                     operation_type, raw_payload):
        self.updates.append({
            "transaction": transaction,
            "status": status,
            "psp_reference": psp_reference,
            "result_code": result_code,
            "operation_type": operation_type,
            "raw_payload": raw_payload,
        })


@pytest.fixture
def hex_key() -> str:
    return HEX_KEY


@pytest.fixture
def tenant() -> TenantRecord:
    return TenantRecord(tenant_id=TENANT_ID, secret_name="", merchant_account=MERCHANT)


@pytest.fixture
def tenant_secret_payload() -> dict:
    return {
        "adyenAPIKey": "AQE_test_adyen_api_key",
        "adyenClientKey": "test_client_key",
        "adyenHmacKey": HEX_KEY,
        "ipAllowlist": ["10.0.0.0/24", "203.0.113.7"],
        "apiKey": "pm_key_primary",
        "apiKeys": ["pm_key_secondary"],
    }


@pytest.fixture
def secrets_backend(tenant_secret_payload) -> InMemoryBackend:
    return InMemoryBackend({
        f"tenant-{MERCHANT}-config": json.dumps(tenant_secret_payload),
        "keypay/jwt": json.dumps({"secret": JWT_SECRET}),
    })


@pytest.fixture
def secrets(secrets_backend) -> SecretsManager:
    return SecretsManager(backend=secrets_backend, cache=TTLCache(60), service_name="test")


@pytest.fixture
def database(tenant) -> FakeDatabase:
    db = FakeDatabase()
    db.tenants.append(tenant)
    return db


@pytest.fixture
def notification_fields() -> dict:
    return {
        "eventCode": "AUTHORISATION",
        "success": "true",
        "merchantAccountCode": MERCHANT,
        "merchantReference": "Order-123",
        "pspReference": "8815329842815468",
        "originalReference": "",
        "amount": {"value": 1000, "currency": "USD"},
    }


def sign_item(fields: dict, key: str = HEX_KEY, encoding: str = "hex") -> dict:
    """Return a copy of ``fields`` with additionalData.hmacSignature set."""
    amount = fields.get("amount") or {}
    data = build_signing_string(
        psp_reference=fields.get("pspReference"),
        original_reference=fields.get("originalReference"),
        merchant_account_code=fields.get("merchantAccountCode"),
        merchant_reference=fields.get("merchantReference"),
        amount_value=amount.get("value"),
        amount_currency=amount.get("currency"),
        event_code=fields.get("eventCode"),
        success=fields.get("success"),
    )
    signed = dict(fields)
    signed["additionalData"] = {"hmacSignature": calculate_hmac(data, key, encoding)}
    return signed


def notification_body(*items: dict) -> bytes:
    return json.dumps({
        "live": "false",
        "notificationItems": [{"NotificationRequestItem": item} for item in items],
    }).encode()


def make_token(secret: str = JWT_SECRET, lifetime: datetime.timedelta = datetime.timedelta(minutes=5),
               **claims) -> str:
    now = datetime.datetime.now(tz=datetime.timezone.utc)
    payload = {
        "sub": claims.pop("sub", str(TENANT_ID)),
        "nbf": now - datetime.timedelta(seconds=30),
        "exp": now + lifetime,
        "jti": str(uuid.uuid4()),
    }
    payload.update(claims)
    return jwt.encode(payload, secret, algorithm="HS256")
