"""
Postgres access for tenant lookups and webhook status projection.

Only the queries the authorizer and webhook receiver need live here. Every
statement runs through ``with_retry`` so a failover or a serialization
conflict does not turn into a dropped webhook.
"""

from __future__ import annotations

import json
import logging
import time
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Callable, Optional, TypeVar

import psycopg
from psycopg.conninfo import make_conninfo
from psycopg.rows import dict_row
from psycopg.types.json import Jsonb

from secrets_manager import SecretsManager, tenant_secret_name

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Connection loss, resource exhaustion, serialization/deadlock conflicts.
TRANSIENT_SQLSTATES = frozenset({
    "08000", "08003", "08006",
    "53100", "53200",
    "40001", "40P01",
})


@dataclass(frozen=True)
class TenantRecord:
    tenant_id: uuid.UUID
    secret_name: str
    merchant_account: str

    @property
    def config_secret_name(self) -> str:
        return tenant_secret_name(self.merchant_account, self.secret_name)


@dataclass(frozen=True)
class TransactionRecord:
    transaction_id: uuid.UUID
    tenant_id: uuid.UUID


class TenantRepository(ABC):
    """Read access to the tenants table."""

    @abstractmethod
    def get_tenant_by_id(self, tenant_id: uuid.UUID) -> Optional[TenantRecord]:
        ...

    @abstractmethod
    def get_tenant_by_merchant(self, merchant_account: str) -> Optional[TenantRecord]:
        ...


class TransactionRepository(ABC):
    """Transaction lookups and webhook-driven status updates."""

    @abstractmethod
    def find_transaction_by_merchant_reference(self, merchant_reference: str) -> Optional[TransactionRecord]:
        ...

    @abstractmethod
    def update_status_with_operation(self, transaction: TransactionRecord, status: str,
                                     psp_reference: Optional[str], result_code: Optional[str],
                                     operation_type: str, raw_payload: Any) -> None:
        ...


def is_retryable_error(exc: BaseException) -> bool:
    """Transient SQLSTATEs, plus connection failures that carry no SQLSTATE."""
    if not isinstance(exc, psycopg.Error):
        return False
    sqlstate = getattr(exc, "sqlstate", None)
    if sqlstate:
        return sqlstate in TRANSIENT_SQLSTATES
    return isinstance(exc, psycopg.OperationalError)


def with_retry(operation: Callable[[], T], max_retries: int = 3,
               base_delay_seconds: float = 0.1,
               sleep: Callable[[float], None] = time.sleep) -> T:
    """
    Run ``operation``; on a retryable database error wait
    ``base_delay * 2**attempt`` and try again, at most ``max_retries`` times.
    """
    attempt = 0
    while True:
        try:
            return operation()
        except psycopg.Error as exc:
            if not is_retryable_error(exc) or attempt >= max_retries:
                raise
            attempt += 1
            delay = base_delay_seconds * (2 ** attempt)
            logger.warning("DB_RETRY attempt=%d/%d sqlstate=%s delay=%.2fs",
                           attempt, max_retries, getattr(exc, "sqlstate", None), delay)
            sleep(delay)


class PostgresDatabase(TenantRepository, TransactionRepository):
    """psycopg 3 implementation; opens a short-lived connection per statement."""

    def __init__(self, conninfo: str, max_retries: int = 3,
                 connect: Callable[..., Any] = psycopg.connect) -> None:
        self._conninfo = conninfo
        self._max_retries = max_retries
        self._connect = connect

    def _fetch_one(self, sql: str, params: dict[str, Any]) -> Optional[dict[str, Any]]:
        def run() -> Optional[dict[str, Any]]:
            with self._connect(self._conninfo, row_factory=dict_row) as conn:
                with conn.cursor() as cur:
                    cur.execute(sql, params)
                    return cur.fetchone()
        return with_retry(run, max_retries=self._max_retries)

    def _execute(self, sql: str, params: dict[str, Any]) -> None:
        def run() -> None:
            with self._connect(self._conninfo) as conn:
                with conn.cursor() as cur:
                    cur.execute(sql, params)
                conn.commit()
        with_retry(run, max_retries=self._max_retries)

    @staticmethod
    def _tenant(row: Optional[dict[str, Any]]) -> Optional[TenantRecord]:
        if row is None:
            return None
        return TenantRecord(
            tenant_id=row["tenantid"],
            secret_name=row["secret_name"] or "",
            merchant_account=row["merchantaccount"],
        )

    def get_tenant_by_id(self, tenant_id: uuid.UUID) -> Optional[TenantRecord]:
        return self._tenant(self._fetch_one(
            "select tenantid, secret_name, merchantaccount from tenants where tenantid = %(tenant_id)s",
            {"tenant_id": tenant_id},
        ))

    def get_tenant_by_merchant(self, merchant_account: str) -> Optional[TenantRecord]:
        return self._tenant(self._fetch_one(
            "select tenantid, secret_name, merchantaccount from tenants "
            "where merchantaccount = %(merchant)s limit 1",
            {"merchant": merchant_account},
        ))

    def find_transaction_by_merchant_reference(self, merchant_reference: str) -> Optional[TransactionRecord]:
        row = self._fetch_one(
            "select transactionid, tenantid from transactions where merchantreference = %(ref)s",
            {"ref": merchant_reference},
        )
        if row is None:
            return None
        return TransactionRecord(transaction_id=row["transactionid"], tenant_id=row["tenantid"])

    def update_status_with_operation(self, transaction: TransactionRecord, status: str,
                                     psp_reference: Optional[str], result_code: Optional[str],
                                     operation_type: str, raw_payload: Any) -> None:
        self._execute(
            """
            update transactions
            set status = %(status)s::payment_status,
                pspreference = coalesce(%(psp_reference)s, pspreference),
                resultcode = %(result_code)s,
                refusalreason = null,
                updatedat = now()
            where transactionid = %(transaction_id)s
            """,
            {
                "status": status,
                "psp_reference": psp_reference,
                "result_code": result_code,
                "transaction_id": transaction.transaction_id,
            },
        )
        # One operation row per PSP reference; redelivered webhooks are no-ops.
        self._execute(
            """
            insert into operations (operationid, transactionid, tenantid, pspreference,
                                    operationtype, status, amountvalue, currencycode, rawpayload)
            values (%(operation_id)s, %(transaction_id)s, %(tenant_id)s, %(psp_reference)s,
                    %(operation_type)s, %(status)s, null, null, %(raw_payload)s)
            on conflict (pspreference) do nothing
            """,
            {
                "operation_id": uuid.uuid4(),
                "transaction_id": transaction.transaction_id,
                "tenant_id": transaction.tenant_id,
                "psp_reference": psp_reference,
                "operation_type": operation_type,
                "status": status,
                "raw_payload": Jsonb(raw_payload) if raw_payload is not None else None,
            },
        )


def conninfo_from_rds_secret(raw: str) -> str:
    """
    Build a libpq conninfo string from an RDS-managed secret
    (host, username, password, port, dbname/dbName).
    """
    data = json.loads(raw)
    host = data.get("host")
    username = data.get("username")
    password = data.get("password")
    if not host or not username or not password:
        raise ValueError("RDS secret missing required fields")
    port = int(data.get("port") or 5432)
    dbname = data.get("dbname") or data.get("dbName") or "postgres"
    return make_conninfo(host=host, user=username, password=password, port=port, dbname=dbname)


def resolve_conninfo(settings: Any, secrets: SecretsManager) -> str:
    """RDS secret when configured, falling back to DATABASE_URL."""
    if settings.RDS_SECRET_NAME:
        try:
            raw = secrets.get_secret(settings.RDS_SECRET_NAME, requester="db_bootstrap")
            if raw is None:
                raise ValueError("RDS secret not found")
            return conninfo_from_rds_secret(raw)
        except Exception as exc:
            logger.warning("RDS_SECRET_FALLBACK secret=%s error=%s", settings.RDS_SECRET_NAME,
                           type(exc).__name__)
    return settings.DATABASE_URL


def build_database(settings: Any, secrets: SecretsManager) -> Optional[PostgresDatabase]:
    conninfo = resolve_conninfo(settings, secrets)
    if not conninfo:
        logger.warning("DB_DISABLED reason=no_connection_string")
        return None
    return PostgresDatabase(conninfo)
