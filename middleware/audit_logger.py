"""
Credential masking for every log line, plus one JSON audit record per HTTP request.

The authorizer and webhook receiver see bearer JWTs, tenant API keys, HMAC
keys and HMAC signatures on every call. The masking rules below run on the
fully rendered message, so a credential interpolated into any log call is
still caught:

- bearer tokens: replaced entirely
- hmacSignature values: replaced entirely
- card numbers: BIN (first 6) + last 4
- long credential-like strings: first 8 characters kept (UUIDs and
  ``tenant-*-config`` secret names pass through)
- email addresses: first character and domain kept

Request and response bodies are never logged.
"""

from __future__ import annotations

import datetime
import json
import logging
import re
import time
import uuid
from dataclasses import asdict, dataclass
from typing import Any, Awaitable, Callable

logger = logging.getLogger(__name__)

_BEARER = re.compile(r"(Bearer\s+)[A-Za-z0-9._~+/=-]+", re.IGNORECASE)
_SIGNATURE = re.compile(r"(hmacSignature[\"']?\s*[:=]\s*[\"']?)[A-Za-z0-9+/=]+", re.IGNORECASE)
# 13-19 digit card numbers with a 3-6 leading BIN digit; PSP references start with 8 or 9
_PAN = re.compile(r"\b([3-6]\d{5})\d{3,9}(\d{4})\b")
_LONG_TOKEN = re.compile(r"(?<![\w-])[A-Za-z0-9_-]{32,}(?![\w-])")
# Identifiers that are long but never credentials: request and tenant ids, secret names
_UUID = re.compile(r"[0-9a-fA-F]{8}(?:-[0-9a-fA-F]{4}){3}-[0-9a-fA-F]{12}")
_SECRET_NAME = re.compile(r"tenant-[A-Za-z0-9_-]+-config")
_EMAIL = re.compile(r"\b([A-Za-z0-9._%+-])[A-Za-z0-9._%+-]*@([A-Za-z0-9.-]+\.[A-Za-z]{2,})\b")


def sanitize_bearer(text: str) -> str:
    return _BEARER.sub(r"\1[REDACTED]", text)


def sanitize_signature(text: str) -> str:
    return _SIGNATURE.sub(r"\1[REDACTED]", text)


def sanitize_pan(text: str) -> str:
    return _PAN.sub(r"\1******\2", text)


def _mask_token(match: re.Match) -> str:
    token = match.group(0)
    if _UUID.fullmatch(token) or _SECRET_NAME.fullmatch(token):
        return token
    return token[:8] + "...[REDACTED]"


def sanitize_api_key(text: str) -> str:
    """Keep the first 8 characters of API keys, hex HMAC keys and similar tokens."""
    return _LONG_TOKEN.sub(_mask_token, text)


def sanitize_email(text: str) -> str:
    return _EMAIL.sub(r"\1***@\2", text)


# Order matters: whole-value rules run before the partial-masking ones.
_RULES: tuple[Callable[[str], str], ...] = (
    sanitize_bearer,
    sanitize_signature,
    sanitize_pan,
    sanitize_api_key,
    sanitize_email,
)


def sanitize(text: str) -> str:
    for rule in _RULES:
        text = rule(text)
    return text


class SanitizingFormatter(logging.Formatter):
    """Formatter that masks credentials in the fully rendered record."""

    def format(self, record: logging.LogRecord) -> str:
        return sanitize(super().format(record))


@dataclass
class AuditRecord:
    """One HTTP request as seen by the receiver."""
    at: str
    request_id: str
    route: str
    http_method: str
    client_ip: str
    merchant_account: str
    user_agent: str
    status: int
    duration_ms: float

    def to_json(self) -> str:
        return sanitize(json.dumps(asdict(self), sort_keys=True))


def _level_for(status: int) -> int:
    if status >= 500:
        return logging.ERROR
    if status >= 400:
        return logging.WARNING
    return logging.INFO


class RequestAuditor:
    """
    HTTP middleware callable: ``await auditor(request, call_next)``.

    Propagates the caller's ``X-Request-Id`` (or mints one) onto the response.
    """

    def __init__(self, service_name: str = "keypay-gatekeeper") -> None:
        self.service_name = service_name

    async def __call__(self, request: Any, call_next: Callable[[Any], Awaitable[Any]]) -> Any:
        request_id = request.headers.get("x-request-id") or str(uuid.uuid4())
        started = time.perf_counter()
        response = await call_next(request)

        record = AuditRecord(
            at=datetime.datetime.now(datetime.timezone.utc).isoformat(timespec="seconds"),
            request_id=request_id,
            route=request.url.path,
            http_method=request.method,
            client_ip=client_ip(request),
            merchant_account=request.headers.get("x-merchant-account", ""),
            user_agent=request.headers.get("user-agent", ""),
            status=response.status_code,
            duration_ms=round((time.perf_counter() - started) * 1000, 2),
        )
        logger.log(_level_for(response.status_code), "HTTP_AUDIT service=%s %s",
                   self.service_name, record.to_json())
        response.headers["X-Request-Id"] = request_id
        return response


def client_ip(request: Any) -> str:
    """First X-Forwarded-For hop when behind a proxy, else the socket peer."""
    forwarded = request.headers.get("x-forwarded-for", "")
    first_hop = forwarded.split(",")[0].strip()
    if first_hop:
        return first_hop
    return request.client.host if request.client else "unknown"
