"""
Secret access for tenant configuration, the JWT signing key and RDS credentials.

Backends:
- AWS Secrets Manager (Lambda and containers)
- environment variables (local runs)
- an in-memory mapping (tests)

Values are cached in an injected TTLCache; a Secrets Manager round trip costs
50-200ms and the authorizer may need two secrets per request. Rotated values
are picked up once the entry expires.

Every access is audit-logged by key and requester, never by value.
"""

from __future__ import annotations

import hmac
import json
import logging
import os
import threading
import time
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Generic, Mapping, Optional, TypeVar

import boto3
from botocore.exceptions import BotoCoreError, ClientError

logger = logging.getLogger(__name__)

V = TypeVar("V")

_NOT_FOUND_CODES = frozenset({"ResourceNotFoundException"})


class SecretStoreError(Exception):
    """The secret store could not be reached or refused the request."""


class SecretFormatError(ValueError):
    """A secret value does not have the expected shape."""


class SecretsBackend(ABC):
    """Returns the raw secret string, or None when the secret does not exist."""

    @abstractmethod
    def get_secret(self, key: str) -> Optional[str]:
        ...


class EnvironmentBackend(SecretsBackend):
    """Secret name -> environment variable of the same name. Local runs only."""

    def get_secret(self, key: str) -> Optional[str]:
        return os.environ.get(key)


class InMemoryBackend(SecretsBackend):
    """Fixed mapping of secret name to value; for tests and local fixtures."""

    def __init__(self, secrets: Optional[Mapping[str, str]] = None) -> None:
        self._secrets = dict(secrets or {})

    def get_secret(self, key: str) -> Optional[str]:
        return self._secrets.get(key)

    def put_secret(self, key: str, value: str) -> None:
        self._secrets[key] = value


class AWSSecretsManagerBackend(SecretsBackend):
    """
    AWS Secrets Manager backend.

    A missing secret is reported as None so callers can apply their own
    fallback; anything else (throttling, permissions, network) raises
    SecretStoreError.
    """

    def __init__(self, region_name: Optional[str] = None, client: Any = None) -> None:
        self._client = client or boto3.client("secretsmanager", region_name=region_name or None)

    def get_secret(self, key: str) -> Optional[str]:
        logger.debug("[AWS-SM] Fetching key=%s", key)
        try:
            response = self._client.get_secret_value(SecretId=key)
        except ClientError as exc:
            code = exc.response.get("Error", {}).get("Code", "")
            if code in _NOT_FOUND_CODES:
                return None
            raise SecretStoreError(f"Secrets Manager error for {key}: {code}") from exc
        except BotoCoreError as exc:
            raise SecretStoreError(f"Secrets Manager unavailable for {key}") from exc
        return response.get("SecretString")


@dataclass
class _CacheEntry(Generic[V]):
    value: V
    expires_at: float

    @property
    def expired(self) -> bool:
        return time.monotonic() >= self.expires_at


class TTLCache(Generic[V]):
    """
    Thread-safe key/value cache with a per-instance time-to-live.

    A ttl of 0 disables caching: every get misses.
    """

    def __init__(self, ttl_seconds: float = 300) -> None:
        self._ttl = ttl_seconds
        self._entries: dict[str, _CacheEntry[V]] = {}
        self._lock = threading.Lock()

    def get(self, key: str) -> Optional[V]:
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None
            if entry.expired:
                del self._entries[key]
                return None
            return entry.value

    def set(self, key: str, value: V) -> None:
        if self._ttl <= 0:
            return
        with self._lock:
            self._entries[key] = _CacheEntry(value=value, expires_at=time.monotonic() + self._ttl)

    def invalidate(self, key: Optional[str] = None) -> None:
        with self._lock:
            if key is None:
                self._entries.clear()
            else:
                self._entries.pop(key, None)

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)


class SecretsManager:
    """
    Facade wrapping a SecretsBackend with:
    - TTL-based caching through an injected TTLCache
    - Audit logging of every secret access
    """

    def __init__(self, backend: SecretsBackend, cache: Optional[TTLCache[str]] = None,
                 service_name: str = "keypay-gatekeeper") -> None:
        self._backend = backend
        self._cache: TTLCache[str] = cache if cache is not None else TTLCache(300)
        self._service_name = service_name

    def get_secret(self, key: str, requester: str = "system") -> Optional[str]:
        """Retrieve a secret with caching and audit logging."""
        access_id = uuid.uuid4().hex[:12]
        logger.info("SECRET_ACCESS audit_id=%s requester=%s key=%s service=%s",
                    access_id, requester, key, self._service_name)

        cached = self._cache.get(key)
        if cached is not None:
            return cached

        value = self._backend.get_secret(key)
        if value is not None:
            self._cache.set(key, value)
        else:
            logger.warning("Secret key=%s not found in backend", key)
        return value

    def get_tenant_secret(self, key: str, requester: str = "system") -> Optional["TenantSecret"]:
        """Fetch and validate a tenant configuration secret."""
        raw = self.get_secret(key, requester=requester)
        if raw is None:
            return None
        return TenantSecret.from_json(raw)

    def get_jwt_signing_secret(self, key: str, requester: str = "system") -> Optional[str]:
        raw = self.get_secret(key, requester=requester)
        if raw is None:
            return None
        return parse_signing_secret(raw)

    def invalidate_cache(self, key: Optional[str] = None) -> None:
        self._cache.invalidate(key)


def _optional_str(data: Mapping[str, Any], name: str) -> str:
    value = data.get(name)
    if value is None:
        return ""
    if not isinstance(value, str):
        raise SecretFormatError(f"{name} must be a string")
    return value


def _str_list(data: Mapping[str, Any], name: str) -> tuple[str, ...]:
    value = data.get(name)
    if value is None:
        return ()
    if not isinstance(value, list):
        raise SecretFormatError(f"{name} must be a list of strings")
    items: list[str] = []
    for element in value:
        if element is None:
            continue
        if not isinstance(element, str):
            raise SecretFormatError(f"{name} must be a list of strings")
        if element.strip():
            items.append(element)
    return tuple(items)


@dataclass(frozen=True)
class TenantSecret:
    """
    Per-tenant configuration stored as JSON in the secret store.

    Every field is optional; presence is checked by the operation that needs
    it (the webhook needs adyen_hmac_key, the authorizer needs the allowlist
    and API keys). Types are checked here, at load time.
    """

    adyen_api_key: str = ""
    adyen_client_key: str = ""
    adyen_hmac_key: str = ""
    ip_allowlist: tuple[str, ...] = ()
    api_key: str = ""
    api_keys: tuple[str, ...] = field(default_factory=tuple)

    @classmethod
    def from_json(cls, raw: str) -> "TenantSecret":
        try:
            data = json.loads(raw)
        except (json.JSONDecodeError, TypeError) as exc:
            raise SecretFormatError("Tenant secret is not valid JSON") from exc
        if not isinstance(data, dict):
            raise SecretFormatError("Tenant secret must be a JSON object")
        return cls(
            adyen_api_key=_optional_str(data, "adyenAPIKey"),
            adyen_client_key=_optional_str(data, "adyenClientKey"),
            adyen_hmac_key=_optional_str(data, "adyenHmacKey"),
            ip_allowlist=_str_list(data, "ipAllowlist"),
            api_key=_optional_str(data, "apiKey"),
            api_keys=_str_list(data, "apiKeys"),
        )

    def accepts_api_key(self, candidate: str) -> bool:
        """True if candidate equals apiKey or any entry of apiKeys (exact, constant-time)."""
        if not candidate:
            return False
        presented = candidate.encode()
        matched = False
        for known in (self.api_key, *self.api_keys):
            if known and hmac.compare_digest(known.encode(), presented):
                matched = True
        return matched


def parse_signing_secret(raw: str) -> str:
    """
    A signing secret is stored either as a raw string or as JSON
    ``{"secret": "..."}``. JSON without a ``secret`` property is used verbatim.
    """
    try:
        data = json.loads(raw)
    except (json.JSONDecodeError, TypeError):
        return raw
    if isinstance(data, dict) and isinstance(data.get("secret"), str):
        return data["secret"]
    return raw


def tenant_secret_name(merchant_account: str, secret_name: Optional[str] = None) -> str:
    """Configured secret name, or the ``tenant-{merchantAccount}-config`` convention."""
    if secret_name and secret_name.strip():
        return secret_name.strip()
    return f"tenant-{merchant_account}-config"


def build_secrets_manager(settings: Any) -> SecretsManager:
    """Create the SecretsManager selected by settings.SECRETS_BACKEND."""
    if settings.SECRETS_BACKEND == "env":
        backend: SecretsBackend = EnvironmentBackend()
    else:
        backend = AWSSecretsManagerBackend(region_name=settings.AWS_REGION or None)
    return SecretsManager(backend=backend, cache=TTLCache(settings.SECRET_CACHE_TTL_SECONDS))
