"""Tenant configuration resolution: tenant row -> secret name -> TenantSecret."""

from __future__ import annotations

import logging
from typing import Optional

from db import TenantRecord, TenantRepository
from secrets_manager import SecretFormatError, SecretsManager, SecretStoreError, TenantSecret, TTLCache

logger = logging.getLogger(__name__)


class TenantConfigResolver:
    """
    Looks tenants up in the database and loads their configuration secret.

    ``hmac_keys`` caches resolved webhook HMAC keys per merchant account
    (case-insensitive). Only successful resolutions are cached, so a tenant
    whose secret is fixed is picked up on the next delivery.
    """

    def __init__(self, tenants: Optional[TenantRepository], secrets: SecretsManager,
                 hmac_keys: Optional[TTLCache[str]] = None) -> None:
        self._tenants = tenants
        self._secrets = secrets
        self._hmac_keys: TTLCache[str] = hmac_keys if hmac_keys is not None else TTLCache(300)

    def tenant_by_merchant(self, merchant_account: str) -> Optional[TenantRecord]:
        if self._tenants is None or not merchant_account:
            return None
        return self._tenants.get_tenant_by_merchant(merchant_account)

    def tenant_by_id(self, tenant_id) -> Optional[TenantRecord]:
        if self._tenants is None:
            return None
        return self._tenants.get_tenant_by_id(tenant_id)

    def secret_for(self, tenant: TenantRecord, requester: str = "system") -> Optional[TenantSecret]:
        return self._secrets.get_tenant_secret(tenant.config_secret_name, requester=requester)

    def hmac_key_for_merchant(self, merchant_account: str) -> Optional[str]:
        """
        Tenant-specific adyenHmacKey for ``merchant_account``, or None when the
        tenant, its secret, or the key is unavailable. Never raises for store
        or format errors; the caller decides on the fallback key.
        """
        if not merchant_account or self._tenants is None:
            return None
        cache_key = merchant_account.lower()
        cached = self._hmac_keys.get(cache_key)
        if cached is not None:
            logger.debug("HMAC_KEY_CACHE_HIT merchant=%s", merchant_account)
            return cached

        tenant = self._tenants.get_tenant_by_merchant(merchant_account)
        if tenant is None:
            logger.info("HMAC_KEY_UNRESOLVED merchant=%s reason=tenant_not_found", merchant_account)
            return None

        secret_name = tenant.config_secret_name
        try:
            secret = self._secrets.get_tenant_secret(secret_name, requester="webhook_hmac")
        except (SecretStoreError, SecretFormatError) as exc:
            logger.warning("HMAC_KEY_UNRESOLVED merchant=%s secret=%s reason=%s",
                           merchant_account, secret_name, type(exc).__name__)
            return None

        if secret is None or not secret.adyen_hmac_key.strip():
            logger.info("HMAC_KEY_UNRESOLVED merchant=%s secret=%s reason=no_hmac_key",
                        merchant_account, secret_name)
            return None

        self._hmac_keys.set(cache_key, secret.adyen_hmac_key)
        return secret.adyen_hmac_key
