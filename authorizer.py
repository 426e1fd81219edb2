"""
API Gateway custom (REQUEST) authorizer.

Every invocation ends in exactly one of two policies, Allow or Deny, for
``execute-api:Invoke`` on the called method ARN. Checks run in order and stop
at the first failure:

1. Bypass: CORS preflight, webhooks, token exchange, root and health.
2. ``/paymentmethods``: ``x-api-key`` + merchant account, key must be listed
   in the tenant secret, source IP must be on the tenant allowlist.
3. Everything else: bearer JWT, tenant re-resolved from the database by
   ``tenantId`` claim, IP allowlist, and the ``merchantAccount`` claim must
   match the stored tenant.

Each failed check raises ``AccessDenied`` with a reason. ``Authorizer.authorize``
is the only place those (and any unexpected error) become a Deny decision,
so tests can assert on the reason while production stays fail-closed.
"""

from __future__ import annotations

import enum
import logging
import uuid
from dataclasses import dataclass, field
from typing import Any, Mapping, Optional

from config import Settings, configure_logging, load_settings
from db import TenantRecord, TenantRepository, build_database
from ip_allowlist import is_ip_allowed
from secrets_manager import (
    SecretFormatError,
    SecretsManager,
    SecretStoreError,
    TenantSecret,
    build_secrets_manager,
)
from tenants import TenantConfigResolver
from tokens import TokenValidationError, validate_token

logger = logging.getLogger(__name__)

ANONYMOUS = "anonymous"


class Effect(str, enum.Enum):
    ALLOW = "Allow"
    DENY = "Deny"


class AccessDenied(Exception):
    """A check failed; ``reason`` is a short machine-readable code."""

    def __init__(self, reason: str, principal_id: str = ANONYMOUS) -> None:
        super().__init__(reason)
        self.reason = reason
        self.principal_id = principal_id


@dataclass(frozen=True)
class Decision:
    effect: Effect
    principal_id: str = ANONYMOUS
    reason: str = ""
    tenant_id: Optional[str] = None
    merchant_account: Optional[str] = None

    @property
    def allowed(self) -> bool:
        return self.effect is Effect.ALLOW

    def to_policy(self, resource: str) -> dict[str, Any]:
        policy: dict[str, Any] = {
            "principalId": self.principal_id,
            "policyDocument": {
                "Version": "2012-10-17",
                "Statement": [
                    {
                        "Action": "execute-api:Invoke",
                        "Effect": self.effect.value,
                        "Resource": resource or "*",
                    }
                ],
            },
        }
        if self.allowed and self.tenant_id:
            policy["context"] = {
                "tenantId": self.tenant_id,
                "merchantAccount": self.merchant_account or "",
            }
        return policy


def parse_method_arn(method_arn: Optional[str]) -> tuple[Optional[str], Optional[str]]:
    """
    Split ``arn:aws:execute-api:{region}:{account}:{apiId}/{stage}/{method}/{path}``
    into (method, path). Path defaults to ``/`` when the ARN has no path part.
    """
    if not method_arn:
        return None, None
    parts = method_arn.split(":")
    if len(parts) < 6:
        return None, None
    resource_parts = parts[5].split("/")
    method = resource_parts[2] if len(resource_parts) >= 3 else None
    if len(resource_parts) < 4:
        return method, "/"
    return method, "/" + "/".join(resource_parts[3:])


@dataclass(frozen=True)
class AuthorizerRequest:
    method_arn: str
    method: str
    path: str
    source_ip: str
    headers: Mapping[str, str] = field(default_factory=dict)
    query: Mapping[str, str] = field(default_factory=dict)

    def header(self, name: str) -> Optional[str]:
        return self.headers.get(name.lower())

    @classmethod
    def from_event(cls, event: Mapping[str, Any]) -> "AuthorizerRequest":
        headers = {str(k).lower(): str(v) for k, v in (event.get("headers") or {}).items() if v is not None}
        query = {str(k).lower(): str(v) for k, v in (event.get("queryStringParameters") or {}).items()
                 if v is not None}
        method_arn = event.get("methodArn") or ""
        method, path = parse_method_arn(method_arn)

        identity = (event.get("requestContext") or {}).get("identity") or {}
        source_ip = (identity.get("sourceIp") or "").strip()
        if not source_ip and headers.get("x-forwarded-for"):
            source_ip = headers["x-forwarded-for"].split(",")[0].strip()

        return cls(
            method_arn=method_arn,
            method=method or "",
            path=path or "/",
            source_ip=source_ip,
            headers=headers,
            query=query,
        )


class Authorizer:
    """Decision combinator over tenant storage, the secret store and the JWT secret."""

    def __init__(self, resolver: TenantConfigResolver, secrets: SecretsManager,
                 jwt_secret_name: str = "keypay/jwt", clock_skew_seconds: int = 60) -> None:
        self._resolver = resolver
        self._secrets = secrets
        self._jwt_secret_name = jwt_secret_name
        self._clock_skew = clock_skew_seconds

    def authorize(self, request: AuthorizerRequest) -> Decision:
        """Fail-closed boundary: never raises, always returns a decision."""
        logger.info("AUTHORIZER_REQUEST method=%s path=%s ip=%s", request.method, request.path,
                    request.source_ip)
        try:
            decision = self.evaluate(request)
        except AccessDenied as denied:
            logger.warning("AUTHORIZER_DENY reason=%s method=%s path=%s ip=%s", denied.reason,
                           request.method, request.path, request.source_ip)
            return Decision(Effect.DENY, principal_id=denied.principal_id, reason=denied.reason)
        except Exception:
            logger.exception("AUTHORIZER_ERROR method=%s path=%s", request.method, request.path)
            return Decision(Effect.DENY, reason="internal_error")
        logger.info("AUTHORIZER_ALLOW reason=%s tenant=%s merchant=%s", decision.reason,
                    decision.tenant_id, decision.merchant_account)
        return decision

    def evaluate(self, request: AuthorizerRequest) -> Decision:
        if is_bypassed(request.method, request.path):
            return Decision(Effect.ALLOW, reason="bypass")
        if request.path.lower().endswith("/paymentmethods"):
            return self._authorize_api_key(request)
        return self._authorize_bearer(request)

    def _authorize_api_key(self, request: AuthorizerRequest) -> Decision:
        api_key = (request.header("x-api-key") or "").strip()
        if not api_key:
            raise AccessDenied("missing_api_key")

        merchant = (request.header("x-merchant-account") or "").strip() \
            or (request.query.get("merchantaccount") or "").strip()
        if not merchant:
            raise AccessDenied("missing_merchant_account")

        tenant = self._resolver.tenant_by_merchant(merchant)
        if tenant is None:
            raise AccessDenied("tenant_not_found")

        secret = self._load_tenant_secret(tenant)
        if not secret.accepts_api_key(api_key):
            raise AccessDenied("api_key_not_recognised")
        if not is_ip_allowed(request.source_ip, secret.ip_allowlist):
            raise AccessDenied("ip_not_allowed")

        return Decision(Effect.ALLOW, principal_id=tenant.merchant_account, reason="api_key",
                        tenant_id=str(tenant.tenant_id), merchant_account=tenant.merchant_account)

    def _authorize_bearer(self, request: AuthorizerRequest) -> Decision:
        auth = request.header("authorization") or ""
        if auth[:7].lower() != "bearer ":
            raise AccessDenied("missing_bearer_token")
        token = auth[7:].strip()

        try:
            signing_secret = self._secrets.get_jwt_signing_secret(self._jwt_secret_name,
                                                                  requester="authorizer")
        except SecretStoreError as exc:
            raise AccessDenied("jwt_secret_unavailable") from exc
        if not signing_secret:
            raise AccessDenied("jwt_secret_unavailable")

        try:
            claims = validate_token(token, signing_secret, leeway_seconds=self._clock_skew)
        except TokenValidationError as exc:
            raise AccessDenied("invalid_token") from exc
        principal_id = claims.subject or "tenant"

        if not claims.tenant_id or not claims.merchant_account:
            raise AccessDenied("missing_claims", principal_id)
        try:
            tenant_id = uuid.UUID(claims.tenant_id)
        except ValueError as exc:
            raise AccessDenied("malformed_tenant_id", principal_id) from exc

        tenant = self._resolver.tenant_by_id(tenant_id)
        if tenant is None:
            raise AccessDenied("tenant_not_found", principal_id)

        secret = self._load_tenant_secret(tenant, principal_id)
        if not is_ip_allowed(request.source_ip, secret.ip_allowlist):
            raise AccessDenied("ip_not_allowed", principal_id)

        if claims.merchant_account.lower() != tenant.merchant_account.lower():
            raise AccessDenied("merchant_mismatch", principal_id)

        return Decision(Effect.ALLOW, principal_id=principal_id, reason="bearer",
                        tenant_id=str(tenant.tenant_id), merchant_account=tenant.merchant_account)

    def _load_tenant_secret(self, tenant: TenantRecord, principal_id: str = ANONYMOUS) -> TenantSecret:
        try:
            secret = self._resolver.secret_for(tenant, requester="authorizer")
        except (SecretStoreError, SecretFormatError) as exc:
            raise AccessDenied("tenant_secret_unavailable", principal_id) from exc
        if secret is None:
            raise AccessDenied("tenant_secret_unavailable", principal_id)
        return secret


def is_bypassed(method: str, path: str) -> bool:
    method = (method or "").upper()
    lowered = (path or "").lower()
    if method == "OPTIONS":
        return True
    if "/webhook" in lowered:
        return True
    if method == "POST" and lowered.endswith("/token/exchange"):
        return True
    return lowered in ("/", "/health")


def build_authorizer(settings: Settings, tenants: Optional[TenantRepository] = None,
                     secrets: Optional[SecretsManager] = None) -> Authorizer:
    secrets = secrets or build_secrets_manager(settings)
    if tenants is None:
        tenants = build_database(settings, secrets)
    resolver = TenantConfigResolver(tenants, secrets)
    return Authorizer(resolver, secrets, jwt_secret_name=settings.JWT_SECRET_NAME,
                      clock_skew_seconds=settings.JWT_CLOCK_SKEW_SECONDS)


# Reused across warm invocations of the same Lambda container.
_authorizer: Optional[Authorizer] = None


def _get_authorizer() -> Authorizer:
    global _authorizer
    if _authorizer is None:
        settings = load_settings()
        configure_logging(settings.LOG_LEVEL)
        _authorizer = build_authorizer(settings)
    return _authorizer


def lambda_handler(event: Mapping[str, Any], context: Any) -> dict[str, Any]:
    method_arn = (event or {}).get("methodArn") or "*"
    try:
        request = AuthorizerRequest.from_event(event or {})
        decision = _get_authorizer().authorize(request)
    except Exception:
        logger.exception("AUTHORIZER_BOOTSTRAP_ERROR")
        decision = Decision(Effect.DENY, reason="internal_error")
    return decision.to_policy(method_arn)
