"""Bearer-token validation for tenant sessions (HS256 JWTs signed with the shared secret)."""

from __future__ import annotations

import datetime
import logging
from dataclasses import dataclass, field
from typing import Any, Optional

import jwt

logger = logging.getLogger(__name__)

ALGORITHMS = ["HS256"]


class TokenValidationError(Exception):
    """Signature, format or claim problem with a bearer token."""


class TokenExpiredError(TokenValidationError):
    pass


@dataclass(frozen=True)
class TokenClaims:
    subject: Optional[str]
    tenant_id: Optional[str]
    merchant_account: Optional[str]
    claims: dict[str, Any] = field(default_factory=dict)


def validate_token(token: str, secret: str, leeway_seconds: int = 60) -> TokenClaims:
    """
    Verify signature and lifetime of ``token``.

    ``exp`` is mandatory; ``nbf``/``iat`` are honoured when present. Issuer and
    audience are not checked because tokens are only minted by this platform.
    Missing tenant/merchant claims are not an error here; callers decide.
    """
    if not token:
        raise TokenValidationError("empty token")
    if not secret:
        raise TokenValidationError("signing secret unavailable")
    try:
        claims = jwt.decode(
            token,
            secret,
            algorithms=ALGORITHMS,
            leeway=datetime.timedelta(seconds=leeway_seconds),
            options={"require": ["exp"], "verify_aud": False},
        )
    except jwt.ExpiredSignatureError as exc:
        raise TokenExpiredError("token expired") from exc
    except jwt.InvalidTokenError as exc:
        raise TokenValidationError(f"invalid token: {type(exc).__name__}") from exc

    return TokenClaims(
        subject=_claim(claims, "sub"),
        tenant_id=_claim(claims, "tenantId"),
        merchant_account=_claim(claims, "merchantAccount"),
        claims=claims,
    )


def _claim(claims: dict[str, Any], name: str) -> Optional[str]:
    value = claims.get(name)
    if value is None:
        return None
    return str(value)
