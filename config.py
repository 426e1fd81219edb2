"""
Configuration management for the KeyPay gatekeeper (authorizer + webhook receiver).

Settings come from environment variables only so the same artifact can run as
a Lambda, in a container, or locally. Secret *values* (tenant keys, JWT
signing key, RDS credentials) live in the secret store; the environment only
carries secret names plus a global fallback HMAC key.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass

from adyen_hmac import KEY_ENCODINGS
from middleware.audit_logger import SanitizingFormatter

logger = logging.getLogger(__name__)

SECRETS_BACKENDS = ("aws", "env")


@dataclass(frozen=True)
class Settings:
    """Application settings loaded exclusively from environment variables."""

    # Used when a merchant has no tenant-specific adyenHmacKey.
    ADYEN_HMAC_KEY: str = ""
    HMAC_KEY_ENCODING: str = "hex"
    WEBHOOK_REQUIRE_VALID_HMAC: bool = True
    WEBHOOK_ENABLE_DB_WRITES: bool = False
    JWT_SECRET_NAME: str = "keypay/jwt"
    JWT_CLOCK_SKEW_SECONDS: int = 60
    DATABASE_URL: str = ""
    RDS_SECRET_NAME: str = ""
    SECRETS_BACKEND: str = "aws"
    AWS_REGION: str = ""
    SECRET_CACHE_TTL_SECONDS: int = 300
    LOG_LEVEL: str = "INFO"


def _env_bool(name: str, default: bool) -> bool:
    raw = os.environ.get(name, "").strip().lower()
    if raw == "true":
        return True
    if raw == "false":
        return False
    return default


def _env_int(name: str, default: int, problems: list[str]) -> int:
    raw = os.environ.get(name, "").strip()
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError:
        problems.append(f"{name} must be an integer")
        return default


def load_settings() -> Settings:
    """
    Load settings from environment variables ONLY.

    Fails fast on values that would leave verification in an undefined state
    (unknown key encoding, unknown secrets backend, non-numeric TTLs).
    Key material is never logged.
    """
    problems: list[str] = []
    settings = Settings(
        ADYEN_HMAC_KEY=os.environ.get("ADYEN_HMAC_KEY", ""),
        HMAC_KEY_ENCODING=os.environ.get("HMAC_KEY_ENCODING", "hex").strip().lower() or "hex",
        WEBHOOK_REQUIRE_VALID_HMAC=_env_bool("WEBHOOK_REQUIRE_VALID_HMAC", True),
        WEBHOOK_ENABLE_DB_WRITES=_env_bool("WEBHOOK_ENABLE_DB_WRITES", False),
        JWT_SECRET_NAME=os.environ.get("JWT_SECRET_NAME", "").strip() or "keypay/jwt",
        JWT_CLOCK_SKEW_SECONDS=_env_int("JWT_CLOCK_SKEW_SECONDS", 60, problems),
        DATABASE_URL=os.environ.get("DATABASE_URL", ""),
        RDS_SECRET_NAME=os.environ.get("RDS_SECRET_NAME", "").strip(),
        SECRETS_BACKEND=os.environ.get("SECRETS_BACKEND", "aws").strip().lower() or "aws",
        AWS_REGION=os.environ.get("AWS_REGION", "").strip(),
        SECRET_CACHE_TTL_SECONDS=_env_int("SECRET_CACHE_TTL_SECONDS", 300, problems),
        LOG_LEVEL=os.environ.get("LOG_LEVEL", "INFO").strip().upper() or "INFO",
    )

    if settings.HMAC_KEY_ENCODING not in KEY_ENCODINGS:
        problems.append(f"HMAC_KEY_ENCODING must be one of {', '.join(KEY_ENCODINGS)}")
    if settings.SECRETS_BACKEND not in SECRETS_BACKENDS:
        problems.append(f"SECRETS_BACKEND must be one of {', '.join(SECRETS_BACKENDS)}")
    if settings.SECRET_CACHE_TTL_SECONDS < 0:
        problems.append("SECRET_CACHE_TTL_SECONDS must not be negative")

    if problems:
        msg = "Invalid configuration: " + "; ".join(problems)
        logger.critical(msg)
        raise SystemExit(msg)

    logger.info(
        "Settings loaded. secrets_backend=%s hmac_encoding=%s require_valid_hmac=%s "
        "db_writes=%s global_hmac_key=%s",
        settings.SECRETS_BACKEND,
        settings.HMAC_KEY_ENCODING,
        settings.WEBHOOK_REQUIRE_VALID_HMAC,
        settings.WEBHOOK_ENABLE_DB_WRITES,
        "[SET]" if settings.ADYEN_HMAC_KEY else "[UNSET]",
    )
    return settings


def configure_logging(level: str = "INFO") -> None:
    """Install a root handler whose formatter masks credentials in every record."""
    root = logging.getLogger()
    handler = logging.StreamHandler()
    handler.setFormatter(SanitizingFormatter("%(asctime)s %(levelname)s %(name)s %(message)s"))
    root.handlers = [handler]
    root.setLevel(level)
