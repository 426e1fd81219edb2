"""
Adyen standard-webhook payload model.

Adyen posts ``{"live": "...", "notificationItems": [{"NotificationRequestItem": {...}}]}``.
Property names are matched case-insensitively and unknown properties are
ignored, so a schema addition on Adyen's side never breaks ingestion.
"""

from __future__ import annotations

import json
from dataclasses import dataclass
from typing import Any, Mapping, Optional, Union


def _lookup(data: Mapping[str, Any], name: str) -> Any:
    if name in data:
        return data[name]
    lowered = name.lower()
    for key, value in data.items():
        if isinstance(key, str) and key.lower() == lowered:
            return value
    return None


def _text(value: Any) -> Optional[str]:
    if value is None:
        return None
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


@dataclass(frozen=True)
class NotificationAmount:
    value: Optional[int] = None
    currency: Optional[str] = None


@dataclass(frozen=True)
class NotificationItem:
    """One ``NotificationRequestItem``; all fields optional as delivered."""
    event_code: Optional[str] = None
    success: Optional[str] = None
    merchant_account_code: Optional[str] = None
    merchant_reference: Optional[str] = None
    psp_reference: Optional[str] = None
    original_reference: Optional[str] = None
    amount: Optional[NotificationAmount] = None
    hmac_signature: Optional[str] = None
    raw: Optional[Mapping[str, Any]] = None

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "NotificationItem":
        amount_data = _lookup(data, "amount")
        amount = None
        if isinstance(amount_data, Mapping):
            raw_value = _lookup(amount_data, "value")
            value: Optional[int]
            if raw_value is None or isinstance(raw_value, bool):
                value = None
            else:
                try:
                    value = int(raw_value)
                except (TypeError, ValueError):
                    raise ValueError("amount.value must be an integer") from None
            amount = NotificationAmount(value=value, currency=_text(_lookup(amount_data, "currency")))

        additional = _lookup(data, "additionalData")
        signature = None
        if isinstance(additional, Mapping):
            signature = _text(_lookup(additional, "hmacSignature"))

        # Older payloads and some SDK models use merchantAccount.
        merchant = _text(_lookup(data, "merchantAccountCode")) or _text(_lookup(data, "merchantAccount"))

        return cls(
            event_code=_text(_lookup(data, "eventCode")),
            success=_text(_lookup(data, "success")),
            merchant_account_code=merchant,
            merchant_reference=_text(_lookup(data, "merchantReference")),
            psp_reference=_text(_lookup(data, "pspReference")),
            original_reference=_text(_lookup(data, "originalReference")),
            amount=amount,
            hmac_signature=signature,
            raw=data,
        )


@dataclass(frozen=True)
class NotificationRequest:
    """Parsed body. ``items`` keeps a None placeholder for malformed containers."""
    items: tuple[Optional[NotificationItem], ...]
    payload: Mapping[str, Any]


def parse_notification_request(body: Union[bytes, str, None]) -> NotificationRequest:
    """Parse a webhook body; raises ValueError on malformed JSON or shape."""
    if body is None or (isinstance(body, (bytes, str)) and not body.strip()):
        body = "{}"
    try:
        data = json.loads(body)
    except (json.JSONDecodeError, UnicodeDecodeError) as exc:
        raise ValueError("Malformed JSON payload") from exc
    if not isinstance(data, dict):
        raise ValueError("Notification payload must be a JSON object")

    containers = _lookup(data, "notificationItems") or []
    if not isinstance(containers, list):
        raise ValueError("notificationItems must be a list")

    items: list[Optional[NotificationItem]] = []
    for container in containers:
        inner = _lookup(container, "NotificationRequestItem") if isinstance(container, Mapping) else None
        if not isinstance(inner, Mapping):
            items.append(None)
            continue
        try:
            items.append(NotificationItem.from_dict(inner))
        except ValueError:
            items.append(None)
    return NotificationRequest(items=tuple(items), payload=data)
