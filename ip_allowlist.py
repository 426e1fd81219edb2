"""
Source-IP allowlisting for tenant-scoped routes.

Entries are either literal addresses (``203.0.113.7``) or CIDR blocks
(``203.0.113.0/24``, ``2001:db8::/32``). A bad entry only disables itself;
the rest of the list is still evaluated. No source IP means no access.
"""

from __future__ import annotations

import ipaddress
import logging
from typing import Iterable, Optional

logger = logging.getLogger(__name__)


def _packed(address: str) -> bytes:
    return ipaddress.ip_address(address.strip()).packed


def ip_in_cidr(ip: str, cidr: str) -> bool:
    """Byte-wise prefix match of ``ip`` against ``base/prefix``."""
    try:
        base, _, prefix_text = cidr.strip().partition("/")
        prefix = int(prefix_text)
        ip_bytes = _packed(ip)
        base_bytes = _packed(base)
    except ValueError:
        logger.debug("ALLOWLIST_ENTRY_SKIPPED entry=%s reason=unparseable", cidr)
        return False

    if len(ip_bytes) != len(base_bytes):
        return False
    if prefix < 0 or prefix > len(ip_bytes) * 8:
        return False

    full_bytes, remaining_bits = divmod(prefix, 8)
    if ip_bytes[:full_bytes] != base_bytes[:full_bytes]:
        return False
    if remaining_bits:
        mask = (0xFF << (8 - remaining_bits)) & 0xFF
        if (ip_bytes[full_bytes] & mask) != (base_bytes[full_bytes] & mask):
            return False
    return True


def is_ip_allowed(source_ip: Optional[str], allowlist: Iterable[str]) -> bool:
    if not source_ip or not source_ip.strip():
        return False
    candidate = source_ip.strip()
    for entry in allowlist:
        if not entry or not entry.strip():
            continue
        if "/" in entry:
            if ip_in_cidr(candidate, entry):
                return True
        elif entry.strip().lower() == candidate.lower():
            return True
    return False
