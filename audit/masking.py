"""
audit/masking.py -- PII masking applied before any audit entry is built.

Masking rules:
  email       johndoe@example.com  -> jo***@example.com
  IPv4        203.0.113.57         -> 203.0.113.0
  IPv6        2001:db8:1:2:3:4:5:6 -> 2001:db8:1:2:: (the /64 network)
  signup code AB12CD34             -> AB******
  phone       010-1234-5678        -> *********5678
  name        Jane Doe             -> J***
  secrets     password / token / authorization values -> [redacted]

mask_details() walks a details mapping recursively. Values under a known PII
key go through the matching rule; every other string is scrubbed for inline
email addresses. If a rule cannot handle a value (wrong type, unparseable
address) the whole field becomes "[redacted]" -- masking never raises and
never falls back to the raw value.

Layer rule: no imports from api/, auth/, registry/, or selftest/.
"""

from __future__ import annotations

import ipaddress
import logging
import re
from collections.abc import Mapping
from typing import Any

logger = logging.getLogger("codeguard.audit")

REDACTED = "[redacted]"

_EMAIL_RE = re.compile(r"([A-Za-z0-9._%+-]+)@([A-Za-z0-9.-]+\.[A-Za-z]{2,})")
_MAX_DEPTH = 6

_SECRET_KEYS = {"password", "token", "access_token", "refresh_token", "authorization", "secret", "api_key"}
_IP_KEYS = {"ip", "ip_address", "client_ip", "remote_addr"}
_CODE_KEYS = {"code", "signup_code"}
_PHONE_KEYS = {"phone", "phone_number"}
_NAME_KEYS = {"name", "customer_name", "full_name", "redeemer_name"}


def mask_email(value: str) -> str:
    """Keep the first two characters of the local part and the whole domain."""
    local, sep, domain = value.strip().rpartition("@")
    if not sep or not local or "." not in domain:
        raise ValueError("not an email address")
    return f"{local[:2]}***@{domain}"


def mask_ip(value: str) -> str:
    """Zero the host part: last octet for IPv4, everything past /64 for IPv6."""
    addr = ipaddress.ip_address(value.strip())
    if addr.version == 4:
        return str(ipaddress.ip_network(f"{addr}/24", strict=False).network_address)
    return str(ipaddress.ip_network(f"{addr}/64", strict=False).network_address)


def mask_code(value: str) -> str:
    if not value:
        raise ValueError("empty code")
    return value[:2] + "*" * max(len(value) - 2, 0)


def mask_phone(value: str) -> str:
    digits = value.strip()
    if len(digits) <= 4:
        return "*" * len(digits)
    return "*" * (len(digits) - 4) + digits[-4:]


def mask_name(value: str) -> str:
    value = value.strip()
    if not value:
        raise ValueError("empty name")
    return f"{value[0]}***"


def scrub_text(value: str) -> str:
    """Mask every email address embedded in free text."""
    return _EMAIL_RE.sub(lambda m: f"{m.group(1)[:2]}***@{m.group(2)}", value)


def safe_mask_ip(value: Any) -> str:
    """mask_ip() that redacts instead of raising (e.g. "unknown", "testclient")."""
    try:
        return mask_ip(value)
    except (ValueError, TypeError, AttributeError):
        return REDACTED


def _mask_known(key: str, value: Any) -> Any:
    """Apply the rule for a known PII key. Returns the sentinel None if key is not PII."""
    if key in _SECRET_KEYS:
        return REDACTED
    if "email" in key:
        return mask_email(value)
    if key in _IP_KEYS:
        return mask_ip(value)
    if key in _CODE_KEYS:
        return mask_code(value)
    if key in _PHONE_KEYS:
        return mask_phone(value)
    if key in _NAME_KEYS:
        return mask_name(value)
    return None


def _is_pii_key(key: str) -> bool:
    return (
        key in _SECRET_KEYS
        or "email" in key
        or key in _IP_KEYS
        or key in _CODE_KEYS
        or key in _PHONE_KEYS
        or key in _NAME_KEYS
    )


def _mask_value(value: Any, depth: int) -> Any:
    if depth > _MAX_DEPTH:
        return REDACTED
    if value is None or isinstance(value, (bool, int, float)):
        return value
    if isinstance(value, str):
        return scrub_text(value)
    if isinstance(value, Mapping):
        return _mask_mapping(value, depth + 1)
    if isinstance(value, (list, tuple)):
        return [_mask_value(v, depth + 1) for v in value]
    # Unknown object: its repr might carry anything.
    return REDACTED


def _mask_mapping(details: Mapping, depth: int) -> dict[str, Any]:
    masked: dict[str, Any] = {}
    for raw_key, value in details.items():
        key = str(raw_key)
        norm = key.lower()
        if _is_pii_key(norm) and value is not None:
            try:
                masked[key] = _mask_known(norm, value)
            except (ValueError, TypeError, AttributeError):
                masked[key] = REDACTED
        else:
            masked[key] = _mask_value(value, depth)
    return masked


def mask_details(details: Mapping | None) -> dict[str, Any]:
    """Return a masked deep copy of details. Never raises."""
    if not details:
        return {}
    try:
        return _mask_mapping(details, 0)
    except Exception:
        # e.g. a mapping whose __iter__ raises; drop the whole payload.
        logger.warning("Audit details could not be masked; payload redacted")
        return {"details": REDACTED}
