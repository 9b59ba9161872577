"""Small helpers: timestamps, base64url, field accessors and best-effort calls."""

from __future__ import annotations

import base64
import logging
from collections.abc import Callable, Mapping
from datetime import datetime, timezone
from typing import Any, TypeVar

logger = logging.getLogger("fedlicense.utils")

T = TypeVar("T")

# Precedence lists for values that providers (and older records) spell differently.
# The first path holding a non-empty value wins.
CUSTOMER_ID_FIELDS = (
    "customer_id",
    "ls_customer_id",
    "customerId",
    "customer.id",
)
EMAIL_FIELDS = ("user_email", "email", "customer_email")
NAME_FIELDS = ("user_name", "customer_name", "name")


def utc_now() -> datetime:
    """Current UTC time truncated to whole seconds."""
    return datetime.now(timezone.utc).replace(microsecond=0)


def isoformat_utc(dt: datetime | None = None) -> str:
    """ISO-8601 UTC without fractional seconds: '2025-11-23T14:18:29Z'."""
    dt = utc_now() if dt is None else dt.astimezone(timezone.utc).replace(microsecond=0)
    return dt.strftime("%Y-%m-%dT%H:%M:%SZ")


def b64url_encode(data: bytes) -> str:
    """Base64url without '=' padding."""
    return base64.urlsafe_b64encode(data).decode("ascii").rstrip("=")


def b64url_decode(text: str) -> bytes:
    """Inverse of b64url_encode; tolerates missing padding and whitespace."""
    s = "".join(text.split())
    pad = "=" * (-len(s) % 4)
    return base64.urlsafe_b64decode(s + pad)


def fold(text: str, width: int) -> str:
    """Break text into lines of at most `width` characters."""
    return "\n".join(text[i : i + width] for i in range(0, len(text), width))


def mask_email(email: str | None) -> str:
    """Mask email for logs: 'john@example.com' -> 'j***@example.com'."""
    if not email or "@" not in email:
        return ""
    local, domain = email.rsplit("@", 1)
    masked = local[0] + "***" if len(local) > 1 else "***"
    return f"{masked}@{domain}"


def _lookup(data: Mapping[str, Any], path: str) -> Any:
    current: Any = data
    for part in path.split("."):
        if not isinstance(current, Mapping):
            return None
        current = current.get(part)
    return current


def first_present(data: Mapping[str, Any] | None, fields: tuple[str, ...]) -> Any:
    """Return the value of the first dotted path in `fields` that is set.

    None, empty strings and empty containers count as unset. Returns None
    when no path matches.
    """
    if not data:
        return None
    for path in fields:
        value = _lookup(data, path)
        if value is None or value == "" or value == {} or value == []:
            continue
        return value
    return None


def first_str(data: Mapping[str, Any] | None, fields: tuple[str, ...]) -> str | None:
    """Like first_present, coerced to a stripped string."""
    value = first_present(data, fields)
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def best_effort(
    label: str,
    func: Callable[..., T],
    *args: Any,
    default: T | None = None,
    **kwargs: Any,
) -> T | None:
    """Run a non-critical side task; log and swallow any failure.

    Used for the event log, identity sync and outbound email, none of which
    may break the request that triggered them.
    """
    try:
        return func(*args, **kwargs)
    except Exception:
        logger.warning("Non-critical task failed (continuing): %s", label, exc_info=True)
        return default
