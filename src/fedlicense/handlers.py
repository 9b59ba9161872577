"""Framework-free request handlers for the webhook, account and admin endpoints.

Each handler takes already-read request parts and returns a Response, so the
same logic serves the Vercel functions, the local dev server and the tests.
"""

from __future__ import annotations

import hmac
import json
import logging
from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any

from fedlicense.auth import get_bearer_token
from fedlicense.config import ADMIN_HEADER, SIGNATURE_HEADERS, Settings
from fedlicense.errors import (
    ConfigurationError,
    InvalidSignature,
    SigningFailed,
    StoreError,
    Unauthenticated,
)
from fedlicense.lifecycle import event_name_of, order_id_of
from fedlicense.runtime import Runtime
from fedlicense.schema import LicenseRecord, WebhookEvent
from fedlicense.utils import best_effort, isoformat_utc, mask_email
from fedlicense.webhook import require_signature

logger = logging.getLogger("fedlicense.handlers")


@dataclass
class Response:
    status: int
    body: Any
    headers: dict[str, str] = field(default_factory=dict)


def _header(headers: Mapping[str, str], name: str) -> str:
    """Header lookup that works for plain dicts and case-insensitive mappings."""
    value = headers.get(name)
    if value is None:
        value = headers.get(name.lower())
    return (value or "").strip()


# ---------------------------------------------------------------------------
# Webhook
# ---------------------------------------------------------------------------


def handle_webhook(raw_body: bytes, headers: Mapping[str, str], runtime: Runtime) -> Response:
    """Authenticate, log and apply one Lemon Squeezy webhook delivery."""
    secret = runtime.settings.webhook_secret
    if secret is None:
        logger.error("LEMONSQUEEZY_WEBHOOK_SECRET is not set")
        return Response(500, {"error": "Server misconfigured"})

    signature = next((v for h in SIGNATURE_HEADERS if (v := _header(headers, h))), "")
    try:
        require_signature(raw_body, signature, secret.get_secret_value())
    except InvalidSignature:
        return Response(400, {"error": "Invalid signature"})

    try:
        payload = json.loads(raw_body)
    except (json.JSONDecodeError, UnicodeDecodeError):
        logger.warning("Webhook body is not valid JSON (%d bytes)", len(raw_body))
        return Response(400, {"error": "Invalid JSON"})
    if not isinstance(payload, dict):
        return Response(400, {"error": "Invalid JSON"})
    for section in ("meta", "data"):
        if payload.get(section) is not None and not isinstance(payload[section], dict):
            logger.warning("Webhook %r is %s, not an object", section, type(payload[section]))
            return Response(400, {"error": "Invalid payload"})

    meta = payload.get("meta") or {}
    if not meta.get("event_name") and _header(headers, "X-Event-Name"):
        payload = {**payload, "meta": {**meta, "event_name": _header(headers, "X-Event-Name")}}

    event_name = event_name_of(payload)
    logger.info("Lemon Squeezy webhook received: %s", event_name)

    event = WebhookEvent(
        received_at=isoformat_utc(),
        event_name=event_name,
        order_id=order_id_of(payload),
        payload=payload,
    )
    event_key = best_effort("append webhook event", runtime.events.append, event)

    try:
        outcome = runtime.lifecycle.process(payload, event_key)
    except StoreError:
        logger.exception("Failed to persist license change; forcing provider retry")
        return Response(500, {"error": "Failed to persist license record"})
    except (ConfigurationError, SigningFailed):
        logger.exception("License issuance failed on server configuration")
        return Response(500, {"error": "Server misconfigured"})

    return Response(outcome.status, {"ok": True, "message": outcome.message})


# ---------------------------------------------------------------------------
# Account lookup
# ---------------------------------------------------------------------------


def purchase_view(record: LicenseRecord, settings: Settings) -> dict[str, Any]:
    """Customer-facing shape of a license record."""
    active = record.status == "active"
    return {
        "id": record.key,
        "orderNumber": record.order_number or "",
        "purchasedAt": record.purchased_at,
        "productId": record.product_code,
        "productName": settings.product_names.get(record.product_code, record.product_code),
        "licenseKey": record.license_string if active else "",
        "licenseStatus": record.status,
        "downloadUrl": settings.download_urls.get(record.product_code, "#") if active else "",
        "receiptUrl": record.receipt_url or "#",
    }


def handle_account(headers: Mapping[str, str], runtime: Runtime) -> Response:
    token = get_bearer_token(headers)
    if not token:
        return Response(401, {"error": "Not authenticated"})
    try:
        records = runtime.identity.resolve_purchases(token)
    except Unauthenticated:
        return Response(401, {"error": "Not authenticated"})
    except ConfigurationError:
        logger.exception("Account lookup cannot verify tokens")
        return Response(500, {"error": "Server misconfigured"})

    return Response(200, {"purchases": [purchase_view(r, runtime.settings) for r in records]})


# ---------------------------------------------------------------------------
# Admin lookup
# ---------------------------------------------------------------------------


def _parse_filters(query: Mapping[str, str], raw_body: bytes) -> dict[str, str | None]:
    body: dict[str, Any] = {}
    if raw_body:
        try:
            parsed = json.loads(raw_body)
        except (json.JSONDecodeError, UnicodeDecodeError):
            parsed = {}
        if isinstance(parsed, dict):
            body = parsed

    def pick(name: str) -> str | None:
        value = body.get(name) or query.get(name)
        return str(value).strip() if value not in (None, "") else None

    return {
        "email": pick("email"),
        "order_number": pick("orderNumber"),
        "product_id": pick("productId"),
    }


def admin_matches(
    record: LicenseRecord,
    *,
    email: str | None,
    order_number: str | None,
    product_id: str | None,
) -> bool:
    if email and record.user_email.strip().lower() != email.lower():
        return False
    if order_number and str(record.order_number or "") != order_number:
        return False
    if product_id and product_id not in (record.product_code, record.external_product_id):
        return False
    return True


def handle_admin(
    headers: Mapping[str, str],
    query: Mapping[str, str],
    raw_body: bytes,
    runtime: Runtime,
) -> Response:
    """Privileged search over raw license records, behind ADMIN_API_KEY."""
    admin_key = runtime.settings.admin_key
    if admin_key is None:
        logger.error("ADMIN_API_KEY env var not set")
        return Response(500, {"error": "Server misconfigured"})

    supplied = _header(headers, ADMIN_HEADER) or (query.get("key") or "")
    if not hmac.compare_digest(supplied.encode(), admin_key.get_secret_value().encode()):
        logger.warning("Admin lookup rejected: bad key")
        return Response(403, {"error": "Forbidden"})

    filters = _parse_filters(query, raw_body)
    if not filters["email"] and not filters["order_number"]:
        return Response(400, {"error": "Provide at least email or orderNumber"})

    matches = [
        {"key": key, **record.model_dump(mode="json")}
        for key, record in runtime.licenses.scan()
        if admin_matches(record, **filters)
    ]
    logger.info(
        "Admin lookup (email=%s order=%s product=%s): %d match(es)",
        mask_email(filters["email"]),
        filters["order_number"],
        filters["product_id"],
        len(matches),
    )
    return Response(200, {"matches": matches})
