"""License lifecycle: issue on order_created, revoke on order_refunded.

Per (order, product) pair the states are NonExistent -> active -> refunded,
with refunded terminal. Lemon Squeezy retries any non-2xx response, so:

- permanently unprocessable orders (no email, unmapped product) answer 200
  to stop the retries, and are logged for follow-up;
- store write failures propagate as StoreError so the caller answers 500
  and the delivery is retried until it sticks.

Both transitions are idempotent: a repeated order_created returns the
stored record untouched, and a repeated refund keeps the first revoked_at.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Protocol

from fedlicense.config import EVENT_ORDER_CREATED, EVENT_ORDER_REFUNDED, Settings
from fedlicense.errors import KeyUnavailable
from fedlicense.schema import LicensePayload, LicenseRecord, license_key
from fedlicense.signing import Signer, render_license
from fedlicense.store import LicenseStore
from fedlicense.utils import (
    CUSTOMER_ID_FIELDS,
    EMAIL_FIELDS,
    NAME_FIELDS,
    best_effort,
    first_str,
    isoformat_utc,
    mask_email,
)

logger = logging.getLogger("fedlicense.lifecycle")


class Notifier(Protocol):
    def send_license(self, record: LicenseRecord) -> bool: ...


@dataclass
class Outcome:
    """What happened to one delivery. `status` is the HTTP status to answer."""

    status: int
    message: str
    record: LicenseRecord | None = None


# ---------------------------------------------------------------------------
# Payload accessors
# ---------------------------------------------------------------------------


def _obj(value: Any) -> dict[str, Any]:
    """`value` if it is a JSON object, else an empty one."""
    return value if isinstance(value, dict) else {}


def event_name_of(payload: dict[str, Any]) -> str:
    return str(_obj(payload.get("meta")).get("event_name") or "unknown")


def raw_order_id_of(payload: dict[str, Any]) -> str | None:
    value = _obj(payload.get("data")).get("id")
    if value is None:
        return None
    return str(value).strip() or None


def order_id_of(payload: dict[str, Any]) -> str:
    """Order id, or a placeholder for event log keys when the payload has none."""
    return raw_order_id_of(payload) or "unknown-order-id"


def _attributes(payload: dict[str, Any]) -> dict[str, Any]:
    return _obj(_obj(payload.get("data")).get("attributes"))


def external_product_id_of(payload: dict[str, Any]) -> str:
    item = _obj(_attributes(payload).get("first_order_item"))
    return str(item.get("product_id") or "")


def resolve_product_code(payload: dict[str, Any], product_map: dict[str, str]) -> str | None:
    """Internal product code for an order, or None if it cannot be mapped.

    An explicit code in the checkout custom data wins over the static
    LS product id table.
    """
    custom = _obj(_obj(payload.get("meta")).get("custom_data"))
    explicit = str(custom.get("product_code") or "").strip()
    if explicit:
        return explicit
    return product_map.get(external_product_id_of(payload))


# ---------------------------------------------------------------------------
# Engine
# ---------------------------------------------------------------------------


class LicenseLifecycle:
    def __init__(
        self,
        settings: Settings,
        licenses: LicenseStore,
        signer: Signer | None = None,
        notifier: Notifier | None = None,
    ):
        self.settings = settings
        self.licenses = licenses
        self.signer = signer
        self.notifier = notifier

    def process(self, payload: dict[str, Any], event_key: str | None = None) -> Outcome:
        """Apply one authenticated webhook payload to the license store."""
        event_name = event_name_of(payload)
        if event_name == EVENT_ORDER_CREATED:
            return self.issue(payload)
        if event_name == EVENT_ORDER_REFUNDED:
            return self.revoke(payload, event_key)
        logger.info("Ignoring event (no license action needed): %s", event_name)
        return Outcome(200, "OK (no-op for this event)")

    # -- issue -----------------------------------------------------------------

    def issue(self, payload: dict[str, Any]) -> Outcome:
        attributes = _attributes(payload)
        order_id = raw_order_id_of(payload)
        product_id = external_product_id_of(payload)

        if order_id is None:
            logger.error("order_created without data.id; no license issued")
            return Outcome(200, "OK (no order id, no license issued)")

        email = first_str(attributes, EMAIL_FIELDS)
        if not email:
            logger.error("Order %s has no buyer email; no license issued", order_id)
            return Outcome(200, "OK (no email, no license issued)")

        product_code = resolve_product_code(payload, self.settings.product_map)
        if not product_code or not product_id:
            logger.error(
                "Order %s: no product mapping for LS product_id %r; add it to the product map",
                order_id,
                product_id,
            )
            return Outcome(200, "OK (unmapped product, no license issued)")

        key = license_key(order_id, product_id)
        existing = self.licenses.get(key)
        if existing is not None:
            logger.info("License already issued for %s; returning stored record", key)
            return Outcome(200, "OK (license already issued)", existing)

        if self.signer is None:
            raise KeyUnavailable("License signing key is not configured")

        record = self._build_record(payload, email, product_code)
        self.licenses.put(record)
        logger.info(
            "Issued license %s for %s (key %s)", record.license_id, mask_email(email), key
        )

        if self.notifier is not None:
            best_effort(f"email license {record.license_id}", self.notifier.send_license, record)
        return Outcome(200, "OK (license issued)", record)

    def _build_record(
        self, payload: dict[str, Any], email: str, product_code: str
    ) -> LicenseRecord:
        data = _obj(payload.get("data"))
        attributes = _attributes(payload)
        item = _obj(attributes.get("first_order_item"))
        order_id = order_id_of(payload)

        name = first_str(attributes, NAME_FIELDS) or email or "Customer"
        identifier = str(attributes.get("identifier") or data.get("id") or "unknown")
        issued_at = isoformat_utc()

        license_payload = LicensePayload(
            license_id=f"LS-{identifier}",
            license_to=name,
            email=email,
            product_id=product_code,
            issued_at=issued_at,
        )
        envelope = self.signer.sign(license_payload)
        license_string = render_license(
            envelope, brand=self.settings.brand, product_code=product_code, licensee=name
        )
        urls = _obj(attributes.get("urls"))
        return LicenseRecord(
            order_id=order_id,
            order_number=attributes.get("order_number"),
            order_identifier=identifier,
            customer_id=first_str(attributes, CUSTOMER_ID_FIELDS),
            external_product_id=external_product_id_of(payload),
            product_code=product_code,
            product_version=item.get("variant_name") or item.get("variant_id"),
            user_email=email,
            user_name=name,
            license_id=license_payload.license_id,
            envelope=envelope,
            license_string=license_string,
            issued_at=issued_at,
            created_at=isoformat_utc(),
            event_name=event_name_of(payload),
            receipt_url=urls.get("receipt") or urls.get("invoice_url"),
        )

    # -- revoke ----------------------------------------------------------------

    def revoke(self, payload: dict[str, Any], event_key: str | None = None) -> Outcome:
        product_id = external_product_id_of(payload)
        if not product_id:
            logger.warning("Refund event missing product_id; cannot compute license key")
            return Outcome(200, "OK (refund: missing product_id)")

        order_id = raw_order_id_of(payload)
        if order_id is None:
            logger.warning("Refund event missing data.id; cannot compute license key")
            return Outcome(200, "OK (refund: missing order id)")

        key = license_key(order_id, product_id)
        record = self.licenses.get(key)
        if record is None:
            logger.info("Refund received but no license found for key %s", key)
            return Outcome(200, "OK (refund: nothing to revoke)")

        if record.status == "refunded":
            logger.info("License %s already refunded at %s", key, record.revoked_at)
            return Outcome(200, "OK (refund already processed)", record)

        revoked = record.model_copy(
            update={
                "status": "refunded",
                "revoked_at": isoformat_utc(),
                "revocation_event_key": event_key,
            }
        )
        self.licenses.put(revoked)
        logger.info("Marked license as refunded for key %s", key)
        return Outcome(200, "OK (refund processed)", revoked)
