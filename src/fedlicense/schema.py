"""Pydantic v2 models for licenses, webhook events and identity mappings."""

from __future__ import annotations

from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator

from fedlicense.config import PAYLOAD_VERSION, RECORD_SCHEMA_VERSION, SIGNATURE_ALGORITHM


def license_key(order_id: str, external_product_id: str) -> str:
    """Store key for one (order, product) pair: 'ORD-1:636851'."""
    return f"{order_id}:{external_product_id}"


class LicensePayload(BaseModel):
    """The signed part of a license. Field names are what the plugins read."""

    model_config = ConfigDict(frozen=True)

    license_id: str
    license_to: str
    email: str
    product_id: str
    issued_at: str
    version: str = PAYLOAD_VERSION


class Envelope(BaseModel):
    """Payload plus detached Ed25519 signature (base64url, unpadded)."""

    model_config = ConfigDict(frozen=True)

    algorithm: Literal["Ed25519"] = SIGNATURE_ALGORITHM
    payload: LicensePayload
    signature: str

    def signed_portion(self) -> dict[str, Any]:
        """The structure whose canonical bytes the signature covers."""
        return {"algorithm": self.algorithm, "payload": self.payload.model_dump(mode="json")}


class LicenseRecord(BaseModel):
    """One issued license, persisted under `order_id:external_product_id`."""

    schema_version: int = RECORD_SCHEMA_VERSION

    # Lemon Squeezy linkage
    order_id: str
    order_number: str | None = None
    order_identifier: str | None = None
    customer_id: str | None = None
    external_product_id: str
    product_code: str
    product_version: str | None = None

    # Buyer
    user_email: str
    user_name: str

    # License
    license_id: str
    envelope: Envelope
    license_string: str

    # Lifecycle
    status: Literal["active", "refunded"] = "active"
    revoked_at: str | None = None
    revocation_event_key: str | None = None

    # Metadata
    issued_at: str
    created_at: str
    event_name: str | None = None
    receipt_url: str | None = None

    @field_validator("order_number", "customer_id", "product_version", mode="before")
    @classmethod
    def stringify_ids(cls, v: Any) -> Any:
        # LS sends these as integers
        if v is None or isinstance(v, str):
            return v
        return str(v)

    @property
    def key(self) -> str:
        return license_key(self.order_id, self.external_product_id)

    @property
    def purchased_at(self) -> str | None:
        return self.created_at or self.issued_at or None


class WebhookEvent(BaseModel):
    """A raw, authenticated webhook delivery kept for audit and replay."""

    received_at: str
    event_name: str
    order_id: str
    payload: dict[str, Any]


class IdentityMapping(BaseModel):
    """Clerk user -> Lemon Squeezy customer ids discovered for that user."""

    auth_user_id: str
    customer_ids: list[str] = Field(default_factory=list)
    linked_at: str
    updated_at: str

    @field_validator("customer_ids")
    @classmethod
    def sorted_unique(cls, v: list[str]) -> list[str]:
        return sorted({str(c) for c in v if c})
