"""Constants and configuration for fedlicense."""

from __future__ import annotations

import json
import os
from collections.abc import Mapping

from pydantic import BaseModel, ConfigDict, SecretStr

from fedlicense.errors import ConfigurationError

# Lemon Squeezy event names
EVENT_ORDER_CREATED = "order_created"
EVENT_ORDER_REFUNDED = "order_refunded"

# Store names (one namespace per concern)
LICENSE_STORE_NAME = "licenses"
EVENT_STORE_NAME = "ls_events"
IDENTITY_STORE_NAME = "identities"

# License artifact
SIGNATURE_ALGORITHM = "Ed25519"
PAYLOAD_VERSION = "1"
RECORD_SCHEMA_VERSION = 2
LICENSE_FOLD_WIDTH = 64
DEFAULT_BRAND = "fedDSP"

# LS product id -> internal product code (test mode and live mode ids)
DEFAULT_PRODUCT_MAP: dict[str, str] = {
    "636851": "fedDSP-PHAT",
    "738772": "fedDSP-PHAT",
}

# Webhook request limits
MAX_WEBHOOK_BODY = 1_000_000
SIGNATURE_HEADERS = ("X-Signature", "X-Lemon-Signature")
ADMIN_HEADER = "X-Admin-Key"

DEFAULT_STORE_DIR = ".data"

# Redis key namespace; keys are "<prefix>:<store name>:<key>"
REDIS_KEY_PREFIX = "fedlicense"


def _json_table(environ: Mapping[str, str], name: str) -> dict[str, str]:
    """Parse an optional JSON object env var into a str -> str dict."""
    raw = environ.get(name, "").strip()
    if not raw:
        return {}
    try:
        data = json.loads(raw)
    except json.JSONDecodeError as e:
        raise ConfigurationError(f"{name} is not valid JSON: {e}") from e
    if not isinstance(data, dict):
        raise ConfigurationError(f"{name} must be a JSON object")
    return {str(k): str(v) for k, v in data.items()}


def _secret(environ: Mapping[str, str], name: str) -> SecretStr | None:
    value = environ.get(name, "").strip()
    return SecretStr(value) if value else None


class Settings(BaseModel):
    """Process-wide configuration, loaded once and never mutated."""

    model_config = ConfigDict(frozen=True)

    webhook_secret: SecretStr | None = None
    signing_key: SecretStr | None = None
    admin_key: SecretStr | None = None
    clerk_secret_key: SecretStr | None = None
    clerk_frontend_api: str = ""
    postmark_api_key: SecretStr | None = None
    mail_from: str = ""
    support_email: str = ""
    redis_url: SecretStr | None = None
    store_dir: str = DEFAULT_STORE_DIR
    brand: str = DEFAULT_BRAND
    product_map: dict[str, str] = dict(DEFAULT_PRODUCT_MAP)
    product_names: dict[str, str] = {}
    download_urls: dict[str, str] = {}

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> Settings:
        """Build settings from environment variables."""
        env = os.environ if environ is None else environ
        mail_from = env.get("MAIL_FROM", "").strip()
        return cls(
            webhook_secret=_secret(env, "LEMONSQUEEZY_WEBHOOK_SECRET"),
            signing_key=_secret(env, "LIC_ED25519_PRIVATE_KEY"),
            admin_key=_secret(env, "ADMIN_API_KEY"),
            clerk_secret_key=_secret(env, "CLERK_SECRET_KEY"),
            clerk_frontend_api=env.get("CLERK_FRONTEND_API", "").strip(),
            postmark_api_key=_secret(env, "POSTMARK_API_KEY"),
            mail_from=mail_from,
            support_email=env.get("SUPPORT_EMAIL", "").strip() or mail_from,
            # Vercel KV / Upstash expose the same URL as KV_URL
            redis_url=_secret(env, "REDIS_URL") or _secret(env, "KV_URL"),
            store_dir=env.get("FEDLICENSE_STORE_DIR", "").strip() or DEFAULT_STORE_DIR,
            brand=env.get("FEDLICENSE_BRAND", "").strip() or DEFAULT_BRAND,
            product_map={**DEFAULT_PRODUCT_MAP, **_json_table(env, "FEDLICENSE_PRODUCT_MAP")},
            product_names=_json_table(env, "FEDLICENSE_PRODUCT_NAMES"),
            download_urls=_json_table(env, "FEDLICENSE_DOWNLOAD_URLS"),
        )
