"""Shared fixtures for fedlicense tests."""

import fnmatch
import hashlib
import hmac
import json

import pytest
import redis
from cryptography.hazmat.primitives.asymmetric.ed25519 import Ed25519PrivateKey
from pydantic import SecretStr

from fedlicense.config import Settings
from fedlicense.errors import StoreError, Unauthenticated
from fedlicense.runtime import build_runtime
from fedlicense.schema import LicensePayload, LicenseRecord
from fedlicense.signing import Signer, render_license
from fedlicense.store import EventLog, IdentityStore, LicenseStore, MemoryBlobStore

WEBHOOK_SECRET = "whsec_test_secret"
ADMIN_KEY = "admin-test-key"


# -- Helpers -----------------------------------------------------------------


def sign_body(body: bytes, secret: str = WEBHOOK_SECRET) -> str:
    """Hex HMAC-SHA256 digest, as Lemon Squeezy sends in X-Signature."""
    return hmac.new(secret.encode(), body, hashlib.sha256).hexdigest()


def make_order(
    event_name="order_created",
    order_id="ORD-1",
    product_id=636851,
    email="a@x.com",
    name="Ann",
    customer_id=None,
    order_number=1001,
    custom_data=None,
):
    """A Lemon Squeezy order webhook payload."""
    attributes = {
        "identifier": f"id-{order_id}",
        "order_number": order_number,
        "user_email": email,
        "user_name": name,
        "first_order_item": {"product_id": product_id, "variant_name": "Default"},
        "urls": {"receipt": f"https://app.lemonsqueezy.com/my-orders/{order_id}"},
    }
    if customer_id is not None:
        attributes["customer_id"] = customer_id
    if email is None:
        del attributes["user_email"]
    meta = {"event_name": event_name}
    if custom_data is not None:
        meta["custom_data"] = custom_data
    return {"meta": meta, "data": {"type": "orders", "id": order_id, "attributes": attributes}}


def make_record(
    signer,
    order_id="ORD-1",
    product_id="636851",
    email="buyer@example.com",
    customer_id=None,
    created_at="2025-11-23T14:18:29Z",
    product_code="fedDSP-PHAT",
    status="active",
):
    """A stored LicenseRecord with a real signature."""
    payload = LicensePayload(
        license_id=f"LS-{order_id}",
        license_to="Buyer",
        email=email,
        product_id=product_code,
        issued_at=created_at,
    )
    envelope = signer.sign(payload)
    return LicenseRecord(
        order_id=order_id,
        order_number="1001",
        customer_id=customer_id,
        external_product_id=product_id,
        product_code=product_code,
        user_email=email,
        user_name="Buyer",
        license_id=payload.license_id,
        envelope=envelope,
        license_string=render_license(
            envelope, brand="fedDSP", product_code=product_code, licensee="Buyer"
        ),
        status=status,
        issued_at=created_at,
        created_at=created_at,
    )


class FailingBlobStore(MemoryBlobStore):
    """Memory store whose reads or writes can be switched to fail."""

    def __init__(self, name="failing"):
        super().__init__(name)
        self.fail_writes = False
        self.fail_reads = False

    def set_json(self, key, data):
        if self.fail_writes:
            raise StoreError(f"simulated write failure for {key}")
        super().set_json(key, data)

    def get_json(self, key):
        if self.fail_reads:
            raise StoreError(f"simulated read failure for {key}")
        return super().get_json(key)

    def list_keys(self, prefix=""):
        if self.fail_reads:
            raise StoreError("simulated list failure")
        return super().list_keys(prefix)


class FakeRedis:
    """Dict-backed stand-in for the few redis.Redis calls the store makes."""

    def __init__(self):
        self.data = {}
        self.down = False

    def _check(self):
        if self.down:
            raise redis.ConnectionError("Connection refused")

    def get(self, name):
        self._check()
        return self.data.get(name)

    def set(self, name, value):
        self._check()
        self.data[name] = value.encode() if isinstance(value, str) else value
        return True

    def scan_iter(self, match=None, count=None):
        self._check()
        for name in list(self.data):
            if match is None or fnmatch.fnmatchcase(name, match):
                yield name.encode()


class FakeNotifier:
    def __init__(self):
        self.sent = []

    def send_license(self, record):
        self.sent.append(record)
        return True


class FakeAuth:
    """Auth provider with fixed token -> user and user -> verified emails tables."""

    def __init__(self, tokens=None, emails=None):
        self.tokens = dict(tokens or {})
        self.emails = dict(emails or {})
        self.email_lookup_error = None

    def verify(self, token):
        if not token or token not in self.tokens:
            raise Unauthenticated("bad token")
        return self.tokens[token]

    def verified_emails(self, user_id):
        if self.email_lookup_error is not None:
            raise self.email_lookup_error
        return list(self.emails.get(user_id, []))


# -- Fixtures ----------------------------------------------------------------


@pytest.fixture()
def private_key():
    return Ed25519PrivateKey.generate()


@pytest.fixture()
def signer(private_key):
    return Signer(private_key)


@pytest.fixture()
def settings():
    return Settings(
        webhook_secret=SecretStr(WEBHOOK_SECRET),
        admin_key=SecretStr(ADMIN_KEY),
        product_map={"636851": "fedDSP-PHAT"},
        product_names={"fedDSP-PHAT": "PHAT"},
        download_urls={"fedDSP-PHAT": "https://example.com/phat.zip"},
    )


@pytest.fixture()
def license_backend():
    return FailingBlobStore("licenses")


@pytest.fixture()
def event_backend():
    return FailingBlobStore("ls_events")


@pytest.fixture()
def identity_backend():
    return FailingBlobStore("identities")


@pytest.fixture()
def licenses(license_backend):
    return LicenseStore(license_backend)


@pytest.fixture()
def events(event_backend):
    return EventLog(event_backend)


@pytest.fixture()
def identities(identity_backend):
    return IdentityStore(identity_backend)


@pytest.fixture()
def notifier():
    return FakeNotifier()


@pytest.fixture()
def auth():
    return FakeAuth(tokens={"tok-u1": "U1"}, emails={"U1": ["buyer@example.com"]})


@pytest.fixture()
def runtime(settings, licenses, events, identities, signer, notifier, auth):
    return build_runtime(
        settings,
        stores=(licenses, events, identities),
        signer=signer,
        notifier=notifier,
        auth=auth,
    )


@pytest.fixture()
def signed_request():
    """Build (raw_body, headers) for a payload signed with the test secret."""

    def _build(payload, secret=WEBHOOK_SECRET):
        raw = json.dumps(payload).encode()
        return raw, {"X-Signature": sign_body(raw, secret)}

    return _build
