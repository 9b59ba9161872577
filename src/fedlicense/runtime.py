"""Process-wide wiring: settings, stores, signer and services, built once."""

from __future__ import annotations

import functools
import logging
from dataclasses import dataclass

from fedlicense.auth import ClerkAuthProvider
from fedlicense.config import Settings
from fedlicense.errors import ConfigurationError
from fedlicense.identity import AuthProvider, IdentityService
from fedlicense.lifecycle import LicenseLifecycle, Notifier
from fedlicense.notify import PostmarkNotifier
from fedlicense.signing import Signer
from fedlicense.store import EventLog, IdentityStore, LicenseStore, file_stores, redis_stores

logger = logging.getLogger("fedlicense.runtime")


@dataclass(frozen=True)
class Runtime:
    settings: Settings
    licenses: LicenseStore
    events: EventLog
    identities: IdentityStore
    lifecycle: LicenseLifecycle
    identity: IdentityService


def _load_signer(settings: Settings) -> Signer | None:
    # Refunds and lookups work without a key, so a bad key only fails issuance
    try:
        return Signer.from_settings(settings)
    except ConfigurationError as e:
        logger.error("License signing disabled: %s", e)
        return None


def build_runtime(
    settings: Settings,
    *,
    stores: tuple[LicenseStore, EventLog, IdentityStore] | None = None,
    signer: Signer | None = None,
    notifier: Notifier | None = None,
    auth: AuthProvider | None = None,
    local: bool = False,
) -> Runtime:
    """Wire every component from `settings`; keyword overrides are for tests.

    Stores live in Redis. Only a `local` runtime (CLI, dev server) falls back
    to JSON files under FEDLICENSE_STORE_DIR when no Redis URL is configured.
    """
    if stores is None:
        if local and settings.redis_url is None:
            logger.info("No REDIS_URL; using local file stores under %s", settings.store_dir)
            stores = file_stores(settings.store_dir)
        else:
            stores = redis_stores(settings)
    licenses, events, identities = stores
    lifecycle = LicenseLifecycle(
        settings,
        licenses,
        signer=signer or _load_signer(settings),
        notifier=notifier or PostmarkNotifier(settings),
    )
    identity = IdentityService(auth or ClerkAuthProvider(settings), licenses, identities)
    return Runtime(settings, licenses, events, identities, lifecycle, identity)


@functools.lru_cache(maxsize=1)
def get_runtime() -> Runtime:
    """The runtime for this process, loaded from the environment on first use."""
    return build_runtime(Settings.from_env())


@functools.lru_cache(maxsize=1)
def get_local_runtime() -> Runtime:
    """Like get_runtime, but may use file stores; for the local dev server."""
    return build_runtime(Settings.from_env(), local=True)
