"""Match a signed-in Clerk user to their Lemon Squeezy purchases.

The first lookup for a user has nothing but Clerk's verified emails to go
on, and matches license records by buyer email. Every customer id found
that way is saved as an IdentityMapping, and later lookups match by those
ids instead, since the checkout email can differ from the account email.
"""

from __future__ import annotations

import logging
from typing import Protocol

from fedlicense.schema import IdentityMapping, LicenseRecord
from fedlicense.store import IdentityStore, LicenseStore
from fedlicense.utils import best_effort, isoformat_utc

logger = logging.getLogger("fedlicense.identity")


class AuthProvider(Protocol):
    def verify(self, token: str | None) -> str: ...

    def verified_emails(self, user_id: str) -> list[str]: ...


def sort_purchases(records: list[LicenseRecord]) -> list[LicenseRecord]:
    """Newest first; records without a timestamp go last."""
    dated = [r for r in records if r.purchased_at]
    undated = [r for r in records if not r.purchased_at]
    dated.sort(key=lambda r: r.purchased_at, reverse=True)
    return dated + undated


class IdentityService:
    def __init__(self, auth: AuthProvider, licenses: LicenseStore, identities: IdentityStore):
        self.auth = auth
        self.licenses = licenses
        self.identities = identities

    def resolve_purchases(self, token: str | None) -> list[LicenseRecord]:
        """Licenses owned by the token's user.

        Raises Unauthenticated if the token does not verify. Any later
        failure degrades to an empty list.
        """
        user_id = self.auth.verify(token)
        try:
            return self._lookup(user_id)
        except Exception:
            logger.exception("Purchase lookup failed for user %s; returning no purchases", user_id)
            return []

    def _lookup(self, user_id: str) -> list[LicenseRecord]:
        mapping = self.identities.get_mapping(user_id)

        if mapping is not None and mapping.customer_ids:
            linked = set(mapping.customer_ids)
            matched = [r for _, r in self.licenses.scan() if r.customer_id in linked]
            logger.info(
                "Matched %d purchase(s) for %s by %d linked customer id(s)",
                len(matched),
                user_id,
                len(linked),
            )
        else:
            emails = {e.strip().lower() for e in self.auth.verified_emails(user_id) if e}
            if not emails:
                logger.info("User %s has no verified email; no purchases to bootstrap", user_id)
                return []
            matched = [
                r for _, r in self.licenses.scan() if r.user_email.strip().lower() in emails
            ]
            logger.info("Matched %d purchase(s) for %s by verified email", len(matched), user_id)

        discovered = {r.customer_id for r in matched if r.customer_id}
        best_effort(
            f"sync identity mapping for {user_id}", self._sync, user_id, mapping, discovered
        )
        return sort_purchases(matched)

    def _sync(
        self, user_id: str, mapping: IdentityMapping | None, discovered: set[str]
    ) -> IdentityMapping | None:
        """Persist newly discovered customer ids (the id set only grows)."""
        known = set(mapping.customer_ids) if mapping else set()
        new_ids = discovered - known
        if not new_ids:
            return mapping

        now = isoformat_utc()
        updated = IdentityMapping(
            auth_user_id=user_id,
            customer_ids=sorted(known | discovered),
            linked_at=mapping.linked_at if mapping else now,
            updated_at=now,
        )
        self.identities.put_mapping(updated)
        for customer_id in sorted(new_ids):
            best_effort(
                f"reverse index customer {customer_id}", self._link_customer, customer_id, user_id
            )
        logger.info("Linked %s to customer id(s) %s", user_id, ", ".join(sorted(new_ids)))
        return updated

    def _link_customer(self, customer_id: str, user_id: str) -> None:
        previous = self.identities.get_reverse(customer_id)
        if previous and previous != user_id:
            logger.warning(
                "Customer %s was linked to %s; relinking to %s", customer_id, previous, user_id
            )
        self.identities.put_reverse(customer_id, user_id)
