"""JWT verification and verified-email lookup for Clerk authentication.

Verifies session tokens using Clerk's JWKS (JSON Web Key Set) endpoint.
Uses PyJWT with RS256 for signature verification. No Clerk SDK needed.
"""

from __future__ import annotations

import json
import logging
import time
import urllib.request
from typing import Any
from urllib.parse import quote

import jwt

from fedlicense.config import Settings
from fedlicense.errors import ConfigurationError, Unauthenticated

logger = logging.getLogger("fedlicense.auth")

CLERK_API_BASE = "https://api.clerk.com/v1"
_JWKS_TTL = 3600


def get_bearer_token(headers: Any) -> str | None:
    """Extract Bearer token from an Authorization header (case-insensitive scheme)."""
    auth = (headers.get("Authorization") or headers.get("authorization") or "").strip()
    if auth[:7].lower() == "bearer ":
        token = auth[7:].strip()
        return token or None
    return None


class ClerkAuthProvider:
    """Resolves a Clerk session token to its user id and verified emails."""

    def __init__(self, settings: Settings):
        self.settings = settings
        self._jwks_cache: dict[str, Any] | None = None
        self._jwks_cache_time: float = 0

    def _frontend_api(self) -> str:
        fapi = self.settings.clerk_frontend_api
        if not fapi:
            raise ConfigurationError("CLERK_FRONTEND_API environment variable not set")
        return fapi

    def _fetch_jwks(self) -> dict[str, Any]:
        """Fetch and cache JWKS from Clerk's well-known endpoint."""
        now = time.monotonic()
        if self._jwks_cache and (now - self._jwks_cache_time) < _JWKS_TTL:
            return self._jwks_cache

        url = f"https://{self._frontend_api()}/.well-known/jwks.json"
        req = urllib.request.Request(url, headers={"Accept": "application/json"})
        with urllib.request.urlopen(req, timeout=5) as resp:  # noqa: S310
            data = json.loads(resp.read())

        self._jwks_cache = data
        self._jwks_cache_time = now
        return data

    def verify(self, token: str | None) -> str:
        """Verify a Clerk session JWT and return its subject (user id)."""
        if not token:
            raise Unauthenticated("Missing bearer token")
        try:
            jwk_set = jwt.PyJWKSet.from_dict(self._fetch_jwks())
            kid = jwt.get_unverified_header(token).get("kid")

            signing_key = None
            for key in jwk_set.keys:
                if key.key_id == kid:
                    signing_key = key
                    break
            if not signing_key:
                logger.warning("No matching JWK for kid=%s", kid)
                raise Unauthenticated("Unknown signing key")

            claims = jwt.decode(
                token,
                signing_key.key,
                algorithms=["RS256"],
                issuer=f"https://{self._frontend_api()}",
                options={"verify_aud": False},
            )
        except jwt.ExpiredSignatureError as e:
            logger.debug("Token expired")
            raise Unauthenticated("Token expired") from e
        except jwt.PyJWTError as e:
            logger.debug("Invalid token: %s", e)
            raise Unauthenticated("Invalid token") from e
        except (OSError, ValueError) as e:
            logger.exception("JWT verification failed")
            raise Unauthenticated("Token could not be verified") from e

        subject = claims.get("sub")
        if not subject:
            raise Unauthenticated("Token has no subject")
        return str(subject)

    def verified_emails(self, user_id: str) -> list[str]:
        """Email addresses Clerk has verified for this user (never unverified ones)."""
        if self.settings.clerk_secret_key is None:
            raise ConfigurationError("CLERK_SECRET_KEY environment variable not set")
        req = urllib.request.Request(
            f"{CLERK_API_BASE}/users/{quote(user_id, safe='')}",
            method="GET",
            headers={
                "Authorization": f"Bearer {self.settings.clerk_secret_key.get_secret_value()}",
                "Accept": "application/json",
            },
        )
        with urllib.request.urlopen(req, timeout=10) as resp:  # noqa: S310
            user = json.loads(resp.read())
        return verified_addresses(user)


def verified_addresses(user: dict[str, Any]) -> list[str]:
    """Pick verified addresses out of a Clerk Backend API user object."""
    emails = []
    for entry in user.get("email_addresses") or []:
        status = (entry.get("verification") or {}).get("status")
        address = (entry.get("email_address") or "").strip()
        if address and status == "verified":
            emails.append(address)
    return emails
