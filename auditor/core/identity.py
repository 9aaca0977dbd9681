"""
Identity layer: exchange the signed-in user's assertion for resource tokens.

Responsibility: OAuth2 on-behalf-of token exchange against the Microsoft identity
platform, with an in-memory token cache. The credential broker wraps this and owns
no cache of its own.
"""

import asyncio
import hashlib
import logging
import threading
import time
from dataclasses import dataclass
from typing import Any, Protocol

import httpx

from auditor.core.config import (
    AUTHORITY_HOST,
    DEFAULT_TOKEN_LIFETIME_MINUTES,
    OBO_GRANT_TYPE,
    TOKEN_API_TIMEOUT,
    TOKEN_REFRESH_SKEW_SECONDS,
)

logger = logging.getLogger(__name__)

# OAuth2 error values that mean the user must interact (consent, MFA, re-login)
INTERACTION_ERRORS = frozenset({"interaction_required", "consent_required", "login_required", "invalid_grant"})
# AADSTS65001: consent missing; 50076/50079: MFA required
INTERACTION_ERROR_CODES = frozenset({65001, 50076, 50079})


@dataclass
class AcquiredToken:
    """Raw token from the identity layer. expires_on is a unix timestamp."""

    access_token: str
    expires_on: float


class InteractionRequiredError(Exception):
    """The identity platform needs the user to consent or re-authenticate."""

    def __init__(self, message: str, claims: str | None = None) -> None:
        self.message = message
        self.claims = claims
        super().__init__(message)


class TokenAcquisitionError(Exception):
    """Any other failure acquiring a token."""


class TokenAcquirer(Protocol):
    """Identity layer contract consumed by CredentialBroker."""

    async def acquire_token_for_user(self, scopes: list[str]) -> AcquiredToken: ...


def is_interaction_required(payload: dict[str, Any]) -> bool:
    """True when an OAuth2 error body asks for user interaction rather than a retry."""
    if payload.get("error") in INTERACTION_ERRORS:
        return True
    codes = payload.get("error_codes") or []
    return any(c in INTERACTION_ERROR_CODES for c in codes if isinstance(c, int))


class OnBehalfOfTokenAcquirer:
    """
    Acquires delegated tokens for one signed-in user via the on-behalf-of flow.

    One instance per request (it holds the user's assertion); the cache is shared
    across instances so repeated requests by the same user reuse tokens.
    """

    _cache: dict[tuple[str, tuple[str, ...]], AcquiredToken] = {}
    _cache_lock = threading.Lock()
    # One in-flight token request per (assertion, scopes)
    _inflight: dict[tuple[str, tuple[str, ...]], asyncio.Lock] = {}

    def __init__(
        self,
        tenant_id: str,
        client_id: str,
        client_secret: str,
        user_assertion: str,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        self._token_url = f"{AUTHORITY_HOST}/{tenant_id}/oauth2/v2.0/token"
        self._client_id = client_id
        self._client_secret = client_secret
        self._assertion = user_assertion
        self._assertion_key = hashlib.sha256(user_assertion.encode("utf-8")).hexdigest()
        self._http_client = http_client

    @classmethod
    def clear_cache(cls) -> None:
        with cls._cache_lock:
            cls._cache.clear()
        cls._inflight.clear()

    @staticmethod
    def _usable(token: AcquiredToken, now: float) -> bool:
        return token.expires_on - TOKEN_REFRESH_SKEW_SECONDS > now

    def _cached(self, key: tuple[str, tuple[str, ...]]) -> AcquiredToken | None:
        with self._cache_lock:
            token = self._cache.get(key)
            if token is None:
                return None
            if self._usable(token, time.time()):
                return token
            del self._cache[key]
        return None

    def _store(self, key: tuple[str, tuple[str, ...]], token: AcquiredToken) -> None:
        """Sweep unusable entries, then cache `token` if it outlives the refresh window."""
        now = time.time()
        with self._cache_lock:
            for stale in [k for k, t in self._cache.items() if not self._usable(t, now)]:
                del self._cache[stale]
            if self._usable(token, now):
                self._cache[key] = token

    async def acquire_token_for_user(self, scopes: list[str]) -> AcquiredToken:
        key = (self._assertion_key, tuple(sorted(scopes)))
        cached = self._cached(key)
        if cached:
            logger.debug("[identity:acquire] cache hit scopes=%s", " ".join(scopes))
            return cached

        lock = self._inflight.setdefault(key, asyncio.Lock())
        try:
            async with lock:
                # Another caller may have fetched it while we waited.
                cached = self._cached(key)
                if cached:
                    return cached
                return await self._request_token(key, scopes)
        finally:
            if not lock.locked() and self._inflight.get(key) is lock:
                del self._inflight[key]

    async def _request_token(self, key: tuple[str, tuple[str, ...]], scopes: list[str]) -> AcquiredToken:
        data = {
            "grant_type": OBO_GRANT_TYPE,
            "client_id": self._client_id,
            "client_secret": self._client_secret,
            "assertion": self._assertion,
            "scope": " ".join(scopes),
            "requested_token_use": "on_behalf_of",
        }
        try:
            if self._http_client is not None:
                response = await self._http_client.post(self._token_url, data=data)
            else:
                async with httpx.AsyncClient(timeout=TOKEN_API_TIMEOUT) as client:
                    response = await client.post(self._token_url, data=data)
        except httpx.HTTPError as e:
            raise TokenAcquisitionError(f"Token request failed: {e}") from e

        try:
            payload = response.json()
        except ValueError:
            payload = {}
        if not isinstance(payload, dict):
            payload = {}

        if response.status_code != 200:
            description = payload.get("error_description") or response.text[:200]
            if is_interaction_required(payload):
                raise InteractionRequiredError(description, claims=payload.get("claims"))
            raise TokenAcquisitionError(f"Token endpoint error {response.status_code}: {description}")

        access_token = payload.get("access_token")
        if not access_token:
            raise TokenAcquisitionError("Token endpoint returned no access_token")
        try:
            lifetime = float(payload.get("expires_in") or DEFAULT_TOKEN_LIFETIME_MINUTES * 60)
        except (TypeError, ValueError):
            lifetime = DEFAULT_TOKEN_LIFETIME_MINUTES * 60
        token = AcquiredToken(access_token=access_token, expires_on=time.time() + lifetime)
        self._store(key, token)
        logger.debug("[identity:acquire] OUT scopes=%s expires_in=%d", " ".join(scopes), int(lifetime))
        return token
