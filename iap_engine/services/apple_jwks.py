"""
Apple JWKS Cache - Key set used to verify App Store JWS payloads.

The cache is an owned object injected into the signature verifier, so tests
can drive it with a fake clock and a fake key set.
"""

import asyncio
import time
from collections.abc import Awaitable, Callable, Mapping
from typing import Any

import httpx
from jwt import PyJWK, PyJWKSet
from jwt.exceptions import PyJWKSetError
from structlog import get_logger

from iap_engine.exceptions import SignatureInvalidError, VendorAPIError
from iap_engine.observability.metrics import metrics

logger = get_logger(__name__)

APPLE_JWKS_URL = "https://apple.com/.well-known/appstoreconnect/keys"

JWKSFetcher = Callable[[], Awaitable[Mapping[str, Any]]]
Clock = Callable[[], float]


class AppleJWKSCache:
    """
    Time-bounded cache of Apple's JSON Web Key Set.

    A fetched set is valid for ttl_seconds and is refetched once less than
    refresh_margin_seconds of validity remain. The lock guards cache state
    only; concurrent callers on a cold cache may both fetch.
    """

    def __init__(
        self,
        fetcher: JWKSFetcher | None = None,
        *,
        url: str = APPLE_JWKS_URL,
        ttl_seconds: float = 1800,
        refresh_margin_seconds: float = 300,
        timeout_seconds: float = 15.0,
        clock: Clock = time.monotonic,
    ) -> None:
        self.url = url
        self.ttl_seconds = ttl_seconds
        self.refresh_margin_seconds = refresh_margin_seconds
        self.timeout_seconds = timeout_seconds
        self._fetcher = fetcher or self._fetch_remote
        self._clock = clock
        self._lock = asyncio.Lock()
        self._key_set: PyJWKSet | None = None
        self._expires_at: float = 0

    async def get_key(self, kid: str) -> PyJWK:
        """
        Look up a signing key by key id.

        Raises:
            SignatureInvalidError: If no key with this id is published
            VendorAPIError: If the key set could not be fetched
        """
        key_set = await self.get_key_set()
        try:
            return key_set[kid]
        except KeyError as e:
            logger.warning("apple_jwk_not_found", kid=kid)
            raise SignatureInvalidError(f"apple jwk not found: {kid}") from e

    async def get_key_set(self) -> PyJWKSet:
        """Return the cached key set, fetching it when missing or near expiry."""
        async with self._lock:
            cached = self._key_set
            if cached is not None and self._expires_at - self._clock() > self.refresh_margin_seconds:
                return cached

        data = await self._fetcher()
        try:
            key_set = PyJWKSet.from_dict(dict(data))
        except (PyJWKSetError, KeyError, TypeError) as e:
            metrics.record_jwks_refresh(success=False)
            raise VendorAPIError("apple", f"invalid jwks document: {e}") from e

        async with self._lock:
            self._key_set = key_set
            self._expires_at = self._clock() + self.ttl_seconds

        metrics.record_jwks_refresh(success=True)
        logger.info("apple_jwks_refreshed", key_count=len(key_set.keys))
        return key_set

    async def invalidate(self) -> None:
        """Drop the cached key set."""
        async with self._lock:
            self._key_set = None
            self._expires_at = 0

    async def _fetch_remote(self) -> Mapping[str, Any]:
        """GET the published key set."""
        try:
            async with httpx.AsyncClient() as client:
                response = await client.get(self.url, timeout=self.timeout_seconds)
        except httpx.HTTPError as exc:
            metrics.record_jwks_refresh(success=False)
            logger.error("apple_jwks_fetch_failed", url=self.url, error=str(exc))
            raise VendorAPIError("apple", f"jwks fetch failed: {exc}") from exc

        if response.status_code != 200:
            metrics.record_jwks_refresh(success=False)
            logger.error(
                "apple_jwks_fetch_failed",
                url=self.url,
                status=response.status_code,
                error=response.text[:200],
            )
            raise VendorAPIError(
                "apple",
                f"jwks: HTTP {response.status_code}",
                status_code=response.status_code,
            )

        try:
            document: Mapping[str, Any] = response.json()
        except ValueError as exc:
            raise VendorAPIError("apple", "jwks response is not JSON") from exc
        return document
