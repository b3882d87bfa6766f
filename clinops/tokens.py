"""Upstream token lifecycle for the service identity.

:class:`TokenManager` is the only writer of ``upstream_tokens``.  A valid
token is obtained with a three-tier fallback:

1. the cached token, when present and unexpired;
2. a refresh-token exchange using the stored refresh token (expiry ignored);
3. a full login with the stored credentials.

A failing tier falls through to the next one.  When all three fail the caller
gets :class:`~clinops.errors.TokenExhaustedError`; nothing is retried within
the same invocation, the next scheduled cycle starts again from tier 1.
"""

from __future__ import annotations

import asyncio
from datetime import timedelta
from typing import Optional

import structlog

from clinops.config import Settings
from clinops.ehr_client import EHRClient
from clinops.errors import EHRError, TokenExhaustedError
from clinops.repository import Repository, StoredToken
from clinops.time_utils import utc_now

logger = structlog.get_logger(__name__)

EXPIRY_SKEW_SECONDS = 60


class TokenManager:
    def __init__(self, repository: Repository, client: EHRClient, settings: Settings) -> None:
        self.repository = repository
        self.client = client
        self.settings = settings

    def _resolve_identity(self, identity: Optional[str]) -> str:
        resolved = identity or self.settings.service_identity or self.repository.get_active_identity()
        if not resolved:
            raise TokenExhaustedError("No service identity configured and no active credentials stored")
        return resolved

    def _persist(self, identity: str, access_token: str, refresh_token: Optional[str], endpoint: str) -> StoredToken:
        lifetime = max(self.settings.token_ttl_seconds - EXPIRY_SKEW_SECONDS, 0)
        expires_at = utc_now() + timedelta(seconds=lifetime)
        self.repository.store_token(
            identity,
            access_token=access_token,
            refresh_token=refresh_token,
            endpoint=endpoint,
            expires_at=expires_at,
        )
        return StoredToken(
            identity=identity,
            access_token=access_token,
            refresh_token=refresh_token,
            endpoint=endpoint,
            expires_at=expires_at,
        )

    def get_valid_token(self, identity: Optional[str] = None) -> StoredToken:
        """Return a usable token for ``identity`` (blocking)."""

        identity = self._resolve_identity(identity)

        cached = self.repository.get_token(identity)
        if cached is not None:
            return cached

        stale = self.repository.get_token(identity, ignore_expiry=True)
        if stale is not None and stale.refresh_token:
            try:
                refreshed = self.client.refresh(stale.refresh_token)
            except EHRError as exc:
                logger.warning("token_refresh_failed", identity=identity, error=str(exc))
            else:
                logger.info("token_refreshed", identity=identity)
                return self._persist(
                    identity,
                    refreshed["accessToken"],
                    refreshed.get("refreshToken") or stale.refresh_token,
                    stale.endpoint,
                )

        secret = self.repository.get_credentials(identity)
        if secret is not None:
            try:
                auth = self.client.login(identity, secret)
            except EHRError as exc:
                logger.warning("token_login_failed", identity=identity, error=str(exc))
            else:
                logger.info("token_login_succeeded", identity=identity)
                return self._persist(identity, auth["accessToken"], auth.get("refreshToken"), auth["endpoint"])

        raise TokenExhaustedError(f"Unable to obtain an upstream token for {identity}")

    async def acquire(self, identity: Optional[str] = None) -> StoredToken:
        return await asyncio.to_thread(self.get_valid_token, identity)


__all__ = ["TokenManager"]
