from __future__ import annotations

import logging
import time
from dataclasses import dataclass

import requests

from timeledger.models import OutlookConfig


REFRESH_MARGIN_SECONDS = 60

_logger = logging.getLogger(__name__)


class TokenRefreshError(RuntimeError):
    pass


@dataclass
class TokenCache:
    token: str = ""
    expires_at: float = 0.0

    def valid(self, now: float, margin_seconds: int = REFRESH_MARGIN_SECONDS) -> bool:
        return bool(self.token) and now < self.expires_at - margin_seconds

    def store(self, token: str, expires_in: int, now: float) -> None:
        self.token = token
        self.expires_at = now + expires_in


class OutlookTokenProvider:
    """Access tokens for Graph via the OAuth2 refresh-token grant."""

    def __init__(
        self,
        config: OutlookConfig,
        cache: TokenCache | None = None,
        session: requests.Session | None = None,
    ) -> None:
        self.config = config
        self.cache = cache or TokenCache()
        self.session = session or requests.Session()

    def _token_endpoint(self) -> str:
        return f"https://login.microsoftonline.com/{self.config.tenant_id}/oauth2/v2.0/token"

    def get_access_token(self, now: float | None = None) -> str:
        now = time.time() if now is None else now
        if self.cache.valid(now):
            _logger.debug("Using cached access token")
            return self.cache.token
        _logger.info("Refreshing access token")
        response = self.session.post(
            self._token_endpoint(),
            data={
                "client_id": self.config.client_id,
                "client_secret": self.config.client_secret,
                "refresh_token": self.config.refresh_token,
                "grant_type": "refresh_token",
                "scope": self.config.scope,
            },
            timeout=self.config.timeout_seconds,
        )
        if not response.ok:
            _logger.error("Token refresh failed: HTTP %s: %s", response.status_code, response.text[:300])
            raise TokenRefreshError(f"Token refresh failed: HTTP {response.status_code}")
        payload = response.json()
        access_token = str(payload.get("access_token", "") or "")
        if not access_token:
            raise TokenRefreshError("Token response did not contain an access_token.")
        expires_in = int(payload.get("expires_in") or 3600)
        self.cache.store(access_token, expires_in, now)
        rotated = payload.get("refresh_token")
        if rotated and rotated != self.config.refresh_token:
            _logger.warning("A new refresh_token was returned; update the configured value to rotate it.")
        return access_token
