"""
OAuth2 client-credentials cache for the Bank of Georgia payment gateway.

One instance is built per process at startup and shared by every gateway
call. The gateway reports ``expires_in`` as an absolute instant, not as a
lifetime, so it is stored as the expiry without adding the current time.
"""

import logging
import threading
import time

import requests

from carapp_billing.errors import AuthConfigError, AuthExchangeError

logger = logging.getLogger(__name__)

# Epoch values at or above this are milliseconds (year 5138 in seconds).
_MILLISECONDS_THRESHOLD = 10 ** 11


def _to_epoch_seconds(expires_in):
    value = float(expires_in)
    if value >= _MILLISECONDS_THRESHOLD:
        return value / 1000.0
    return value


class CredentialCache:
    def __init__(self, client_id, client_secret, token_url, session=None, timeout=30, clock=time.time):
        if not client_id or not client_secret:
            raise AuthConfigError("BOG_CLIENT_ID and BOG_CLIENT_SECRET must be configured")

        self._client_id = client_id
        self._client_secret = client_secret
        self._token_url = token_url
        self._session = session or requests.Session()
        self._timeout = timeout
        self._clock = clock

        self._lock = threading.Lock()
        self._token = None
        self._expires_at = None

    @property
    def expires_at(self):
        """Cached expiry as epoch seconds, or None when nothing is cached."""
        return self._expires_at

    def is_valid(self):
        return self._token is not None and self._expires_at is not None and self._expires_at > self._clock()

    def get_token(self) -> str:
        if self.is_valid():
            return self._token

        with self._lock:
            # Another caller may have refreshed while we waited.
            if self.is_valid():
                return self._token

            token, expires_at = self._exchange()
            self._token = token
            self._expires_at = expires_at
            return token

    def invalidate(self):
        with self._lock:
            self._token = None
            self._expires_at = None
        logger.info("Gateway access token cache cleared")

    def _exchange(self):
        logger.info("Requesting gateway access token")
        try:
            response = self._session.post(
                self._token_url,
                auth=(self._client_id, self._client_secret),
                data={"grant_type": "client_credentials"},
                headers={"Content-Type": "application/x-www-form-urlencoded"},
                timeout=self._timeout,
            )
        except requests.RequestException as e:
            logger.error(f"Gateway token request failed: {e}")
            raise AuthExchangeError(f"Token request failed: {e}") from e

        if not 200 <= response.status_code < 300:
            logger.error(
                "Gateway token request rejected",
                extra={"status_code": response.status_code},
            )
            raise AuthExchangeError(
                f"Token request rejected with HTTP {response.status_code}",
                status_code=response.status_code,
            )

        try:
            payload = response.json()
        except ValueError as e:
            raise AuthExchangeError("Token response is not valid JSON", status_code=response.status_code) from e

        token = payload.get("access_token")
        expires_in = payload.get("expires_in")
        if not token or expires_in is None:
            raise AuthExchangeError("Token response is missing access_token or expires_in")

        try:
            expires_at = _to_epoch_seconds(expires_in)
        except (TypeError, ValueError) as e:
            raise AuthExchangeError(f"Unreadable expires_in: {expires_in!r}") from e

        logger.info("Gateway access token obtained", extra={"expires_at": expires_at})
        return token, expires_at
