"""
Session management for the LORIS REST API.

LORIS issues a JWT in exchange for a username/password POST to
``/api/<version>/login``.  Tokens expire, so :class:`LorisSession` keeps the
credentials around and transparently logs in again once the configured
lifetime has elapsed.

All helpers raise :class:`~loris_ingest.errors.AuthenticationError` for
*expected* authentication failures (bad credentials, missing token field).
Network-level issues surface unchanged as
:class:`requests.exceptions.RequestException`.
"""

from __future__ import annotations

import logging
import time
from typing import Optional

import requests

from loris_ingest.errors import AuthenticationError

from .client import loris_post

logger = logging.getLogger(__name__)

DEFAULT_API_VERSION = "v0.0.4-dev"
DEFAULT_TOKEN_EXPIRY_MINUTES = 55


# ----------------------------------------------------------------------
# Low-level login
# ----------------------------------------------------------------------
def login(
    base_url: str,
    username: str,
    password: str,
    *,
    api_version: str = DEFAULT_API_VERSION,
    timeout: Optional[float] = None,
    verify: bool = True,
) -> str:
    """Return a freshly-minted JWT obtained via ``POST /api/<version>/login``.

    Args:
        base_url: Root URL of the LORIS instance.
        username: LORIS account name.
        password: LORIS password.
        api_version: REST API version segment.

    Returns:
        The token string to send as ``Authorization: Bearer <token>``.

    Raises:
        AuthenticationError: On 401/403 or when the response lacks ``token``.
        requests.exceptions.HTTPError: For any other non-2xx status.
    """
    if not (username and password):
        raise AuthenticationError("LORIS username/password not configured")

    resp = loris_post(
        base_url,
        f"api/{api_version}/login",
        None,
        json={"username": username, "password": password},
        timeout=timeout,
        verify=verify,
    )
    if resp.status_code in (401, 403):
        raise AuthenticationError(f"LORIS rejected credentials for {username!r} (HTTP {resp.status_code})")
    resp.raise_for_status()

    try:
        payload = resp.json()
    except ValueError as exc:
        raise AuthenticationError(f"Unexpected login response: {resp.text[:200]!r}") from exc
    token = payload.get("token") if isinstance(payload, dict) else None
    if not token:
        raise AuthenticationError(f"Unexpected login response: {payload}")

    logger.info("Retrieved new LORIS token for user %r", username)
    return token


# ----------------------------------------------------------------------
# Token holder used by LorisClient
# ----------------------------------------------------------------------
class LorisSession:
    """Hold a token and renew it once it is older than *expiry_minutes*."""

    def __init__(
        self,
        base_url: str,
        username: str,
        password: str,
        *,
        api_version: str = DEFAULT_API_VERSION,
        expiry_minutes: int = DEFAULT_TOKEN_EXPIRY_MINUTES,
        timeout: Optional[float] = None,
        verify: bool = True,
    ) -> None:
        self.base_url = base_url
        self.username = username
        self._password = password
        self.api_version = api_version
        self.expiry_seconds = max(1, expiry_minutes) * 60
        self.timeout = timeout
        self.verify = verify
        self._token: Optional[str] = None
        self._obtained_at = 0.0

    def authenticate(self) -> str:
        """Log in now and return the new token.

        Raises:
            AuthenticationError: When the login fails for any reason,
                including network errors.
        """
        try:
            token = login(
                self.base_url,
                self.username,
                self._password,
                api_version=self.api_version,
                timeout=self.timeout,
                verify=self.verify,
            )
        except requests.RequestException as exc:
            raise AuthenticationError(f"Cannot reach LORIS at {self.base_url}: {exc}") from exc
        self._token = token
        self._obtained_at = time.monotonic()
        return token

    @property
    def expired(self) -> bool:
        return self._token is None or time.monotonic() - self._obtained_at >= self.expiry_seconds

    @property
    def token(self) -> str:
        """Current token, logging in first when missing or expired."""
        if self.expired:
            if self._token is not None:
                logger.info("LORIS token expired; re-authenticating")
            return self.authenticate()
        return self._token  # type: ignore[return-value]
