"""
Light-weight HTTP helpers for interacting with a LORIS instance.

Only the low-level mechanics of *sending* a request belong here; no parsing
or business logic is performed.  The helpers keep URL construction, the
``Authorization: Bearer`` header and timeouts consistent across the package.

All helpers return the raw ``requests.Response`` object so that callers can
decide how to handle status codes and bodies.

Functions
---------
loris_get
    Perform a token-authenticated ``GET`` request.
loris_post
    Perform a token-authenticated ``POST`` request, supporting form data,
    multipart uploads and JSON bodies.
"""

import os
from typing import Any, Dict, Optional

import requests

DEFAULT_TIMEOUT = 60.0


def _default_timeout() -> Optional[float]:
    """Return the timeout configured via ``LORIS_TIMEOUT`` or ``DEFAULT_TIMEOUT``."""
    env = os.getenv("LORIS_TIMEOUT")
    if not env:
        return DEFAULT_TIMEOUT
    try:
        return float(env)
    except ValueError:
        return DEFAULT_TIMEOUT


def build_url(base_url: str, endpoint: str) -> str:
    """Join *base_url* and *endpoint* with exactly one slash."""
    return f"{base_url.rstrip('/')}/{endpoint.lstrip('/')}"


def _headers(token: Optional[str], accept: str) -> Dict[str, str]:
    headers = {"Accept": accept}
    if token:
        headers["Authorization"] = f"Bearer {token}"
    return headers


def loris_get(
    base_url: str,
    endpoint: str,
    token: Optional[str],
    params: Optional[Dict[str, Any]] = None,
    *,
    timeout: Optional[float] = None,
    verify: bool = True,
) -> requests.Response:
    """Send a GET request to a LORIS instance.

    Args:
        base_url: Root URL of the instance (e.g. ``"https://loris.example.org"``).
        endpoint: Path under ``base_url`` (e.g. ``"api/v0.0.4-dev/candidates"``).
        token: JWT obtained from :func:`loris_ingest.api.session.login`.
        params: Query parameters.
        timeout: Seconds; defaults to ``$LORIS_TIMEOUT`` or 60.
        verify: Verify TLS certificates.

    Returns:
        The raw :class:`requests.Response` object.
    """
    if timeout is None:
        timeout = _default_timeout()

    # No exception handling here; let callers decide how to react.
    return requests.get(
        build_url(base_url, endpoint),
        headers=_headers(token, "application/json"),
        params=params or {},
        timeout=timeout,
        verify=verify,
    )


def loris_post(
    base_url: str,
    endpoint: str,
    token: Optional[str],
    *,
    data: Optional[Dict[str, Any]] = None,
    files: Optional[Dict[str, Any]] = None,
    json: Optional[Any] = None,
    timeout: Optional[float] = None,
    verify: bool = True,
    accept: str = "application/json",
) -> requests.Response:
    """Send a POST request to a LORIS instance.

    Args:
        base_url: Root URL of the instance.
        endpoint: Path under ``base_url``.
        token: JWT or ``None`` for the login call itself.
        data: Form fields (``multipart/form-data`` when *files* is given).
        files: Mapping of form field → ``(filename, fileobj, mimetype)``.
        json: JSON-serialisable body; mutually exclusive with *data*/*files*.
        timeout: Seconds; defaults to ``$LORIS_TIMEOUT`` or 60.
        verify: Verify TLS certificates.
        accept: Value of the ``Accept`` header.

    Returns:
        The raw :class:`requests.Response` object.
    """
    if timeout is None:
        timeout = _default_timeout()

    return requests.post(
        build_url(base_url, endpoint),
        headers=_headers(token, accept),
        data=data,
        files=files,
        json=json,
        timeout=timeout,
        verify=verify,
    )
