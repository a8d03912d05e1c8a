"""
Ordered upload transports.

Some LORIS deployments expose the instrument manager through the versioned
REST API, others only through the module URL.  Each route is a
:class:`Transport`; a :class:`TransportChain` tries them in order and keeps a
structured ``(name, reason)`` record of every failed attempt.

A transport *fails* (and the next one is tried) when the request raises a
network error, the endpoint is missing (404/405) or the server errors (5xx).
Any other answer is definitive and returned as is, including HTTP 409,
which callers treat as a conflict.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Dict, List, Optional, Protocol, Sequence, Tuple

import requests

from loris_ingest.errors import TransportExhausted
from loris_ingest.models import UploadResult

from .client import loris_post
from .normalize import from_response

logger = logging.getLogger(__name__)

#: Status codes meaning "this route is not available here, try the next one".
RETRY_NEXT_STATUSES = frozenset({404, 405, 500, 502, 503, 504})


@dataclass
class UploadRequest:
    """One multipart POST against a module path such as ``instrument_manager/instrument_data``."""

    path: str
    fields: Dict[str, str] = field(default_factory=dict)
    file_field: Optional[str] = None
    file_path: Optional[Path] = None
    mimetype: str = "text/csv"


class Transport(Protocol):
    name: str

    def attempt(self, request: UploadRequest) -> UploadResult: ...


class HttpTransport:
    """Multipart POST of an :class:`UploadRequest` under a fixed URL prefix.

    Args:
        name: Label used in failure reports (``"api"``, ``"module"``).
        base_url: Root URL of the LORIS instance.
        token: Callable returning a valid bearer token.
        prefix: Path segment inserted before ``request.path``.
    """

    def __init__(
        self,
        name: str,
        base_url: str,
        token: Callable[[], str],
        *,
        prefix: str = "",
        timeout: Optional[float] = None,
        verify: bool = True,
    ) -> None:
        self.name = name
        self.base_url = base_url
        self._token = token
        self.prefix = prefix.strip("/")
        self.timeout = timeout
        self.verify = verify

    def endpoint(self, request: UploadRequest) -> str:
        path = request.path.strip("/")
        return f"{self.prefix}/{path}" if self.prefix else path

    def attempt(self, request: UploadRequest) -> UploadResult:
        files = None
        handle = None
        try:
            if request.file_field and request.file_path is not None:
                handle = open(request.file_path, "rb")
                files = {request.file_field: (request.file_path.name, handle, request.mimetype)}
            resp = loris_post(
                self.base_url,
                self.endpoint(request),
                self._token(),
                data=request.fields,
                files=files,
                timeout=self.timeout,
                verify=self.verify,
            )
        finally:
            if handle is not None:
                handle.close()
        return from_response(resp)


class TransportChain:
    """Try each transport in order until one gives a definitive answer."""

    def __init__(self, transports: Sequence[Transport]) -> None:
        self.transports = list(transports)

    def attempt(self, request: UploadRequest) -> UploadResult:
        """Return the first definitive :class:`UploadResult`.

        Raises:
            TransportExhausted: When every transport failed; ``failures``
                lists ``(transport name, reason)`` in attempt order.
        """
        failures: List[Tuple[str, str]] = []
        for transport in self.transports:
            try:
                result = transport.attempt(request)
            except requests.RequestException as exc:
                failures.append((transport.name, f"{type(exc).__name__}: {exc}"))
                logger.debug("Transport %s failed for %s: %s", transport.name, request.path, exc)
                continue
            if result.status_code in RETRY_NEXT_STATUSES:
                failures.append((transport.name, f"HTTP {result.status_code}: {result.message}"))
                logger.debug("Transport %s answered HTTP %s; trying next", transport.name, result.status_code)
                continue
            if failures:
                logger.info("Upload to %s succeeded via %s after %d failed route(s)",
                            request.path, transport.name, len(failures))
            return result
        raise TransportExhausted(failures)


def build_chain(
    names: Sequence[str],
    base_url: str,
    token: Callable[[], str],
    *,
    api_version: str,
    timeout: Optional[float] = None,
    verify: bool = True,
) -> TransportChain:
    """Build a chain from configured route names (``"api"`` and/or ``"module"``).

    Raises:
        ValueError: For an unknown route name.
    """
    prefixes = {"api": f"api/{api_version}", "module": ""}
    transports: List[Transport] = []
    for name in names:
        if name not in prefixes:
            raise ValueError(f"Unknown upload transport {name!r} (expected one of {sorted(prefixes)})")
        transports.append(
            HttpTransport(name, base_url, token, prefix=prefixes[name], timeout=timeout, verify=verify)
        )
    return TransportChain(transports)
