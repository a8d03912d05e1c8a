"""Exception hierarchy shared by the API layer, the sync engine and the CLI.

Only two failures are fatal to a whole run: :class:`ConfigurationError` and
:class:`AuthenticationError`.  Everything else is raised *inside* a single
unit's processing and converted into a ``failed``/``skipped`` outcome by
:class:`loris_ingest.core.engine.SyncEngine`.
"""

from __future__ import annotations

from typing import List, Optional, Tuple


class LorisIngestError(Exception):
    """Base class for every error raised by *loris_ingest*."""


class ConfigurationError(LorisIngestError):
    """Raised when the client configuration or a ``project.json`` is unusable."""


class AuthenticationError(LorisIngestError):
    """Raised when no valid LORIS token can be obtained."""


class ValidationError(LorisIngestError):
    """Local, pre-network rejection of a unit of work.

    The message is the report reason and should not vary per unit; anything
    unit-specific (which column, which value) goes into *detail*.
    """

    def __init__(self, reason: str, detail: str = "") -> None:
        super().__init__(reason)
        self.detail = detail


class UnitSkipped(LorisIngestError):
    """Local decision to leave a unit alone (excluded file, empty file …)."""

    def __init__(self, reason: str) -> None:
        super().__init__(reason)
        self.reason = reason


class PersistenceError(LorisIngestError):
    """Raised when a tracker file cannot be read or written."""


class RemoteError(LorisIngestError):
    """Non-2xx answer (or unusable body) returned by the LORIS instance.

    Attributes:
        status_code: HTTP status of the failing response, ``None`` when the
            request never produced one.
    """

    def __init__(self, message: str, status_code: Optional[int] = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class TransientRemoteError(RemoteError):
    """Network error, timeout or HTTP 5xx."""


class ConflictError(RemoteError):
    """HTTP 409 – the identifier or resource already exists remotely."""

    def __init__(self, message: str = "already exists", status_code: int = 409) -> None:
        super().__init__(message, status_code)


class TransportExhausted(RemoteError):
    """Every configured upload transport failed.

    Attributes:
        failures: Ordered ``(transport name, reason)`` pairs, one per attempt.
    """

    def __init__(self, failures: List[Tuple[str, str]]) -> None:
        detail = "; ".join(f"{name}: {reason}" for name, reason in failures)
        super().__init__(f"all transports failed ({detail})" if failures else "no transport configured")
        self.failures = failures
