"""HTTP access to a LORIS instance."""

from .loris import LorisClient
from .session import LorisSession, login

__all__ = ["LorisClient", "LorisSession", "login"]
