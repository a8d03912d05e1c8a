"""Idempotent ingestion of study data into a LORIS data-management instance."""

__version__ = "0.3.0"
