"""Utilities for SecretOps CLI."""

from .logging import setup_logging
from .retry import RetryPolicy

__all__ = ["RetryPolicy", "setup_logging"]
