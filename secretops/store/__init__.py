"""Secret bundle storage for SecretOps."""

from .backends import create_backend
from .client import BundleLocks, SecretStoreClient
from .generator import SecretGenerator
from .models import BundleMetadata, BundleSpec, BundleType, SecretBundle

__all__ = [
    "BundleLocks",
    "BundleMetadata",
    "BundleSpec",
    "BundleType",
    "SecretBundle",
    "SecretGenerator",
    "SecretStoreClient",
    "create_backend",
]
