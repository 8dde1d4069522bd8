"""Backend interface shared by every secret store implementation."""

from abc import ABC, abstractmethod
from typing import List, Optional

from ..models import BundleMetadata, SecretBundle


class SecretBackend(ABC):
    """Raw read/write access to one backing store.

    Backends do no validation and no retrying; ``SecretStoreClient`` layers
    both on top. Transient connectivity problems must surface as
    ``StoreUnavailable`` so the client can retry them.
    """

    name = "abstract"

    @abstractmethod
    def read(self, name: str) -> Optional[SecretBundle]:
        """Return the bundle, or None when it does not exist."""

    @abstractmethod
    def write(self, bundle: SecretBundle) -> int:
        """Store ``bundle`` and return the version the store now reports."""

    @abstractmethod
    def remove(self, name: str) -> bool:
        """Delete a bundle; return False when there was nothing to delete."""

    @abstractmethod
    def enumerate(self) -> List[BundleMetadata]:
        """Describe every bundle without loading values into the result."""

    def describe_location(self, name: str) -> str:
        return f"{self.name}:{name}"
