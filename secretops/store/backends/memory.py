"""In-process secret backend used for tests and dry runs."""

import copy
import threading
from typing import Dict, List, Optional

from ..models import BundleMetadata, SecretBundle
from .base import SecretBackend


class MemoryBackend(SecretBackend):
    """Keeps bundles in a dictionary."""

    name = "memory"

    def __init__(self, bundles: Optional[Dict[str, SecretBundle]] = None):
        self._bundles: Dict[str, SecretBundle] = {}
        self._lock = threading.Lock()
        for bundle in (bundles or {}).values():
            self._bundles[bundle.name] = copy.deepcopy(bundle)

    def read(self, name: str) -> Optional[SecretBundle]:
        with self._lock:
            bundle = self._bundles.get(name)
            return copy.deepcopy(bundle) if bundle else None

    def write(self, bundle: SecretBundle) -> int:
        with self._lock:
            self._bundles[bundle.name] = copy.deepcopy(bundle)
            return bundle.version

    def remove(self, name: str) -> bool:
        with self._lock:
            return self._bundles.pop(name, None) is not None

    def enumerate(self) -> List[BundleMetadata]:
        with self._lock:
            return [bundle.metadata() for _, bundle in sorted(self._bundles.items())]
