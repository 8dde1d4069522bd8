"""Secret store client: validated, versioned, retried access to a backend."""

import logging
import threading
from contextlib import contextmanager
from typing import Dict, Iterator, List, Mapping, Union

from ..utils.errors import NotFound, StoreUnavailable, create_error_suggestions
from ..utils.retry import RetryPolicy
from .backends.base import SecretBackend
from .models import BundleMetadata, BundleType, SecretBundle, SecretValue, normalize_keys, validate_keys

logger = logging.getLogger(__name__)


class BundleLocks:
    """Per-bundle-name re-entrant locks.

    Holders of different names never block each other. The same thread may
    take a name it already holds, so the orchestrator can hold a name across
    a whole rotation while the client takes it again for the write.
    """

    def __init__(self):
        self._guard = threading.Lock()
        self._locks: Dict[str, threading.RLock] = {}

    def _lock_for(self, name: str) -> threading.RLock:
        with self._guard:
            lock = self._locks.get(name)
            if lock is None:
                lock = self._locks[name] = threading.RLock()
            return lock

    @contextmanager
    def hold(self, name: str) -> Iterator[None]:
        lock = self._lock_for(name)
        with lock:
            yield


class SecretStoreClient:
    """Reads and writes secret bundles against one backend."""

    def __init__(self, backend: SecretBackend, retry: RetryPolicy = None, locks: BundleLocks = None):
        """
        Initialize store client.

        Args:
            backend: Backing store implementation
            retry: Retry budget for ``StoreUnavailable`` failures
            locks: Shared per-name locks (one is created when omitted)
        """
        self.backend = backend
        self.retry = retry or RetryPolicy()
        self.locks = locks or BundleLocks()

    def _with_retry(self, description: str, func, bundle: str = None, operation: str = None):
        try:
            return self.retry.call(description, func)
        except StoreUnavailable as e:
            e.bundle = e.bundle or bundle
            e.operation = e.operation or operation
            if not e.details:
                e.details = f"gave up after {self.retry.attempts} attempts"
            raise

    def put(self, name: str, type: Union[BundleType, str], keys: Mapping[str, SecretValue]) -> SecretBundle:
        """
        Write or overwrite a bundle.

        Args:
            name: Bundle name
            type: Bundle type (enum or its name)
            keys: Key to value mapping; str values are UTF-8 encoded

        Returns:
            SecretBundle: The stored bundle with its new version

        Raises:
            ValidationError: If ``keys`` does not satisfy ``type``
            StoreUnavailable: If the backend stays unreachable
        """
        bundle_type = BundleType.parse(type)
        normalized = normalize_keys(keys)
        validate_keys(name, bundle_type, normalized)

        with self.locks.hold(name):
            current = self._with_retry(f"read {name}", lambda: self.backend.read(name), name, "put")
            bundle = SecretBundle(
                name=name,
                type=bundle_type,
                keys=normalized,
                version=(current.version if current else 0) + 1,
            )
            bundle.version = self._with_retry(f"write {name}", lambda: self.backend.write(bundle), name, "put")

        logger.info("Stored bundle %s version %d (%s)", name, bundle.version, self.backend.describe_location(name))
        return bundle

    def get(self, name: str) -> SecretBundle:
        """
        Read a bundle.

        Raises:
            NotFound: If the bundle does not exist
            StoreUnavailable: If the backend stays unreachable
        """
        bundle = self._with_retry(f"read {name}", lambda: self.backend.read(name), name, "get")
        if bundle is None:
            raise NotFound(
                f"Bundle not found: {name}",
                bundle=name,
                operation="get",
                suggestions=create_error_suggestions("bundle_missing", bundle=name),
            )
        return bundle

    def exists(self, name: str) -> bool:
        return self._with_retry(f"read {name}", lambda: self.backend.read(name), name, "get") is not None

    def delete(self, name: str) -> bool:
        """Delete a bundle; deleting an absent bundle is a no-op.

        Returns:
            bool: True if a bundle was removed
        """
        with self.locks.hold(name):
            removed = self._with_retry(f"delete {name}", lambda: self.backend.remove(name), name, "delete")
        if removed:
            logger.info("Deleted bundle %s", name)
        else:
            logger.debug("Bundle %s was already absent", name)
        return removed

    def list(self) -> List[BundleMetadata]:
        """Describe every bundle. Values are never part of the result."""
        return self._with_retry("list bundles", self.backend.enumerate, operation="list")

    def describe(self, name: str) -> Dict[str, object]:
        """Metadata plus per-key value sizes, without the values."""
        bundle = self.get(name)
        info = bundle.metadata().to_dict()
        info["sizes"] = {key: len(value) for key, value in sorted(bundle.keys.items())}
        info["location"] = self.backend.describe_location(name)
        return info

    def decode(self, name: str, key: str) -> bytes:
        """
        Return one secret value.

        Raises:
            NotFound: If the bundle or the key does not exist
        """
        bundle = self.get(name)
        if key not in bundle.keys:
            raise NotFound(
                f"Key '{key}' not found in bundle {name}",
                bundle=name,
                operation="decode",
                details=f"available keys: {', '.join(sorted(bundle.keys))}",
            )
        return bundle.keys[key]
