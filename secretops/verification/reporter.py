"""Reference verification, workload health and audit reporting."""

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Dict, List, Optional, Sequence, Tuple

from ..lifecycle.audit import AuditLog, RotationRecord
from ..store.client import SecretStoreClient
from ..store.models import SecretBundle
from ..utils.errors import NotFound, ReferenceDrift, RolloutError, StoreError
from ..workloads.controller import WorkloadController
from ..workloads.models import Reference, Workload

logger = logging.getLogger(__name__)

WHOLE_BUNDLE = "*"


class ReferenceStatus(Enum):
    OK = "OK"
    MISSING_BUNDLE = "MissingBundle"
    MISSING_KEY = "MissingKey"


@dataclass(frozen=True)
class ReferenceCheck:
    """Resolution status of one workload reference."""

    workload: Workload
    reference: Reference
    status: ReferenceStatus
    source: str = "declared"

    @property
    def ok(self) -> bool:
        return self.status is ReferenceStatus.OK

    def to_dict(self) -> Dict[str, Optional[str]]:
        return {
            "workload": self.workload.name,
            "bundle": self.reference.bundle,
            "key": self.reference.key,
            "env": self.reference.env,
            "status": self.status.value,
            "source": self.source,
        }


@dataclass(frozen=True)
class WorkloadHealth:
    workload: Workload
    ready: bool
    error: Optional[str] = None


class VerificationReporter:
    """Checks that declared configuration matches the backing store."""

    def __init__(
        self,
        store: SecretStoreClient,
        workloads: Sequence[Workload],
        controller: Optional[WorkloadController] = None,
        audit: Optional[AuditLog] = None,
    ):
        self.store = store
        self.workloads = list(workloads)
        self.controller = controller
        self.audit = audit or AuditLog()

    def _resolve(self, reference: Reference, cache: Dict[str, Optional[SecretBundle]]) -> ReferenceStatus:
        if reference.bundle not in cache:
            try:
                cache[reference.bundle] = self.store.get(reference.bundle)
            except NotFound:
                cache[reference.bundle] = None

        bundle = cache[reference.bundle]
        if bundle is None:
            return ReferenceStatus.MISSING_BUNDLE
        if reference.key != WHOLE_BUNDLE and reference.key not in bundle.keys:
            return ReferenceStatus.MISSING_KEY
        return ReferenceStatus.OK

    def verify_references(self, include_live: bool = False) -> List[ReferenceCheck]:
        """
        Check every declared reference against the store.

        Args:
            include_live: Also check references read from the running
                workloads (requires a controller)

        Returns:
            List[ReferenceCheck]: One entry per reference, in declaration order

        Raises:
            StoreUnavailable: If the store cannot be reached
        """
        cache: Dict[str, Optional[SecretBundle]] = {}
        checks = []

        for workload in self.workloads:
            for reference in workload.references:
                checks.append(ReferenceCheck(workload, reference, self._resolve(reference, cache)))

        if include_live and self.controller is not None:
            for workload, reference in self.live_references():
                if reference in workload.references:
                    continue
                checks.append(ReferenceCheck(workload, reference, self._resolve(reference, cache), source="live"))

        for check in checks:
            if not check.ok:
                logger.warning("%s: %s -> %s", check.workload, check.reference, check.status.value)
        return checks

    def live_references(self) -> List[Tuple[Workload, Reference]]:
        """References found in the running objects of every declared workload."""
        if self.controller is None:
            return []
        found = []
        for workload in self.workloads:
            try:
                found.extend((workload, ref) for ref in self.controller.live_references(workload))
            except (RolloutError, StoreError) as e:
                logger.warning("Cannot inspect %s: %s", workload, e.message)
        return found

    def assert_no_drift(self, include_live: bool = False) -> List[ReferenceCheck]:
        """
        Verify references and raise when any does not resolve.

        Raises:
            ReferenceDrift: Listing each dangling reference
        """
        checks = self.verify_references(include_live=include_live)
        drifted = [check for check in checks if not check.ok]
        if drifted:
            raise ReferenceDrift(
                f"{len(drifted)} secret reference(s) do not resolve",
                drifted=drifted,
                details="; ".join(f"{c.workload.name}: {c.reference} ({c.status.value})" for c in drifted),
                operation="verify",
            )
        return checks

    def verify_workload_health(self, bundle_name: str) -> List[WorkloadHealth]:
        """Readiness of every workload that references ``bundle_name``."""
        if self.controller is None:
            raise RolloutError("No workload controller configured", bundle=bundle_name, operation="health")

        health = []
        for workload in self.workloads:
            if not workload.references_bundle(bundle_name):
                continue
            try:
                health.append(WorkloadHealth(workload, self.controller.is_ready(workload)))
            except (RolloutError, StoreError) as e:
                logger.warning("Cannot check readiness of %s: %s", workload, e.message)
                health.append(WorkloadHealth(workload, False, error=e.message))
        return health

    def audit_trail(self, bundle_name: str) -> Tuple[RotationRecord, ...]:
        """Rotation records for ``bundle_name``, oldest first."""
        return self.audit.records(bundle_name)
