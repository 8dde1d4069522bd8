"""Lifecycle orchestration: create, rotate, update and delete secret bundles."""

import logging
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, Iterable, List, Mapping, Optional, Sequence, Tuple

from ..store.client import SecretStoreClient
from ..store.models import BundleSpec, BundleType, SecretValue, normalize_keys
from ..utils.errors import (
    NotFound,
    RolloutError,
    RolloutTimeout,
    SecretOpsError,
    create_error_suggestions,
)
from ..workloads.controller import WorkloadController
from ..workloads.models import Workload, referencing, restart_plan
from .audit import AuditLog, RotationRecord, current_initiator, utc_timestamp

logger = logging.getLogger(__name__)

DEFAULT_ROLLOUT_TIMEOUT = 300.0


class OperationState(Enum):
    PENDING = "PENDING"
    APPLYING = "APPLYING"
    VERIFYING = "VERIFYING"
    COMPLETE = "COMPLETE"
    FAILED = "FAILED"


@dataclass
class WorkloadOutcome:
    """What happened to one workload during restart propagation."""

    workload: str
    tier: str
    restarted: bool = False
    ready: Optional[bool] = None
    error: Optional[str] = None


@dataclass
class OperationResult:
    """Outcome of one orchestrator operation."""

    operation: str
    bundles: List[str]
    state: OperationState = OperationState.PENDING
    stage: Optional[OperationState] = None
    succeeded: List[str] = field(default_factory=list)
    failed: Dict[str, str] = field(default_factory=dict)
    skipped: List[str] = field(default_factory=list)
    error: Optional[SecretOpsError] = None
    restarts: List[WorkloadOutcome] = field(default_factory=list)
    events: List[Tuple[str, str]] = field(default_factory=list)
    record: Optional[RotationRecord] = None
    warnings: List[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return self.state is OperationState.COMPLETE

    def transition(self, state: OperationState) -> None:
        logger.debug("%s %s: %s -> %s", self.operation, ",".join(self.bundles), self.state.value, state.value)
        self.state = state

    def fail(self, error: SecretOpsError, stage: Optional[OperationState] = None) -> "OperationResult":
        """Mark the operation FAILED at ``stage`` (default: its current stage)."""
        self.stage = stage or self.state
        error.operation = error.operation or self.operation
        error.stage = error.stage or self.stage.value
        self.error = error
        self.transition(OperationState.FAILED)
        return self

    def complete(self) -> "OperationResult":
        if self.failed:
            self.stage = self.stage or self.state
            self.transition(OperationState.FAILED)
        else:
            self.transition(OperationState.COMPLETE)
        return self


class LifecycleOrchestrator:
    """Sequences multi-step secret operations across dependent workloads."""

    def __init__(
        self,
        store: SecretStoreClient,
        workloads: Optional[Sequence[Workload]] = None,
        controller: Optional[WorkloadController] = None,
        audit: Optional[AuditLog] = None,
        specs: Optional[Mapping[str, BundleSpec]] = None,
        rollout_timeout: float = DEFAULT_ROLLOUT_TIMEOUT,
    ):
        """
        Initialize orchestrator.

        Args:
            store: Secret store client used for every read and write
            workloads: Declared workloads and their references
            controller: Restart/readiness API; restarts are refused without one
            audit: Audit log receiving rotation records
            specs: Declared bundle specs, used to re-render templated keys
            rollout_timeout: Seconds each workload gets to become ready
        """
        self.store = store
        self.workloads = list(workloads or [])
        self.controller = controller
        self.audit = audit or AuditLog()
        self.specs = dict(specs or {})
        self.rollout_timeout = rollout_timeout

    def create_all(
        self,
        specs: Iterable[BundleSpec],
        halt_on_failure: bool = False,
        parallel: int = 1,
    ) -> OperationResult:
        """
        Apply bundle specs in the order given.

        Every spec is attempted and the result lists which succeeded and
        which failed. Nothing that was applied is rolled back.

        Args:
            specs: Bundle specs to apply
            halt_on_failure: Stop at the first failure and report the rest as skipped
            parallel: Apply up to this many independent specs at once

        Returns:
            OperationResult: COMPLETE when every spec was applied
        """
        specs = list(specs)
        result = OperationResult("create", [spec.name for spec in specs])
        result.transition(OperationState.APPLYING)

        def apply(spec: BundleSpec) -> Optional[SecretOpsError]:
            try:
                bundle = self.store.put(spec.name, spec.type, spec.render())
            except SecretOpsError as e:
                e.bundle = e.bundle or spec.name
                return e
            result.events.append(("applied", spec.name))
            logger.info("Created %s (version %d)", spec.name, bundle.version)
            return None

        if halt_on_failure or parallel <= 1:
            outcomes: List[Tuple[BundleSpec, Optional[SecretOpsError]]] = []
            for index, spec in enumerate(specs):
                error = apply(spec)
                outcomes.append((spec, error))
                if error and halt_on_failure:
                    result.skipped = [s.name for s in specs[index + 1:]]
                    break
        else:
            with ThreadPoolExecutor(max_workers=parallel) as pool:
                outcomes = list(zip(specs, pool.map(apply, specs)))

        for spec, error in outcomes:
            if error is None:
                result.succeeded.append(spec.name)
            else:
                result.failed[spec.name] = error.message + (f": {error.details}" if error.details else "")
                result.error = result.error or error

        if result.failed:
            result.stage = OperationState.APPLYING
            return result.complete()

        result.transition(OperationState.VERIFYING)
        for name in result.succeeded:
            try:
                if not self.store.exists(name):
                    result.failed[name] = "bundle missing after apply"
            except SecretOpsError as e:
                result.failed[name] = e.message
        return result.complete()

    def rotate(
        self,
        bundle_name: str,
        new_keys: Mapping[str, SecretValue],
        initiator: Optional[str] = None,
    ) -> OperationResult:
        """
        Replace secret values and restart the workloads that use them.

        ``new_keys`` is merged over the current keys and templated keys are
        re-rendered. Consumers restart tier by tier, data tier first, and a
        tier must be ready before the next one is restarted. A failed
        restart leaves the new value in place; it is never rolled back.

        Returns:
            OperationResult: FAILED at APPLYING when nothing was written,
            FAILED at VERIFYING when the value changed but workloads did not
            all become ready or its audit record could not be stored
        """
        result = OperationResult("rotate", [bundle_name])

        with self.store.locks.hold(bundle_name):
            result.transition(OperationState.APPLYING)
            try:
                self.audit.check()
                current = self.store.get(bundle_name)
                merged = dict(current.keys)
                merged.update(normalize_keys(new_keys))
                spec = self.specs.get(bundle_name)
                if spec is not None:
                    merged = spec.render(merged)
                bundle = self.store.put(bundle_name, current.type, merged)
            except SecretOpsError as e:
                e.bundle = e.bundle or bundle_name
                return result.fail(e)

            result.succeeded.append(bundle_name)
            result.events.append(("written", bundle_name))
            audit_error = self._record(result, current.version, bundle.version, initiator)
            self._propagate(bundle_name, result)
            if audit_error is not None and result.ok:
                result.fail(audit_error, stage=OperationState.VERIFYING)

        return result

    def update(
        self,
        bundle_name: str,
        keys: Mapping[str, SecretValue],
        bundle_type: Optional[BundleType] = None,
        propagate: bool = False,
        initiator: Optional[str] = None,
    ) -> OperationResult:
        """
        Replace a bundle's keys, creating the bundle when it does not exist.

        Workloads are only restarted when ``propagate`` is set; they then
        restart in the same tier order as a rotation.
        """
        result = OperationResult("update", [bundle_name])

        with self.store.locks.hold(bundle_name):
            result.transition(OperationState.APPLYING)
            spec = self.specs.get(bundle_name)
            try:
                self.audit.check()
                try:
                    current = self.store.get(bundle_name)
                except NotFound:
                    current = None
                new_type = bundle_type or (current.type if current else None) or (spec.type if spec else BundleType.GENERIC)
                new_keys = normalize_keys(keys)
                if spec is not None:
                    new_keys = spec.render(new_keys)
                bundle = self.store.put(bundle_name, new_type, new_keys)
            except SecretOpsError as e:
                e.bundle = e.bundle or bundle_name
                return result.fail(e)

            result.succeeded.append(bundle_name)
            result.events.append(("written", bundle_name))
            audit_error = self._record(result, current.version if current else 0, bundle.version, initiator)

            if propagate:
                self._propagate(bundle_name, result)
            else:
                result.transition(OperationState.VERIFYING)
                result.complete()
            if audit_error is not None and result.ok:
                result.fail(audit_error, stage=OperationState.VERIFYING)

        return result

    def delete(self, bundle_names: Iterable[str]) -> OperationResult:
        """
        Remove bundles unconditionally.

        Bundles still referenced by declared workloads are deleted anyway;
        each such case is logged and listed in ``warnings``.
        """
        names = list(bundle_names)
        result = OperationResult("delete", names)
        result.transition(OperationState.APPLYING)

        for name in names:
            users = referencing(self.workloads, name)
            if users:
                warning = f"{name} is still referenced by {', '.join(sorted(users))}"
                logger.warning("Deleting referenced bundle: %s", warning)
                result.warnings.append(warning)
            try:
                removed = self.store.delete(name)
            except SecretOpsError as e:
                result.failed[name] = e.message
                result.error = result.error or e
                continue
            result.succeeded.append(name)
            result.events.append(("deleted" if removed else "absent", name))

        if result.failed:
            result.stage = OperationState.APPLYING
            return result.complete()

        result.transition(OperationState.VERIFYING)
        return result.complete()

    def propagate(self, bundle_name: str) -> OperationResult:
        """Re-run only the restart phase for a bundle that was already written."""
        result = OperationResult("propagate", [bundle_name])
        with self.store.locks.hold(bundle_name):
            self._propagate(bundle_name, result)
        return result

    def _record(
        self,
        result: OperationResult,
        old_version: int,
        new_version: int,
        initiator: Optional[str],
    ) -> Optional[SecretOpsError]:
        """
        Append the audit record for a write that already happened.

        The write stays committed when the append fails: the error is
        returned, listed in ``warnings`` and ``result.record`` stays unset.
        """
        bundle_name = result.bundles[0]
        record = RotationRecord(
            bundle_name=bundle_name,
            old_version=old_version,
            new_version=new_version,
            timestamp=utc_timestamp(),
            initiator=initiator or current_initiator(),
            operation=result.operation,
        )
        try:
            self.audit.append(record)
        except SecretOpsError as e:
            logger.error("Audit record for %s v%d -> v%d was not stored: %s", bundle_name, old_version, new_version, e.message)
            result.warnings.append(f"audit record {bundle_name} v{old_version} -> v{new_version} was not stored: {e.message}")
            e.bundle = e.bundle or bundle_name
            return e
        result.record = record
        return None

    def _propagate(self, bundle_name: str, result: OperationResult) -> None:
        """Restart referencing workloads tier by tier and wait for readiness."""
        result.transition(OperationState.VERIFYING)
        plan = restart_plan(self.workloads, bundle_name)

        if not plan:
            logger.info("No declared workload references %s", bundle_name)
            result.complete()
            return

        if self.controller is None:
            result.fail(RolloutError(f"No workload controller configured to restart consumers of {bundle_name}", bundle=bundle_name))
            return

        for index, (tier, members) in enumerate(plan):
            outcomes = [WorkloadOutcome(workload=w.name, tier=tier.value) for w in members]
            result.restarts.extend(outcomes)

            active = None
            try:
                for workload, outcome in zip(members, outcomes):
                    active = outcome
                    self.controller.restart(workload)
                    outcome.restarted = True
                    result.events.append(("restart", workload.name))

                for workload, outcome in zip(members, outcomes):
                    active = outcome
                    outcome.ready = self.controller.wait_until_ready(workload, self.rollout_timeout)
                    if not outcome.ready:
                        raise RolloutTimeout(
                            f"{workload} did not become ready within {self.rollout_timeout:g}s",
                            bundle=bundle_name,
                            details=f"{bundle_name} is already at its new version and was not rolled back",
                            suggestions=create_error_suggestions("rollout_timeout"),
                        )
                    result.events.append(("ready", workload.name))
            except SecretOpsError as e:
                for outcome in outcomes:
                    if outcome is active:
                        outcome.error = e.message
                    elif not outcome.ready:
                        outcome.error = "not verified" if outcome.restarted else "not restarted"
                for later_tier, later in plan[index + 1:]:
                    for workload in later:
                        result.restarts.append(WorkloadOutcome(workload=workload.name, tier=later_tier.value, error="skipped"))
                        result.skipped.append(workload.name)
                e.bundle = e.bundle or bundle_name
                result.fail(e)
                return

        result.complete()
