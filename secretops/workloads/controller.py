"""Workload restart and readiness checks."""

import logging
import time
from abc import ABC, abstractmethod
from typing import Any, Callable, Dict, List, Optional

from ..utils.errors import RolloutError, StoreError, StoreUnavailable
from ..utils.kubectl import Kubectl
from .models import Reference, Workload

logger = logging.getLogger(__name__)


class WorkloadController(ABC):
    """Triggers rollouts and reports readiness of workloads."""

    def __init__(
        self,
        poll_interval: float = 5.0,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.poll_interval = poll_interval
        self.clock = clock
        self.sleep = sleep

    @abstractmethod
    def restart(self, workload: Workload) -> None:
        """Trigger a rolling restart.

        Raises:
            RolloutError: If the restart could not be triggered
        """

    @abstractmethod
    def is_ready(self, workload: Workload) -> bool:
        """Whether the latest rollout of the workload is fully ready."""

    def live_references(self, workload: Workload) -> List[Reference]:
        """References found in the running object, when the platform exposes them."""
        return []

    def wait_until_ready(self, workload: Workload, timeout: float) -> bool:
        """
        Poll until the workload is ready.

        Args:
            workload: Workload to wait for
            timeout: Maximum time to wait in seconds

        Returns:
            bool: True if the workload became ready within ``timeout``
        """
        start_time = self.clock()

        while True:
            try:
                if self.is_ready(workload):
                    logger.debug("%s is ready", workload)
                    return True
            except StoreUnavailable as e:
                # A blip in API access is not a verdict on the workload
                logger.warning("Readiness check of %s failed: %s", workload, e.message)

            if self.clock() - start_time >= timeout:
                return False
            self.sleep(self.poll_interval)


class KubernetesWorkloadController(WorkloadController):
    """Drives workloads through ``kubectl rollout``."""

    def __init__(self, kubectl: Kubectl, **kwargs):
        super().__init__(**kwargs)
        self.kubectl = kubectl

    def restart(self, workload: Workload) -> None:
        try:
            self.kubectl.check(["rollout", "restart", workload.resource], action=f"restart {workload}")
        except StoreError as e:
            raise RolloutError(f"Failed to restart {workload}", details=e.details) from e
        logger.info("Triggered rollout restart of %s", workload)

    def _object(self, workload: Workload) -> Dict[str, Any]:
        obj = self.kubectl.get_json(workload.kind, workload.name, action=f"read {workload}")
        if obj is None:
            raise RolloutError(f"{workload} does not exist in namespace {self.kubectl.namespace}")
        return obj

    def is_ready(self, workload: Workload) -> bool:
        obj = self._object(workload)
        return rollout_complete(workload.kind, obj)

    def live_references(self, workload: Workload) -> List[Reference]:
        obj = self._object(workload)
        return extract_references(obj)


def rollout_complete(kind: str, obj: Dict[str, Any]) -> bool:
    """
    Decide whether a rollout has finished from the object's status.

    Mirrors the checks ``kubectl rollout status`` performs: the controller
    has observed the latest generation and every replica is updated and
    ready.
    """
    metadata = obj.get("metadata", {})
    spec = obj.get("spec", {})
    status = obj.get("status", {})

    if status.get("observedGeneration", 0) < metadata.get("generation", 0):
        return False

    if kind == "daemonset":
        desired = status.get("desiredNumberScheduled", 0)
        return status.get("updatedNumberScheduled", 0) >= desired and status.get("numberReady", 0) >= desired

    desired = spec.get("replicas", 1)
    if status.get("updatedReplicas", 0) < desired:
        return False
    if status.get("readyReplicas", 0) < desired:
        return False
    if kind == "deployment":
        # Old replicas still terminating
        return status.get("replicas", 0) <= desired
    if kind == "statefulset":
        current = status.get("currentRevision")
        update = status.get("updateRevision")
        return current is None or update is None or current == update
    return True


def extract_references(obj: Dict[str, Any]) -> List[Reference]:
    """Collect secret references from a workload's pod template.

    ``secretKeyRef`` entries become exact references. ``envFrom`` and secret
    volumes consume the whole bundle and are reported with key ``*``.
    """
    pod_spec = obj.get("spec", {}).get("template", {}).get("spec", {})
    references: List[Reference] = []

    containers = list(pod_spec.get("initContainers", [])) + list(pod_spec.get("containers", []))
    for container in containers:
        for env in container.get("env", []) or []:
            ref = (env.get("valueFrom") or {}).get("secretKeyRef")
            if ref and ref.get("name") and ref.get("key"):
                references.append(Reference(bundle=ref["name"], key=ref["key"], env=env.get("name")))
        for source in container.get("envFrom", []) or []:
            ref = source.get("secretRef")
            if ref and ref.get("name"):
                references.append(Reference(bundle=ref["name"], key="*"))

    for volume in pod_spec.get("volumes", []) or []:
        secret = volume.get("secret")
        if not secret or not secret.get("secretName"):
            continue
        items = secret.get("items") or []
        if items:
            references.extend(Reference(bundle=secret["secretName"], key=item["key"]) for item in items)
        else:
            references.append(Reference(bundle=secret["secretName"], key="*"))

    for pull_secret in pod_spec.get("imagePullSecrets", []) or []:
        if pull_secret.get("name"):
            references.append(Reference(bundle=pull_secret["name"], key=".dockerconfigjson"))

    # Same reference declared by two containers counts once
    seen = set()
    unique = []
    for ref in references:
        if (ref.bundle, ref.key) not in seen:
            seen.add((ref.bundle, ref.key))
            unique.append(ref)
    return unique


def create_controller(settings: Dict[str, Any], kubectl: Optional[Kubectl] = None) -> WorkloadController:
    """Build the workload controller for the ``secretops`` config section."""
    rollout = settings.get("rollout", {})
    options = settings.get("backend", {}).get("kubernetes", {})
    kubectl = kubectl or Kubectl(
        namespace=settings.get("namespace", "default"),
        binary=options.get("kubectl", "kubectl"),
        context=options.get("context"),
    )
    return KubernetesWorkloadController(kubectl, poll_interval=float(rollout.get("poll_interval", 5)))
