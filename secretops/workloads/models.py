"""Workloads and the secret references they declare."""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional, Tuple


class Tier(Enum):
    """Restart tiers, in the order rotations restart them."""

    DATA = "data"
    CONSUMER = "consumer"


TIER_ORDER = (Tier.DATA, Tier.CONSUMER)

WORKLOAD_KINDS = ("deployment", "statefulset", "daemonset")


@dataclass(frozen=True)
class Reference:
    """A workload's dependency on one key of one bundle."""

    bundle: str
    key: str
    env: Optional[str] = None

    def __str__(self) -> str:
        return f"{self.bundle}/{self.key}"


@dataclass(frozen=True)
class Workload:
    """A deployable unit that consumes secret bundles."""

    name: str
    kind: str = "deployment"
    tier: Tier = Tier.CONSUMER
    references: Tuple[Reference, ...] = field(default_factory=tuple)

    @property
    def resource(self) -> str:
        return f"{self.kind}/{self.name}"

    def references_bundle(self, bundle: str) -> bool:
        return any(ref.bundle == bundle for ref in self.references)

    @classmethod
    def from_config(cls, entry: Mapping[str, Any]) -> "Workload":
        return cls(
            name=entry["name"],
            kind=entry.get("kind", "deployment"),
            tier=Tier(entry.get("tier", Tier.CONSUMER.value)),
            references=tuple(
                Reference(bundle=ref["bundle"], key=ref["key"], env=ref.get("env"))
                for ref in entry.get("references", [])
            ),
        )

    def __str__(self) -> str:
        return self.resource


def restart_plan(workloads: List[Workload], bundle: str) -> List[Tuple[Tier, List[Workload]]]:
    """
    Group the workloads that reference ``bundle`` by tier, data tier first.

    Within a tier the declaration order is kept. Empty tiers are omitted.

    Args:
        workloads: All declared workloads
        bundle: Bundle whose consumers must restart

    Returns:
        List of (tier, workloads) pairs in restart order
    """
    plan = []
    for tier in TIER_ORDER:
        members = [w for w in workloads if w.tier is tier and w.references_bundle(bundle)]
        if members:
            plan.append((tier, members))
    return plan


def referencing(workloads: List[Workload], bundle: str) -> Dict[str, List[str]]:
    """Map each workload referencing ``bundle`` to the keys it uses."""
    result = {}
    for workload in workloads:
        keys = [ref.key for ref in workload.references if ref.bundle == bundle]
        if keys:
            result[workload.name] = keys
    return result
