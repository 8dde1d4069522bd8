"""Workloads that consume secret bundles."""

from .controller import KubernetesWorkloadController, WorkloadController, create_controller
from .models import TIER_ORDER, Reference, Tier, Workload, restart_plan

__all__ = [
    "KubernetesWorkloadController",
    "Reference",
    "TIER_ORDER",
    "Tier",
    "Workload",
    "WorkloadController",
    "create_controller",
    "restart_plan",
]
