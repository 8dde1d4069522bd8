"""Secret lifecycle orchestration."""

from .audit import AuditLog, RotationRecord
from .orchestrator import LifecycleOrchestrator, OperationResult, OperationState, WorkloadOutcome

__all__ = [
    "AuditLog",
    "LifecycleOrchestrator",
    "OperationResult",
    "OperationState",
    "RotationRecord",
    "WorkloadOutcome",
]
