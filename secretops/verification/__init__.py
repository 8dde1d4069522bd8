"""Verification and audit reporting."""

from .reporter import ReferenceCheck, ReferenceStatus, VerificationReporter, WorkloadHealth

__all__ = ["ReferenceCheck", "ReferenceStatus", "VerificationReporter", "WorkloadHealth"]
