"""HashiCorp Vault bootstrap."""

from .bootstrap import BootstrapReport, InitFile, StepResult, VaultBootstrapper

__all__ = ["BootstrapReport", "InitFile", "StepResult", "VaultBootstrapper"]
