"""Error handling utilities for SecretOps CLI."""

import sys
import traceback
from typing import Any, Dict, List, Optional

import click


class SecretOpsError(Exception):
    """Base exception for SecretOps errors."""

    def __init__(
        self,
        message: str,
        details: Optional[str] = None,
        suggestions: Optional[list] = None,
        bundle: Optional[str] = None,
        operation: Optional[str] = None,
        stage: Optional[str] = None,
    ):
        self.message = message
        self.details = details
        self.suggestions = suggestions or []
        self.bundle = bundle
        self.operation = operation
        self.stage = stage
        super().__init__(message)

    def context(self) -> Dict[str, Any]:
        """Structured context for reports and audit output."""
        return {
            "error": type(self).__name__,
            "message": self.message,
            "bundle": self.bundle,
            "operation": self.operation,
            "stage": self.stage,
        }


class ConfigurationError(SecretOpsError):
    """Raised when configuration is invalid or missing."""

    pass


class ValidationError(SecretOpsError):
    """Raised when a bundle spec does not satisfy its type."""

    pass


class NotFound(SecretOpsError):
    """Raised when a bundle or key does not exist."""

    pass


class StoreError(SecretOpsError):
    """Raised when the backing store rejects an operation."""

    pass


class StoreUnavailable(StoreError):
    """Raised when the backing store cannot be reached."""

    pass


class RolloutError(SecretOpsError):
    """Raised when a workload restart cannot be triggered."""

    pass


class RolloutTimeout(RolloutError):
    """Raised when a workload does not become ready in time."""

    pass


class ReferenceDrift(SecretOpsError):
    """Raised when declared references no longer resolve."""

    def __init__(self, message: str, drifted: Optional[List[Any]] = None, **kwargs):
        self.drifted = drifted or []
        super().__init__(message, **kwargs)


class VaultError(SecretOpsError):
    """Raised when Vault bootstrap operations fail."""

    pass


class SecurityError(SecretOpsError):
    """Raised when encryption or key handling fails."""

    pass


# Standard exceptions the CLI explains instead of printing a bare repr
GENERIC_ERRORS = (
    (FileNotFoundError, "Missing file", "file_missing"),
    (PermissionError, "Access denied", "permission_denied"),
    (ConnectionError, "Connection failed", "store_unreachable"),
)


class ErrorHandler:
    """Prints errors to stderr with their context and suggested fixes."""

    def __init__(self, verbose: bool = False):
        self.verbose = verbose

    def handle_error(self, error: Exception, context: Optional[str] = None) -> None:
        """
        Report an error on stderr.

        Args:
            error: The exception being reported
            context: What the command was doing when it failed
        """
        if isinstance(error, SecretOpsError):
            lines = self._describe_secretops_error(error)
        else:
            lines = self._describe_generic_error(error)

        click.echo(f"✗ {lines.pop(0)}", err=True)
        if context:
            click.echo(f"Context: {context}", err=True)
        for line in lines:
            click.echo(line, err=True)

        if self.verbose:
            click.echo("\nTraceback:", err=True)
            traceback.print_exc()

    def _describe_secretops_error(self, error: SecretOpsError) -> List[str]:
        lines = [error.message]

        location = [
            f"{label}={value}"
            for label, value in (
                ("bundle", error.bundle),
                ("operation", error.operation),
                ("stage", error.stage),
            )
            if value
        ]
        if location:
            lines.append(f"Where: {', '.join(location)}")
        if error.details:
            lines.append(f"Details: {error.details}")
        lines.extend(_suggestion_lines(error.suggestions))
        return lines

    def _describe_generic_error(self, error: Exception) -> List[str]:
        for error_type, label, suggestion_key in GENERIC_ERRORS:
            if isinstance(error, error_type):
                return [f"{label}: {error}"] + _suggestion_lines(create_error_suggestions(suggestion_key))
        return [f"{type(error).__name__}: {error}"]

    def exit_with_error(self, error: Exception, context: Optional[str] = None, exit_code: int = 1) -> None:
        """Report ``error`` and terminate the process with ``exit_code``."""
        self.handle_error(error, context)
        sys.exit(exit_code)


def _suggestion_lines(suggestions: List[str]) -> List[str]:
    if not suggestions:
        return []
    return ["\nTry:"] + [f"  • {suggestion}" for suggestion in suggestions]


def create_error_suggestions(error_type: str, **kwargs) -> List[str]:
    """
    Return canned remediation hints for a class of failure.

    Args:
        error_type: Failure class, e.g. ``store_unreachable``
        **kwargs: ``namespace`` and ``bundle`` interpolated into the hints

    Returns:
        List[str]: Hints, or an empty list for an unknown class
    """
    namespace = kwargs.get("namespace", "<namespace>")
    bundle = kwargs.get("bundle", "<bundle>")

    suggestions = {
        "kubectl_missing": [
            "Install kubectl and make sure it is on PATH",
            "Verify the current kube context with 'kubectl config current-context'",
        ],
        "store_unreachable": [
            "Check that the cluster or Vault server is reachable",
            "Verify credentials for the configured backend",
            "Retry once connectivity is restored",
        ],
        "file_missing": [
            "Check the path passed on the command line or in secretops.yml",
            "Paths in secretops.yml are relative to the file itself",
        ],
        "permission_denied": [
            "Secret files are created with mode 0600; run as the user that owns them",
        ],
        "bundle_missing": [
            f"Create it with 'secretops create' or 'secretops update {bundle}'",
            f"List existing bundles with 'secretops list' (namespace {namespace})",
        ],
        "rollout_timeout": [
            f"Inspect the workload with 'kubectl rollout status -n {namespace}'",
            "The new secret value is already active; fix workload health, then run 'secretops propagate'",
        ],
        "vault_sealed": [
            "Unseal Vault with the keys from the init file",
            "Run 'secretops vault-setup' to unseal automatically",
        ],
        "configuration_invalid": [
            "Fix the fields listed above in secretops.yml",
            "Run 'secretops init --force' to start from a valid default",
        ],
    }

    return suggestions.get(error_type, [])


def format_validation_errors(errors: List[str]) -> str:
    """Join validation messages into one block, numbered when there are several."""
    if not errors:
        return "No validation errors"

    if len(errors) == 1:
        return f"Validation error: {errors[0]}"

    numbered = [f"  {number}. {message}" for number, message in enumerate(errors, 1)]
    return "\n".join(["Validation errors:"] + numbered)
