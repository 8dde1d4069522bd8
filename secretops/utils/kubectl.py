"""Thin wrapper around the kubectl command line."""

import json
import logging
import subprocess
from typing import Any, Dict, List, Optional

from .errors import StoreError, StoreUnavailable, create_error_suggestions

logger = logging.getLogger(__name__)

# stderr fragments that mean the API server could not be reached at all
UNREACHABLE_MARKERS = (
    "unable to connect to the server",
    "connection refused",
    "i/o timeout",
    "tls handshake timeout",
    "no route to host",
    "the server is currently unable to handle the request",
    "context deadline exceeded",
)


class KubectlResult:
    """Outcome of one kubectl invocation."""

    def __init__(self, args: List[str], returncode: int, stdout: str, stderr: str):
        self.args = args
        self.returncode = returncode
        self.stdout = stdout
        self.stderr = stderr

    @property
    def ok(self) -> bool:
        return self.returncode == 0

    @property
    def not_found(self) -> bool:
        return "notfound" in self.stderr.replace(" ", "").lower()

    @property
    def unreachable(self) -> bool:
        stderr = self.stderr.lower()
        return any(marker in stderr for marker in UNREACHABLE_MARKERS)

    def json(self) -> Dict[str, Any]:
        return json.loads(self.stdout or "{}")


class Kubectl:
    """Runs kubectl against one namespace."""

    def __init__(
        self,
        namespace: str,
        binary: str = "kubectl",
        context: Optional[str] = None,
        timeout: int = 60,
    ):
        self.namespace = namespace
        self.binary = binary
        self.context = context
        self.timeout = timeout

    def _command(self, args: List[str], namespaced: bool = True) -> List[str]:
        command = [self.binary]
        if self.context:
            command += ["--context", self.context]
        if namespaced:
            command += ["-n", self.namespace]
        return command + list(args)

    def run(self, args: List[str], input: Optional[str] = None, namespaced: bool = True) -> KubectlResult:
        """
        Run a kubectl command.

        Args:
            args: Arguments after the binary and namespace flags
            input: Optional data written to stdin (for ``apply -f -``)
            namespaced: Whether to pass ``-n <namespace>``

        Returns:
            KubectlResult: Exit status and captured output

        Raises:
            StoreUnavailable: If kubectl is missing or the call times out
        """
        command = self._command(args, namespaced)
        logger.debug("Running: %s", " ".join(command[:6]) + (" ..." if len(command) > 6 else ""))

        try:
            result = subprocess.run(
                command,
                input=input,
                capture_output=True,
                text=True,
                timeout=self.timeout,
            )
        except FileNotFoundError as e:
            raise StoreUnavailable(
                f"{self.binary} is not available",
                details=str(e),
                suggestions=create_error_suggestions("kubectl_missing"),
            ) from e
        except subprocess.TimeoutExpired as e:
            raise StoreUnavailable(
                f"{self.binary} {args[0]} timed out after {self.timeout}s",
                suggestions=create_error_suggestions("store_unreachable"),
            ) from e

        return KubectlResult(command, result.returncode, result.stdout, result.stderr)

    def check(self, args: List[str], input: Optional[str] = None, action: str = "kubectl", namespaced: bool = True) -> KubectlResult:
        """Run a command and raise when it fails.

        Raises:
            StoreUnavailable: If the API server is unreachable
            StoreError: For any other non-zero exit
        """
        result = self.run(args, input=input, namespaced=namespaced)
        if not result.ok:
            self.raise_for(result, action)
        return result

    @staticmethod
    def raise_for(result: KubectlResult, action: str) -> None:
        """Raise the store error matching a failed invocation."""
        stderr = result.stderr.strip()
        if result.unreachable:
            raise StoreUnavailable(
                f"Cannot reach the Kubernetes API during {action}",
                details=stderr,
                suggestions=create_error_suggestions("store_unreachable"),
            )
        raise StoreError(f"{action} failed", details=stderr)

    def get_json(self, kind: str, name: str, action: Optional[str] = None) -> Optional[Dict[str, Any]]:
        """Fetch one object as JSON, or None when it does not exist."""
        result = self.run(["get", kind, name, "-o", "json"])
        if result.ok:
            return result.json()
        if result.not_found:
            return None
        self.raise_for(result, action or f"get {kind} {name}")
        return None
