"""Secret store backends."""

import os
from typing import Any, Dict

from ...utils.errors import ConfigurationError
from ...utils.kubectl import Kubectl
from .base import SecretBackend
from .file import FileBackend
from .kubernetes import KubernetesBackend
from .memory import MemoryBackend

__all__ = [
    "FileBackend",
    "KubernetesBackend",
    "MemoryBackend",
    "SecretBackend",
    "create_backend",
]


def create_backend(settings: Dict[str, Any]) -> SecretBackend:
    """
    Build the backend selected by the ``secretops`` configuration section.

    Args:
        settings: The ``secretops`` section of the loaded configuration

    Returns:
        SecretBackend: Backend ready for a ``SecretStoreClient``
    """
    backend = settings.get("backend", {})
    backend_type = backend.get("type", "kubernetes")
    namespace = settings.get("namespace", "default")

    if backend_type == "memory":
        return MemoryBackend()

    if backend_type == "kubernetes":
        options = backend.get("kubernetes", {})
        return KubernetesBackend(
            Kubectl(
                namespace=namespace,
                binary=options.get("kubectl", "kubectl"),
                context=options.get("context"),
                timeout=int(options.get("timeout", 60)),
            )
        )

    if backend_type == "file":
        options = backend.get("file", {})
        key = os.environ.get("SECRETOPS_FILE_KEY")
        key_file = options.get("key_file")
        if not key and key_file:
            try:
                with open(os.path.expanduser(key_file), "rb") as f:
                    key = f.read().strip()
            except FileNotFoundError as e:
                raise ConfigurationError(
                    f"Encryption key file not found: {key_file}",
                    suggestions=["Run 'secretops init --generate-key' to create one"],
                ) from e
        return FileBackend(options.get("directory", ".secretops/bundles"), encryption_key=key)

    if backend_type == "vault":
        # hvac is only needed when Vault is the configured store
        from .vault import VaultBackend

        options = backend.get("vault", {})
        token = os.environ.get(options.get("token_env", "VAULT_TOKEN"))
        return VaultBackend.connect(
            url=options.get("url", os.environ.get("VAULT_ADDR", "http://127.0.0.1:8200")),
            token=token,
            mount_point=options.get("mount_point", "secret"),
            path_prefix=options.get("path_prefix", namespace),
            verify=options.get("verify", True),
        )

    raise ConfigurationError(
        f"Unknown backend type: {backend_type}",
        suggestions=["Use one of: kubernetes, vault, file, memory"],
    )
