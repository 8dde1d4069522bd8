"""Kubernetes Secret backend driven through kubectl."""

import base64
import json
import logging
from typing import Any, Dict, List, Optional

from ...utils.errors import ValidationError
from ...utils.kubectl import Kubectl
from ..models import BundleMetadata, BundleType, SecretBundle
from .base import SecretBackend

logger = logging.getLogger(__name__)

MANAGED_BY_LABEL = "app.kubernetes.io/managed-by"
MANAGED_BY = "secretops"
VERSION_ANNOTATION = "secretops.io/version"
TYPE_ANNOTATION = "secretops.io/bundle-type"


class KubernetesBackend(SecretBackend):
    """Stores bundles as native Secret objects in one namespace."""

    name = "kubernetes"

    def __init__(self, kubectl: Kubectl):
        self.kubectl = kubectl

    @property
    def namespace(self) -> str:
        return self.kubectl.namespace

    def manifest(self, bundle: SecretBundle) -> Dict[str, Any]:
        """Render the Secret object for a bundle."""
        return {
            "apiVersion": "v1",
            "kind": "Secret",
            "metadata": {
                "name": bundle.name,
                "namespace": self.namespace,
                "labels": {MANAGED_BY_LABEL: MANAGED_BY},
                "annotations": {
                    VERSION_ANNOTATION: str(bundle.version),
                    TYPE_ANNOTATION: bundle.type.value,
                },
            },
            "type": bundle.type.kubernetes_type,
            "data": {key: base64.b64encode(value).decode("ascii") for key, value in bundle.keys.items()},
        }

    @staticmethod
    def _bundle_type(secret: Dict[str, Any]) -> BundleType:
        annotations = secret.get("metadata", {}).get("annotations") or {}
        try:
            return BundleType.parse(annotations.get(TYPE_ANNOTATION) or secret.get("type", "Opaque"))
        except ValidationError:
            # Secrets of types we do not manage (service account tokens, TLS) read as generic
            return BundleType.GENERIC

    @staticmethod
    def _version(secret: Dict[str, Any]) -> int:
        annotations = secret.get("metadata", {}).get("annotations") or {}
        try:
            return int(annotations.get(VERSION_ANNOTATION, 0))
        except ValueError:
            return 0

    def read(self, name: str) -> Optional[SecretBundle]:
        secret = self.kubectl.get_json("secret", name, action=f"read secret {name}")
        if secret is None:
            return None

        return SecretBundle(
            name=name,
            type=self._bundle_type(secret),
            keys={key: base64.b64decode(value) for key, value in (secret.get("data") or {}).items()},
            version=self._version(secret),
        )

    def write(self, bundle: SecretBundle) -> int:
        document = json.dumps(self.manifest(bundle))
        result = self.kubectl.run(["apply", "-f", "-"], input=document)

        if not result.ok and "immutable" in result.stderr.lower():
            # The secret type cannot change in place; recreate the object
            logger.info("Recreating secret %s to change its type", bundle.name)
            self.kubectl.check(["delete", "secret", bundle.name, "--ignore-not-found"], action=f"delete secret {bundle.name}")
            self.kubectl.check(["apply", "-f", "-"], input=document, action=f"apply secret {bundle.name}")
        elif not result.ok:
            self.kubectl.raise_for(result, f"apply secret {bundle.name}")

        return bundle.version

    def remove(self, name: str) -> bool:
        existed = self.kubectl.get_json("secret", name, action=f"read secret {name}") is not None
        self.kubectl.check(["delete", "secret", name, "--ignore-not-found"], action=f"delete secret {name}")
        return existed

    def enumerate(self) -> List[BundleMetadata]:
        result = self.kubectl.check(
            ["get", "secrets", "-l", f"{MANAGED_BY_LABEL}={MANAGED_BY}", "-o", "json"],
            action="list secrets",
        )

        metadata = []
        for secret in result.json().get("items", []):
            metadata.append(
                BundleMetadata(
                    name=secret["metadata"]["name"],
                    type=self._bundle_type(secret),
                    version=self._version(secret),
                    key_names=tuple(sorted((secret.get("data") or {}).keys())),
                )
            )
        return sorted(metadata, key=lambda m: m.name)

    def describe_location(self, name: str) -> str:
        return f"secret/{name} (namespace {self.namespace})"
