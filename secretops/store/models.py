"""Secret bundle data model and per-type validation."""

import base64
import json
import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional, Tuple, Union

from jinja2 import Environment, StrictUndefined, TemplateError

from ..utils.errors import ValidationError

KEY_PATTERN = re.compile(r"^[-._a-zA-Z0-9]+$")
# DNS-1123 subdomain, as Kubernetes requires for Secret names
NAME_PATTERN = re.compile(r"^[a-z0-9]([-a-z0-9.]*[a-z0-9])?$")
MAX_NAME_LENGTH = 253

SecretValue = Union[str, bytes]


class BundleType(Enum):
    """Kinds of secret bundle and their Kubernetes secret types."""

    GENERIC = "generic"
    REGISTRY_AUTH = "registry-auth"
    BASIC_AUTH = "basic-auth"
    SSH_AUTH = "ssh-auth"

    @property
    def kubernetes_type(self) -> str:
        return KUBERNETES_TYPES[self]

    @property
    def required_keys(self) -> Tuple[str, ...]:
        return REQUIRED_KEYS[self]

    @classmethod
    def parse(cls, value: Union[str, "BundleType"]) -> "BundleType":
        """Accept either our type names or Kubernetes secret type strings."""
        if isinstance(value, BundleType):
            return value
        for bundle_type in cls:
            if value in (bundle_type.value, bundle_type.kubernetes_type):
                return bundle_type
        raise ValidationError(
            f"Unknown bundle type: {value}",
            suggestions=[f"Use one of: {', '.join(t.value for t in cls)}"],
        )


KUBERNETES_TYPES = {
    BundleType.GENERIC: "Opaque",
    BundleType.REGISTRY_AUTH: "kubernetes.io/dockerconfigjson",
    BundleType.BASIC_AUTH: "kubernetes.io/basic-auth",
    BundleType.SSH_AUTH: "kubernetes.io/ssh-auth",
}

REQUIRED_KEYS = {
    BundleType.GENERIC: (),
    BundleType.REGISTRY_AUTH: (".dockerconfigjson",),
    BundleType.BASIC_AUTH: ("username", "password"),
    BundleType.SSH_AUTH: ("ssh-privatekey",),
}


def normalize_keys(keys: Mapping[str, SecretValue]) -> Dict[str, bytes]:
    """Return a copy of ``keys`` with every value as bytes."""
    normalized = {}
    for key, value in keys.items():
        if isinstance(value, bytes):
            normalized[key] = value
        elif isinstance(value, str):
            normalized[key] = value.encode("utf-8")
        elif isinstance(value, (int, float, bool)):
            # YAML configuration yields scalars for values such as ports
            normalized[key] = str(value).encode("utf-8")
        else:
            raise ValidationError(f"Value for key '{key}' must be a string or bytes, got {type(value).__name__}")
    return normalized


def validate_keys(name: str, bundle_type: BundleType, keys: Mapping[str, bytes]) -> None:
    """Check that ``keys`` satisfies the required-key set of ``bundle_type``.

    Raises:
        ValidationError: With every problem found listed in ``details``
    """
    errors = []

    if not name or len(name) > MAX_NAME_LENGTH or not NAME_PATTERN.match(name):
        errors.append(f"invalid bundle name '{name}'")

    if not keys:
        errors.append("bundle has no keys")

    for key in keys:
        if not KEY_PATTERN.match(key):
            errors.append(f"invalid key name '{key}'")

    missing = [key for key in bundle_type.required_keys if key not in keys]
    if missing:
        errors.append(f"missing required keys for {bundle_type.value}: {', '.join(missing)}")

    if bundle_type is BundleType.REGISTRY_AUTH and not missing:
        extra = sorted(set(keys) - {".dockerconfigjson"})
        if extra:
            errors.append(f"registry-auth bundles hold a single .dockerconfigjson blob, found extra keys: {', '.join(extra)}")
        try:
            parsed = json.loads(keys[".dockerconfigjson"].decode("utf-8"))
            if not isinstance(parsed, dict):
                errors.append(".dockerconfigjson must be a JSON object")
        except (UnicodeDecodeError, json.JSONDecodeError) as e:
            errors.append(f".dockerconfigjson is not valid JSON: {e}")

    if errors:
        raise ValidationError(
            f"Invalid bundle spec: {name}",
            details="; ".join(errors),
            bundle=name,
        )


@dataclass
class SecretBundle:
    """A named, versioned set of secret values."""

    name: str
    type: BundleType
    keys: Dict[str, bytes]
    version: int

    def metadata(self) -> "BundleMetadata":
        return BundleMetadata(
            name=self.name,
            type=self.type,
            version=self.version,
            key_names=tuple(sorted(self.keys)),
        )


@dataclass(frozen=True)
class BundleMetadata:
    """Bundle description without any secret material."""

    name: str
    type: BundleType
    version: int
    key_names: Tuple[str, ...] = ()

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "type": self.type.value,
            "version": self.version,
            "keys": list(self.key_names),
        }


@dataclass
class BundleSpec:
    """Desired state of a bundle, as declared in config or a manifest."""

    name: str
    type: BundleType = BundleType.GENERIC
    keys: Dict[str, bytes] = field(default_factory=dict)
    templates: Dict[str, str] = field(default_factory=dict)
    generate: Dict[str, str] = field(default_factory=dict)
    source: Optional[str] = None

    def render(self, keys: Optional[Mapping[str, bytes]] = None) -> Dict[str, bytes]:
        """Return ``keys`` (default: this bundle's own) with templated keys filled in.

        Templates are Jinja2 expressions over the other keys, e.g.
        ``postgresql://{{ username }}:{{ password }}@postgresql-service:5432/{{ database }}``.
        """
        rendered = dict(self.keys if keys is None else keys)
        if not self.templates:
            return rendered

        env = Environment(undefined=StrictUndefined, autoescape=False)
        context = {}
        for key, value in rendered.items():
            try:
                context[key.replace("-", "_").replace(".", "_")] = value.decode("utf-8")
            except UnicodeDecodeError:
                continue

        for key, template in self.templates.items():
            try:
                rendered[key] = env.from_string(template).render(**context).encode("utf-8")
            except TemplateError as e:
                raise ValidationError(
                    f"Cannot render templated key '{key}' of bundle {self.name}",
                    details=str(e),
                    bundle=self.name,
                ) from e
        return rendered

    @classmethod
    def from_manifest(cls, manifest: Mapping[str, Any], source: Optional[str] = None) -> "BundleSpec":
        """Build a spec from a Kubernetes Secret manifest.

        ``data`` values are base64 encoded; ``stringData`` values are plain
        and take precedence, as they do in the API server.
        """
        if manifest.get("kind") != "Secret":
            raise ValidationError(f"Manifest {source or ''} is not a Secret (kind={manifest.get('kind')})")

        metadata = manifest.get("metadata") or {}
        name = metadata.get("name")
        if not name:
            raise ValidationError(f"Secret manifest {source or ''} has no metadata.name")

        keys: Dict[str, bytes] = {}
        for key, value in (manifest.get("data") or {}).items():
            try:
                keys[key] = base64.b64decode(str(value), validate=True)
            except ValueError as e:
                raise ValidationError(
                    f"Key '{key}' in secret {name} is not valid base64",
                    details=str(e),
                    bundle=name,
                ) from e
        keys.update(normalize_keys(manifest.get("stringData") or {}))

        return cls(
            name=name,
            type=BundleType.parse(manifest.get("type", "Opaque")),
            keys=keys,
            source=source,
        )

    @classmethod
    def from_config(cls, entry: Mapping[str, Any], manifests: Optional[List[Mapping[str, Any]]] = None) -> "BundleSpec":
        """Build a spec from a ``bundles`` configuration entry.

        Keys come from the entry's ``keys`` mapping; when a manifest was
        loaded for the entry its values are used as the base.
        """
        base: Dict[str, bytes] = {}
        bundle_type = entry.get("type")
        source = None
        for manifest in manifests or []:
            spec = cls.from_manifest(manifest, source=entry.get("manifest"))
            if spec.name == entry["name"]:
                base = spec.keys
                bundle_type = bundle_type or spec.type.value
                source = spec.source
                break

        base.update(normalize_keys(entry.get("keys") or {}))
        return cls(
            name=entry["name"],
            type=BundleType.parse(bundle_type or "generic"),
            keys=base,
            templates=dict(entry.get("templates") or {}),
            generate=dict(entry.get("generate") or {}),
            source=source,
        )
