"""Configuration validation for SecretOps CLI."""

from typing import Any, Dict, List

import jsonschema

from ..utils.errors import ConfigurationError, create_error_suggestions, format_validation_errors
from .schemas import MAIN_CONFIG_SCHEMA


class ConfigValidationError(ConfigurationError):
    """Raised when configuration validation fails."""

    def __init__(self, errors: List[str]):
        self.errors = errors
        super().__init__(
            "Configuration validation failed",
            details=format_validation_errors(errors),
            suggestions=create_error_suggestions("configuration_invalid"),
        )


class ConfigValidator:
    """Validates SecretOps configuration files."""

    def validate_main_config(self, config: Dict[str, Any]) -> List[str]:
        """
        Validate main SecretOps configuration.

        Args:
            config: Configuration dictionary to validate

        Returns:
            List[str]: List of validation errors (empty if valid)
        """
        validator = jsonschema.Draft7Validator(MAIN_CONFIG_SCHEMA)
        errors = []
        for error in sorted(validator.iter_errors(config), key=lambda e: list(e.path)):
            location = "/".join(str(part) for part in error.path) or "<root>"
            errors.append(f"Schema validation failed at {location}: {error.message}")

        # Semantic checks only make sense on a structurally valid document
        if errors:
            return errors

        errors.extend(self._validate_bundles(config.get("bundles", [])))
        errors.extend(self._validate_workloads(config.get("workloads", [])))
        errors.extend(self._validate_vault(config.get("vault", {})))
        return errors

    def _validate_bundles(self, bundles: List[Dict[str, Any]]) -> List[str]:
        errors = []
        seen = set()
        for bundle in bundles:
            name = bundle["name"]
            if name in seen:
                errors.append(f"Duplicate bundle name: {name}")
            seen.add(name)

            overlap = set(bundle.get("templates", {})) & set(bundle.get("keys", {}))
            if overlap:
                errors.append(f"Bundle {name} declares {', '.join(sorted(overlap))} both as key and template")

            if bundle.get("type") == "registry-auth" and bundle.get("templates"):
                errors.append(f"Bundle {name}: registry-auth bundles cannot have templated keys")
        return errors

    def _validate_workloads(self, workloads: List[Dict[str, Any]]) -> List[str]:
        errors = []
        seen = set()
        for workload in workloads:
            identity = (workload.get("kind", "deployment"), workload["name"])
            if identity in seen:
                errors.append(f"Duplicate workload: {identity[0]}/{identity[1]}")
            seen.add(identity)
        return errors

    def check_references(self, config: Dict[str, Any]) -> List[str]:
        """
        Find workload references that no declared bundle satisfies.

        The configuration stays loadable; ``secretops verify`` reports each
        of these as MissingBundle or MissingKey.

        Returns:
            List[str]: One message per dangling reference
        """
        warnings = []
        declared = {bundle["name"]: bundle for bundle in config.get("bundles", [])}

        for workload in config.get("workloads", []):
            name = workload["name"]
            for ref in workload.get("references", []):
                bundle = declared.get(ref["bundle"])
                if bundle is None:
                    warnings.append(f"Workload {name} references undeclared bundle {ref['bundle']}")
                    continue
                known_keys = set(bundle.get("keys", {})) | set(bundle.get("templates", {})) | set(bundle.get("generate", {}))
                # Keys of manifest-backed bundles are only known once the manifest is read
                if known_keys and not bundle.get("manifest") and ref["key"] not in known_keys:
                    warnings.append(f"Workload {name} references unknown key {ref['key']} of bundle {ref['bundle']}")
        return warnings

    def _validate_vault(self, vault: Dict[str, Any]) -> List[str]:
        if vault.get("key_threshold", 1) > vault.get("key_shares", 1):
            return ["vault.key_threshold cannot exceed vault.key_shares"]
        return []
