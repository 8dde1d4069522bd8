"""Configuration management for SecretOps CLI."""

import copy
import logging
import os
import re
from typing import Any, Dict, List, Optional

import yaml
from jinja2 import Environment, FileSystemLoader

from ..lifecycle.audit import AuditLog
from ..lifecycle.orchestrator import LifecycleOrchestrator
from ..store.backends import create_backend
from ..store.client import SecretStoreClient
from ..store.models import BundleSpec
from ..utils.errors import ConfigurationError
from ..utils.retry import RetryPolicy
from ..verification.reporter import VerificationReporter
from ..workloads.controller import WorkloadController, create_controller
from ..workloads.models import Workload
from .validator import ConfigValidationError, ConfigValidator

logger = logging.getLogger(__name__)

CONFIG_FILENAME = "secretops.yml"
CONFIG_ENV = "SECRETOPS_CONFIG"

ENV_PATTERN = re.compile(r"\$\{([A-Za-z_][A-Za-z0-9_]*)(?::-([^}]*))?\}")

DEFAULTS = {
    "namespace": "bmi-health-tracker",
    "manifests_dir": "kubernetes/secrets",
    "backend": {"type": "kubernetes"},
    "retry": {"attempts": 3, "initial_delay": 1.0},
    "rollout": {"timeout": 300, "poll_interval": 5},
    "audit": {"log_file": ".secretops/audit.jsonl"},
}


def expand_env(value: Any) -> Any:
    """Replace ``${VAR}`` and ``${VAR:-default}`` in every string of ``value``."""
    if isinstance(value, str):

        def substitute(match):
            name, default = match.group(1), match.group(2)
            if name in os.environ:
                return os.environ[name]
            if default is not None:
                return default
            raise ConfigurationError(
                f"Environment variable {name} is not set",
                suggestions=[f"Export {name} or give a default with ${{{name}:-value}}"],
            )

        return ENV_PATTERN.sub(substitute, value)
    if isinstance(value, dict):
        return {key: expand_env(item) for key, item in value.items()}
    if isinstance(value, list):
        return [expand_env(item) for item in value]
    return value


def _merge(defaults: Dict[str, Any], overrides: Dict[str, Any]) -> Dict[str, Any]:
    merged = copy.deepcopy(defaults)
    for key, value in overrides.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = _merge(merged[key], value)
        else:
            merged[key] = value
    return merged


class ConfigManager:
    """Manages SecretOps configuration and builds the components it describes."""

    def __init__(self, path: Optional[str] = None, config_file: Optional[str] = None):
        """
        Initialize configuration manager.

        Args:
            path: Optional working directory (defaults to current directory)
            config_file: Explicit configuration file; falls back to
                ``$SECRETOPS_CONFIG`` and then ``<path>/secretops.yml``
        """
        self.path = path or os.getcwd()
        self.config_file = config_file or os.environ.get(CONFIG_ENV)
        self.validator = ConfigValidator()
        self._config_cache: Dict[str, Dict[str, Any]] = {}

        templates_dir = os.path.join(os.path.dirname(__file__), "..", "templates")
        self.jinja_env = Environment(loader=FileSystemLoader(templates_dir), trim_blocks=True, lstrip_blocks=True)

    def get_config_path(self) -> str:
        """Get path to the configuration file."""
        if self.config_file:
            return os.path.abspath(self.config_file)
        return os.path.join(self.path, CONFIG_FILENAME)

    @property
    def base_dir(self) -> str:
        return os.path.dirname(self.get_config_path())

    def load_config(self, validate: bool = True) -> Dict[str, Any]:
        """
        Load the configuration file.

        Args:
            validate: Whether to validate the configuration

        Returns:
            Dict[str, Any]: Loaded configuration with environment variables expanded

        Raises:
            ConfigValidationError: If validation fails
            ConfigurationError: If the file is missing or not valid YAML
        """
        config_path = self.get_config_path()

        if config_path in self._config_cache:
            return self._config_cache[config_path]

        try:
            with open(config_path, encoding="utf-8") as f:
                config = yaml.safe_load(f)
        except FileNotFoundError as e:
            raise ConfigurationError(
                f"Configuration file not found: {config_path}",
                suggestions=["Run 'secretops init' to create one", f"Or point {CONFIG_ENV} at an existing file"],
            ) from e
        except yaml.YAMLError as e:
            raise ConfigurationError(f"Error parsing YAML file {config_path}", details=str(e)) from e

        if config is None:
            config = {}

        if validate:
            errors = self.validator.validate_main_config(config)
            if errors:
                raise ConfigValidationError(errors)
            for warning in self.validator.check_references(config):
                logger.warning(warning)

        config = expand_env(config)
        self._config_cache[config_path] = config
        return config

    @property
    def settings(self) -> Dict[str, Any]:
        """The ``secretops`` section merged over the defaults."""
        return _merge(DEFAULTS, self.load_config().get("secretops", {}))

    def _resolve(self, path: str) -> str:
        path = os.path.expanduser(path)
        return path if os.path.isabs(path) else os.path.join(self.base_dir, path)

    def _load_manifests(self, manifest: str) -> List[Dict[str, Any]]:
        manifests_dir = self._resolve(self.settings["manifests_dir"])
        manifest_path = manifest if os.path.isabs(manifest) else os.path.join(manifests_dir, manifest)
        try:
            with open(manifest_path, encoding="utf-8") as f:
                return [doc for doc in yaml.safe_load_all(f) if doc]
        except FileNotFoundError as e:
            raise ConfigurationError(f"Secret manifest not found: {manifest_path}") from e
        except yaml.YAMLError as e:
            raise ConfigurationError(f"Error parsing manifest {manifest_path}", details=str(e)) from e

    def bundle_specs(self) -> Dict[str, BundleSpec]:
        """Declared bundle specs by name, in declaration order."""
        specs = {}
        for entry in self.load_config().get("bundles", []):
            manifests = self._load_manifests(entry["manifest"]) if entry.get("manifest") else None
            specs[entry["name"]] = BundleSpec.from_config(entry, manifests)
        return specs

    def bundle_entry(self, name: str) -> Dict[str, Any]:
        for entry in self.load_config().get("bundles", []):
            if entry["name"] == name:
                return entry
        raise ConfigurationError(
            f"Bundle {name} is not declared in {self.get_config_path()}",
            suggestions=["Add it under 'bundles' or check the spelling"],
        )

    def workloads(self) -> List[Workload]:
        return [Workload.from_config(entry) for entry in self.load_config().get("workloads", [])]

    def vault_settings(self) -> Dict[str, Any]:
        """The ``vault`` section with file paths resolved and the application namespace filled in."""
        vault = dict(self.load_config().get("vault", {}))
        namespace = self.settings["namespace"]
        vault.setdefault("path_prefix", namespace)
        vault["app_namespace"] = namespace
        for option in ("init_file", "init_key_file", "kubernetes_ca_cert_file", "token_reviewer_jwt_file"):
            if vault.get(option):
                vault[option] = self._resolve(vault[option])
        return vault

    def retry_policy(self) -> RetryPolicy:
        return RetryPolicy.from_config(self.settings["retry"])

    def audit_log(self) -> AuditLog:
        return AuditLog(self._resolve(self.settings["audit"]["log_file"]))

    def create_store_client(self) -> SecretStoreClient:
        settings = self.settings
        backend = settings["backend"]
        if backend.get("type") == "file" and "file" in backend:
            file_options = dict(backend["file"])
            for option in ("directory", "key_file"):
                if option in file_options:
                    file_options[option] = self._resolve(file_options[option])
            settings = _merge(settings, {"backend": {"file": file_options}})
        return SecretStoreClient(create_backend(settings), retry=self.retry_policy())

    def create_controller(self) -> WorkloadController:
        return create_controller(self.settings)

    def create_orchestrator(self, store: Optional[SecretStoreClient] = None, audit: Optional[AuditLog] = None) -> LifecycleOrchestrator:
        return LifecycleOrchestrator(
            store=store or self.create_store_client(),
            workloads=self.workloads(),
            controller=self.create_controller(),
            audit=audit or self.audit_log(),
            specs=self.bundle_specs(),
            rollout_timeout=float(self.settings["rollout"]["timeout"]),
        )

    def create_reporter(self, store: Optional[SecretStoreClient] = None, audit: Optional[AuditLog] = None) -> VerificationReporter:
        return VerificationReporter(
            store=store or self.create_store_client(),
            workloads=self.workloads(),
            controller=self.create_controller(),
            audit=audit or self.audit_log(),
        )

    def create_default_config(self, template_vars: Optional[Dict[str, Any]] = None) -> str:
        """
        Render the default configuration file from its template.

        Args:
            template_vars: Variables for template rendering

        Returns:
            str: Rendered YAML document
        """
        template_vars = dict(template_vars or {})
        template_vars.setdefault("namespace", DEFAULTS["namespace"])
        template_vars.setdefault("backend", "kubernetes")
        template = self.jinja_env.get_template("secretops.yml.j2")
        return template.render(**template_vars)

    def initialize_config(self, force: bool = False, **template_vars) -> str:
        """
        Write a default ``secretops.yml``.

        Args:
            force: Overwrite an existing file

        Returns:
            str: Path to created configuration file
        """
        config_path = self.get_config_path()
        if os.path.exists(config_path) and not force:
            raise ConfigurationError(
                f"Configuration file already exists: {config_path}",
                suggestions=["Use --force to overwrite it"],
            )

        rendered = self.create_default_config(template_vars)
        errors = self.validator.validate_main_config(yaml.safe_load(rendered))
        if errors:
            raise ConfigValidationError(errors)

        directory = os.path.dirname(config_path)
        if directory:
            os.makedirs(directory, exist_ok=True)
        with open(config_path, "w", encoding="utf-8") as f:
            f.write(rendered)

        self.clear_cache()
        return config_path

    def clear_cache(self) -> None:
        """Clear configuration cache."""
        self._config_cache.clear()
