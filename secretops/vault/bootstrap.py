"""Idempotent Vault bootstrap: initialize, unseal, mount KV and wire Kubernetes auth."""

import json
import logging
import os
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Sequence

import hvac
import requests
from cryptography.fernet import Fernet, InvalidToken
from hvac.exceptions import VaultError as HvacError
from jinja2 import Environment, FileSystemLoader

from ..store.backends.vault import VaultBackend
from ..store.client import SecretStoreClient
from ..store.models import BundleSpec
from ..utils.errors import SecretOpsError, SecurityError, VaultError, create_error_suggestions
from ..utils.files import write_private
from ..utils.kubectl import Kubectl
from ..utils.retry import RetryPolicy

logger = logging.getLogger(__name__)

DONE = "done"
SKIPPED = "skipped"
FAILED = "failed"

DEFAULT_SETTINGS: Dict[str, Any] = {
    "url": "http://localhost:8200",
    "namespace": "vault",
    "pod": "vault-0",
    "mount_point": "secret",
    "path_prefix": "bmi-health-tracker",
    "key_shares": 1,
    "key_threshold": 1,
    "kubernetes_host": "https://kubernetes.default.svc",
    "policy": "bmi-backend",
    "role": "bmi-backend",
    "service_account": "default",
    "app_namespace": "bmi-health-tracker",
    "ttl": "24h",
}


@dataclass
class StepResult:
    number: int
    name: str
    status: str
    message: str = ""


@dataclass
class BootstrapReport:
    """Outcome of every step that ran, in order."""

    steps: List[StepResult] = field(default_factory=list)
    error: Optional[SecretOpsError] = None

    @property
    def ok(self) -> bool:
        return self.error is None

    @property
    def failed_step(self) -> Optional[StepResult]:
        for step in self.steps:
            if step.status == FAILED:
                return step
        return None


class InitFile:
    """The Vault init document (unseal keys and root token) on disk.

    The file is created with mode 0600 and is Fernet-encrypted when a key
    file is configured; the key file is generated on first use.
    """

    def __init__(self, path: str, key_file: Optional[str] = None):
        self.path = path
        self.key_file = key_file

    def _cipher(self, create: bool = False) -> Optional[Fernet]:
        if not self.key_file:
            return None
        if not os.path.exists(self.key_file):
            if not create:
                raise SecurityError(
                    f"Encryption key for the Vault init file not found: {self.key_file}",
                    suggestions=["Restore the key file or supply unseal keys and token explicitly"],
                )
            write_private(self.key_file, Fernet.generate_key())
        with open(self.key_file, "rb") as f:
            return Fernet(f.read().strip())

    def exists(self) -> bool:
        return os.path.exists(self.path)

    def save(self, document: Dict[str, Any]) -> None:
        data = json.dumps(document, indent=2).encode("utf-8")
        cipher = self._cipher(create=True)
        if cipher is None:
            logger.warning("Vault init file %s is stored unencrypted; configure vault.init_key_file", self.path)
        else:
            data = cipher.encrypt(data)
        write_private(self.path, data)

    def load(self) -> Dict[str, Any]:
        with open(self.path, "rb") as f:
            data = f.read()
        cipher = self._cipher()
        if cipher is not None:
            try:
                data = cipher.decrypt(data)
            except InvalidToken as e:
                raise SecurityError(f"Cannot decrypt {self.path}: wrong key or corrupted file") from e
        try:
            return json.loads(data)
        except json.JSONDecodeError as e:
            raise VaultError(f"Vault init file {self.path} is not valid JSON", details=str(e)) from e


def _read_optional(path: Optional[str]) -> Optional[str]:
    if not path or not os.path.exists(path):
        return None
    with open(path, encoding="utf-8") as f:
        return f.read().strip()


class VaultBootstrapper:
    """Brings a Vault server from freshly deployed to serving application secrets.

    Every step checks current state first, so running the bootstrap again
    against a configured Vault only reports skipped steps.
    """

    def __init__(
        self,
        client: hvac.Client,
        settings: Optional[Dict[str, Any]] = None,
        kubectl: Optional[Kubectl] = None,
        specs: Optional[Sequence[BundleSpec]] = None,
        unseal_keys: Optional[Sequence[str]] = None,
        root_token: Optional[str] = None,
    ):
        """
        Initialize bootstrapper.

        Args:
            client: hvac client pointed at the Vault server
            settings: The ``vault`` configuration section
            kubectl: kubectl for the pod check; skipped when None
            specs: Bundles to seed into the KV engine
            unseal_keys: Unseal keys overriding those in the init file
            root_token: Root token overriding the one in the init file
        """
        self.client = client
        self.settings = dict(DEFAULT_SETTINGS)
        self.settings.update({k: v for k, v in (settings or {}).items() if v is not None})
        self.kubectl = kubectl
        self.specs = list(specs or [])
        self.unseal_keys = list(unseal_keys or [])
        self.root_token = root_token
        self.init_file = InitFile(
            self.settings.get("init_file", ".secretops/vault-init.json"),
            self.settings.get("init_key_file"),
        )
        self._init_document: Optional[Dict[str, Any]] = None

        templates_dir = os.path.join(os.path.dirname(__file__), "..", "templates")
        self.jinja_env = Environment(loader=FileSystemLoader(templates_dir), trim_blocks=True, lstrip_blocks=True)

    @property
    def steps(self) -> List[tuple]:
        return [
            ("Check Vault pod", self.check_pod),
            ("Initialize Vault", self.initialize),
            ("Unseal Vault", self.unseal),
            ("Authenticate", self.authenticate),
            ("Enable KV v2 secrets engine", self.enable_kv),
            ("Seed application secrets", self.seed_secrets),
            ("Enable Kubernetes auth", self.enable_kubernetes_auth),
            ("Configure Kubernetes auth", self.configure_kubernetes_auth),
            ("Write application policy", self.write_policy),
            ("Create application role", self.create_role),
        ]

    def run(self, on_step: Optional[Callable[[StepResult], None]] = None) -> BootstrapReport:
        """
        Run every step in order, stopping at the first failure.

        Args:
            on_step: Called with each step result as soon as it is known

        Returns:
            BootstrapReport: Results of the steps that ran
        """
        report = BootstrapReport()

        for number, (name, step) in enumerate(self.steps, 1):
            try:
                status, message = step()
            except SecretOpsError as e:
                report.error = e
                status, message = FAILED, e.message
            except (HvacError, requests.exceptions.RequestException) as e:
                report.error = VaultError(
                    f"Vault rejected step '{name}'",
                    details=str(e),
                    suggestions=create_error_suggestions("store_unreachable"),
                    operation="vault-setup",
                    stage=name,
                )
                status, message = FAILED, str(e)

            result = StepResult(number, name, status, message)
            report.steps.append(result)
            logger.info("Step %d (%s): %s %s", number, name, status, message)
            if on_step:
                on_step(result)

            if status == FAILED:
                if report.error is not None:
                    report.error.stage = report.error.stage or name
                break

        return report

    def _document(self) -> Dict[str, Any]:
        if self._init_document is None and self.init_file.exists():
            self._init_document = self.init_file.load()
        return self._init_document or {}

    def check_pod(self):
        if self.kubectl is None:
            return SKIPPED, "no kubectl configured"
        pod = self.settings["pod"]
        obj = self.kubectl.get_json("pod", pod, action=f"read pod {pod}")
        if obj is None:
            raise VaultError(
                f"Vault pod {pod} not found in namespace {self.kubectl.namespace}",
                suggestions=["Deploy Vault first: kubectl apply -f kubernetes/vault/"],
            )
        phase = obj.get("status", {}).get("phase", "Unknown")
        if phase != "Running":
            raise VaultError(f"Vault pod {pod} is {phase}, not Running")
        return DONE, f"{pod} is running"

    def initialize(self):
        if self.client.sys.is_initialized():
            return SKIPPED, "already initialized"

        response = self.client.sys.initialize(
            secret_shares=int(self.settings["key_shares"]),
            secret_threshold=int(self.settings["key_threshold"]),
        )
        self._init_document = {
            "keys": response.get("keys", []),
            "keys_base64": response.get("keys_base64", []),
            "root_token": response["root_token"],
        }
        self.init_file.save(self._init_document)
        return DONE, f"init credentials saved to {self.init_file.path}"

    def unseal(self):
        if not self.client.sys.is_sealed():
            return SKIPPED, "already unsealed"

        keys = self.unseal_keys or self._document().get("keys_base64") or self._document().get("keys", [])
        if not keys:
            raise VaultError(
                "Vault is sealed and no unseal keys are available",
                suggestions=create_error_suggestions("vault_sealed"),
            )
        threshold = int(self.settings["key_threshold"])
        self.client.sys.submit_unseal_keys(keys[:threshold])
        if self.client.sys.is_sealed():
            raise VaultError("Vault is still sealed after submitting unseal keys")
        return DONE, f"unsealed with {min(len(keys), threshold)} key(s)"

    def authenticate(self):
        token = self.root_token or self._document().get("root_token")
        if token:
            self.client.token = token
        if not self.client.token:
            raise VaultError(
                "No Vault token available",
                suggestions=["Pass --root-token or keep the init file from the first run"],
            )
        if not self.client.is_authenticated():
            raise VaultError("Vault rejected the root token")
        return DONE, "authenticated"

    def enable_kv(self):
        mount = self.settings["mount_point"]
        mounts = self.client.sys.list_mounted_secrets_engines()
        mounts = mounts.get("data", mounts)
        existing = mounts.get(f"{mount}/")
        if existing:
            version = (existing.get("options") or {}).get("version")
            if existing.get("type") == "kv" and version == "2":
                return SKIPPED, f"kv-v2 already mounted at {mount}/"
            raise VaultError(
                f"Path {mount}/ is already mounted as {existing.get('type')} (version {version})",
                suggestions=["Choose another vault.mount_point"],
            )
        self.client.sys.enable_secrets_engine(backend_type="kv", path=mount, options={"version": "2"})
        return DONE, f"kv-v2 enabled at {mount}/"

    def seed_secrets(self):
        if not self.specs:
            return SKIPPED, "no bundles declared"

        store = SecretStoreClient(
            VaultBackend(self.client, self.settings["mount_point"], self.settings["path_prefix"]),
            retry=RetryPolicy(attempts=1),
        )
        created = []
        for spec in self.specs:
            if store.exists(spec.name):
                logger.debug("Not seeding %s: already present in Vault", spec.name)
                continue
            store.put(spec.name, spec.type, spec.render())
            created.append(spec.name)

        if not created:
            return SKIPPED, "all bundles already present"
        return DONE, f"seeded {', '.join(created)}"

    def enable_kubernetes_auth(self):
        methods = self.client.sys.list_auth_methods()
        methods = methods.get("data", methods)
        if "kubernetes/" in methods:
            return SKIPPED, "kubernetes auth already enabled"
        self.client.sys.enable_auth_method(method_type="kubernetes")
        return DONE, "kubernetes auth enabled"

    def configure_kubernetes_auth(self):
        options: Dict[str, Any] = {"kubernetes_host": self.settings["kubernetes_host"]}
        ca_cert = _read_optional(self.settings.get("kubernetes_ca_cert_file"))
        if ca_cert:
            options["kubernetes_ca_cert"] = ca_cert
        reviewer_jwt = _read_optional(self.settings.get("token_reviewer_jwt_file"))
        if reviewer_jwt:
            options["token_reviewer_jwt"] = reviewer_jwt
        self.client.auth.kubernetes.configure(**options)
        return DONE, f"host {options['kubernetes_host']}"

    def render_policy(self) -> str:
        template = self.jinja_env.get_template("vault-policy.hcl.j2")
        return template.render(
            mount_point=self.settings["mount_point"],
            path_prefix=self.settings["path_prefix"],
        )

    def write_policy(self):
        name = self.settings["policy"]
        self.client.sys.create_or_update_policy(name=name, policy=self.render_policy())
        return DONE, f"policy {name} written"

    def create_role(self):
        name = self.settings["role"]
        self.client.auth.kubernetes.create_role(
            name=name,
            bound_service_account_names=[self.settings["service_account"]],
            bound_service_account_namespaces=[self.settings["app_namespace"]],
            policies=[self.settings["policy"]],
            ttl=self.settings["ttl"],
        )
        return DONE, f"role {name} bound to {self.settings['app_namespace']}/{self.settings['service_account']}"
