"""HashiCorp Vault KV v2 backend."""

import logging
from typing import Any, Callable, List, Optional, TypeVar

import hvac
import requests
from hvac.exceptions import Forbidden, InvalidPath, Unauthorized, VaultDown
from hvac.exceptions import VaultError as HvacError

from ...utils.errors import StoreError, StoreUnavailable, create_error_suggestions
from ..models import BundleMetadata, BundleType, SecretBundle
from .base import SecretBackend

logger = logging.getLogger(__name__)

T = TypeVar("T")

TYPE_METADATA = "bundle-type"
KEYS_METADATA = "bundle-keys"


class VaultBackend(SecretBackend):
    """Stores bundles under ``<mount>/data/<prefix>/<name>`` in a KV v2 engine.

    The bundle type and key names live in KV custom metadata so that
    listing never has to read secret data.
    """

    name = "vault"

    def __init__(
        self,
        client: hvac.Client,
        mount_point: str = "secret",
        path_prefix: str = "bmi-health-tracker",
    ):
        self.client = client
        self.mount_point = mount_point
        self.path_prefix = path_prefix.strip("/")

    @classmethod
    def connect(cls, url: str, token: Optional[str], mount_point: str = "secret", path_prefix: str = "bmi-health-tracker", verify: Any = True, namespace: Optional[str] = None) -> "VaultBackend":
        client = hvac.Client(url=url, token=token, verify=verify, namespace=namespace)
        return cls(client, mount_point=mount_point, path_prefix=path_prefix)

    @property
    def kv(self):
        return self.client.secrets.kv.v2

    def _path(self, name: str) -> str:
        return f"{self.path_prefix}/{name}" if self.path_prefix else name

    def _call(self, action: str, func: Callable[[], T]) -> T:
        """Run an hvac call, translating its exceptions into store errors."""
        try:
            return func()
        except (requests.exceptions.ConnectionError, requests.exceptions.Timeout) as e:
            raise StoreUnavailable(
                f"Cannot reach Vault during {action}",
                details=str(e),
                suggestions=create_error_suggestions("store_unreachable"),
            ) from e
        except VaultDown as e:
            raise StoreUnavailable(
                f"Vault is sealed or down during {action}",
                details=str(e),
                suggestions=create_error_suggestions("vault_sealed"),
            ) from e
        except (Forbidden, Unauthorized) as e:
            raise StoreError(
                f"Vault denied {action}",
                details=str(e),
                suggestions=["Check the Vault token and its policies"],
            ) from e
        except InvalidPath:
            raise
        except HvacError as e:
            raise StoreError(f"Vault {action} failed", details=str(e)) from e

    def _metadata(self, name: str) -> Optional[dict]:
        try:
            response = self._call(
                f"read metadata of {name}",
                lambda: self.kv.read_secret_metadata(path=self._path(name), mount_point=self.mount_point),
            )
        except InvalidPath:
            return None
        return response["data"]

    def read(self, name: str) -> Optional[SecretBundle]:
        metadata = self._metadata(name)
        if metadata is None:
            return None

        try:
            response = self._call(
                f"read {name}",
                lambda: self.kv.read_secret_version(
                    path=self._path(name),
                    mount_point=self.mount_point,
                    raise_on_deleted_version=True,
                ),
            )
        except InvalidPath:
            return None

        custom = metadata.get("custom_metadata") or {}
        data = response["data"]["data"] or {}
        return SecretBundle(
            name=name,
            type=BundleType.parse(custom.get(TYPE_METADATA, BundleType.GENERIC.value)),
            keys={key: str(value).encode("utf-8") for key, value in data.items()},
            version=int(response["data"]["metadata"]["version"]),
        )

    def write(self, bundle: SecretBundle) -> int:
        try:
            secret = {key: value.decode("utf-8") for key, value in bundle.keys.items()}
        except UnicodeDecodeError as e:
            raise StoreError(
                f"Bundle {bundle.name} holds binary values, which the Vault KV backend stores only as text",
                details=str(e),
            ) from e

        path = self._path(bundle.name)
        response = self._call(
            f"write {bundle.name}",
            lambda: self.kv.create_or_update_secret(path=path, secret=secret, mount_point=self.mount_point),
        )
        self._call(
            f"update metadata of {bundle.name}",
            lambda: self.kv.update_metadata(
                path=path,
                mount_point=self.mount_point,
                custom_metadata={
                    TYPE_METADATA: bundle.type.value,
                    KEYS_METADATA: ",".join(sorted(bundle.keys)),
                },
            ),
        )
        return int(response["data"]["version"])

    def remove(self, name: str) -> bool:
        if self._metadata(name) is None:
            return False
        self._call(
            f"delete {name}",
            lambda: self.kv.delete_metadata_and_all_versions(path=self._path(name), mount_point=self.mount_point),
        )
        return True

    def enumerate(self) -> List[BundleMetadata]:
        try:
            response = self._call(
                "list secrets",
                lambda: self.kv.list_secrets(path=self.path_prefix, mount_point=self.mount_point),
            )
        except InvalidPath:
            return []

        result = []
        for entry in response["data"]["keys"]:
            if entry.endswith("/"):
                continue
            metadata = self._metadata(entry)
            if metadata is None:
                continue
            custom = metadata.get("custom_metadata") or {}
            key_names = custom.get(KEYS_METADATA, "")
            result.append(
                BundleMetadata(
                    name=entry,
                    type=BundleType.parse(custom.get(TYPE_METADATA, BundleType.GENERIC.value)),
                    version=int(metadata.get("current_version", 0)),
                    key_names=tuple(key for key in key_names.split(",") if key),
                )
            )
        return sorted(result, key=lambda m: m.name)

    def describe_location(self, name: str) -> str:
        return f"{self.mount_point}/data/{self._path(name)}"
