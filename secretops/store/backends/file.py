"""Encrypted file backend: one Fernet-encrypted document per bundle."""

import base64
import json
import os
import tempfile
from pathlib import Path
from typing import List, Optional, Union

from cryptography.fernet import Fernet, InvalidToken

from ...utils.errors import SecurityError, StoreError
from ..models import BundleMetadata, BundleType, SecretBundle
from .base import SecretBackend

SUFFIX = ".enc"


class FileBackend(SecretBackend):
    """Stores bundles as encrypted files under a directory."""

    name = "file"

    def __init__(self, directory: str, encryption_key: Optional[Union[str, bytes]] = None):
        """
        Initialize file backend.

        Args:
            directory: Directory that holds the encrypted bundle files
            encryption_key: Fernet key used for every file
        """
        if not encryption_key:
            raise SecurityError(
                "No encryption key provided for file-based secrets",
                suggestions=[
                    "Generate one with 'secretops init --generate-key'",
                    "Set secretops.backend.file.key_file or SECRETOPS_FILE_KEY",
                ],
            )
        if isinstance(encryption_key, str):
            encryption_key = encryption_key.strip().encode("utf-8")

        try:
            self.cipher = Fernet(encryption_key)
        except ValueError as e:
            raise SecurityError("Invalid Fernet encryption key", details=str(e)) from e

        self.directory = Path(directory)

    def _path(self, name: str) -> Path:
        return self.directory / f"{name}{SUFFIX}"

    def _load(self, path: Path) -> SecretBundle:
        try:
            with open(path, "rb") as f:
                document = json.loads(self.cipher.decrypt(f.read()))
        except InvalidToken as e:
            raise SecurityError(f"Cannot decrypt {path}: wrong key or corrupted file") from e
        except (OSError, json.JSONDecodeError) as e:
            raise StoreError(f"Cannot read bundle file {path}", details=str(e)) from e

        return SecretBundle(
            name=document["name"],
            type=BundleType(document["type"]),
            keys={key: base64.b64decode(value) for key, value in document["keys"].items()},
            version=int(document["version"]),
        )

    def read(self, name: str) -> Optional[SecretBundle]:
        path = self._path(name)
        if not path.exists():
            return None
        return self._load(path)

    def write(self, bundle: SecretBundle) -> int:
        document = {
            "name": bundle.name,
            "type": bundle.type.value,
            "version": bundle.version,
            "keys": {key: base64.b64encode(value).decode("ascii") for key, value in bundle.keys.items()},
        }
        encrypted = self.cipher.encrypt(json.dumps(document).encode("utf-8"))

        try:
            self.directory.mkdir(parents=True, exist_ok=True)
            os.chmod(self.directory, 0o700)

            # Write next to the target and rename so readers never see a partial file
            fd, tmp_path = tempfile.mkstemp(dir=self.directory, prefix=f".{bundle.name}.")
            try:
                with os.fdopen(fd, "wb") as f:
                    f.write(encrypted)
                os.chmod(tmp_path, 0o600)
                os.replace(tmp_path, self._path(bundle.name))
            except BaseException:
                if os.path.exists(tmp_path):
                    os.unlink(tmp_path)
                raise
        except OSError as e:
            raise StoreError(f"Failed to write bundle {bundle.name}", details=str(e)) from e

        return bundle.version

    def remove(self, name: str) -> bool:
        try:
            self._path(name).unlink()
            return True
        except FileNotFoundError:
            return False
        except OSError as e:
            raise StoreError(f"Failed to remove bundle {name}", details=str(e)) from e

    def enumerate(self) -> List[BundleMetadata]:
        if not self.directory.exists():
            return []
        return [self._load(path).metadata() for path in sorted(self.directory.glob(f"*{SUFFIX}"))]

    def describe_location(self, name: str) -> str:
        return str(self._path(name))

    @staticmethod
    def generate_key() -> bytes:
        return Fernet.generate_key()
