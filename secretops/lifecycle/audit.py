"""Append-only rotation audit log."""

import getpass
import json
import logging
import os
import threading
from dataclasses import asdict, dataclass
from datetime import datetime, timezone
from typing import IO, Any, Dict, List, Optional, Tuple

from ..utils.errors import StoreError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RotationRecord:
    """One version change of one bundle."""

    bundle_name: str
    old_version: int
    new_version: int
    timestamp: str
    initiator: str
    operation: str = "rotate"

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "RotationRecord":
        return cls(
            bundle_name=data["bundle_name"],
            old_version=int(data["old_version"]),
            new_version=int(data["new_version"]),
            timestamp=data["timestamp"],
            initiator=data.get("initiator", "unknown"),
            operation=data.get("operation", "rotate"),
        )


def utc_timestamp() -> str:
    return datetime.now(timezone.utc).isoformat()


def current_initiator() -> str:
    try:
        return getpass.getuser()
    except (KeyError, OSError):
        return "unknown"


class AuditLog:
    """Chronological record of bundle rotations and updates.

    With a ``path`` every record is appended to a JSON Lines file (mode 0600)
    as soon as it is written; without one records live in memory only.
    Records are never modified or removed.
    """

    def __init__(self, path: Optional[str] = None):
        self.path = path
        self._records: List[RotationRecord] = []
        self._lock = threading.Lock()
        self._loaded = path is None

    def _load(self) -> None:
        if self._loaded:
            return
        if self.path and os.path.exists(self.path):
            try:
                with open(self.path, encoding="utf-8") as f:
                    lines = list(f)
            except OSError as e:
                raise StoreError(f"Cannot read audit log {self.path}", details=str(e)) from e
            for line_number, line in enumerate(lines, 1):
                line = line.strip()
                if not line:
                    continue
                try:
                    self._records.append(RotationRecord.from_dict(json.loads(line)))
                except (json.JSONDecodeError, KeyError, ValueError) as e:
                    raise StoreError(
                        f"Corrupt audit log entry at {self.path}:{line_number}",
                        details=str(e),
                    ) from e
        self._loaded = True

    def check(self) -> None:
        """Load the log now, raising ``StoreError`` if it is corrupt."""
        with self._lock:
            self._load()

    def append(self, record: RotationRecord) -> None:
        """Add a record, persisting it first when file-backed."""
        with self._lock:
            self._load()
            if self.path:
                try:
                    self._write(self.path, record)
                except OSError as e:
                    raise StoreError(f"Cannot write audit log {self.path}", details=str(e)) from e
            self._records.append(record)

        logger.info(
            "Audit: %s %s v%d -> v%d by %s",
            record.operation,
            record.bundle_name,
            record.old_version,
            record.new_version,
            record.initiator,
        )

    def _write(self, path: str, record: RotationRecord) -> None:
        directory = os.path.dirname(path)
        if directory:
            os.makedirs(directory, exist_ok=True)
        is_new = not os.path.exists(path)
        with open(path, "a", encoding="utf-8") as f:
            f.write(json.dumps(record.to_dict()) + "\n")
        if is_new:
            os.chmod(path, 0o600)

    def records(self, bundle_name: Optional[str] = None) -> Tuple[RotationRecord, ...]:
        """Records in the order they were written, oldest first."""
        with self._lock:
            self._load()
            return tuple(r for r in self._records if bundle_name is None or r.bundle_name == bundle_name)

    def export(self, stream: IO[str], bundle_name: Optional[str] = None) -> int:
        """Write records as JSON Lines to ``stream``; return how many were written."""
        records = self.records(bundle_name)
        for record in records:
            stream.write(json.dumps(record.to_dict(), sort_keys=True) + "\n")
        return len(records)
