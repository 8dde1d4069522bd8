"""Test the rotation audit log."""

import io
import json
import os
import stat

import pytest

from secretops.lifecycle.audit import AuditLog, RotationRecord
from secretops.utils.errors import StoreError


def record(bundle="db-credentials", old=1, new=2, operation="rotate"):
    return RotationRecord(bundle, old, new, "2025-01-01T00:00:00+00:00", "ops", operation)


class TestAuditLog:
    """Test in-memory and file-backed audit logs."""

    def test_in_memory_records(self):
        audit = AuditLog()
        audit.append(record())
        audit.append(record("api-keys"))

        assert [r.bundle_name for r in audit.records()] == ["db-credentials", "api-keys"]
        assert audit.records("api-keys") == (record("api-keys"),)

    def test_file_is_private_jsonl(self, temp_directory):
        path = os.path.join(temp_directory, ".secretops", "audit.jsonl")
        audit = AuditLog(path)

        audit.append(record())

        assert stat.S_IMODE(os.stat(path).st_mode) == 0o600
        with open(path) as f:
            assert json.loads(f.readline())["new_version"] == 2

    def test_records_survive_reload(self, temp_directory):
        path = os.path.join(temp_directory, "audit.jsonl")
        AuditLog(path).append(record(new=2))
        AuditLog(path).append(record(old=2, new=3))

        reloaded = AuditLog(path).records("db-credentials")

        assert [(r.old_version, r.new_version) for r in reloaded] == [(1, 2), (2, 3)]

    def test_corrupt_entry(self, temp_directory):
        path = os.path.join(temp_directory, "audit.jsonl")
        with open(path, "w") as f:
            f.write(json.dumps(record().to_dict()) + "\n")
            f.write("{not json\n")

        with pytest.raises(StoreError) as exc_info:
            AuditLog(path).records()

        assert ":2" in exc_info.value.message

    def test_check_reports_corruption(self, temp_directory):
        path = os.path.join(temp_directory, "audit.jsonl")
        with open(path, "w") as f:
            f.write("{not json\n")

        with pytest.raises(StoreError):
            AuditLog(path).check()

    def test_unwritable_log(self, temp_directory):
        blocker = os.path.join(temp_directory, "not-a-directory")
        with open(blocker, "w") as f:
            f.write("")
        audit = AuditLog(os.path.join(blocker, "audit.jsonl"))

        with pytest.raises(StoreError) as exc_info:
            audit.append(record())

        assert "Cannot write audit log" in exc_info.value.message
        assert audit.records() == ()

    def test_export(self):
        audit = AuditLog()
        audit.append(record())
        audit.append(record("api-keys", operation="update"))
        stream = io.StringIO()

        count = audit.export(stream, bundle_name="api-keys")

        assert count == 1
        exported = json.loads(stream.getvalue())
        assert exported["operation"] == "update"
        assert exported["initiator"] == "ops"

    def test_from_dict_defaults(self):
        loaded = RotationRecord.from_dict(
            {"bundle_name": "x", "old_version": "1", "new_version": "2", "timestamp": "t"}
        )

        assert loaded.initiator == "unknown"
        assert loaded.operation == "rotate"
        assert loaded.new_version == 2
