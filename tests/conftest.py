"""Pytest configuration and shared fixtures."""

import os
import tempfile
from typing import Dict, List, Optional, Set

import pytest
import yaml
from cryptography.fernet import Fernet

from secretops.lifecycle.audit import AuditLog
from secretops.lifecycle.orchestrator import LifecycleOrchestrator
from secretops.store.backends.memory import MemoryBackend
from secretops.store.client import SecretStoreClient
from secretops.store.models import BundleSpec
from secretops.utils.errors import RolloutError
from secretops.utils.retry import RetryPolicy
from secretops.workloads.controller import WorkloadController
from secretops.workloads.models import Workload


class FakeClock:
    """Monotonic clock that only moves when someone sleeps."""

    def __init__(self):
        self.now = 0.0

    def __call__(self) -> float:
        return self.now

    def sleep(self, seconds: float) -> None:
        self.now += seconds


class FakeController(WorkloadController):
    """Workload controller that records every restart and readiness check.

    ``never_ready`` workloads stay unready forever; ``broken`` workloads
    refuse to restart. Events land in ``events`` as ``(event, name)``.
    """

    def __init__(self, never_ready: Optional[Set[str]] = None, broken: Optional[Set[str]] = None, events: Optional[list] = None):
        self.clock_source = FakeClock()
        super().__init__(poll_interval=5.0, clock=self.clock_source, sleep=self.clock_source.sleep)
        self.never_ready = set(never_ready or ())
        self.broken = set(broken or ())
        self.events: List[tuple] = events if events is not None else []
        self.restarted: Set[str] = set()

    def restart(self, workload: Workload) -> None:
        if workload.name in self.broken:
            raise RolloutError(f"Failed to restart {workload}")
        self.events.append(("restart", workload.name))
        self.restarted.add(workload.name)

    def is_ready(self, workload: Workload) -> bool:
        self.events.append(("check", workload.name))
        return workload.name in self.restarted and workload.name not in self.never_ready


@pytest.fixture
def temp_directory():
    """Create a temporary directory for testing."""
    temp_dir = tempfile.mkdtemp()
    yield temp_dir
    # Cleanup
    import shutil

    shutil.rmtree(temp_dir, ignore_errors=True)


@pytest.fixture(autouse=True)
def isolate_filesystem(temp_directory, monkeypatch):
    """Isolate filesystem operations to temporary directory."""
    monkeypatch.chdir(temp_directory)
    monkeypatch.delenv("SECRETOPS_CONFIG", raising=False)
    return temp_directory


@pytest.fixture
def sample_main_config() -> Dict:
    """Sample main configuration for testing."""
    return {
        "secretops": {
            "namespace": "bmi-health-tracker",
            "backend": {"type": "memory"},
            "retry": {"attempts": 3, "initial_delay": 0},
            "rollout": {"timeout": 30, "poll_interval": 5},
            "audit": {"log_file": ".secretops/audit.jsonl"},
        },
        "bundles": [
            {
                "name": "db-credentials",
                "type": "generic",
                "keys": {"username": "bmi_user", "password": "strongpassword", "database": "bmidb"},
                "templates": {
                    "db-url": "postgresql://{{ username }}:{{ password }}@postgresql-service:5432/{{ database }}",
                },
            },
            {
                "name": "api-keys",
                "type": "generic",
                "generate": {"jwt-secret": "jwt-secret", "api-key": "api-key"},
            },
            {
                "name": "registry-credentials",
                "type": "registry-auth",
                "keys": {".dockerconfigjson": '{"auths": {}}'},
            },
        ],
        "workloads": [
            {
                "name": "postgresql",
                "kind": "statefulset",
                "tier": "data",
                "references": [
                    {"bundle": "db-credentials", "key": "username", "env": "POSTGRES_USER"},
                    {"bundle": "db-credentials", "key": "password", "env": "POSTGRES_PASSWORD"},
                ],
            },
            {
                "name": "backend",
                "kind": "deployment",
                "tier": "consumer",
                "references": [
                    {"bundle": "db-credentials", "key": "db-url", "env": "DATABASE_URL"},
                    {"bundle": "api-keys", "key": "jwt-secret", "env": "JWT_SECRET"},
                ],
            },
            {
                "name": "frontend",
                "kind": "deployment",
                "tier": "consumer",
                "references": [{"bundle": "registry-credentials", "key": ".dockerconfigjson"}],
            },
        ],
    }


@pytest.fixture
def workloads(sample_main_config) -> List[Workload]:
    return [Workload.from_config(entry) for entry in sample_main_config["workloads"]]


@pytest.fixture
def specs(sample_main_config) -> Dict[str, BundleSpec]:
    return {entry["name"]: BundleSpec.from_config(entry) for entry in sample_main_config["bundles"]}


@pytest.fixture
def no_sleep_retry() -> RetryPolicy:
    return RetryPolicy(attempts=3, initial_delay=1.0, sleep=lambda seconds: None)


@pytest.fixture
def store(no_sleep_retry) -> SecretStoreClient:
    """Store client over an in-memory backend."""
    return SecretStoreClient(MemoryBackend(), retry=no_sleep_retry)


@pytest.fixture
def controller_factory():
    """The FakeController class, for tests that need non-default behaviour."""
    return FakeController


@pytest.fixture
def controller() -> FakeController:
    return FakeController()


@pytest.fixture
def audit_log() -> AuditLog:
    return AuditLog()


@pytest.fixture
def orchestrator(store, workloads, controller, audit_log, specs) -> LifecycleOrchestrator:
    return LifecycleOrchestrator(
        store=store,
        workloads=workloads,
        controller=controller,
        audit=audit_log,
        specs=specs,
        rollout_timeout=30.0,
    )


@pytest.fixture
def file_backend_config(temp_directory, sample_main_config, monkeypatch):
    """Write secretops.yml using the encrypted file backend and return its path."""
    monkeypatch.setenv("SECRETOPS_FILE_KEY", Fernet.generate_key().decode("ascii"))

    config = dict(sample_main_config)
    config["secretops"] = dict(config["secretops"])
    config["secretops"]["backend"] = {"type": "file", "file": {"directory": ".secretops/bundles"}}

    config_path = os.path.join(temp_directory, "secretops.yml")
    with open(config_path, "w", encoding="utf-8") as f:
        yaml.safe_dump(config, f, sort_keys=False)
    return config_path
