"""Test workload models, readiness rules and the kubectl controller."""

import json
import subprocess
from unittest.mock import patch

import pytest

from secretops.utils.errors import RolloutError, StoreUnavailable
from secretops.utils.kubectl import Kubectl
from secretops.workloads.controller import (
    KubernetesWorkloadController,
    create_controller,
    extract_references,
    rollout_complete,
)
from secretops.workloads.models import Reference, Tier, Workload, referencing, restart_plan


def completed(returncode=0, stdout="", stderr=""):
    return subprocess.CompletedProcess(args=[], returncode=returncode, stdout=stdout, stderr=stderr)


def deployment_status(**status):
    return {"metadata": {"generation": 2}, "spec": {"replicas": 2}, "status": {"observedGeneration": 2, **status}}


class TestRestartPlan:
    """Test tier grouping."""

    def test_data_tier_first(self, workloads):
        plan = restart_plan(workloads, "db-credentials")

        assert [(tier, [w.name for w in members]) for tier, members in plan] == [
            (Tier.DATA, ["postgresql"]),
            (Tier.CONSUMER, ["backend"]),
        ]

    def test_empty_tiers_omitted(self, workloads):
        plan = restart_plan(workloads, "registry-credentials")

        assert [tier for tier, _ in plan] == [Tier.CONSUMER]
        assert restart_plan(workloads, "unused") == []

    def test_referencing(self, workloads):
        assert referencing(workloads, "db-credentials") == {
            "postgresql": ["username", "password"],
            "backend": ["db-url"],
        }

    def test_from_config_defaults(self):
        workload = Workload.from_config({"name": "worker"})

        assert workload.resource == "deployment/worker"
        assert workload.tier is Tier.CONSUMER
        assert workload.references == ()


class TestRolloutComplete:
    """Test readiness decisions from object status."""

    def test_deployment_ready(self):
        assert rollout_complete("deployment", deployment_status(updatedReplicas=2, readyReplicas=2, replicas=2))

    def test_deployment_old_replicas_terminating(self):
        assert not rollout_complete("deployment", deployment_status(updatedReplicas=2, readyReplicas=2, replicas=3))

    def test_generation_not_observed(self):
        obj = deployment_status(updatedReplicas=2, readyReplicas=2, replicas=2)
        obj["status"]["observedGeneration"] = 1

        assert not rollout_complete("deployment", obj)

    def test_statefulset_revision_mismatch(self):
        obj = deployment_status(updatedReplicas=2, readyReplicas=2, currentRevision="a", updateRevision="b")

        assert not rollout_complete("statefulset", obj)
        obj["status"]["currentRevision"] = "b"
        assert rollout_complete("statefulset", obj)

    def test_daemonset(self):
        obj = {"status": {"desiredNumberScheduled": 3, "updatedNumberScheduled": 3, "numberReady": 2}}

        assert not rollout_complete("daemonset", obj)


class TestExtractReferences:
    """Test reading secret references from a pod template."""

    def test_all_reference_forms(self):
        obj = {
            "spec": {
                "template": {
                    "spec": {
                        "containers": [
                            {
                                "env": [
                                    {
                                        "name": "JWT_SECRET",
                                        "valueFrom": {"secretKeyRef": {"name": "api-keys", "key": "jwt-secret"}},
                                    },
                                    {"name": "PLAIN", "value": "x"},
                                ],
                                "envFrom": [{"secretRef": {"name": "db-credentials"}}],
                            },
                            {
                                "env": [
                                    {
                                        "name": "JWT",
                                        "valueFrom": {"secretKeyRef": {"name": "api-keys", "key": "jwt-secret"}},
                                    }
                                ]
                            },
                        ],
                        "volumes": [{"name": "certs", "secret": {"secretName": "tls", "items": [{"key": "tls.crt"}]}}],
                        "imagePullSecrets": [{"name": "registry-credentials"}],
                    }
                }
            }
        }

        references = extract_references(obj)

        assert [str(ref) for ref in references] == [
            "api-keys/jwt-secret",
            "db-credentials/*",
            "tls/tls.crt",
            "registry-credentials/.dockerconfigjson",
        ]
        assert references[0] == Reference("api-keys", "jwt-secret", "JWT_SECRET")


class TestWaitUntilReady:
    """Test readiness polling."""

    def test_ready_after_restart(self, controller, workloads):
        postgresql = workloads[0]
        controller.restart(postgresql)

        assert controller.wait_until_ready(postgresql, timeout=30)
        assert controller.clock_source.now == 0

    def test_times_out(self, controller_factory, workloads):
        controller = controller_factory(never_ready={"postgresql"})
        postgresql = workloads[0]
        controller.restart(postgresql)

        assert not controller.wait_until_ready(postgresql, timeout=30)
        assert controller.clock_source.now == 30
        assert controller.events.count(("check", "postgresql")) == 7

    def test_transient_api_failure_keeps_polling(self, controller, workloads):
        backend = workloads[1]
        controller.restart(backend)
        answers = iter([StoreUnavailable("blip"), True])

        def is_ready(workload):
            answer = next(answers)
            if isinstance(answer, Exception):
                raise answer
            return answer

        controller.is_ready = is_ready

        assert controller.wait_until_ready(backend, timeout=30)
        assert controller.clock_source.now == 5


class TestKubernetesWorkloadController:
    """Test the kubectl rollout driver."""

    def setup_method(self):
        self.controller = KubernetesWorkloadController(Kubectl(namespace="bmi-health-tracker"))
        self.backend = Workload(name="backend")

    @patch("secretops.utils.kubectl.subprocess.run")
    def test_restart(self, mock_run):
        mock_run.return_value = completed(stdout="deployment.apps/backend restarted")

        self.controller.restart(self.backend)

        assert mock_run.call_args[0][0][3:] == ["rollout", "restart", "deployment/backend"]

    @patch("secretops.utils.kubectl.subprocess.run")
    def test_restart_failure(self, mock_run):
        mock_run.return_value = completed(1, stderr="deployments.apps \"backend\" is forbidden")

        with pytest.raises(RolloutError):
            self.controller.restart(self.backend)

    @patch("secretops.utils.kubectl.subprocess.run")
    def test_is_ready(self, mock_run):
        mock_run.return_value = completed(
            stdout=json.dumps(deployment_status(updatedReplicas=2, readyReplicas=2, replicas=2))
        )

        assert self.controller.is_ready(self.backend)

    @patch("secretops.utils.kubectl.subprocess.run")
    def test_missing_workload(self, mock_run):
        mock_run.return_value = completed(1, stderr='Error from server (NotFound): deployments.apps "backend" not found')

        with pytest.raises(RolloutError):
            self.controller.is_ready(self.backend)

    def test_create_controller_from_settings(self):
        controller = create_controller(
            {"namespace": "staging", "rollout": {"poll_interval": 2}, "backend": {"kubernetes": {"context": "kind"}}}
        )

        assert controller.poll_interval == 2.0
        assert controller.kubectl.namespace == "staging"
        assert controller.kubectl.context == "kind"
