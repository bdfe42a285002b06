import json
import subprocess
from unittest.mock import MagicMock

import pytest
from kubernetes import client
from kubernetes.client.rest import ApiException
from tenacity import wait_none

from nodepool_sequencer.errors import NodeNotFoundError, SequencerError, TransientClusterError
from nodepool_sequencer.kube import KubernetesNodeOperator, translate_api_error
from nodepool_sequencer.models import NodePoolRef, PodInfo, ScalingIntent
from nodepool_sequencer.settings import Settings

POOL = NodePoolRef(name="nodepool1", cluster="aks-prod-01-admin", resource_group="rg-prod", subscription="sub-1")
POD = PodInfo(name="web-1", namespace="shop", node_name="aks-nodepool1-0000")


@pytest.fixture()
def core_v1():
    return MagicMock()


@pytest.fixture()
def operator(core_v1):
    return KubernetesNodeOperator(Settings(), core_v1=core_v1)


@pytest.fixture(autouse=True)
def fast_list_retry(monkeypatch):
    for method in (KubernetesNodeOperator.list_nodes, KubernetesNodeOperator.list_pods):
        monkeypatch.setattr(method.retry, "wait", wait_none())


def make_node(name, ready="True", unschedulable=None):
    return client.V1Node(
        metadata=client.V1ObjectMeta(name=name),
        spec=client.V1NodeSpec(unschedulable=unschedulable),
        status=client.V1NodeStatus(conditions=[
            client.V1NodeCondition(type="MemoryPressure", status="False"),
            client.V1NodeCondition(type="Ready", status=ready),
        ]),
    )


class TestTranslateApiError:
    def test_missing_node(self):
        assert isinstance(translate_api_error(ApiException(status=404), "cordon", "n1"), NodeNotFoundError)

    @pytest.mark.parametrize("status", [429, 500, 503])
    def test_transient(self, status):
        assert isinstance(translate_api_error(ApiException(status=status), "list"), TransientClusterError)

    def test_other_errors(self):
        error = translate_api_error(ApiException(status=403, reason="Forbidden"), "cordon n1", "n1")
        assert type(error) is SequencerError
        assert "403" in str(error)


class TestNodes:
    def test_list_nodes_by_pool_label(self, operator, core_v1):
        core_v1.list_node.return_value = MagicMock(items=[
            make_node("aks-nodepool1-0000"),
            make_node("aks-nodepool1-0001", ready="False", unschedulable=True),
        ])

        nodes = operator.list_nodes(POOL)

        core_v1.list_node.assert_called_once_with(label_selector="agentpool=nodepool1")
        assert [(n.name, n.ready, n.unschedulable) for n in nodes] == [
            ("aks-nodepool1-0000", True, False),
            ("aks-nodepool1-0001", False, True),
        ]

    def test_list_nodes_retries_transient_errors(self, operator, core_v1):
        core_v1.list_node.side_effect = [ApiException(status=503), MagicMock(items=[make_node("n1")])]
        assert [n.name for n in operator.list_nodes(POOL)] == ["n1"]
        assert core_v1.list_node.call_count == 2

    def test_list_nodes_gives_up(self, operator, core_v1):
        core_v1.list_node.side_effect = ApiException(status=500)
        with pytest.raises(TransientClusterError):
            operator.list_nodes(POOL)
        assert core_v1.list_node.call_count == 3

    @pytest.mark.parametrize("method, value", [("cordon", True), ("uncordon", False)])
    def test_cordon_patches_node(self, operator, core_v1, method, value):
        getattr(operator, method)("n1")
        core_v1.patch_node.assert_called_once_with("n1", {"spec": {"unschedulable": value}})

    def test_cordon_is_idempotent(self, operator, core_v1):
        operator.cordon("n1")
        operator.cordon("n1")
        assert core_v1.patch_node.call_count == 2

    def test_cordon_missing_node(self, operator, core_v1):
        core_v1.patch_node.side_effect = ApiException(status=404)
        with pytest.raises(NodeNotFoundError):
            operator.cordon("n1")


class TestPods:
    def test_list_pods_converts_pod_details(self, operator, core_v1):
        pod = client.V1Pod(
            metadata=client.V1ObjectMeta(
                name="fluentbit-x", namespace="logging", labels={"app": "fluentbit"},
                owner_references=[client.V1OwnerReference(api_version="apps/v1", kind="DaemonSet",
                                                          name="fluentbit", uid="1")],
            ),
            spec=client.V1PodSpec(node_name="n1", containers=[], volumes=[
                client.V1Volume(name="buffer", empty_dir=client.V1EmptyDirVolumeSource()),
            ]),
            status=client.V1PodStatus(phase="Running"),
        )
        core_v1.list_pod_for_all_namespaces.return_value = MagicMock(items=[pod])

        pods = operator.list_pods("n1", "app=fluentbit")

        core_v1.read_node.assert_called_once_with("n1")
        core_v1.list_pod_for_all_namespaces.assert_called_once_with(
            field_selector="spec.nodeName=n1", label_selector="app=fluentbit")
        info = pods[0]
        assert info.key == "logging/fluentbit-x"
        assert info.is_daemonset
        assert info.has_empty_dir
        assert info.labels == (("app", "fluentbit"),)

    def test_list_pods_on_missing_node(self, operator, core_v1):
        core_v1.read_node.side_effect = ApiException(status=404)
        with pytest.raises(NodeNotFoundError):
            operator.list_pods("gone")

    def test_evict_uses_eviction_api(self, operator, core_v1):
        operator.evict(POD, grace_period_seconds=15, timeout_seconds=60)

        kwargs = core_v1.create_namespaced_pod_eviction.call_args.kwargs
        assert (kwargs["name"], kwargs["namespace"]) == ("web-1", "shop")
        assert kwargs["body"].delete_options.grace_period_seconds == 15
        assert kwargs["_request_timeout"] == 60

    def test_evict_blocked_by_disruption_budget(self, operator, core_v1):
        core_v1.create_namespaced_pod_eviction.side_effect = ApiException(status=429)
        with pytest.raises(TransientClusterError, match="PodDisruptionBudget"):
            operator.evict(POD, 30, 60)

    def test_evict_already_gone(self, operator, core_v1):
        core_v1.create_namespaced_pod_eviction.side_effect = ApiException(status=404)
        operator.evict(POD, 30, 60)

    def test_delete_pod(self, operator, core_v1):
        operator.delete_pod(POD, 0)
        core_v1.delete_namespaced_pod.assert_called_once_with("web-1", "shop", grace_period_seconds=0)


class TestScaling:
    def test_autoscaler_commands(self, operator):
        commands = operator.scale_commands(POOL, ScalingIntent(autoscaling_enabled=True, min_nodes=2, max_nodes=5))
        assert commands == [[
            "az", "aks", "nodepool", "update",
            "--resource-group", "rg-prod", "--cluster-name", "aks-prod-01", "--name", "nodepool1",
            "--subscription", "sub-1",
            "--enable-cluster-autoscaler", "--min-count", "2", "--max-count", "5",
        ]]

    def test_fixed_count_commands(self, operator):
        pool = NodePoolRef(name="nodepool1", cluster="aks-prod-01", resource_group="rg-prod")
        commands = operator.scale_commands(pool, ScalingIntent(desired_count=0))
        assert [c[3] for c in commands] == ["update", "scale"]
        assert "--disable-cluster-autoscaler" in commands[0]
        assert commands[1][-2:] == ["--node-count", "0"]
        assert "--subscription" not in commands[1]

    def test_scale_runs_every_command(self, operator, monkeypatch):
        calls = []
        monkeypatch.setattr(subprocess, "run", lambda cmd, **kwargs: calls.append(cmd))
        operator.scale_node_pool(POOL, ScalingIntent(desired_count=1))
        assert len(calls) == 2

    @pytest.mark.parametrize("stderr, error", [
        (b"AADSTS700082: The refresh token has expired", SequencerError),
        (b"(TooManyRequests) retry later", TransientClusterError),
    ])
    def test_scale_failures(self, operator, monkeypatch, stderr, error):
        def fail(cmd, **kwargs):
            raise subprocess.CalledProcessError(1, cmd, stderr=stderr)

        monkeypatch.setattr(subprocess, "run", fail)
        with pytest.raises(error) as exc:
            operator.scale_node_pool(POOL, ScalingIntent(desired_count=1))
        if error is SequencerError:
            assert "az login" in str(exc.value)

    def test_az_missing(self, operator, monkeypatch):
        def missing(cmd, **kwargs):
            raise FileNotFoundError(cmd[0])

        monkeypatch.setattr(subprocess, "run", missing)
        with pytest.raises(SequencerError, match="not found"):
            operator.scale_node_pool(POOL, ScalingIntent(desired_count=1))

    def test_scale_timeout_is_transient(self, operator, monkeypatch):
        def slow(cmd, **kwargs):
            raise subprocess.TimeoutExpired(cmd, kwargs["timeout"])

        monkeypatch.setattr(subprocess, "run", slow)
        with pytest.raises(TransientClusterError, match="timed out"):
            operator.scale_node_pool(POOL, ScalingIntent(desired_count=1))


class TestNodePoolListing:
    AZ_OUTPUT = [
        {"name": "nodepool1", "vmSize": "Standard_D4s_v5", "count": 3, "minCount": None, "maxCount": None,
         "enableAutoScaling": False, "mode": "System", "provisioningState": "Succeeded"},
        {"name": "nodepool2", "vmSize": "Standard_D8s_v5", "count": 2, "minCount": 2, "maxCount": 5,
         "enableAutoScaling": True, "mode": "User", "provisioningState": "Scaling"},
    ]

    def test_parses_az_output(self, operator, monkeypatch):
        calls = []

        def run(cmd, **kwargs):
            calls.append(cmd)
            return subprocess.CompletedProcess(cmd, 0, stdout=json.dumps(self.AZ_OUTPUT).encode(), stderr=b"")

        monkeypatch.setattr(subprocess, "run", run)
        pools = operator.list_node_pools("aks-prod-01-admin", "rg-prod")

        assert calls == [[
            "az", "aks", "nodepool", "list",
            "--resource-group", "rg-prod", "--cluster-name", "aks-prod-01", "--output", "json",
        ]]
        system, user = pools
        assert (system.name, system.node_count, system.is_system, system.autoscaling_enabled) == (
            "nodepool1", 3, True, False)
        assert (user.min_nodes, user.max_nodes, user.status, user.vm_size) == (2, 5, "Scaling", "Standard_D8s_v5")
        assert user.cluster == "aks-prod-01-admin"
        assert user.resource_group == "rg-prod"

    def test_subscription_is_passed(self, operator, monkeypatch):
        calls = []
        monkeypatch.setattr(subprocess, "run", lambda cmd, **kwargs: calls.append(cmd) or
                            subprocess.CompletedProcess(cmd, 0, stdout=b"[]", stderr=b""))
        assert operator.list_node_pools("aks-prod-01", "rg-prod", "sub-1") == []
        assert calls[0][-2:] == ["--subscription", "sub-1"]

    def test_invalid_json(self, operator, monkeypatch):
        monkeypatch.setattr(subprocess, "run", lambda cmd, **kwargs:
                            subprocess.CompletedProcess(cmd, 0, stdout=b"WARNING: not json", stderr=b""))
        with pytest.raises(SequencerError, match="invalid JSON"):
            operator.list_node_pools("aks-prod-01", "rg-prod")

    def test_not_authenticated(self, operator, monkeypatch):
        def fail(cmd, **kwargs):
            raise subprocess.CalledProcessError(1, cmd, stderr=b"Please run 'az login' to setup account.")

        monkeypatch.setattr(subprocess, "run", fail)
        with pytest.raises(SequencerError, match="az login"):
            operator.list_node_pools("aks-prod-01", "rg-prod")
