"""
Kubernetes and AKS backed NodeOperator.

Node and pod operations go through the official kubernetes client; pool
scaling goes through the ``az`` CLI because AKS node pool sizes are owned by
the cloud control plane, not by the cluster.
"""
import json
import subprocess
from typing import List, Optional

from kubernetes import client, config
from kubernetes.client.rest import ApiException
from loguru import logger
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential
from urllib3.exceptions import HTTPError

from nodepool_sequencer.errors import NodeNotFoundError, SequencerError, TransientClusterError
from nodepool_sequencer.models import NodeInfo, NodePoolInfo, NodePoolRef, PodInfo, ScalingIntent
from nodepool_sequencer.settings import Settings

TRANSIENT_STATUSES = {429, 500, 502, 503, 504}
AUTH_MARKERS = ("AADSTS", "az login", "expired", "authentication")

_list_retry = retry(
    retry=retry_if_exception_type(TransientClusterError),
    stop=stop_after_attempt(3),
    wait=wait_exponential(multiplier=1, min=4, max=10),
    reraise=True,
)


def translate_api_error(e: ApiException, action: str, node_name: Optional[str] = None) -> SequencerError:
    if e.status == 404 and node_name:
        return NodeNotFoundError(node_name)
    if e.status in TRANSIENT_STATUSES:
        return TransientClusterError(f"{action} failed ({e.status}): {e.reason}")
    return SequencerError(f"{action} failed ({e.status}): {e.reason}")


def _node_info(node: client.V1Node) -> NodeInfo:
    ready = False
    conditions = (node.status.conditions or []) if node.status else []
    for condition in conditions:
        if condition.type == "Ready":
            ready = condition.status == "True"
    unschedulable = bool(node.spec.unschedulable) if node.spec else False
    return NodeInfo(name=node.metadata.name, ready=ready, unschedulable=unschedulable)


def _pod_info(pod: client.V1Pod) -> PodInfo:
    owners = tuple(ref.kind for ref in (pod.metadata.owner_references or []))
    volumes = (pod.spec.volumes or []) if pod.spec else []
    has_empty_dir = any(volume.empty_dir is not None for volume in volumes)
    labels = tuple(sorted((pod.metadata.labels or {}).items()))
    return PodInfo(
        name=pod.metadata.name,
        namespace=pod.metadata.namespace,
        node_name=pod.spec.node_name if pod.spec else "",
        owner_kinds=owners,
        has_empty_dir=has_empty_dir,
        phase=pod.status.phase if pod.status else "Unknown",
        labels=labels,
    )


def _pool_info(item: dict, cluster: str, resource_group: str) -> NodePoolInfo:
    return NodePoolInfo(
        name=item.get("name", ""),
        cluster=cluster,
        resource_group=resource_group,
        node_count=item.get("count") or 0,
        min_nodes=item.get("minCount"),
        max_nodes=item.get("maxCount"),
        autoscaling_enabled=bool(item.get("enableAutoScaling")),
        vm_size=item.get("vmSize") or "",
        status=item.get("provisioningState") or "",
        is_system=item.get("mode") == "System",
    )


class KubernetesNodeOperator:
    """NodeOperator over a kubeconfig context and the az CLI"""

    def __init__(self, settings: Settings, core_v1: Optional[client.CoreV1Api] = None):
        self.settings = settings
        if core_v1 is None:
            try:
                config.load_kube_config(context=settings.kube_context)
            except config.ConfigException:
                logger.info("No kubeconfig found, falling back to in-cluster configuration")
                config.load_incluster_config()
            core_v1 = client.CoreV1Api()
        self.core_v1 = core_v1

    @_list_retry
    def list_nodes(self, pool: NodePoolRef) -> List[NodeInfo]:
        selector = f"{self.settings.nodepool_label}={pool.name}"
        try:
            nodes = self.core_v1.list_node(label_selector=selector)
        except ApiException as e:
            logger.error(f"Failed to list nodes for {pool}: {e.reason}")
            raise translate_api_error(e, f"list nodes of {pool.name}")
        except HTTPError as e:
            raise TransientClusterError(f"list nodes of {pool.name}: {e}")
        return [_node_info(node) for node in nodes.items]

    @_list_retry
    def list_pods(self, node_name: str, selector: str = "") -> List[PodInfo]:
        try:
            self.core_v1.read_node(node_name)
            pods = self.core_v1.list_pod_for_all_namespaces(
                field_selector=f"spec.nodeName={node_name}",
                label_selector=selector or None,
            )
        except ApiException as e:
            raise translate_api_error(e, f"list pods on {node_name}", node_name=node_name)
        except HTTPError as e:
            raise TransientClusterError(f"list pods on {node_name}: {e}")
        return [_pod_info(pod) for pod in pods.items]

    def _set_unschedulable(self, node_name: str, value: bool) -> None:
        action = "cordon" if value else "uncordon"
        try:
            self.core_v1.patch_node(node_name, {"spec": {"unschedulable": value}})
        except ApiException as e:
            raise translate_api_error(e, f"{action} {node_name}", node_name=node_name)
        except HTTPError as e:
            raise TransientClusterError(f"{action} {node_name}: {e}")
        logger.debug(f"{action} {node_name}: ok")

    def cordon(self, node_name: str) -> None:
        self._set_unschedulable(node_name, True)

    def uncordon(self, node_name: str) -> None:
        self._set_unschedulable(node_name, False)

    def evict(self, pod: PodInfo, grace_period_seconds: int, timeout_seconds: int) -> None:
        eviction = client.V1Eviction(
            metadata=client.V1ObjectMeta(name=pod.name, namespace=pod.namespace),
            delete_options=client.V1DeleteOptions(grace_period_seconds=grace_period_seconds),
        )
        try:
            self.core_v1.create_namespaced_pod_eviction(
                name=pod.name,
                namespace=pod.namespace,
                body=eviction,
                _request_timeout=timeout_seconds,
            )
        except ApiException as e:
            if e.status == 404:
                logger.debug(f"Pod {pod.key} already gone")
                return
            if e.status == 429:
                # Too Many Requests (PodDisruptionBudget)
                raise TransientClusterError(f"eviction of {pod.key} blocked by PodDisruptionBudget")
            raise translate_api_error(e, f"evict {pod.key}")
        except HTTPError as e:
            raise TransientClusterError(f"evict {pod.key}: {e}")

    def delete_pod(self, pod: PodInfo, grace_period_seconds: int) -> None:
        try:
            self.core_v1.delete_namespaced_pod(
                pod.name, pod.namespace, grace_period_seconds=grace_period_seconds
            )
        except ApiException as e:
            if e.status == 404:
                return
            raise translate_api_error(e, f"delete {pod.key}")
        except HTTPError as e:
            raise TransientClusterError(f"delete {pod.key}: {e}")

    def scale_commands(self, pool: NodePoolRef, intent: ScalingIntent) -> List[List[str]]:
        base = [
            self.settings.az_binary, "aks", "nodepool",
        ]
        target = [
            "--resource-group", pool.resource_group,
            "--cluster-name", pool.cluster.removesuffix("-admin"),
            "--name", pool.name,
        ]
        if pool.subscription:
            target += ["--subscription", pool.subscription]

        if intent.autoscaling_enabled:
            return [base + ["update"] + target + [
                "--enable-cluster-autoscaler",
                "--min-count", str(intent.min_nodes),
                "--max-count", str(intent.max_nodes),
            ]]
        return [
            base + ["update"] + target + ["--disable-cluster-autoscaler"],
            base + ["scale"] + target + ["--node-count", str(intent.desired_count)],
        ]

    def scale_node_pool(self, pool: NodePoolRef, intent: ScalingIntent) -> None:
        for cmd in self.scale_commands(pool, intent):
            self._az(cmd, f"scaling {pool.name}")

    def list_node_pools(self, cluster: str, resource_group: str, subscription: str = "") -> List[NodePoolInfo]:
        cmd = [
            self.settings.az_binary, "aks", "nodepool", "list",
            "--resource-group", resource_group,
            "--cluster-name", cluster.removesuffix("-admin"),
            "--output", "json",
        ]
        if subscription:
            cmd += ["--subscription", subscription]
        result = self._az(cmd, f"listing node pools of {cluster}")
        try:
            items = json.loads(result.stdout or b"[]")
        except ValueError as e:
            raise SequencerError(f"az returned invalid JSON listing node pools of {cluster}: {e}")
        return [_pool_info(item, cluster, resource_group) for item in items]

    def _az(self, cmd: List[str], action: str) -> subprocess.CompletedProcess:
        logger.info(f"Running: {' '.join(cmd)}")
        try:
            return subprocess.run(cmd, check=True, capture_output=True, timeout=self.settings.az_timeout)
        except subprocess.TimeoutExpired:
            raise TransientClusterError(f"az timed out after {self.settings.az_timeout}s {action}")
        except FileNotFoundError:
            raise SequencerError(f"'{self.settings.az_binary}' executable not found")
        except subprocess.CalledProcessError as e:
            stderr = e.stderr.decode().strip() if e.stderr else "Unknown error"
            if any(marker in stderr for marker in AUTH_MARKERS):
                raise SequencerError("Azure CLI not authenticated. Please run on server: az login")
            if "TooManyRequests" in stderr or "timed out" in stderr:
                raise TransientClusterError(f"az failed {action}: {stderr}")
            raise SequencerError(f"az failed {action} (exit {e.returncode}): {stderr}")
