"""
In-memory cluster implementing NodeOperator.

Used by the test suite and by ``serve --simulate``. It keeps a call log so
tests can assert exactly what the sequencer did to the cluster.
"""
import threading
import time
from dataclasses import dataclass, field, replace
from typing import Dict, List, Optional, Set, Tuple

from nodepool_sequencer.errors import NodeNotFoundError, TransientClusterError
from nodepool_sequencer.models import NodeInfo, NodePoolInfo, NodePoolRef, PodInfo, ScalingIntent


@dataclass
class _Node:
    pool: str
    ready: bool = True
    unschedulable: bool = False


def _matches(pod: PodInfo, selector: str) -> bool:
    if not selector:
        return True
    labels = dict(pod.labels)
    for term in selector.split(","):
        key, _, value = term.strip().partition("=")
        if labels.get(key) != value:
            return False
    return True


@dataclass
class InMemoryNodeOperator:
    ready_on_scale: bool = True
    list_delay: float = 0.0
    # pod keys that refuse eviction / never terminate
    failing_evictions: Set[str] = field(default_factory=set)
    sticky_pods: Set[str] = field(default_factory=set)
    # node -> number of transient cordon failures before success
    cordon_failures: Dict[str, int] = field(default_factory=dict)
    failing_scales: Set[str] = field(default_factory=set)
    scale_gate: Optional[threading.Event] = None

    def __post_init__(self):
        self._lock = threading.Lock()
        self._nodes: Dict[str, _Node] = {}
        self._pods: Dict[str, List[PodInfo]] = {}
        self.calls: List[Tuple[str, ...]] = []
        self.evicted: List[str] = []
        self.deleted: List[str] = []
        self.scaled: List[Tuple[str, ScalingIntent]] = []
        self.pool_settings: Dict[str, ScalingIntent] = {}
        self.pod_listings: List[Tuple[str, float, float]] = []
        self._active_listings = 0
        self.max_concurrent_listings = 0

    # cluster setup

    def add_pool(self, pool: str, nodes: int, pods_per_node: int = 0, ready: bool = True) -> List[str]:
        names = []
        with self._lock:
            start = sum(1 for n in self._nodes.values() if n.pool == pool)
            for index in range(start, start + nodes):
                name = f"aks-{pool}-{index:04d}"
                self._nodes[name] = _Node(pool=pool, ready=ready)
                self._pods[name] = [
                    PodInfo(name=f"app-{name}-{p}", namespace="default", node_name=name,
                            owner_kinds=("ReplicaSet",), labels=(("app", "web"),))
                    for p in range(pods_per_node)
                ]
                names.append(name)
            self.pool_settings.setdefault(pool, ScalingIntent())
        return names

    def add_pod(self, node_name: str, name: str, namespace: str = "default", **kwargs) -> PodInfo:
        pod = PodInfo(name=name, namespace=namespace, node_name=node_name, **kwargs)
        with self._lock:
            self._pods.setdefault(node_name, []).append(pod)
        return pod

    def remove_node(self, node_name: str) -> None:
        with self._lock:
            self._nodes.pop(node_name, None)
            self._pods.pop(node_name, None)

    def node(self, node_name: str) -> NodeInfo:
        with self._lock:
            state = self._nodes[node_name]
            return NodeInfo(name=node_name, ready=state.ready, unschedulable=state.unschedulable)

    def pods_on(self, node_name: str) -> List[PodInfo]:
        with self._lock:
            return list(self._pods.get(node_name, []))

    def calls_named(self, name: str) -> List[Tuple[str, ...]]:
        return [c for c in self.calls if c[0] == name]

    # NodeOperator

    def list_nodes(self, pool: NodePoolRef) -> List[NodeInfo]:
        with self._lock:
            self.calls.append(("list_nodes", pool.name))
            return [
                NodeInfo(name=name, ready=state.ready, unschedulable=state.unschedulable)
                for name, state in sorted(self._nodes.items())
                if state.pool == pool.name
            ]

    def list_pods(self, node_name: str, selector: str = "") -> List[PodInfo]:
        with self._lock:
            self.calls.append(("list_pods", node_name))
            self._active_listings += 1
            self.max_concurrent_listings = max(self.max_concurrent_listings, self._active_listings)
            started = time.monotonic()
        try:
            if self.list_delay:
                time.sleep(self.list_delay)
            with self._lock:
                if node_name not in self._nodes:
                    raise NodeNotFoundError(node_name)
                return [pod for pod in self._pods.get(node_name, []) if _matches(pod, selector)]
        finally:
            with self._lock:
                self._active_listings -= 1
                self.pod_listings.append((node_name, started, time.monotonic()))

    def cordon(self, node_name: str) -> None:
        self._set_unschedulable(node_name, True)

    def uncordon(self, node_name: str) -> None:
        self._set_unschedulable(node_name, False)

    def _set_unschedulable(self, node_name: str, value: bool) -> None:
        action = "cordon" if value else "uncordon"
        with self._lock:
            self.calls.append((action, node_name))
            if value and self.cordon_failures.get(node_name, 0) > 0:
                self.cordon_failures[node_name] -= 1
                raise TransientClusterError(f"cordon {node_name}: connection reset")
            if node_name not in self._nodes:
                raise NodeNotFoundError(node_name)
            self._nodes[node_name].unschedulable = value

    def evict(self, pod: PodInfo, grace_period_seconds: int, timeout_seconds: int) -> None:
        with self._lock:
            self.calls.append(("evict", pod.key, str(grace_period_seconds)))
            if pod.key in self.failing_evictions:
                raise TransientClusterError(f"eviction of {pod.key} blocked by PodDisruptionBudget")
            self.evicted.append(pod.key)
            self._remove_pod(pod)

    def delete_pod(self, pod: PodInfo, grace_period_seconds: int) -> None:
        with self._lock:
            self.calls.append(("delete_pod", pod.key, str(grace_period_seconds)))
            self.deleted.append(pod.key)
            self._remove_pod(pod)

    def _remove_pod(self, pod: PodInfo) -> None:
        if pod.key in self.sticky_pods:
            return
        remaining = [p for p in self._pods.get(pod.node_name, []) if p.key != pod.key]
        self._pods[pod.node_name] = remaining

    def scale_node_pool(self, pool: NodePoolRef, intent: ScalingIntent) -> None:
        if self.scale_gate is not None:
            self.scale_gate.wait(timeout=10)
        with self._lock:
            self.calls.append(("scale", pool.name))
            if pool.name in self.failing_scales:
                raise TransientClusterError(f"scale {pool.name}: service unavailable")
            self.scaled.append((pool.name, intent))
            self.pool_settings[pool.name] = intent
            current = [n for n, state in self._nodes.items() if state.pool == pool.name]
        target = intent.requested_nodes
        if target > len(current):
            self.add_pool(pool.name, target - len(current), ready=self.ready_on_scale)
        elif target < len(current):
            for name in sorted(current)[target:]:
                self.remove_node(name)

    def list_node_pools(self, cluster: str, resource_group: str, subscription: str = "") -> List[NodePoolInfo]:
        with self._lock:
            self.calls.append(("list_node_pools", cluster))
            counts: Dict[str, int] = {}
            for state in self._nodes.values():
                counts[state.pool] = counts.get(state.pool, 0) + 1
            return [
                NodePoolInfo(
                    name=name,
                    cluster=cluster,
                    resource_group=resource_group,
                    node_count=counts.get(name, 0),
                    min_nodes=intent.min_nodes,
                    max_nodes=intent.max_nodes,
                    autoscaling_enabled=intent.autoscaling_enabled,
                    status="Succeeded",
                )
                for name, intent in sorted(self.pool_settings.items())
            ]

    @classmethod
    def demo(cls) -> "InMemoryNodeOperator":
        """A small two-pool cluster for local experimentation"""
        cluster = cls(list_delay=0.2)
        for node in cluster.add_pool("nodepool1", 3, pods_per_node=4):
            cluster.add_pod(node, f"kube-proxy-{node[-4:]}", namespace="kube-system", owner_kinds=("DaemonSet",))
        cluster.add_pool("nodepool2", 1)
        return cluster

    def with_node(self, node_name: str, **changes) -> None:
        """Adjust a node's readiness/schedulability in place"""
        with self._lock:
            state = self._nodes[node_name]
            updated = replace(state, **changes)
            self._nodes[node_name] = updated
