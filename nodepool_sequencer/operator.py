"""Cluster capability consumed by the drain engine and the phase executor"""
from typing import List, Protocol

from nodepool_sequencer.models import NodeInfo, NodePoolInfo, NodePoolRef, PodInfo, ScalingIntent


class NodeOperator(Protocol):
    """
    Everything the sequencer needs from a cluster.

    ``cordon``/``uncordon`` must be idempotent. Operations on a node that no
    longer exists raise ``NodeNotFoundError``; retryable API failures raise
    ``TransientClusterError``.
    """

    def list_nodes(self, pool: NodePoolRef) -> List[NodeInfo]: ...

    def list_pods(self, node_name: str, selector: str = "") -> List[PodInfo]: ...

    def cordon(self, node_name: str) -> None: ...

    def uncordon(self, node_name: str) -> None: ...

    def evict(self, pod: PodInfo, grace_period_seconds: int, timeout_seconds: int) -> None: ...

    def delete_pod(self, pod: PodInfo, grace_period_seconds: int) -> None: ...

    def scale_node_pool(self, pool: NodePoolRef, intent: ScalingIntent) -> None: ...

    def list_node_pools(self, cluster: str, resource_group: str, subscription: str = "") -> List[NodePoolInfo]: ...
