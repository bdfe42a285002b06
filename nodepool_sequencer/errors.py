"""Exception hierarchy for node pool sequencing"""
from typing import Iterable, List, Optional


class SequencerError(Exception):
    """Base class for every error raised by the sequencer"""

    code = "SEQUENCER_ERROR"


class ValidationError(SequencerError):
    """Request rejected before any cluster mutation"""

    code = "VALIDATION_FAILED"

    def __init__(self, errors: Iterable[str]):
        self.errors: List[str] = list(errors)
        super().__init__("; ".join(self.errors) or "invalid request")


class TransientClusterError(SequencerError):
    """Network or API hiccup that is worth retrying"""

    code = "TRANSIENT_CLUSTER_ERROR"


class NodeNotFoundError(SequencerError):
    """A node disappeared while it was being operated on"""

    code = "NODE_NOT_FOUND"

    def __init__(self, node_name: str):
        self.node_name = node_name
        super().__init__(f"node {node_name} not found")


class PreconditionError(SequencerError):
    code = "PRECONDITION_FAILED"


class PartialFailure(SequencerError):
    """Some nodes of a chunk failed to drain"""

    code = "PARTIAL_FAILURE"

    def __init__(self, failed_nodes: Iterable[str], message: Optional[str] = None):
        self.failed_nodes: List[str] = list(failed_nodes)
        super().__init__(message or f"failed to drain nodes: {', '.join(self.failed_nodes)}")


class SequencerTimeoutError(SequencerError):
    code = "TIMEOUT"


class DrainTimeoutError(SequencerTimeoutError):
    def __init__(self, timeout: str, not_drained: Iterable[str]):
        self.timeout = timeout
        self.not_drained: List[str] = list(not_drained)
        super().__init__(
            f"drain timed out after {timeout}; nodes not drained: "
            f"{', '.join(self.not_drained) or 'none'}"
        )


class PhaseTimeoutError(SequencerTimeoutError):
    pass


class PoolBusyError(SequencerError):
    """Another session already holds one of the requested pools"""

    code = "POOL_BUSY"

    def __init__(self, pools: Iterable[str]):
        self.pools: List[str] = list(pools)
        super().__init__(f"pool busy: {', '.join(self.pools)}")


class NodePoolNotFoundError(SequencerError):
    code = "NOT_FOUND"

    def __init__(self, pool: str):
        self.pool = pool
        super().__init__(f"node pool {pool} not found")


class SessionNotFoundError(SequencerError):
    code = "SESSION_NOT_FOUND"

    def __init__(self, session_id: str):
        self.session_id = session_id
        super().__init__(f"session {session_id} not found")


class SequenceCancelled(SequencerError):
    code = "CANCELLED"

    def __init__(self, message: str = "cancelled"):
        super().__init__(message)
