"""
Chunked drain of a node pool.

Nodes are split into chunks of ``chunk_size``. Chunks run one after another,
the nodes of a chunk run in parallel, and every pod on a node is evicted at
once. A single deadline derived from ``DrainOptions.timeout`` covers the
whole call.
"""
import threading
import time
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Dict, List, Optional, Tuple

from loguru import logger

from nodepool_sequencer.errors import (
    DrainTimeoutError,
    NodeNotFoundError,
    PartialFailure,
    SequenceCancelled,
    SequencerError,
)
from nodepool_sequencer.models import (
    DRY_RUN_MARKER,
    DrainOptions,
    EventStatus,
    NodePoolRef,
    Phase,
    PodInfo,
    ProgressEvent,
)
from nodepool_sequencer.operator import NodeOperator
from nodepool_sequencer.settings import Settings

ProgressCallback = Callable[[ProgressEvent], None]


class NodeState(str, Enum):
    DRAINED = "drained"
    PLANNED = "planned"
    FAILED = "failed"
    SOFT_FAILED = "soft_failed"
    TIMED_OUT = "timed_out"
    CANCELLED = "cancelled"


@dataclass
class NodeOutcome:
    node: str
    index: int
    state: NodeState = NodeState.DRAINED
    evicted: List[str] = field(default_factory=list)
    planned: List[str] = field(default_factory=list)
    blocked: List[str] = field(default_factory=list)
    failed_pods: Dict[str, str] = field(default_factory=dict)
    remaining: List[str] = field(default_factory=list)
    error: Optional[str] = None

    @property
    def drained(self) -> bool:
        return self.state in (NodeState.DRAINED, NodeState.PLANNED)


@dataclass
class DrainReport:
    pool: NodePoolRef
    dry_run: bool
    chunks: List[List[str]] = field(default_factory=list)
    outcomes: Dict[str, NodeOutcome] = field(default_factory=dict)

    @property
    def evicted_count(self) -> int:
        return sum(len(o.evicted) for o in self.outcomes.values())

    @property
    def failed_nodes(self) -> List[str]:
        return [o.node for o in self.outcomes.values() if o.state == NodeState.FAILED]

    @property
    def soft_failed_nodes(self) -> List[str]:
        return [o.node for o in self.outcomes.values() if o.state == NodeState.SOFT_FAILED]

    def not_drained(self, all_nodes: List[str]) -> List[str]:
        return [
            name for name in all_nodes
            if name not in self.outcomes or not self.outcomes[name].drained
        ]


class _Run:
    """Shared state of one drain call, read by every node worker"""

    def __init__(self, options: DrainOptions, total: int, progress: ProgressCallback,
                 cancel_event: Optional[threading.Event], span: Tuple[float, float]):
        self.options = options
        self.total = total
        self.progress = progress
        self.cancel_event = cancel_event
        self.span = span
        self.deadline = time.monotonic() + options.timeout_seconds()
        self._done = 0
        self._lock = threading.Lock()

    def expired(self) -> bool:
        return time.monotonic() >= self.deadline

    def cancelled(self) -> bool:
        return self.cancel_event is not None and self.cancel_event.is_set()

    def remaining_seconds(self) -> float:
        return max(0.0, self.deadline - time.monotonic())

    def percent(self) -> float:
        start, end = self.span
        if not self.total:
            return end
        return start + (end - start) * self._done / self.total

    def node_done(self) -> None:
        with self._lock:
            self._done += 1

    def emit(self, status: EventStatus, message: str, node: Optional[str] = None,
             index: Optional[int] = None, error: Optional[str] = None) -> None:
        self.progress(ProgressEvent(
            phase=Phase.DRAIN.value,
            phase_name=Phase.DRAIN.label,
            status=status.value,
            message=message,
            progress_percent=self.percent(),
            node_name=node,
            node_index=index,
            node_total=self.total if node else None,
            error=error,
        ))


class DrainEngine:
    def __init__(self, operator: NodeOperator, settings: Optional[Settings] = None):
        self.operator = operator
        self.settings = settings or Settings()

    def drain(self, pool: NodePoolRef, options: DrainOptions, progress: ProgressCallback,
              cancel_event: Optional[threading.Event] = None,
              progress_span: Tuple[float, float] = (0.0, 100.0)) -> DrainReport:
        nodes = [node.name for node in self.operator.list_nodes(pool)]
        chunk_size = options.chunks()
        chunks = [nodes[i:i + chunk_size] for i in range(0, len(nodes), chunk_size)]
        run = _Run(options, len(nodes), progress, cancel_event, progress_span)
        report = DrainReport(pool=pool, dry_run=options.dry_run)
        prefix = f"{DRY_RUN_MARKER} " if options.dry_run else ""

        logger.info(f"{prefix}Draining {len(nodes)} nodes of {pool} in {len(chunks)} chunks "
                    f"({' '.join(options.flags())})")
        if not nodes:
            logger.warning(f"No nodes found to drain in {pool}")
            return report

        index = 0
        for number, chunk in enumerate(chunks, start=1):
            if run.cancelled():
                raise SequenceCancelled("cancelled during drain")
            if run.expired():
                raise self._timeout(options, report, nodes)

            report.chunks.append(list(chunk))
            logger.info(f"{prefix}Chunk {number}/{len(chunks)}: {', '.join(chunk)}")
            with ThreadPoolExecutor(max_workers=len(chunk)) as executor:
                futures = {}
                for name in chunk:
                    index += 1
                    futures[executor.submit(self._drain_node, run, name, index)] = (name, index)
                for future in as_completed(futures):
                    name, node_index = futures[future]
                    try:
                        outcome = future.result()
                    except Exception as e:
                        logger.exception(f"Unexpected error draining {name}")
                        outcome = NodeOutcome(node=name, index=node_index, state=NodeState.FAILED, error=str(e))
                        run.node_done()
                        run.emit(EventStatus.ERROR, f"Failed to drain {name}", name, node_index, str(e))
                    report.outcomes[name] = outcome

            states = [report.outcomes[name].state for name in chunk]
            pending = number < len(chunks)
            if NodeState.CANCELLED in states or (pending and run.cancelled()):
                raise SequenceCancelled("cancelled during drain")
            if NodeState.TIMED_OUT in states:
                raise self._timeout(options, report, nodes)

            failed = [name for name in chunk if report.outcomes[name].state == NodeState.FAILED]
            if failed:
                if not options.force:
                    error = PartialFailure(failed)
                    error.report = report
                    raise error
                logger.warning(f"Continuing past failed nodes {', '.join(failed)} (--force)")

        logger.info(f"{prefix}Drain of {pool} finished: {report.evicted_count} pods evicted, "
                    f"{len(report.failed_nodes)} failed, {len(report.soft_failed_nodes)} soft failures")
        return report

    def _timeout(self, options: DrainOptions, report: DrainReport, nodes: List[str]) -> DrainTimeoutError:
        error = DrainTimeoutError(options.timeout, report.not_drained(nodes))
        error.report = report
        logger.error(str(error))
        return error

    def _select_pods(self, pods: List[PodInfo], options: DrainOptions) -> Tuple[List[PodInfo], List[PodInfo]]:
        """Split pods on a node into (to_evict, blocked)"""
        to_evict, blocked = [], []
        for pod in pods:
            if pod.is_finished:
                continue
            if options.ignore_daemonsets and pod.is_daemonset:
                continue
            if pod.has_empty_dir and not options.delete_emptydir_data and not options.force:
                blocked.append(pod)
                continue
            to_evict.append(pod)
        return to_evict, blocked

    def _drain_node(self, run: _Run, node: str, index: int) -> NodeOutcome:
        options = run.options
        outcome = NodeOutcome(node=node, index=index)
        run.emit(EventStatus.RUNNING, f"Draining node {index}/{run.total}", node, index)
        logger.info(f"[{index}/{run.total}] Draining {node}...")

        try:
            pods = self.operator.list_pods(node, options.pod_selector)
        except NodeNotFoundError as e:
            return self._finish(run, outcome, NodeState.SOFT_FAILED, f"Node {node} disappeared", str(e))
        except SequencerError as e:
            return self._finish(run, outcome, NodeState.FAILED, f"Failed to list pods on {node}", str(e))

        to_evict, blocked = self._select_pods(pods, options)
        outcome.blocked = [pod.key for pod in blocked]
        if blocked:
            logger.warning(f"{node}: pods with emptyDir data block the drain: {', '.join(outcome.blocked)}")

        if options.dry_run:
            outcome.planned = [pod.key for pod in to_evict]
            verb = "delete" if options.disable_eviction else "evict"
            message = f"{DRY_RUN_MARKER} Would {verb} {len(to_evict)} pods from {node}"
            if blocked:
                message += f" ({len(blocked)} blocked by emptyDir: {', '.join(outcome.blocked)})"
            logger.info(message)
            return self._finish(run, outcome, NodeState.PLANNED, message)

        self._remove_pods(run, node, to_evict, outcome)

        if outcome.evicted:
            self._wait_for_termination(run, node, outcome)

        if outcome.failed_pods or outcome.blocked:
            problems = [f"{key}: {reason}" for key, reason in outcome.failed_pods.items()]
            problems += [f"{key}: has emptyDir data" for key in outcome.blocked]
            return self._finish(run, outcome, NodeState.FAILED, f"Failed to drain {node}", "; ".join(problems))

        skipped = len(to_evict) - len(outcome.evicted)
        if skipped and run.cancelled():
            return self._finish(run, outcome, NodeState.CANCELLED, f"Drain of {node} cancelled",
                                f"{skipped} pods not evicted")
        if skipped:
            return self._finish(run, outcome, NodeState.TIMED_OUT, f"Drain of {node} timed out",
                                f"{skipped} pods not evicted before timeout {options.timeout}")

        if outcome.remaining:
            return self._finish(run, outcome, NodeState.SOFT_FAILED,
                                f"Pods still terminating on {node} after {options.skip_wait_seconds()}s",
                                ", ".join(outcome.remaining))

        return self._finish(run, outcome, NodeState.DRAINED,
                            f"Node {node} drained ({len(outcome.evicted)} pods evicted)")

    def _remove_pods(self, run: _Run, node: str, pods: List[PodInfo], outcome: NodeOutcome) -> None:
        options = run.options
        if not pods:
            return

        def remove(pod: PodInfo) -> Optional[str]:
            # Past the deadline or after cancel, stop issuing new evictions
            if run.expired() or run.cancelled():
                return None
            if options.disable_eviction:
                self.operator.delete_pod(pod, options.grace_period())
            else:
                timeout = max(1, int(run.remaining_seconds()))
                self.operator.evict(pod, options.grace_period(), timeout)
            return pod.key

        with ThreadPoolExecutor(max_workers=len(pods)) as executor:
            futures = {executor.submit(remove, pod): pod for pod in pods}
            for future in as_completed(futures):
                pod = futures[future]
                try:
                    key = future.result()
                except SequencerError as e:
                    logger.error(f"{node}: failed to evict {pod.key}: {e}")
                    outcome.failed_pods[pod.key] = str(e)
                    continue
                if key:
                    outcome.evicted.append(key)

    def _wait_for_termination(self, run: _Run, node: str, outcome: NodeOutcome) -> None:
        window = min(float(run.options.skip_wait_seconds()), run.remaining_seconds())
        wait_until = time.monotonic() + window
        pending = set(outcome.evicted)
        while True:
            try:
                present = {pod.key for pod in self.operator.list_pods(node, run.options.pod_selector)}
            except NodeNotFoundError:
                # Node already removed, nothing left to wait for
                present = set()
            except SequencerError as e:
                logger.warning(f"Could not verify pod termination on {node}: {e}")
                break
            pending &= present
            if not pending or time.monotonic() >= wait_until:
                break
            logger.info(f"Waiting for {len(pending)} pods to terminate on {node}")
            time.sleep(min(self.settings.termination_poll_interval, max(0.0, wait_until - time.monotonic())))
        outcome.remaining = sorted(pending)

    def _finish(self, run: _Run, outcome: NodeOutcome, state: NodeState, message: str,
                error: Optional[str] = None) -> NodeOutcome:
        outcome.state = state
        outcome.error = error
        run.node_done()
        if state in (NodeState.DRAINED, NodeState.PLANNED):
            run.emit(EventStatus.COMPLETED, message, outcome.node, outcome.index)
        else:
            logger.error(f"{message}: {error}")
            run.emit(EventStatus.ERROR, message, outcome.node, outcome.index, error)
        return outcome
