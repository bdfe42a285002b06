"""
Five-phase node pool migration.

    1 PRE-DRAIN   scale the destination up and wait for Ready nodes
    2 CORDON      mark every origin node unschedulable
    3 DRAIN       evict pods from the origin nodes
    4 POST-DRAIN  scale the origin down
    5 FINALIZE    mark the session completed

Phases only move forward. A failed phase stops the session and leaves the
cluster where it is: a failed drain keeps the origin cordoned until an
operator uncordons it.
"""
import time
from typing import Callable, Optional

from loguru import logger
from tenacity import Retrying, retry_if_exception_type, stop_after_attempt, wait_exponential

from nodepool_sequencer.bus import ProgressBus
from nodepool_sequencer.drain import DrainEngine
from nodepool_sequencer.errors import (
    NodeNotFoundError,
    PhaseTimeoutError,
    PreconditionError,
    SequenceCancelled,
    SequencerError,
    TransientClusterError,
)
from nodepool_sequencer.models import (
    DRY_RUN_MARKER,
    EventStatus,
    NodePoolRef,
    Phase,
    ProgressEvent,
    ScalingIntent,
)
from nodepool_sequencer.operator import NodeOperator
from nodepool_sequencer.session import SequenceSession
from nodepool_sequencer.settings import Settings


def cluster_retrying(settings: Settings, attempts: int) -> Retrying:
    """Retry policy for cordon and scale calls"""
    return Retrying(
        retry=retry_if_exception_type(TransientClusterError),
        stop=stop_after_attempt(attempts),
        wait=wait_exponential(multiplier=settings.retry_backoff, max=settings.retry_backoff_max),
        before_sleep=lambda state: logger.warning(
            f"Attempt {state.attempt_number} failed: {state.outcome.exception()}; retrying"
        ),
        reraise=True,
    )


class _PhaseRun:
    """Progress bookkeeping for one session run"""

    def __init__(self, session: SequenceSession):
        self.session = session
        self.done_weight = 0.0
        self.current: Optional[Phase] = None
        self.started = time.monotonic()

    def partial(self, fraction: float) -> float:
        weight = self.current.weight if self.current else 0
        return self.done_weight + weight * min(1.0, max(0.0, fraction))


class PhaseExecutor:
    def __init__(self, operator: NodeOperator, bus: ProgressBus, settings: Optional[Settings] = None,
                 drain_engine: Optional[DrainEngine] = None):
        self.operator = operator
        self.bus = bus
        self.settings = settings or Settings()
        self.drain_engine = drain_engine or DrainEngine(operator, self.settings)

    def run(self, session: SequenceSession) -> SequenceSession:
        session.mark_running()
        run = _PhaseRun(session)
        self._banner(session)

        handlers = {
            Phase.PRE_DRAIN: self._pre_drain,
            Phase.CORDON: self._cordon,
            Phase.DRAIN: self._drain,
            Phase.POST_DRAIN: self._post_drain,
        }
        for phase, handler in handlers.items():
            if not self._enabled(session, phase):
                logger.info(f"{phase.value}. {phase.label} - SKIPPED (disabled)")
                run.done_weight += phase.weight
                continue
            if not self._run_phase(run, phase, handler):
                return session

        self._finalize(run)
        return session

    @staticmethod
    def _enabled(session: SequenceSession, phase: Phase) -> bool:
        if phase == Phase.CORDON:
            return session.config.cordon_enabled
        if phase == Phase.DRAIN:
            return session.config.cordon_enabled and session.config.drain_enabled
        return True

    def _run_phase(self, run: _PhaseRun, phase: Phase, handler: Callable[[_PhaseRun], str]) -> bool:
        session = run.session
        session.enter_phase(phase.value)
        run.current = phase
        logger.info(f"{phase.value}. {phase.label}")
        logger.info("-" * 70)
        self._emit(run, EventStatus.RUNNING, f"Starting {phase.label} phase", run.done_weight)
        try:
            self._check_cancel(session)
            message = handler(run)
        except SequenceCancelled as e:
            self._fail(run, "cancelled", str(e))
            return False
        except SequencerError as e:
            self._fail(run, f"{phase.label} failed: {e}", str(e))
            return False
        except Exception as e:
            logger.exception(f"Unexpected error in {phase.label}")
            self._fail(run, f"{phase.label} failed: {e}", str(e))
            return False

        run.done_weight += phase.weight
        self._emit(run, EventStatus.COMPLETED, message, run.done_weight)
        logger.info(message)
        return True

    def _fail(self, run: _PhaseRun, reason: str, detail: str) -> None:
        session = run.session
        phase = run.current
        logger.error(f"Session {session.id} failed in {phase.label}: {detail}")
        self._emit(run, EventStatus.ERROR, f"{phase.label} failed", self._last_progress(run), error=detail)
        session.mark_failed(reason, phase.value)

    def _last_progress(self, run: _PhaseRun) -> float:
        events = run.session.events
        return events[-1].progress_percent if events else run.done_weight

    def _finalize(self, run: _PhaseRun) -> None:
        session = run.session
        session.enter_phase(Phase.FINALIZE.value)
        run.current = Phase.FINALIZE
        try:
            self._emit(run, EventStatus.RUNNING, "Cleanup and finalization", run.done_weight)
            duration = round(time.monotonic() - run.started)
            run.done_weight += Phase.FINALIZE.weight
            self._emit(run, EventStatus.COMPLETED, f"Sequencing completed successfully in {duration}s",
                       run.done_weight)
            logger.info(f"Total execution time: {duration}s")
        except Exception:
            logger.exception(f"Error while finalizing session {session.id}")
        session.mark_completed()
        logger.info("SEQUENCING COMPLETE")

    # phases

    def _pre_drain(self, run: _PhaseRun) -> str:
        dest = run.session.dest
        intent = dest.pre_drain_changes
        # Cordoned workloads need somewhere to land
        minimum = 1 if run.session.config.cordon_enabled else 0
        if intent is None:
            if minimum:
                self._require_schedulable(dest.ref, minimum)
            return f"No PRE-DRAIN changes configured for {dest.ref.name}"

        self._emit(run, EventStatus.RUNNING, f"Applying changes to {dest.ref.name}: {intent.describe()}",
                   run.partial(0.1))
        self._scale(dest.ref, intent)
        self._emit(run, EventStatus.RUNNING, "PRE-DRAIN changes applied successfully", run.partial(0.3))
        return self._wait_ready(run, dest.ref, max(intent.requested_nodes, minimum))

    def _require_schedulable(self, pool: NodePoolRef, minimum: int) -> None:
        ready = [n for n in self.operator.list_nodes(pool) if n.ready and not n.unschedulable]
        if len(ready) < minimum:
            raise PreconditionError(
                f"{pool.name} has {len(ready)} Ready schedulable nodes; "
                f"at least {minimum} needed to receive drained pods"
            )

    def _wait_ready(self, run: _PhaseRun, pool: NodePoolRef, target: int) -> str:
        window = self.settings.readiness_window
        deadline = time.monotonic() + window
        logger.info(f"Waiting up to {window}s for {target} Ready nodes in {pool.name}")
        while True:
            self._check_cancel(run.session)
            nodes = self.operator.list_nodes(pool)
            ready = [n for n in nodes if n.ready and not n.unschedulable]
            if len(ready) >= target:
                return f"{len(ready)} nodes Ready in {pool.name}"
            if time.monotonic() >= deadline:
                raise PhaseTimeoutError(
                    f"{pool.name} has {len(ready)}/{target} Ready nodes after {window}s"
                )
            fraction = 0.3 + 0.7 * (len(ready) / target)
            self._emit(run, EventStatus.RUNNING,
                       f"Waiting for nodes to become Ready ({len(ready)}/{target})", run.partial(fraction))
            time.sleep(min(self.settings.readiness_poll_interval, max(0.0, deadline - time.monotonic())))

    def _cordon(self, run: _PhaseRun) -> str:
        origin = run.session.origin.ref
        nodes = self.operator.list_nodes(origin)
        total = len(nodes)
        self._emit(run, EventStatus.RUNNING, f"Found {total} nodes in {origin.name}", run.partial(0.0),
                   total=total)

        vanished = set()
        for index, node in enumerate(nodes, start=1):
            self._check_cancel(run.session)
            self._emit(run, EventStatus.RUNNING, f"Cordoning node {index}/{total}",
                       run.partial((index - 1) / total), node.name, index, total)
            try:
                self._retrying(self.settings.cordon_retry_attempts)(self.operator.cordon, node.name)
            except NodeNotFoundError as e:
                vanished.add(node.name)
                logger.warning(f"[{index}/{total}] {node.name} disappeared before cordon")
                self._emit(run, EventStatus.ERROR, f"Node {node.name} disappeared",
                           run.partial(index / total), node.name, index, total, str(e))
                continue
            except SequencerError as e:
                self._emit(run, EventStatus.ERROR, f"Failed to cordon {node.name}",
                           run.partial((index - 1) / total), node.name, index, total, str(e))
                raise
            logger.info(f"[{index}/{total}] Cordoned {node.name}")

        schedulable = [n.name for n in self.operator.list_nodes(origin)
                       if not n.unschedulable and n.name not in vanished]
        if schedulable:
            raise PreconditionError(f"nodes still schedulable after cordon: {', '.join(schedulable)}")
        return f"All {total - len(vanished)} nodes cordoned successfully"

    def _drain(self, run: _PhaseRun) -> str:
        session = run.session
        origin = session.origin.ref
        options = session.config.drain_options

        schedulable = [n.name for n in self.operator.list_nodes(origin) if not n.unschedulable]
        if schedulable:
            raise PreconditionError(f"drain requires cordoned nodes; schedulable: {', '.join(schedulable)}")

        self._emit(run, EventStatus.RUNNING, f"Drain options: {' '.join(options.flags())}", run.partial(0.0))
        report = self.drain_engine.drain(
            origin,
            options,
            progress=lambda event: self.bus.publish(session.id, event),
            cancel_event=session.cancel_event,
            progress_span=(run.done_weight, run.done_weight + Phase.DRAIN.weight),
        )

        total = len(report.outcomes)
        if report.dry_run:
            message = f"{DRY_RUN_MARKER} Drain plan computed for {total} nodes"
        else:
            message = f"All {total} nodes drained successfully (~{report.evicted_count} pods migrated)"
        if report.failed_nodes:
            message += f"; forced past failures on {', '.join(report.failed_nodes)}"
        if report.soft_failed_nodes:
            message += f"; warnings on {', '.join(report.soft_failed_nodes)}"
        return message

    def _post_drain(self, run: _PhaseRun) -> str:
        origin = run.session.origin
        intent = origin.post_drain_changes
        if intent is None:
            return f"No POST-DRAIN changes configured for {origin.ref.name}"
        self._emit(run, EventStatus.RUNNING, f"Applying changes to {origin.ref.name}: {intent.describe()}",
                   run.partial(0.3))
        self._scale(origin.ref, intent)
        return "POST-DRAIN changes applied successfully"

    # helpers

    def _scale(self, pool: NodePoolRef, intent: ScalingIntent) -> None:
        logger.info(f"Applying changes to {pool.name}: {intent.describe()}")
        self._retrying(self.settings.cordon_retry_attempts)(self.operator.scale_node_pool, pool, intent)

    def _retrying(self, attempts: int) -> Retrying:
        return cluster_retrying(self.settings, attempts)

    @staticmethod
    def _check_cancel(session: SequenceSession) -> None:
        if session.cancel_event.is_set():
            raise SequenceCancelled()

    def _emit(self, run: _PhaseRun, status: EventStatus, message: str, percent: float,
              node: Optional[str] = None, index: Optional[int] = None, total: Optional[int] = None,
              error: Optional[str] = None) -> None:
        phase = run.current
        self.bus.publish(run.session.id, ProgressEvent(
            phase=phase.value,
            phase_name=phase.label,
            status=status.value,
            message=message,
            progress_percent=percent,
            node_name=node,
            node_index=index,
            node_total=total,
            error=error,
        ))

    @staticmethod
    def _banner(session: SequenceSession) -> None:
        config = session.config
        logger.info("=" * 70)
        logger.info("NODE POOL SEQUENCING - Cordon/Drain Execution")
        logger.info("=" * 70)
        logger.info(f"Cluster: {session.request.cluster}")
        logger.info(f"Origin:  {session.origin.ref.name} (sequence *1)")
        logger.info(f"Dest:    {session.dest.ref.name} (sequence *2)")
        logger.info(f"Cordon:  {config.cordon_enabled} | Drain: {config.drain_enabled}")
        logger.info(f"Session: {session.id}")
