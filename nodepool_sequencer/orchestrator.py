"""Session lifecycle: validate, lock pools, run in a worker thread, release"""
import threading
from typing import Any, Dict, List, Optional, Union

from loguru import logger

from nodepool_sequencer.bus import ProgressBus, Subscription
from nodepool_sequencer.errors import NodePoolNotFoundError, PoolBusyError, PreconditionError, ValidationError
from nodepool_sequencer.executor import PhaseExecutor, cluster_retrying
from nodepool_sequencer.models import NodePoolInfo, NodePoolRef, NodePoolUpdate, SequenceRequest
from nodepool_sequencer.operator import NodeOperator
from nodepool_sequencer.session import SequenceSession, SessionRegistry
from nodepool_sequencer.settings import Settings
from nodepool_sequencer.validator import validate_config, validate_request, validate_scaling_intent


class Orchestrator:
    def __init__(self, operator: NodeOperator, settings: Optional[Settings] = None,
                 bus: Optional[ProgressBus] = None, registry: Optional[SessionRegistry] = None):
        self.operator = operator
        self.settings = settings or Settings()
        self.bus = bus or ProgressBus()
        self.registry = registry or SessionRegistry(self.settings.session_retention)
        self.executor = PhaseExecutor(operator, self.bus, self.settings)
        self._threads: Dict[str, threading.Thread] = {}

    def create_session(self, request: Union[SequenceRequest, Dict[str, Any]], start: bool = True) -> SequenceSession:
        """
        Validate a request and start a session for it.

        Raises ValidationError before anything is created, PoolBusyError if
        another live session holds the origin or destination pool.
        """
        self.purge_expired()
        if not isinstance(request, SequenceRequest):
            request = SequenceRequest.from_dict(request)
        ok, errors = validate_request(request)
        if not ok:
            logger.warning(f"Rejected sequence request for {request.cluster}: {errors}")
            raise ValidationError(errors)

        session = SequenceSession(request)
        self.registry.add(session)
        self.bus.register(session)
        logger.info(f"Created session {session.id}: {request.origin.ref} -> {request.dest.ref}")
        if start:
            self.start(session)
        return session

    def start(self, session: SequenceSession) -> threading.Thread:
        thread = threading.Thread(target=self._execute, args=(session,), name=f"sequence-{session.id}", daemon=True)
        self._threads[session.id] = thread
        thread.start()
        return thread

    def run_sync(self, session: SequenceSession) -> SequenceSession:
        self._execute(session)
        return session

    def _execute(self, session: SequenceSession) -> None:
        try:
            self.executor.run(session)
        except Exception as e:
            logger.exception(f"Session {session.id} crashed")
            if not session.terminal:
                session.mark_failed(str(e))
        finally:
            self.registry.release(session)
            self.bus.close(session.id)
            self._threads.pop(session.id, None)
            logger.info(f"Session {session.id} finished: {session.status.value}")

    def wait(self, session_id: str, timeout: Optional[float] = None) -> SequenceSession:
        thread = self._threads.get(session_id)
        if thread is not None:
            thread.join(timeout)
        return self.registry.get(session_id)

    def get_session(self, session_id: str) -> SequenceSession:
        return self.registry.get(session_id)

    def list_sessions(self) -> List[SequenceSession]:
        return self.registry.list()

    def cancel(self, session_id: str) -> SequenceSession:
        session = self.registry.get(session_id)
        if not session.terminal:
            logger.info(f"Cancelling session {session_id}")
            session.cancel()
        return session

    def subscribe(self, session_id: str) -> Subscription:
        self.registry.get(session_id)
        return self.bus.subscribe(session_id)

    def unsubscribe(self, subscription: Subscription) -> None:
        self.bus.unsubscribe(subscription)

    def uncordon_origin(self, session_id: str) -> List[str]:
        """Manual recovery after a failed drain: make the origin schedulable again"""
        session = self.registry.get(session_id)
        if not session.terminal:
            raise PreconditionError(f"session {session_id} is still {session.status.value}")
        return self.uncordon_pool(session.origin.ref)

    def uncordon_pool(self, pool: NodePoolRef) -> List[str]:
        busy = self.registry.locked_pools().get(pool)
        if busy:
            raise PreconditionError(f"pool {pool} is locked by running session {busy}")
        uncordoned = []
        for node in self.operator.list_nodes(pool):
            if node.unschedulable:
                self.operator.uncordon(node.name)
                uncordoned.append(node.name)
        logger.info(f"Uncordoned {len(uncordoned)} nodes in {pool}")
        return uncordoned

    def list_node_pools(self, cluster: str, resource_group: str, subscription: str = "") -> List[NodePoolInfo]:
        pools = self.operator.list_node_pools(cluster, resource_group, subscription)
        logger.info(f"Loaded {len(pools)} node pools for {cluster}")
        return pools

    def update_node_pool(self, pool: NodePoolRef, update: NodePoolUpdate) -> NodePoolInfo:
        """
        Apply scaling changes to a single pool outside of a sequence.

        When the update carries a cordon/drain config the pool's nodes are
        cordoned and drained first. Runs in the caller's thread.
        """
        errors = validate_scaling_intent(update.intent, pool.name)
        if update.config is not None:
            errors += validate_config(update.config)[1]
        if errors:
            raise ValidationError(errors)
        busy = [sid for ref, sid in self.registry.locked_pools().items()
                if (ref.cluster, ref.name) == (pool.cluster, pool.name)]
        if busy:
            raise PoolBusyError([f"{pool} (session {busy[0]})"])
        self._find_pool(pool)

        config = update.config
        if config is not None and config.cordon_enabled:
            for node in self.operator.list_nodes(pool):
                cluster_retrying(self.settings, self.settings.cordon_retry_attempts)(self.operator.cordon, node.name)
                logger.info(f"Cordoned {node.name}")
            if config.drain_enabled:
                report = self.executor.drain_engine.drain(
                    pool, config.drain_options,
                    progress=lambda event: logger.debug(f"{event.phase_name} {event.status}: {event.message}"),
                )
                logger.info(f"Drained {len(report.outcomes)} nodes of {pool}")

        logger.info(f"Applying changes to {pool.name}: {update.intent.describe()}")
        cluster_retrying(self.settings, self.settings.cordon_retry_attempts)(
            self.operator.scale_node_pool, pool, update.intent)
        return self._find_pool(pool)

    def _find_pool(self, pool: NodePoolRef) -> NodePoolInfo:
        for info in self.operator.list_node_pools(pool.cluster, pool.resource_group, pool.subscription):
            if info.name == pool.name:
                return info
        raise NodePoolNotFoundError(str(pool))

    def purge_expired(self) -> List[str]:
        purged = self.registry.purge_expired()
        self.bus.forget(purged)
        return purged
