"""
Sequence sessions and the process-wide registry that owns them.

A session is created once, moves forward through phases 1 to 5 and ends as
``completed`` or ``failed``. The registry also holds the per-pool exclusive
locks: two live sessions may never share an origin or destination pool.
"""
import threading
import uuid
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from loguru import logger

from nodepool_sequencer.errors import PoolBusyError, PreconditionError, SessionNotFoundError
from nodepool_sequencer.models import (
    NodePoolRef,
    ProgressEvent,
    SequenceRequest,
    SessionStatus,
    utcnow,
)


def new_session_id(cluster: str) -> str:
    return f"{cluster}_{uuid.uuid4().hex[:12]}"


class SequenceSession:
    def __init__(self, request: SequenceRequest, session_id: Optional[str] = None):
        self.id = session_id or new_session_id(request.cluster)
        self.request = request
        self.phase = 0
        self.status = SessionStatus.PENDING
        self.events: List[ProgressEvent] = []
        self.created_at: datetime = utcnow()
        self.completed_at: Optional[datetime] = None
        self.failed_phase: Optional[int] = None
        self.error: Optional[str] = None
        self.cancel_event = threading.Event()
        self._lock = threading.Lock()

    @property
    def config(self):
        return self.request.config

    @property
    def origin(self):
        return self.request.origin

    @property
    def dest(self):
        return self.request.dest

    @property
    def terminal(self) -> bool:
        return self.status.terminal

    def enter_phase(self, phase: int) -> None:
        with self._lock:
            if self.terminal:
                raise PreconditionError(f"session {self.id} is already {self.status.value}")
            if phase <= self.phase:
                raise PreconditionError(f"phase {phase} cannot follow phase {self.phase}")
            self.phase = phase

    def mark_running(self) -> None:
        with self._lock:
            if self.status != SessionStatus.PENDING:
                raise PreconditionError(f"session {self.id} already started")
            self.status = SessionStatus.RUNNING

    def mark_completed(self) -> None:
        with self._lock:
            if self.terminal:
                raise PreconditionError(f"session {self.id} is already {self.status.value}")
            self.status = SessionStatus.COMPLETED
            self.completed_at = utcnow()

    def mark_failed(self, error: str, phase: Optional[int] = None) -> None:
        with self._lock:
            if self.terminal:
                raise PreconditionError(f"session {self.id} is already {self.status.value}")
            self.status = SessionStatus.FAILED
            self.failed_phase = phase if phase is not None else self.phase
            self.error = error
            self.completed_at = utcnow()

    def cancel(self) -> None:
        self.cancel_event.set()

    def progress(self) -> float:
        return self.events[-1].progress_percent if self.events else 0.0

    def to_summary(self) -> Dict[str, Any]:
        return {
            "session_id": self.id,
            "cluster": self.request.cluster,
            "origin": self.origin.ref.name,
            "dest": self.dest.ref.name,
            "phase": self.phase,
            "status": self.status.value,
            "progress": self.progress(),
            "failed_phase": self.failed_phase,
            "error": self.error,
            "event_count": len(self.events),
            "created_at": self.created_at.isoformat(),
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
        }


class SessionRegistry:
    def __init__(self, retention_seconds: float = 3600.0):
        self.retention = timedelta(seconds=retention_seconds)
        self._lock = threading.Lock()
        self._sessions: Dict[str, SequenceSession] = {}
        self._pool_owners: Dict[NodePoolRef, str] = {}

    def add(self, session: SequenceSession) -> None:
        """Register a session, taking exclusive locks on its origin and destination pools"""
        with self._lock:
            busy = [str(pool) for pool in session.request.pools if pool in self._pool_owners]
            if busy:
                raise PoolBusyError(busy)
            for pool in session.request.pools:
                self._pool_owners[pool] = session.id
            self._sessions[session.id] = session

    def release(self, session: SequenceSession) -> None:
        with self._lock:
            for pool in session.request.pools:
                if self._pool_owners.get(pool) == session.id:
                    del self._pool_owners[pool]

    def get(self, session_id: str) -> SequenceSession:
        with self._lock:
            session = self._sessions.get(session_id)
        if session is None:
            raise SessionNotFoundError(session_id)
        return session

    def list(self) -> List[SequenceSession]:
        with self._lock:
            return list(self._sessions.values())

    def locked_pools(self) -> Dict[NodePoolRef, str]:
        with self._lock:
            return dict(self._pool_owners)

    def purge_expired(self, now: Optional[datetime] = None) -> List[str]:
        """Drop terminal sessions whose retention window has passed"""
        now = now or utcnow()
        purged = []
        with self._lock:
            for session_id, session in list(self._sessions.items()):
                if session.terminal and session.completed_at and now - session.completed_at >= self.retention:
                    del self._sessions[session_id]
                    purged.append(session_id)
        if purged:
            logger.debug(f"Purged {len(purged)} expired sessions")
        return purged
