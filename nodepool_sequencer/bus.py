"""
Live fan-out of progress events.

Publishing appends the event to the session's own log and hands it to
every subscriber, all under one lock so that every observer sees events in
emission order. Subscribers get no history; a late joiner only sees what is
published after it subscribed.
"""
import queue
import threading
from typing import Dict, Iterator, List, Optional

from loguru import logger

from nodepool_sequencer.errors import SessionNotFoundError
from nodepool_sequencer.models import ProgressEvent
from nodepool_sequencer.session import SequenceSession

_CLOSED = object()


class Subscription:
    def __init__(self, session_id: str):
        self.session_id = session_id
        self._queue: "queue.Queue" = queue.Queue()
        self.closed = False

    def _push(self, item) -> None:
        self._queue.put(item)

    def get(self, timeout: Optional[float] = None) -> Optional[ProgressEvent]:
        """Next event, or None on timeout or once the stream has closed"""
        if self.closed:
            return None
        try:
            item = self._queue.get(timeout=timeout)
        except queue.Empty:
            return None
        if item is _CLOSED:
            self.closed = True
            return None
        return item

    def __iter__(self) -> Iterator[ProgressEvent]:
        while True:
            event = self.get()
            if event is None and self.closed:
                return
            if event is not None:
                yield event


class _Channel:
    def __init__(self, session: SequenceSession):
        self.session = session
        self.subscribers: List[Subscription] = []
        self.closed = False


class ProgressBus:
    def __init__(self):
        self._lock = threading.Lock()
        self._channels: Dict[str, _Channel] = {}

    def register(self, session: SequenceSession) -> None:
        with self._lock:
            self._channels[session.id] = _Channel(session)

    def _channel(self, session_id: str) -> _Channel:
        channel = self._channels.get(session_id)
        if channel is None:
            raise SessionNotFoundError(session_id)
        return channel

    def publish(self, session_id: str, event: ProgressEvent) -> None:
        with self._lock:
            channel = self._channel(session_id)
            if channel.closed:
                logger.warning(f"Dropping event for closed session {session_id}: {event.message}")
                return
            channel.session.events.append(event)
            for subscription in channel.subscribers:
                subscription._push(event)

    def subscribe(self, session_id: str) -> Subscription:
        subscription = Subscription(session_id)
        with self._lock:
            channel = self._channel(session_id)
            if channel.closed:
                subscription._push(_CLOSED)
            else:
                channel.subscribers.append(subscription)
        return subscription

    def unsubscribe(self, subscription: Subscription) -> None:
        with self._lock:
            channel = self._channels.get(subscription.session_id)
            if channel and subscription in channel.subscribers:
                channel.subscribers.remove(subscription)

    def close(self, session_id: str) -> None:
        with self._lock:
            channel = self._channel(session_id)
            if channel.closed:
                return
            channel.closed = True
            for subscription in channel.subscribers:
                subscription._push(_CLOSED)
            channel.subscribers.clear()

    def subscriber_count(self, session_id: str) -> int:
        with self._lock:
            return len(self._channel(session_id).subscribers)

    def forget(self, session_ids: List[str]) -> None:
        with self._lock:
            for session_id in session_ids:
                self._channels.pop(session_id, None)
