from __future__ import annotations

import logging
import queue
import threading
from collections import deque
from typing import Any, Iterator

from .models import EventKind, OrchestrationEvent

logger = logging.getLogger(__name__)

_CLOSED = object()


class Subscription:
    """One consumer's view of an EventChannel.

    Events are buffered in a bounded queue; when it is full the oldest
    buffered event is dropped to make room. Iteration ends once the channel
    closes and the buffer is drained.
    """

    def __init__(self, channel: "EventChannel", max_queue: int) -> None:
        self._channel = channel
        self._queue: queue.Queue[Any] = queue.Queue(maxsize=max_queue)
        self._lock = threading.Lock()
        self.dropped = 0
        self.closed = False
        self._unsubscribed = False

    def _offer(self, item: Any) -> None:
        with self._lock:
            while True:
                try:
                    self._queue.put_nowait(item)
                    return
                except queue.Full:
                    try:
                        self._queue.get_nowait()
                        self.dropped += 1
                    except queue.Empty:
                        pass

    def get(self, timeout: float | None = None) -> OrchestrationEvent | None:
        """Next event, or None once the channel is closed (or ``timeout`` elapses)."""
        if self.closed and self._queue.empty():
            return None
        try:
            item = self._queue.get(timeout=timeout)
        except queue.Empty:
            return None
        if item is _CLOSED:
            self.closed = True
            return None
        return item

    def __iter__(self) -> Iterator[OrchestrationEvent]:
        while True:
            event = self.get()
            if event is None:
                return
            yield event

    def close(self) -> None:
        """Unsubscribe. Safe to call more than once."""
        if self._unsubscribed:
            return
        self._unsubscribed = True
        self._channel._unsubscribe(self)
        self._offer(_CLOSED)


class EventChannel:
    """Per-orchestration publish/subscribe channel with a bounded replay history."""

    def __init__(self, orchestration_id: str, *, max_queue: int = 256, history_size: int = 1_000) -> None:
        if max_queue < 1:
            raise ValueError("max_queue must be >= 1")
        self.orchestration_id = orchestration_id
        self._max_queue = max_queue
        self._history: deque[OrchestrationEvent] = deque(maxlen=history_size)
        self._subscribers: list[Subscription] = []
        self._lock = threading.Lock()
        self._sequence = 0
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def publish(
        self,
        kind: EventKind,
        message: str,
        *,
        task_id: str | None = None,
        data: dict[str, Any] | None = None,
    ) -> OrchestrationEvent | None:
        with self._lock:
            if self._closed:
                logger.debug("Dropping %s event for closed channel %s", kind.value, self.orchestration_id)
                return None
            self._sequence += 1
            event = OrchestrationEvent(
                orchestration_id=self.orchestration_id,
                sequence=self._sequence,
                kind=kind,
                message=message,
                task_id=task_id,
                data=dict(data or {}),
            )
            self._history.append(event)
            subscribers = list(self._subscribers)
        for subscriber in subscribers:
            subscriber._offer(event)
        return event

    def subscribe(self, *, replay: bool = True) -> Subscription:
        with self._lock:
            subscription = Subscription(self, self._max_queue)
            if replay:
                for event in self._history:
                    subscription._offer(event)
            if self._closed:
                subscription._offer(_CLOSED)
            else:
                self._subscribers.append(subscription)
        return subscription

    def _unsubscribe(self, subscription: Subscription) -> None:
        with self._lock:
            if subscription in self._subscribers:
                self._subscribers.remove(subscription)

    def history(self) -> list[OrchestrationEvent]:
        with self._lock:
            return list(self._history)

    def close(self) -> None:
        """Close the channel and end every subscription. Idempotent."""
        with self._lock:
            if self._closed:
                return
            self._closed = True
            subscribers = list(self._subscribers)
            self._subscribers.clear()
        for subscriber in subscribers:
            subscriber._offer(_CLOSED)
        logger.debug("Closed event channel %s", self.orchestration_id)


class EventBus:
    """Registry of EventChannels keyed by orchestration id."""

    def __init__(self, *, max_queue: int = 256, history_size: int = 1_000) -> None:
        self._max_queue = max_queue
        self._history_size = history_size
        self._channels: dict[str, EventChannel] = {}
        self._lock = threading.Lock()

    def channel(self, orchestration_id: str) -> EventChannel:
        with self._lock:
            channel = self._channels.get(orchestration_id)
            if channel is None:
                channel = EventChannel(
                    orchestration_id, max_queue=self._max_queue, history_size=self._history_size
                )
                self._channels[orchestration_id] = channel
            return channel

    def get(self, orchestration_id: str) -> EventChannel | None:
        with self._lock:
            return self._channels.get(orchestration_id)

    def close(self, orchestration_id: str) -> None:
        with self._lock:
            channel = self._channels.get(orchestration_id)
        if channel is not None:
            channel.close()

    def remove(self, orchestration_id: str) -> None:
        """Close and forget a channel. Unknown ids are ignored."""
        with self._lock:
            channel = self._channels.pop(orchestration_id, None)
        if channel is not None:
            channel.close()

    def __len__(self) -> int:
        with self._lock:
            return len(self._channels)
