from __future__ import annotations
import threading
import time
from abc import ABC, abstractmethod
from typing import Callable, Dict, Iterator, List, Optional

import structlog

from ..core.models import CompletionEvent, Event

log = structlog.get_logger(__name__)


class EventSink(ABC):
    """Kênh event có thứ tự, chỉ append. Phải an toàn khi emit từ nhiều thread."""

    @abstractmethod
    def emit(self, event: Event) -> None: ...


class CallbackSink(EventSink):
    def __init__(self, fn: Callable[[Event], None]):
        self._fn = fn
        self._lock = threading.Lock()

    def emit(self, event: Event) -> None:
        with self._lock:
            self._fn(event)


class EventChannel(EventSink):
    """
    Buffer event của một lần submit. Subscriber vào muộn vẫn nhận đủ từ đầu.
    Channel đóng khi nhận CompletionEvent.
    """

    def __init__(self, job_id: str):
        self.job_id = job_id
        self._cond = threading.Condition()
        self._events: List[Event] = []
        self.closed_at: Optional[float] = None

    @property
    def closed(self) -> bool:
        with self._cond:
            return self.closed_at is not None

    def push(self, event: Event) -> bool:
        with self._cond:
            if self.closed_at is not None:
                return False
            self._events.append(event)
            if isinstance(event, CompletionEvent):
                self.closed_at = time.monotonic()
            self._cond.notify_all()
            return True

    def emit(self, event: Event) -> None:
        if not self.push(event):
            log.debug("event_after_close", job_id=self.job_id, kind=event.kind)

    def snapshot(self) -> List[Event]:
        with self._cond:
            return list(self._events)

    def iter_events(self, timeout: Optional[float] = None) -> Iterator[Optional[Event]]:
        """
        Yield event theo đúng thứ tự, dừng sau CompletionEvent.
        Nếu có timeout: yield None mỗi khi chờ quá timeout mà không có gì mới.
        """
        idx = 0
        while True:
            with self._cond:
                if idx >= len(self._events) and self.closed_at is None:
                    self._cond.wait(timeout)
                batch = self._events[idx:]
                idx += len(batch)
                done = self.closed_at is not None and idx >= len(self._events)

            # yield ngoài lock
            if not batch and not done:
                yield None
            for ev in batch:
                yield ev
            if done:
                return


class EventHub(EventSink):
    """Chia event theo job_id vào từng EventChannel."""

    def __init__(self, retention_s: float = 300.0):
        self.retention_s = retention_s
        self._lock = threading.Lock()
        self._channels: Dict[str, EventChannel] = {}

    def open(self, job_id: str) -> EventChannel:
        self.prune()
        ch = EventChannel(job_id)
        with self._lock:
            self._channels[job_id] = ch
        return ch

    def get(self, job_id: str) -> Optional[EventChannel]:
        with self._lock:
            return self._channels.get(job_id)

    def discard(self, job_id: str, channel: Optional[EventChannel] = None) -> None:
        """channel: chỉ gỡ nếu đúng channel này (id có thể đã được submit lại)."""
        with self._lock:
            if channel is None or self._channels.get(job_id) is channel:
                self._channels.pop(job_id, None)

    def emit(self, event: Event) -> None:
        ch = self.get(event.job_id)
        if ch is None:
            log.debug("event_without_channel", job_id=event.job_id, kind=event.kind)
            return
        ch.push(event)

    def prune(self) -> int:
        now = time.monotonic()
        with self._lock:
            stale = [
                jid for jid, ch in self._channels.items()
                if ch.closed_at is not None and now - ch.closed_at >= self.retention_s
            ]
            for jid in stale:
                del self._channels[jid]
        return len(stale)
