"""
线程安全的内存结构：事件总线、按 key 分配的锁、时钟。
由服务层显式创建并持有，不使用模块级单例。
"""
from __future__ import annotations
import logging
import threading
from collections import deque
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Callable, Deque, Dict, Iterator, List

logger = logging.getLogger(__name__)


def utcnow() -> datetime:
    """naive UTC 时间，与数据库中存储的时间一致"""
    return datetime.now(timezone.utc).replace(tzinfo=None)


class KeyedLocks:
    """
    每个 key（充电桩 / 预约 / 会话）一把可重入锁，不同 key 之间互不阻塞。
    记录持有和等待的线程数，归零时删除该 key 的锁，字典不会随 ID 数量无限增长。
    """

    def __init__(self):
        self._guard = threading.Lock()
        self._locks: Dict[str, list] = {}   # key -> [RLock, 使用者数]

    @contextmanager
    def hold(self, key: str) -> Iterator[None]:
        with self._guard:
            entry = self._locks.get(key)
            if entry is None:
                entry = self._locks[key] = [threading.RLock(), 0]
            entry[1] += 1
        try:
            with entry[0]:
                yield
        finally:
            with self._guard:
                entry[1] -= 1
                if entry[1] == 0:
                    del self._locks[key]

    def __call__(self, key: str):
        return self.hold(key)

    def __len__(self) -> int:
        with self._guard:
            return len(self._locks)


class EventBus:
    """
    领域事件：写入历史（供轮询）和待投递队列（供 WebSocket 转发），再同步通知订阅者。
    通知的投递方式不属于引擎的职责。
    """

    def __init__(self, maxlen: int = 500):
        self._lock = threading.RLock()
        self._events: Deque[dict] = deque(maxlen=maxlen)
        self._history: Deque[dict] = deque(maxlen=maxlen)
        self._subscribers: List[Callable[[dict], None]] = []

    def subscribe(self, callback: Callable[[dict], None]) -> None:
        with self._lock:
            self._subscribers.append(callback)

    def push_event(self, event_type: str, data: dict) -> dict:
        event = {"type": event_type, "data": data, "timestamp": utcnow().isoformat()}
        with self._lock:
            self._events.append(event)
            self._history.append(event)
            subscribers = list(self._subscribers)
        for callback in subscribers:
            try:
                callback(event)
            except Exception:
                logger.exception("event subscriber failed for %s", event_type)
        return event

    def pop_events(self) -> List[dict]:
        with self._lock:
            events = list(self._events)
            self._events.clear()
            return events

    def peek_events(self) -> List[dict]:
        """最近的事件，不影响待投递队列"""
        with self._lock:
            return list(self._history)
