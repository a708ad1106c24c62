"""
EventLog：可恢复的会话事件流（持久化 + 订阅者扇出）。

顺序约束（单点出口）：
1) 分配 sequence（每会话从 1 开始、无空洞）
2) 写入 EventStore（append-only）
3) 调用 hooks（fail-open）
4) 非阻塞地推送给所有 live 订阅者

订阅约束：
- 先注册 live 订阅者，再从 store 回放 `sequence > from_sequence` 的历史，之后消费 live 缓冲；
  已交付的 sequence 会被跳过，缺口从 store 补齐，因此回放与 live 之间不丢不重；
- 每个订阅者独立的有界缓冲（事件数 + 字节数）；溢出只断开该订阅者，生产者从不阻塞；
- 交付终态事件（done/error）后迭代结束。
"""

from __future__ import annotations

import asyncio
import logging
import threading
from typing import Any, AsyncIterator, Callable, Dict, List, Optional, Sequence, Set

from agent_orchestrator.core.contracts import StreamEvent, StreamEventType
from agent_orchestrator.core.errors import Conflict, SubscriberDisconnected
from agent_orchestrator.core.utils import now_rfc3339
from agent_orchestrator.state.event_store import EventStore

logger = logging.getLogger(__name__)

EventHook = Callable[[StreamEvent], None]

_DISCONNECT = object()


class _Subscriber:
    """
    单个 live 订阅者（internal）。

    字段：
    - queue：无界 asyncio.Queue；上限由 `offer` 手动执行
    - buffered_bytes：当前缓冲的序列化字节数
    - overflowed：是否已因溢出被断开
    """

    def __init__(self, session_id: str, *, max_events: int, max_bytes: int) -> None:
        """创建订阅者。"""

        self.session_id = session_id
        self.max_events = int(max_events)
        self.max_bytes = int(max_bytes)
        self.queue: "asyncio.Queue[Any]" = asyncio.Queue()
        self.buffered_events = 0
        self.buffered_bytes = 0
        self.overflowed = False

    def offer(self, event: StreamEvent, size: int) -> bool:
        """尝试入队；超过上限时标记溢出并唤醒消费者，返回 False。"""

        if self.overflowed:
            return False
        if self.buffered_events + 1 > self.max_events or self.buffered_bytes + size > self.max_bytes:
            self.overflowed = True
            self.queue.put_nowait(_DISCONNECT)
            return False
        self.buffered_events += 1
        self.buffered_bytes += size
        self.queue.put_nowait((event, size))
        return True

    async def take(self) -> StreamEvent:
        """取出下一个 live 事件；溢出时抛 `SubscriberDisconnected`。"""

        item = await self.queue.get()
        if item is _DISCONNECT:
            raise SubscriberDisconnected(
                "subscriber buffer overflow; resubscribe with the last received sequence",
                details={"session_id": self.session_id},
            )
        event, size = item
        self.buffered_events -= 1
        self.buffered_bytes -= size
        return event


class EventLog:
    """
    EventLog。

    参数：
    - store：EventStore 持久化协作方
    - hooks：可观测性 hooks（必须不修改事件；异常被吞掉并记录 warning）
    - subscriber_buffer_events/subscriber_buffer_bytes：每个订阅者的缓冲上限
    """

    def __init__(
        self,
        store: EventStore,
        *,
        hooks: Sequence[EventHook] = (),
        subscriber_buffer_events: int = 1000,
        subscriber_buffer_bytes: int = 4 * 1024 * 1024,
    ) -> None:
        """创建 EventLog。参数见类注释。"""

        self.store = store
        self.hooks: List[EventHook] = list(hooks)
        self.subscriber_buffer_events = int(subscriber_buffer_events)
        self.subscriber_buffer_bytes = int(subscriber_buffer_bytes)
        self._lock = threading.RLock()
        self._last_seq: Dict[str, int] = {}
        self._terminal_seq: Dict[str, int] = {}
        self._subscribers: Dict[str, Set[_Subscriber]] = {}

    def _ensure_session(self, session_id: str) -> None:
        """内部：首次访问时从 store 恢复计数器与终态标记。"""

        if session_id in self._last_seq:
            return
        existing = self.store.load_log(session_id, 0)
        self._last_seq[session_id] = existing[-1].sequence if existing else 0
        if existing and existing[-1].terminal:
            self._terminal_seq[session_id] = existing[-1].sequence

    def last_sequence(self, session_id: str) -> int:
        """返回会话最后一个事件的 sequence（无事件为 0）。"""

        with self._lock:
            self._ensure_session(session_id)
            return self._last_seq[session_id]

    def is_closed(self, session_id: str) -> bool:
        """会话事件流是否已写入终态事件。"""

        with self._lock:
            self._ensure_session(session_id)
            return session_id in self._terminal_seq

    def history(self, session_id: str, from_sequence: int = 0) -> List[StreamEvent]:
        """返回持久化的历史事件（sequence > from_sequence）。"""

        return self.store.load_log(session_id, int(from_sequence))

    def subscriber_count(self, session_id: str) -> int:
        """当前 live 订阅者数量。"""

        with self._lock:
            return len(self._subscribers.get(session_id, ()))

    def _call_hooks(self, event: StreamEvent) -> None:
        """依次调用 hooks（fail-open）。"""

        for h in self.hooks:
            try:
                h(event)
            except Exception:
                logger.warning("Event hook %r failed for %s#%d", h, event.session_id, event.sequence, exc_info=True)

    def append(
        self,
        session_id: str,
        type: StreamEventType,
        data: Optional[Dict[str, Any]] = None,
        *,
        terminal: bool = False,
    ) -> StreamEvent:
        """
        追加一个事件并扇出。

        异常：
        - Conflict：该会话已写入终态事件（终态之后不得再追加）
        """

        with self._lock:
            self._ensure_session(session_id)
            if session_id in self._terminal_seq:
                raise Conflict(
                    "event stream already terminated",
                    details={"session_id": session_id, "terminal_sequence": self._terminal_seq[session_id]},
                )
            event = StreamEvent(
                session_id=session_id,
                sequence=self._last_seq[session_id] + 1,
                type=StreamEventType(type),
                data=dict(data or {}),
                terminal=bool(terminal),
                timestamp=now_rfc3339(),
            )
            self.store.append_event(event)
            self._last_seq[session_id] = event.sequence
            if event.terminal:
                self._terminal_seq[session_id] = event.sequence
            subscribers = list(self._subscribers.get(session_id, ()))

        self._call_hooks(event)

        if subscribers:
            size = len(event.to_json().encode("utf-8"))
            for sub in subscribers:
                if not sub.offer(event, size):
                    logger.warning(
                        "Subscriber on session %s disconnected: buffer overflow at sequence %d",
                        session_id,
                        event.sequence,
                    )
                    self._unregister(sub)
        return event

    def _register(self, session_id: str) -> _Subscriber:
        """内部：注册 live 订阅者。"""

        sub = _Subscriber(
            session_id, max_events=self.subscriber_buffer_events, max_bytes=self.subscriber_buffer_bytes
        )
        with self._lock:
            self._subscribers.setdefault(session_id, set()).add(sub)
        return sub

    def _unregister(self, sub: _Subscriber) -> None:
        """内部：注销订阅者（幂等）。"""

        with self._lock:
            subs = self._subscribers.get(sub.session_id)
            if subs is not None:
                subs.discard(sub)
                if not subs:
                    self._subscribers.pop(sub.session_id, None)

    async def subscribe(self, session_id: str, from_sequence: int = 0) -> AsyncIterator[StreamEvent]:
        """
        订阅会话事件（回放 + live）。

        参数：
        - from_sequence：已收到的最后一个 sequence（0 表示从头开始）

        异常：
        - SubscriberDisconnected：缓冲溢出；调用方可用最后收到的 sequence 重新订阅
        """

        last = max(0, int(from_sequence))
        with self._lock:
            self._ensure_session(session_id)
            terminal_seq = self._terminal_seq.get(session_id)
            if terminal_seq is not None and last >= terminal_seq:
                return
            sub = self._register(session_id)

        try:
            for event in self.store.load_log(session_id, last):
                yield event
                last = event.sequence
                if event.terminal:
                    return

            while True:
                event = await sub.take()
                if event.sequence <= last:
                    continue
                if event.sequence > last + 1:
                    # 缺口：从 store 补齐
                    for missing in self.store.load_log(session_id, last):
                        if missing.sequence >= event.sequence:
                            break
                        yield missing
                        last = missing.sequence
                        if missing.terminal:
                            return
                yield event
                last = event.sequence
                if event.terminal:
                    return
        finally:
            self._unregister(sub)


__all__ = ["EventHook", "EventLog"]
