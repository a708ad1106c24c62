"""
SSE 编码：把会话事件流转换为 `text/event-stream`。

每条消息：
- `id`：事件 sequence（客户端断线后以 `Last-Event-ID` 续传）
- `event`：事件类型
- `data`：单行 JSON（wire 形状 `{sequence, type, data, terminal}`）
"""

from __future__ import annotations

import json
import logging
from typing import AsyncIterator, Optional

from agent_orchestrator.core.contracts import StreamEvent
from agent_orchestrator.core.errors import SubscriberDisconnected

logger = logging.getLogger(__name__)


def format_sse_event(*, event: str, data_json: str, event_id: Optional[int] = None) -> str:
    """
    格式化一条 SSE 消息。

    约束：
    - event：事件名
    - data_json：单行 JSON 字符串
    """

    head = f"id: {event_id}\n" if event_id is not None else ""
    return head + f"event: {event}\n" f"data: {data_json}\n\n"


async def stream_events_as_sse(events: AsyncIterator[StreamEvent]) -> AsyncIterator[bytes]:
    """
    把事件迭代器编码为 SSE 字节流。

    终止条件：
    - 交付终态事件后（迭代器自然结束）
    - 订阅者缓冲溢出：发送一条 `disconnected` 消息（含最后的 sequence）后结束
    """

    last = 0
    try:
        async for ev in events:
            last = ev.sequence
            data_json = json.dumps(ev.to_wire(), ensure_ascii=False)
            yield format_sse_event(event=ev.type.value, data_json=data_json, event_id=ev.sequence).encode("utf-8")
    except SubscriberDisconnected as e:
        logger.warning("SSE subscriber disconnected at sequence %d: %s", last, e.message)
        payload = {"error_kind": e.kind.value, "message": e.message, "last_sequence": last}
        yield format_sse_event(event="disconnected", data_json=json.dumps(payload)).encode("utf-8")


__all__ = ["format_sse_event", "stream_events_as_sse"]
