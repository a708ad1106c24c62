"""
EventStore：Step 与 StreamEvent 的持久化协作方。

实现：
- `InMemoryEventStore`：进程内（测试/单进程服务）
- `JsonlEventStore`：每会话一个目录（`steps.jsonl` + `events.jsonl`），逐行追加并 fsync

约束：
- append-only：不提供修改/删除；保留策略由部署方决定；
- `append_step` 校验 index 连续（从 0 开始、无空洞）；
- `append_event` 校验 sequence 连续（从 1 开始、无空洞）。
"""

from __future__ import annotations

import json
import os
import threading
from pathlib import Path
from typing import Dict, List, Optional, Protocol, TextIO, Tuple, runtime_checkable

from agent_orchestrator.core.contracts import Step, StreamEvent
from agent_orchestrator.core.errors import Conflict


@runtime_checkable
class EventStore(Protocol):
    """持久化协作方协议。"""

    def append_step(self, step: Step) -> None:
        """追加一个 Step（index 必须等于当前 step 数）。"""

        ...

    def load_steps(self, session_id: str) -> List[Step]:
        """按 index 顺序返回会话的全部 Step。"""

        ...

    def append_event(self, event: StreamEvent) -> None:
        """追加一个 StreamEvent（sequence 必须等于当前事件数 + 1）。"""

        ...

    def load_log(self, session_id: str, from_seq: int = 0) -> List[StreamEvent]:
        """返回 sequence > from_seq 的事件（升序）。"""

        ...


def _check_step_index(step: Step, expected: int) -> None:
    """校验 Step index 连续。"""

    if step.index != expected:
        raise Conflict(
            f"step index gap: expected {expected}, got {step.index}",
            details={"session_id": step.session_id, "expected": expected, "got": step.index},
        )


def _check_event_sequence(event: StreamEvent, expected: int) -> None:
    """校验事件 sequence 连续。"""

    if event.sequence != expected:
        raise Conflict(
            f"event sequence gap: expected {expected}, got {event.sequence}",
            details={"session_id": event.session_id, "expected": expected, "got": event.sequence},
        )


class InMemoryEventStore:
    """进程内 EventStore。"""

    def __init__(self) -> None:
        """创建空 store。"""

        self._lock = threading.RLock()
        self._steps: Dict[str, List[Step]] = {}
        self._events: Dict[str, List[StreamEvent]] = {}

    def append_step(self, step: Step) -> None:
        """追加 Step。"""

        with self._lock:
            steps = self._steps.setdefault(step.session_id, [])
            _check_step_index(step, len(steps))
            steps.append(step)

    def load_steps(self, session_id: str) -> List[Step]:
        """返回 Step 列表副本。"""

        with self._lock:
            return list(self._steps.get(session_id, []))

    def append_event(self, event: StreamEvent) -> None:
        """追加事件。"""

        with self._lock:
            events = self._events.setdefault(event.session_id, [])
            _check_event_sequence(event, len(events) + 1)
            events.append(event)

    def load_log(self, session_id: str, from_seq: int = 0) -> List[StreamEvent]:
        """返回 sequence > from_seq 的事件。sequence 从 1 连续，可直接切片。"""

        with self._lock:
            events = self._events.get(session_id, [])
            return list(events[max(0, int(from_seq)) :])


class _JsonlFile:
    """
    单个 append-only JSONL 文件（internal）。

    说明：
    - 打开时扫描现有非空行数作为计数；
    - 复用同一文件句柄，每次追加后 flush + fsync。
    """

    def __init__(self, path: Path) -> None:
        """打开（必要时创建）文件并恢复行计数。"""

        self.path = Path(path)
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self.count = self._scan_count()
        self._fh: Optional[TextIO] = None

    def _scan_count(self) -> int:
        """扫描现有文件得到非空行数。"""

        if not self.path.exists():
            return 0
        count = 0
        with self.path.open("r", encoding="utf-8") as f:
            for line in f:
                if line.strip():
                    count += 1
        return count

    def append_line(self, line: str) -> None:
        """追加一行并落盘。"""

        if self._fh is None or self._fh.closed:
            self._fh = self.path.open("a", encoding="utf-8")
        self._fh.write(line)
        self._fh.write("\n")
        self._fh.flush()
        os.fsync(self._fh.fileno())
        self.count += 1

    def read_lines(self) -> List[str]:
        """读取全部非空行。"""

        if not self.path.exists():
            return []
        with self.path.open("r", encoding="utf-8") as f:
            return [line.strip() for line in f if line.strip()]

    def close(self) -> None:
        """关闭句柄。"""

        if self._fh is None:
            return
        try:
            self._fh.close()
        except OSError:
            pass
        finally:
            self._fh = None


class JsonlEventStore:
    """
    JSONL 持久化 EventStore。

    参数：
    - root_dir：根目录；会话文件位于 `<root_dir>/<session_id>/{steps,events}.jsonl`
    """

    def __init__(self, root_dir: Path) -> None:
        """创建 store（目录惰性创建）。"""

        self.root_dir = Path(root_dir)
        self._lock = threading.RLock()
        self._files: Dict[Tuple[str, str], _JsonlFile] = {}

    def _file(self, session_id: str, name: str) -> _JsonlFile:
        """返回（并缓存）会话的某个 JSONL 文件。"""

        key = (session_id, name)
        f = self._files.get(key)
        if f is None:
            f = _JsonlFile(self.root_dir / session_id / f"{name}.jsonl")
            self._files[key] = f
        return f

    def append_step(self, step: Step) -> None:
        """追加 Step（一行 JSON）。"""

        with self._lock:
            f = self._file(step.session_id, "steps")
            _check_step_index(step, f.count)
            f.append_line(json.dumps(step.model_dump(mode="json"), ensure_ascii=False))

    def load_steps(self, session_id: str) -> List[Step]:
        """读取全部 Step。"""

        with self._lock:
            lines = self._file(session_id, "steps").read_lines()
        return [Step.model_validate(json.loads(line)) for line in lines]

    def append_event(self, event: StreamEvent) -> None:
        """追加事件（一行 JSON）。"""

        with self._lock:
            f = self._file(event.session_id, "events")
            _check_event_sequence(event, f.count + 1)
            f.append_line(event.to_json())

    def load_log(self, session_id: str, from_seq: int = 0) -> List[StreamEvent]:
        """读取 sequence > from_seq 的事件。"""

        with self._lock:
            lines = self._file(session_id, "events").read_lines()
        out: List[StreamEvent] = []
        for line in lines:
            ev = StreamEvent.from_json(line)
            if ev.sequence > from_seq:
                out.append(ev)
        return out

    def close(self) -> None:
        """关闭所有文件句柄。"""

        with self._lock:
            for f in self._files.values():
                f.close()
            self._files.clear()


__all__ = ["EventStore", "InMemoryEventStore", "JsonlEventStore"]
