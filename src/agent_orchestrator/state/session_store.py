"""
SessionStore：Session 快照的持久化协作方。

实现：
- `InMemorySessionStore`：进程内 dict
- `FileSessionStore`：每会话一个 JSON 文件（原子替换写入）

约束：
- `save` 存的是快照副本；调用方之后对 Session 对象的修改不会影响已保存内容；
- `list` 按 `created_at` 升序返回。
"""

from __future__ import annotations

import json
import os
import threading
from pathlib import Path
from typing import Dict, List, Optional, Protocol, runtime_checkable

from agent_orchestrator.core.contracts import Session


@runtime_checkable
class SessionStore(Protocol):
    """Session 快照存储协议。"""

    def save(self, session: Session) -> None:
        """保存（覆盖）会话快照。"""

        ...

    def load(self, session_id: str) -> Optional[Session]:
        """读取会话快照（不存在返回 None）。"""

        ...

    def list(self) -> List[Session]:
        """返回全部会话快照。"""

        ...


class InMemorySessionStore:
    """进程内 SessionStore。"""

    def __init__(self) -> None:
        """创建空 store。"""

        self._lock = threading.RLock()
        self._items: Dict[str, Session] = {}

    def save(self, session: Session) -> None:
        """保存快照副本。"""

        with self._lock:
            self._items[session.id] = session.model_copy(deep=True)

    def load(self, session_id: str) -> Optional[Session]:
        """读取快照副本。"""

        with self._lock:
            s = self._items.get(session_id)
            return s.model_copy(deep=True) if s is not None else None

    def list(self) -> List[Session]:
        """按创建时间返回全部快照。"""

        with self._lock:
            items = [s.model_copy(deep=True) for s in self._items.values()]
        return sorted(items, key=lambda s: s.created_at)


class FileSessionStore:
    """
    文件 SessionStore。

    参数：
    - root_dir：根目录；快照位于 `<root_dir>/<session_id>/session.json`
    """

    def __init__(self, root_dir: Path) -> None:
        """创建 store。"""

        self.root_dir = Path(root_dir)
        self._lock = threading.RLock()

    def _path(self, session_id: str) -> Path:
        """返回会话快照路径。"""

        return self.root_dir / session_id / "session.json"

    def save(self, session: Session) -> None:
        """写入快照（先写临时文件再原子替换）。"""

        path = self._path(session.id)
        payload = json.dumps(session.model_dump(mode="json"), ensure_ascii=False, indent=2)
        with self._lock:
            path.parent.mkdir(parents=True, exist_ok=True)
            tmp = path.with_suffix(".json.tmp")
            tmp.write_text(payload + "\n", encoding="utf-8")
            os.replace(tmp, path)

    def load(self, session_id: str) -> Optional[Session]:
        """读取快照。"""

        path = self._path(session_id)
        with self._lock:
            if not path.exists():
                return None
            raw = path.read_text(encoding="utf-8")
        return Session.model_validate(json.loads(raw))

    def list(self) -> List[Session]:
        """扫描根目录返回全部快照。"""

        if not self.root_dir.exists():
            return []
        out: List[Session] = []
        with self._lock:
            for child in sorted(self.root_dir.iterdir()):
                p = child / "session.json"
                if p.is_file():
                    out.append(Session.model_validate(json.loads(p.read_text(encoding="utf-8"))))
        return sorted(out, key=lambda s: s.created_at)


__all__ = ["FileSessionStore", "InMemorySessionStore", "SessionStore"]
