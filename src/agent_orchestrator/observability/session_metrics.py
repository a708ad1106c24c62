"""
Session metrics summary（从事件日志离线重算，可复刻）。

输入：
- `StreamEvent` 序列（`compute_session_metrics`）
- 或 JsonlEventStore 写出的 `events.jsonl`（`compute_session_metrics_from_file`）

约束：
- sequence 必须从 1 连续递增；发现缺口/重复时记录 `invalid_log` 错误且 status 固定为 unknown；
- 字段集合稳定（便于脚本消费）。
"""

from __future__ import annotations

import json
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Iterable, Optional

from pydantic import ValidationError as PydanticValidationError

from agent_orchestrator.core.contracts import StreamEvent, StreamEventType


def _parse_rfc3339_to_dt(ts: str) -> datetime:
    """
    解析 RFC3339 时间字符串为 datetime（UTC）。

    异常：
    - ValueError：解析失败
    """

    raw = (ts or "").strip()
    if raw.endswith("Z"):
        raw = raw[:-1] + "+00:00"
    dt = datetime.fromisoformat(raw)
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def _new_summary() -> Dict[str, Any]:
    """返回一个空的 SessionMetricsSummary（字段稳定）。"""

    return {
        "session_id": "",
        "status": "unknown",
        "error_kind": None,
        "started_at": None,
        "ended_at": None,
        "wall_time_ms": 0,
        "counts": {
            "events_total": 0,
            "by_type": {t.value: 0 for t in StreamEventType},
            "reasoning_steps_total": 0,
            "tool_calls_total": 0,
            "tool_results_total": 0,
        },
        "tools": {"by_name": {}, "duration_ms_total": 0, "attempts_total": 0},
        "errors": [],
    }


def _terminal_status(event: StreamEvent) -> str:
    """由终态事件推导会话状态。"""

    if event.type == StreamEventType.DONE:
        return "completed"
    status = event.data.get("status")
    if isinstance(status, str) and status:
        return status
    kind = event.data.get("error_kind")
    if kind == "cancelled":
        return "cancelled"
    if kind == "timeout":
        return "timed_out"
    return "failed"


def compute_session_metrics(events: Iterable[StreamEvent]) -> Dict[str, Any]:
    """从事件序列计算 SessionMetricsSummary。"""

    summary = _new_summary()
    counts = summary["counts"]
    by_name: Dict[str, Dict[str, int]] = summary["tools"]["by_name"]
    expected = 1
    session_id: Optional[str] = None
    terminal: Optional[StreamEvent] = None

    for ev in events:
        if session_id is None:
            session_id = ev.session_id
            summary["session_id"] = session_id
            summary["started_at"] = ev.timestamp
        elif ev.session_id != session_id:
            summary["errors"].append({"kind": "invalid_log", "message": "inconsistent session_id detected"})
            summary["status"] = "unknown"
            return summary
        if ev.sequence != expected:
            summary["errors"].append(
                {"kind": "invalid_log", "message": f"sequence gap: expected {expected}, got {ev.sequence}"}
            )
            summary["status"] = "unknown"
            return summary
        expected += 1

        counts["events_total"] += 1
        counts["by_type"][ev.type.value] += 1
        if ev.type == StreamEventType.STEP and ev.data.get("kind") == "reasoning":
            counts["reasoning_steps_total"] += 1
        elif ev.type == StreamEventType.TOOL_CALL:
            counts["tool_calls_total"] += 1
            name = str(ev.data.get("tool_name") or "")
            by_name.setdefault(name, {"calls": 0, "succeeded": 0, "failed": 0, "timed_out": 0, "duration_ms_total": 0})
            by_name[name]["calls"] += 1
        elif ev.type == StreamEventType.TOOL_RESULT:
            counts["tool_results_total"] += 1
            name = str(ev.data.get("tool_name") or "")
            entry = by_name.setdefault(
                name, {"calls": 0, "succeeded": 0, "failed": 0, "timed_out": 0, "duration_ms_total": 0}
            )
            status = str(ev.data.get("status") or "")
            if status in ("succeeded", "failed", "timed_out"):
                entry[status] += 1
            duration = int(ev.data.get("duration_ms") or 0)
            entry["duration_ms_total"] += duration
            summary["tools"]["duration_ms_total"] += duration
            summary["tools"]["attempts_total"] += int(ev.data.get("attempts") or 0)

        if ev.terminal:
            terminal = ev

    if terminal is None:
        summary["status"] = "running" if session_id is not None else "unknown"
        return summary

    summary["status"] = _terminal_status(terminal)
    if terminal.type == StreamEventType.ERROR:
        summary["error_kind"] = terminal.data.get("error_kind")
    summary["ended_at"] = terminal.timestamp
    try:
        start = _parse_rfc3339_to_dt(str(summary["started_at"]))
        end = _parse_rfc3339_to_dt(terminal.timestamp)
        summary["wall_time_ms"] = max(0, int((end - start).total_seconds() * 1000))
    except ValueError:
        summary["errors"].append({"kind": "invalid_timestamp", "message": "failed to parse event timestamps"})
    return summary


def compute_session_metrics_from_file(events_path: Path) -> Dict[str, Any]:
    """从 `events.jsonl` 计算 SessionMetricsSummary（文件缺失/损坏时记录错误）。"""

    path = Path(events_path)
    if not path.exists():
        summary = _new_summary()
        summary["errors"].append({"kind": "not_found", "message": f"events file not found: {path}"})
        return summary

    events = []
    for raw in path.read_text(encoding="utf-8").splitlines():
        line = raw.strip()
        if not line:
            continue
        try:
            events.append(StreamEvent.model_validate(json.loads(line)))
        except (json.JSONDecodeError, PydanticValidationError) as exc:
            summary = _new_summary()
            summary["errors"].append({"kind": "invalid_log", "message": f"invalid event line: {exc}"})
            return summary
    return compute_session_metrics(events)


__all__ = ["compute_session_metrics", "compute_session_metrics_from_file"]
