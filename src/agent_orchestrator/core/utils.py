"""共享工具函数（消除跨模块重复）。"""
from __future__ import annotations

import uuid
from datetime import datetime, timedelta, timezone


def now_rfc3339() -> str:
    """返回当前 UTC 时间的 RFC3339 字符串（以 Z 结尾）。"""
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


def rfc3339_after(seconds: float) -> str:
    """返回“当前时间 + seconds”的 RFC3339 字符串（仅用于展示 deadline）。"""
    return (datetime.now(timezone.utc) + timedelta(seconds=float(seconds))).isoformat().replace("+00:00", "Z")


def new_id(prefix: str) -> str:
    """生成带前缀的随机 id（形如 `sess_<hex>`）。"""
    return f"{prefix}_{uuid.uuid4().hex}"
