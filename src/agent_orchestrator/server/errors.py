"""
HTTP 错误响应：统一结构 `{"detail": {"kind", "message", "details"}}`。
"""

from __future__ import annotations

from typing import Any, Dict, Optional

from fastapi import HTTPException

from agent_orchestrator.core.errors import ErrorKind, OrchestratorError

_STATUS_BY_KIND: Dict[ErrorKind, int] = {
    ErrorKind.VALIDATION_ERROR: 400,
    ErrorKind.PERMISSION_DENIED: 403,
    ErrorKind.NOT_FOUND: 404,
    ErrorKind.CONFLICT: 409,
}


def http_error(
    kind: str,
    message: str,
    *,
    status_code: int,
    details: Optional[Dict[str, Any]] = None,
) -> HTTPException:
    """
    构造统一的 HTTP 错误响应。

    参数：
    - kind：错误类型（例如 not_found/validation_error/conflict）
    - message：人类可读的错误信息
    - status_code：HTTP 状态码
    - details：结构化详情（不得包含 secrets）
    """

    return HTTPException(
        status_code=int(status_code),
        detail={
            "kind": str(kind),
            "message": str(message),
            "details": details or {},
        },
    )


def http_error_from(exc: OrchestratorError) -> HTTPException:
    """把编排器异常映射为 HTTP 错误（未知 kind → 500）。"""

    details = dict(exc.details)
    retry_after_ms = getattr(exc, "retry_after_ms", None)
    if retry_after_ms is not None:
        details["retry_after_ms"] = int(retry_after_ms)
    return http_error(
        exc.kind.value,
        exc.message,
        status_code=_STATUS_BY_KIND.get(exc.kind, 500),
        details=details,
    )


__all__ = ["http_error", "http_error_from"]
