"""
HttpToolProvider：通过 HTTP 调用远端工具服务（ToolProvider 实现）。

协议（最小约定）：
- 请求：`POST {base_url}/tools/{tool_name}`，body 为 `{"arguments": {...}}`
- 响应：2xx 且 body 为 JSON；若 body 形如 `{"result": ...}` 则取 `result`，否则返回整个 body

错误映射：
- 429 / 5xx / 网络错误 / 超时 → `ToolTransientError`（解析 `Retry-After` 秒数）
- 401 / 403 → `PermissionDenied`
- 其它 4xx 或非 JSON 响应 → `ToolFatalError`
"""

from __future__ import annotations

from typing import Any, Dict, Optional

import httpx

from agent_orchestrator.core.errors import PermissionDenied, ToolFatalError, ToolTransientError


def _retry_after_ms_from_headers(headers: httpx.Headers) -> Optional[int]:
    """
    从 `Retry-After` 头解析等待毫秒数。

    约束：
    - 仅支持整数秒；无法解析则返回 None。
    """

    ra = headers.get("Retry-After")
    if not ra:
        return None
    try:
        sec = int(str(ra).strip())
    except (ValueError, TypeError):
        return None
    if sec <= 0:
        return None
    return sec * 1000


def _error_excerpt(resp: httpx.Response, limit: int = 300) -> str:
    """提取响应体片段用于错误消息（截断）。"""

    try:
        text = resp.text
    except (UnicodeDecodeError, httpx.ResponseNotRead):
        return ""
    text = (text or "").strip()
    return text[:limit]


class HttpToolProvider:
    """
    远端工具执行器。

    参数：
    - base_url：工具服务根地址
    - headers：额外请求头（例如鉴权头；不会写入日志/事件）
    - timeout_sec：默认请求超时（`execute` 传入的 timeout 优先）
    - transport：可选 httpx transport（测试可注入 `httpx.MockTransport`）
    """

    def __init__(
        self,
        base_url: str,
        *,
        headers: Optional[Dict[str, str]] = None,
        timeout_sec: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        """创建 provider。参数见类注释。"""

        self._base_url = str(base_url).rstrip("/")
        self._headers = {"Content-Type": "application/json"}
        self._headers.update(dict(headers or {}))
        self._timeout_sec = float(timeout_sec)
        self._transport = transport

    def _endpoint(self, tool_name: str) -> str:
        """返回工具 endpoint URL。"""

        return f"{self._base_url}/tools/{tool_name}"

    async def execute(self, tool_name: str, args: Dict[str, Any], timeout: Optional[float]) -> Any:
        """执行一次远端调用（ToolProvider 协议）。"""

        timeout_sec = float(timeout) if timeout is not None else self._timeout_sec
        details = {"tool": tool_name}
        try:
            async with httpx.AsyncClient(timeout=httpx.Timeout(timeout_sec), transport=self._transport) as client:
                resp = await client.post(self._endpoint(tool_name), json={"arguments": dict(args or {})}, headers=self._headers)
        except httpx.TimeoutException as e:
            raise ToolTransientError(f"tool request timed out: {tool_name}", details=details) from e
        except httpx.RequestError as e:
            raise ToolTransientError(
                f"tool request failed: {type(e).__name__}", details={**details, "exception_type": type(e).__name__}
            ) from e

        status = resp.status_code
        if status == 429 or 500 <= status <= 599:
            raise ToolTransientError(
                f"tool service returned HTTP {status}",
                retry_after_ms=_retry_after_ms_from_headers(resp.headers),
                details={**details, "status_code": status},
            )
        if status in (401, 403):
            raise PermissionDenied(
                f"tool service denied {tool_name} (HTTP {status})", details={**details, "status_code": status}
            )
        if status >= 400:
            raise ToolFatalError(
                f"tool service returned HTTP {status}: {_error_excerpt(resp)}",
                details={**details, "status_code": status},
            )

        try:
            body = resp.json()
        except ValueError as e:
            raise ToolFatalError("tool service returned a non-JSON body", details=details) from e
        if isinstance(body, dict) and set(body.keys()) == {"result"}:
            return body["result"]
        return body


__all__ = ["HttpToolProvider"]
