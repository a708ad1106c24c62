"""
HTTP API（FastAPI，前缀 `/api/v1`）。

路由：
- `POST /sessions`：创建并启动会话；`stream=true` 时直接返回 SSE（会话 id 在 `X-Session-Id` 头）
- `GET /sessions`、`GET /sessions/{id}`、`GET /sessions/{id}/steps`
- `POST /sessions/{id}/cancel`：202；未知 404；已终态 409
- `GET /sessions/{id}/events?from_sequence=N`（或 `Last-Event-ID` 头）：回放 + live SSE
- `GET /health`

错误体：`{"detail": {"kind", "message", "details"}}`。
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Dict, Optional

from fastapi import Body, FastAPI, Header, Query, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse, StreamingResponse
from pydantic import BaseModel, ConfigDict, Field

from agent_orchestrator.core.contracts import SessionStatus
from agent_orchestrator.core.errors import OrchestratorError
from agent_orchestrator.core.session_manager import SessionManager
from agent_orchestrator.server.errors import http_error, http_error_from
from agent_orchestrator.server.sse import stream_events_as_sse

logger = logging.getLogger(__name__)

API_PREFIX = "/api/v1"

_SSE_HEADERS = {"Cache-Control": "no-cache", "X-Accel-Buffering": "no"}


class CreateSessionReq(BaseModel):
    """会话创建请求。"""

    model_config = ConfigDict(extra="forbid")

    agent_id: str
    goal: str
    context: Optional[Dict[str, Any]] = None
    stream: bool = False
    trust_tier: Optional[str] = None


class CancelSessionReq(BaseModel):
    """取消请求（body 可省略）。"""

    reason: Optional[str] = Field(default=None, max_length=500)


def create_app(manager: SessionManager, *, title: str = "agent-orchestrator") -> FastAPI:
    """
    创建 FastAPI 应用。

    参数：
    - manager：已装配的 SessionManager（应用关闭时会调用其 `shutdown()`）
    """

    @asynccontextmanager
    async def _lifespan(_app: FastAPI) -> AsyncIterator[None]:
        """应用生命周期：关闭时协作式取消所有会话。"""

        yield
        await manager.shutdown()

    app = FastAPI(title=title, version="0.1.0", lifespan=_lifespan)
    app.state.manager = manager

    @app.exception_handler(RequestValidationError)
    async def _validation_handler(_request: Request, exc: RequestValidationError) -> JSONResponse:
        """请求格式错误统一返回 400。"""

        return JSONResponse(
            status_code=400,
            content={
                "detail": {
                    "kind": "validation_error",
                    "message": "invalid request",
                    "details": {"errors": jsonable_errors(exc)},
                }
            },
        )

    @app.get(f"{API_PREFIX}/health")
    async def health() -> Dict[str, Any]:
        """健康检查。"""

        return {"ok": True}

    @app.post(f"{API_PREFIX}/sessions", status_code=201)
    async def create_session(body: CreateSessionReq = Body(...)) -> Any:
        """创建并启动会话。"""

        try:
            session = manager.create(body.agent_id, body.goal, body.context, trust_tier=body.trust_tier)
            session = await manager.start(session.id)
        except OrchestratorError as e:
            raise http_error_from(e) from e

        if body.stream:
            return StreamingResponse(
                stream_events_as_sse(manager.subscribe(session.id, 0)),
                status_code=201,
                media_type="text/event-stream",
                headers={**_SSE_HEADERS, "X-Session-Id": session.id},
            )
        return {"session_id": session.id, "status": session.status.value}

    @app.get(f"{API_PREFIX}/sessions")
    async def list_sessions(
        status: Optional[str] = Query(default=None),
        agent_id: Optional[str] = Query(default=None),
        limit: Optional[int] = Query(default=None, ge=1, le=1000),
    ) -> Dict[str, Any]:
        """列出会话。"""

        status_filter: Optional[SessionStatus] = None
        if status is not None:
            try:
                status_filter = SessionStatus(status)
            except ValueError:
                raise http_error(
                    "validation_error",
                    f"unknown status: {status}",
                    status_code=400,
                    details={"allowed": [s.value for s in SessionStatus]},
                )
        sessions = manager.list(status=status_filter, agent_id=agent_id, limit=limit)
        return {"sessions": [s.model_dump(mode="json") for s in sessions]}

    @app.get(f"{API_PREFIX}/sessions/{{session_id}}")
    async def get_session(session_id: str) -> Dict[str, Any]:
        """读取会话快照。"""

        try:
            return manager.get(session_id).model_dump(mode="json")
        except OrchestratorError as e:
            raise http_error_from(e) from e

    @app.get(f"{API_PREFIX}/sessions/{{session_id}}/steps")
    async def get_steps(session_id: str) -> Dict[str, Any]:
        """读取会话的全部 Step。"""

        try:
            steps = manager.steps(session_id)
        except OrchestratorError as e:
            raise http_error_from(e) from e
        return {"session_id": session_id, "steps": [s.model_dump(mode="json") for s in steps]}

    @app.post(f"{API_PREFIX}/sessions/{{session_id}}/cancel", status_code=202)
    async def cancel_session(session_id: str, body: Optional[CancelSessionReq] = Body(default=None)) -> Dict[str, Any]:
        """请求取消（立即返回）。"""

        try:
            session = manager.cancel(session_id)
        except OrchestratorError as e:
            raise http_error_from(e) from e
        reason = body.reason if body is not None else None
        logger.info("Cancel requested via API for session %s (reason: %s)", session_id, reason or "-")
        return {"session_id": session.id, "status": session.status.value, "cancel_requested": session.cancel_requested}

    @app.get(f"{API_PREFIX}/sessions/{{session_id}}/events")
    async def stream_events(
        session_id: str,
        from_sequence: Optional[int] = Query(default=None, ge=0),
        last_event_id: Optional[str] = Header(default=None, alias="Last-Event-ID"),
    ) -> StreamingResponse:
        """回放 + live 事件（SSE）。"""

        try:
            manager.get(session_id)
        except OrchestratorError as e:
            raise http_error_from(e) from e

        cursor = 0
        if from_sequence is not None:
            cursor = int(from_sequence)
        elif last_event_id:
            try:
                cursor = max(0, int(last_event_id.strip()))
            except ValueError:
                raise http_error(
                    "validation_error", "Last-Event-ID must be an integer sequence", status_code=400
                )

        return StreamingResponse(
            stream_events_as_sse(manager.subscribe(session_id, cursor)),
            media_type="text/event-stream",
            headers=dict(_SSE_HEADERS),
        )

    return app


def jsonable_errors(exc: RequestValidationError) -> list:
    """把 FastAPI 校验错误转换为可 JSON 序列化的列表（丢弃 ctx/input 中的任意对象）。"""

    out = []
    for err in exc.errors():
        out.append({"loc": [str(x) for x in err.get("loc", ())], "msg": str(err.get("msg", "")), "type": err.get("type")})
    return out


__all__ = ["API_PREFIX", "CreateSessionReq", "create_app"]
