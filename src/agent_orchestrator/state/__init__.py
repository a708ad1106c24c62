"""
State：事件流、Step/事件持久化与 Session 快照存储。
"""

from __future__ import annotations

from agent_orchestrator.state.event_log import EventHook, EventLog
from agent_orchestrator.state.event_store import EventStore, InMemoryEventStore, JsonlEventStore
from agent_orchestrator.state.session_store import FileSessionStore, InMemorySessionStore, SessionStore

__all__ = [
    "EventHook",
    "EventLog",
    "EventStore",
    "FileSessionStore",
    "InMemoryEventStore",
    "InMemorySessionStore",
    "JsonlEventStore",
    "SessionStore",
]
