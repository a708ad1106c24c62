from __future__ import annotations

import asyncio
import json
from pathlib import Path
from typing import Any, Dict, Tuple

import yaml

from agent_orchestrator.bootstrap import CONFIG_PATHS_ENV
from agent_orchestrator.cli.main import EXIT_NOT_FOUND, EXIT_VALIDATION, main
from agent_orchestrator.context.assembler import ContextAssembler
from agent_orchestrator.core.session_manager import SessionManager
from agent_orchestrator.governance.filter import GovernanceFilter
from agent_orchestrator.governance.policy import TierPolicy, TierPolicyService
from agent_orchestrator.reasoning.protocol import ToolCallBatch, ToolCallRequest
from agent_orchestrator.reasoning.scripted import ScriptedReasoner
from agent_orchestrator.state.event_log import EventLog
from agent_orchestrator.state.event_store import JsonlEventStore
from agent_orchestrator.state.session_store import FileSessionStore
from agent_orchestrator.tools.dispatcher import ToolDispatcher
from agent_orchestrator.tools.registry import ToolRegistry


def _write_yaml(path: Path, obj: Dict[str, Any]) -> Path:
    """写入 YAML overlay（根节点必须为 mapping）。"""

    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(yaml.safe_dump(obj, sort_keys=False, allow_unicode=True), encoding="utf-8")
    return path


def _run_cli(args: list, capsys) -> Tuple[int, Dict[str, Any]]:  # type: ignore[no-untyped-def]
    """运行 CLI 并返回 (exit_code, parsed_json)。"""

    code = main(args)
    out = capsys.readouterr().out
    assert out.endswith("\n")
    return code, json.loads(out)


def _clear_bootstrap_env(monkeypatch) -> None:  # type: ignore[no-untyped-def]
    """清理 bootstrap 相关 env，避免本机环境变量影响测试。"""

    monkeypatch.delenv(CONFIG_PATHS_ENV, raising=False)


def _jsonl_workspace(tmp_path: Path) -> Tuple[Path, Path]:
    """写入 jsonl 存储 overlay，返回 (overlay_path, storage_root)。"""

    overlay = _write_yaml(
        tmp_path / "overlay.yaml", {"storage": {"backend": "jsonl", "root_dir": "data/sessions"}}
    )
    return overlay, tmp_path / "data" / "sessions"


def _persist_session(root: Path, agent_id: str = "agent-1") -> str:
    """用 JSONL 存储跑完一个会话（一次 tool 调用 + final answer），返回会话 id。"""

    registry = ToolRegistry()

    @registry.tool
    def add(a: int, b: int) -> int:
        """Add two numbers."""
        return a + b

    store = JsonlEventStore(root)
    manager = SessionManager(
        reasoner=ScriptedReasoner(
            [ToolCallBatch(calls=[ToolCallRequest(tool_name="add", arguments={"a": 1, "b": 2})]), "three"]
        ),
        dispatcher=ToolDispatcher(registry),
        event_log=EventLog(store),
        session_store=FileSessionStore(root),
        governance=GovernanceFilter(TierPolicyService({"default": TierPolicy()})),
        assembler=ContextAssembler(),
    )

    async def _run() -> str:
        session = manager.create(agent_id, "add numbers")
        await manager.start(session.id)
        await manager.wait(session.id, timeout=5)
        return session.id

    try:
        return asyncio.run(_run())
    finally:
        store.close()


def test_cli_config_show_reports_sources(tmp_path: Path, capsys, monkeypatch) -> None:  # type: ignore[no-untyped-def]
    """config show 输出有效配置、overlay 列表与叶子来源。"""

    _clear_bootstrap_env(monkeypatch)
    overlay = _write_yaml(tmp_path / "o.yaml", {"run": {"max_steps": 9}})

    code, obj = _run_cli(["config", "show", "--workspace-root", str(tmp_path), "--config", str(overlay)], capsys)

    assert code == 0
    assert obj["config"]["run"]["max_steps"] == 9
    assert obj["overlay_paths"] == [str(overlay.resolve())]
    assert obj["sources"]["run.max_steps"] == f"overlay:{overlay.resolve()}"
    assert obj["sources"]["run.cancel_grace_sec"] == "embedded_default"


def test_cli_config_show_invalid_overlay(tmp_path: Path, capsys, monkeypatch) -> None:  # type: ignore[no-untyped-def]
    """未知字段的 overlay 返回 validation exit code。"""

    _clear_bootstrap_env(monkeypatch)
    overlay = _write_yaml(tmp_path / "bad.yaml", {"run": {"max_stepz": 1}})

    code, obj = _run_cli(["config", "show", "--workspace-root", str(tmp_path), "--config", str(overlay)], capsys)

    assert code == EXIT_VALIDATION
    assert obj["error_kind"] == "validation_error"


def test_cli_missing_workspace_root(tmp_path: Path, capsys, monkeypatch) -> None:  # type: ignore[no-untyped-def]
    """workspace root 不存在时返回 validation exit code。"""

    _clear_bootstrap_env(monkeypatch)
    code, obj = _run_cli(["config", "show", "--workspace-root", str(tmp_path / "missing")], capsys)
    assert code == EXIT_VALIDATION
    assert obj["details"]["workspace_root"] == str(tmp_path / "missing")


def test_cli_sessions_list_and_events(tmp_path: Path, capsys, monkeypatch) -> None:  # type: ignore[no-untyped-def]
    """sessions list/events 读取 jsonl 存储中的会话与事件。"""

    _clear_bootstrap_env(monkeypatch)
    overlay, root = _jsonl_workspace(tmp_path)
    session_id = _persist_session(root)
    common = ["--workspace-root", str(tmp_path), "--config", str(overlay)]

    code, obj = _run_cli(["sessions", "list", *common], capsys)
    assert code == 0
    assert [s["id"] for s in obj["sessions"]] == [session_id]
    assert obj["sessions"][0]["status"] == "completed"
    assert obj["sessions"][0]["output"] == "three"

    code, obj = _run_cli(["sessions", "list", *common, "--status", "failed"], capsys)
    assert code == 0 and obj["sessions"] == []

    code, obj = _run_cli(["sessions", "list", *common, "--status", "bogus"], capsys)
    assert code == EXIT_VALIDATION

    code, obj = _run_cli(["sessions", "events", *common, "--session-id", session_id], capsys)
    assert code == 0
    seqs = [e["sequence"] for e in obj["events"]]
    assert seqs == list(range(1, len(seqs) + 1))
    assert obj["events"][-1]["type"] == "done"
    assert obj["events"][-1]["terminal"] is True

    code, obj = _run_cli(["sessions", "events", *common, "--session-id", session_id, "--from-sequence", "2"], capsys)
    assert [e["sequence"] for e in obj["events"]] == seqs[2:]


def test_cli_sessions_events_not_found(tmp_path: Path, capsys, monkeypatch) -> None:  # type: ignore[no-untyped-def]
    """未知会话返回 not_found exit code。"""

    _clear_bootstrap_env(monkeypatch)
    overlay, _root = _jsonl_workspace(tmp_path)
    code, obj = _run_cli(
        ["sessions", "events", "--workspace-root", str(tmp_path), "--config", str(overlay), "--session-id", "sess_x"],
        capsys,
    )
    assert code == EXIT_NOT_FOUND
    assert obj["error_kind"] == "not_found"


def test_cli_sessions_metrics(tmp_path: Path, capsys, monkeypatch) -> None:  # type: ignore[no-untyped-def]
    """sessions metrics 从 events.jsonl 重算指标。"""

    _clear_bootstrap_env(monkeypatch)
    overlay, root = _jsonl_workspace(tmp_path)
    session_id = _persist_session(root)
    common = ["--workspace-root", str(tmp_path), "--config", str(overlay)]

    code, obj = _run_cli(["sessions", "metrics", *common, "--session-id", session_id], capsys)
    assert code == 0
    assert obj["session_id"] == session_id
    assert obj["status"] == "completed"
    assert obj["counts"]["reasoning_steps_total"] == 2
    assert obj["counts"]["tool_calls_total"] == 1
    assert obj["tools"]["by_name"]["add"]["succeeded"] == 1

    code, obj = _run_cli(["sessions", "metrics", *common, "--events-path", "nope/events.jsonl"], capsys)
    assert code == EXIT_NOT_FOUND
    assert obj["errors"][0]["kind"] == "not_found"

    broken = tmp_path / "broken.jsonl"
    broken.write_text("{not json\n", encoding="utf-8")
    code, obj = _run_cli(["sessions", "metrics", *common, "--events-path", str(broken)], capsys)
    assert code == EXIT_VALIDATION
    assert obj["errors"][0]["kind"] == "invalid_log"


def test_cli_argparse_errors_return_2(capsys) -> None:  # type: ignore[no-untyped-def]
    """参数错误返回 2（不抛 SystemExit）。"""

    assert main(["sessions", "metrics"]) == 2
    assert main(["nope"]) == 2
    capsys.readouterr()
