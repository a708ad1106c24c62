"""
Agent Orchestrator CLI（config/sessions/serve）。

约束：
- 使用 argparse（不引入第三方 CLI 依赖）
- stdout 输出机器可读 JSON；失败时也输出 JSON

exit code：
- 0：成功
- 2：参数错误（argparse）
- 20：validation（配置非法、参数非法、日志损坏）
- 22：not_found（会话或事件文件不存在）
"""

from __future__ import annotations

import argparse
import importlib
import json
import logging
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence, Tuple

from pydantic import ValidationError

from agent_orchestrator import bootstrap
from agent_orchestrator.config.loader import OrchestratorConfig
from agent_orchestrator.core.contracts import SessionStatus
from agent_orchestrator.observability.session_metrics import compute_session_metrics_from_file
from agent_orchestrator.state.event_store import JsonlEventStore
from agent_orchestrator.state.session_store import FileSessionStore

EXIT_VALIDATION = 20
EXIT_NOT_FOUND = 22


def _dump_json_to_stdout(obj: Dict[str, Any], *, pretty: bool) -> None:
    """
    将 dict 输出为 JSON 到 stdout（末尾包含换行）。

    参数：
    - obj：待输出对象（必须可 JSON dumps）
    - pretty：是否启用 pretty-print（indent=2）
    """

    if pretty:
        text = json.dumps(obj, ensure_ascii=False, indent=2)
    else:
        text = json.dumps(obj, ensure_ascii=False, separators=(",", ":"))
    print(text)


def _error_payload(kind: str, message: str, details: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    """CLI 错误输出结构。"""

    return {"error_kind": kind, "message": message, "details": details or {}}


def _resolve_workspace_root(raw: str) -> Optional[Path]:
    """解析 workspace_root；不存在或不是目录时返回 None。"""

    ws = Path(raw).expanduser().resolve()
    if not ws.exists() or not ws.is_dir():
        return None
    return ws


def _load_config_for_cli(args: argparse.Namespace) -> Tuple[Optional[bootstrap.ResolvedConfig], Optional[Dict[str, Any]]]:
    """
    解析 workspace_root 与 overlays 并得到有效配置。

    返回：
    - (resolved, error_payload)：失败时 resolved 为 None
    """

    ws = _resolve_workspace_root(str(args.workspace_root))
    if ws is None:
        return None, _error_payload(
            "validation_error", "Workspace root is not found or not a directory.", {"workspace_root": str(args.workspace_root)}
        )
    try:
        resolved = bootstrap.resolve_effective_config(
            workspace_root=ws, config_paths=[Path(p) for p in (args.config or [])]
        )
    except ValidationError as exc:
        return None, _error_payload(
            "validation_error", "Config is invalid.", {"errors": json.loads(exc.json(include_input=False))}
        )
    except ValueError as exc:
        return None, _error_payload("validation_error", str(exc))
    return resolved, None


def _storage_root(config: OrchestratorConfig, workspace_root: Path) -> Path:
    """返回 JSONL 存储根目录（相对路径相对 workspace_root）。"""

    root = Path(config.storage.root_dir).expanduser()
    if not root.is_absolute():
        root = workspace_root / root
    return root.resolve()


def _import_object(spec: str) -> Any:
    """
    按 `module:attr` 导入对象。

    异常：
    - ValueError：格式非法或属性不存在
    - ImportError：模块无法导入
    """

    module_name, sep, attr = spec.partition(":")
    if not sep or not module_name or not attr:
        raise ValueError(f"import string must be 'module:attr': {spec}")
    obj: Any = importlib.import_module(module_name)
    for part in attr.split("."):
        if not hasattr(obj, part):
            raise ValueError(f"attribute not found: {spec}")
        obj = getattr(obj, part)
    return obj


def _build_parser() -> argparse.ArgumentParser:
    """构建 CLI argparse parser。"""

    parser = argparse.ArgumentParser(
        prog="agent-orchestrator",
        description="Agent Orchestrator CLI（config/sessions/serve）。",
    )
    root_sub = parser.add_subparsers(dest="command", required=True)

    def _add_common_flags(p: argparse.ArgumentParser) -> None:
        """为子命令添加公共 flags。"""

        p.add_argument("--workspace-root", default=".", help="Workspace root directory (default: .)")
        p.add_argument("--config", action="append", default=[], help="Overlay config YAML path (repeatable).")
        p.add_argument("--pretty", action="store_true", help="Pretty-print JSON output.")

    config = root_sub.add_parser("config", help="Config commands")
    config_sub = config.add_subparsers(dest="config_cmd", required=True)
    show = config_sub.add_parser("show", help="Show effective config with leaf sources")
    _add_common_flags(show)

    sessions = root_sub.add_parser("sessions", help="Persisted session commands (jsonl storage)")
    sessions_sub = sessions.add_subparsers(dest="sessions_cmd", required=True)

    list_p = sessions_sub.add_parser("list", help="List persisted sessions")
    _add_common_flags(list_p)
    list_p.add_argument("--status", default=None, help="Filter by status.")
    list_p.add_argument("--agent-id", default=None, help="Filter by agent id.")
    list_p.add_argument("--limit", type=int, default=None, help="Max sessions to return (>=1).")

    events_p = sessions_sub.add_parser("events", help="Dump a session's event log")
    _add_common_flags(events_p)
    events_p.add_argument("--session-id", required=True, help="Session id.")
    events_p.add_argument("--from-sequence", type=int, default=0, help="Return events with sequence > N.")

    metrics_p = sessions_sub.add_parser("metrics", help="Compute session metrics summary from events.jsonl")
    _add_common_flags(metrics_p)
    group = metrics_p.add_mutually_exclusive_group(required=True)
    group.add_argument("--session-id", default=None, help="Session id under the storage root.")
    group.add_argument("--events-path", default=None, help="Explicit events.jsonl path (relative to workspace root if not absolute).")

    serve = root_sub.add_parser("serve", help="Run the HTTP API (uvicorn)")
    _add_common_flags(serve)
    serve.add_argument("--reasoner", required=True, help="Reasoner import string 'module:attr'.")
    serve.add_argument("--tools", default=None, help="ToolProvider import string 'module:attr' (optional).")
    serve.add_argument("--host", default=None, help="Bind host (default: server.host).")
    serve.add_argument("--port", type=int, default=None, help="Bind port (default: server.port).")
    serve.add_argument("--log-level", default="info", help="Log level (debug|info|warning|error).")

    return parser


def _handle_config_show(args: argparse.Namespace) -> int:
    """输出有效配置与来源。"""

    resolved, err = _load_config_for_cli(args)
    if err is not None or resolved is None:
        _dump_json_to_stdout(err or {}, pretty=bool(args.pretty))
        return EXIT_VALIDATION
    payload = {
        "config": resolved.config.model_dump(mode="json"),
        "overlay_paths": list(resolved.overlay_paths),
        "sources": dict(sorted(resolved.sources.items())),
    }
    _dump_json_to_stdout(payload, pretty=bool(args.pretty))
    return 0


def _handle_sessions_list(args: argparse.Namespace) -> int:
    """列出存储根目录下的会话快照。"""

    resolved, err = _load_config_for_cli(args)
    if err is not None or resolved is None:
        _dump_json_to_stdout(err or {}, pretty=bool(args.pretty))
        return EXIT_VALIDATION

    status: Optional[SessionStatus] = None
    if args.status is not None:
        try:
            status = SessionStatus(str(args.status))
        except ValueError:
            _dump_json_to_stdout(
                _error_payload(
                    "validation_error", "Unknown status.", {"status": args.status, "allowed": [s.value for s in SessionStatus]}
                ),
                pretty=bool(args.pretty),
            )
            return EXIT_VALIDATION
    if args.limit is not None and int(args.limit) < 1:
        _dump_json_to_stdout(_error_payload("validation_error", "limit must be >= 1."), pretty=bool(args.pretty))
        return EXIT_VALIDATION

    ws = Path(str(args.workspace_root)).expanduser().resolve()
    store = FileSessionStore(_storage_root(resolved.config, ws))
    items = store.list()
    if status is not None:
        items = [s for s in items if s.status == status]
    if args.agent_id is not None:
        items = [s for s in items if s.agent_id == args.agent_id]
    if args.limit is not None:
        items = items[: int(args.limit)]
    _dump_json_to_stdout({"sessions": [s.model_dump(mode="json") for s in items]}, pretty=bool(args.pretty))
    return 0


def _handle_sessions_events(args: argparse.Namespace) -> int:
    """输出会话事件日志（wire 形状）。"""

    resolved, err = _load_config_for_cli(args)
    if err is not None or resolved is None:
        _dump_json_to_stdout(err or {}, pretty=bool(args.pretty))
        return EXIT_VALIDATION

    ws = Path(str(args.workspace_root)).expanduser().resolve()
    root = _storage_root(resolved.config, ws)
    session_id = str(args.session_id).strip()
    if not (root / session_id / "events.jsonl").exists():
        _dump_json_to_stdout(
            _error_payload("not_found", "Session event log not found.", {"session_id": session_id}),
            pretty=bool(args.pretty),
        )
        return EXIT_NOT_FOUND

    store = JsonlEventStore(root)
    try:
        events = store.load_log(session_id, max(0, int(args.from_sequence)))
    except (ValueError, ValidationError) as exc:
        _dump_json_to_stdout(
            _error_payload("validation_error", "Event log is invalid.", {"reason": str(exc)}), pretty=bool(args.pretty)
        )
        return EXIT_VALIDATION
    finally:
        store.close()
    payload = {"session_id": session_id, "events": [ev.to_wire() for ev in events]}
    _dump_json_to_stdout(payload, pretty=bool(args.pretty))
    return 0


def _handle_sessions_metrics(args: argparse.Namespace) -> int:
    """计算并输出会话指标。"""

    resolved, err = _load_config_for_cli(args)
    if err is not None or resolved is None:
        _dump_json_to_stdout(err or {}, pretty=bool(args.pretty))
        return EXIT_VALIDATION

    ws = Path(str(args.workspace_root)).expanduser().resolve()
    events_path: Path
    if args.events_path is not None:
        p = Path(str(args.events_path)).expanduser()
        events_path = p.resolve() if p.is_absolute() else (ws / p).resolve()
    else:
        events_path = _storage_root(resolved.config, ws) / str(args.session_id).strip() / "events.jsonl"

    summary = compute_session_metrics_from_file(events_path)
    _dump_json_to_stdout(summary, pretty=bool(args.pretty))
    kinds: List[str] = [str((it or {}).get("kind")) for it in (summary.get("errors") or [])]
    if "not_found" in kinds:
        return EXIT_NOT_FOUND
    if "invalid_log" in kinds:
        return EXIT_VALIDATION
    return 0


def _handle_serve(args: argparse.Namespace) -> int:
    """装配 SessionManager 并以 uvicorn 运行 HTTP API。"""

    import uvicorn

    from agent_orchestrator.server.app import create_app

    level_name = str(args.log_level).upper()
    logging.basicConfig(level=getattr(logging, level_name, logging.INFO), format="%(asctime)s %(levelname)s %(name)s: %(message)s")

    resolved, err = _load_config_for_cli(args)
    if err is not None or resolved is None:
        _dump_json_to_stdout(err or {}, pretty=bool(args.pretty))
        return EXIT_VALIDATION

    try:
        reasoner = _import_object(str(args.reasoner))
        tool_provider = _import_object(str(args.tools)) if args.tools else None
    except (ImportError, ValueError) as exc:
        _dump_json_to_stdout(_error_payload("validation_error", str(exc)), pretty=bool(args.pretty))
        return EXIT_VALIDATION
    if not hasattr(reasoner, "infer") and callable(reasoner):
        reasoner = reasoner()
    if tool_provider is not None and not hasattr(tool_provider, "execute") and callable(tool_provider):
        tool_provider = tool_provider()

    ws = Path(str(args.workspace_root)).expanduser().resolve()
    manager = bootstrap.build_session_manager(
        resolved.config, reasoner=reasoner, tool_provider=tool_provider, workspace_root=ws
    )
    app = create_app(manager)
    host = args.host or resolved.config.server.host
    port = int(args.port) if args.port is not None else int(resolved.config.server.port)
    uvicorn.run(app, host=host, port=port, log_level=str(args.log_level).lower())
    return 0


def main(argv: Optional[Sequence[str]] = None) -> int:
    """
    CLI 入口函数（用于 console_scripts 与测试）。

    参数：
    - argv：命令行参数列表（不含程序名）；为 None 时读取 sys.argv[1:]。

    返回：
    - int：exit code（不会直接 sys.exit，便于测试）。
    """

    parser = _build_parser()
    try:
        args = parser.parse_args(list(argv) if argv is not None else None)
    except SystemExit as exc:
        # `--help` → 0；参数错误 → 2
        code = getattr(exc, "code", 2)
        if code is None:
            return 2
        return int(code)

    if args.command == "config":
        return _handle_config_show(args)
    if args.command == "serve":
        return _handle_serve(args)

    if args.sessions_cmd == "list":
        return _handle_sessions_list(args)
    if args.sessions_cmd == "events":
        return _handle_sessions_events(args)
    if args.sessions_cmd == "metrics":
        return _handle_sessions_metrics(args)

    payload = _error_payload("validation_error", "Unknown sessions subcommand.", {"subcommand": args.sessions_cmd})
    _dump_json_to_stdout(payload, pretty=bool(getattr(args, "pretty", False)))
    return EXIT_VALIDATION


if __name__ == "__main__":  # pragma: no cover
    raise SystemExit(main())
