"""
`python -m agent_orchestrator` 入口。
"""

from __future__ import annotations

from agent_orchestrator.cli.main import main

if __name__ == "__main__":  # pragma: no cover
    raise SystemExit(main())
