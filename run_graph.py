"""
Small CLI to run an automation graph JSON file without an editor.

Usage (PowerShell):
    python run_graph.py .\\graphs\\notepad.json [settings.json]

Exit codes: 0 completed, 1 failed or canceled, 2 usage error.
"""

from __future__ import annotations

import logging
import sys
from pathlib import Path

from autoflow import AutomationEngine, FlowError, SettingsManager, load_graph


def main() -> int:
    if len(sys.argv) < 2:
        print("Provide path to a JSON graph (and optionally a settings JSON).")
        return 2
    path = Path(sys.argv[1])
    if not path.exists():
        print(f"File not found: {path}")
        return 2

    settings_path = Path(sys.argv[2]) if len(sys.argv) > 2 else None
    if settings_path is not None and not settings_path.exists():
        print(f"Settings file not found: {settings_path}")
        return 2

    logging.basicConfig(level=logging.WARNING, format="%(levelname)s %(name)s: %(message)s")

    try:
        graph = load_graph(path)
    except FlowError as e:
        print(f"Cannot load graph: {e}")
        return 2
    settings = SettingsManager(settings_path).load()

    outcome = {"ok": False}

    def _done(ok: bool, msg: str) -> None:
        outcome["ok"] = ok
        print(f"DONE: {ok} - {msg}")

    engine = AutomationEngine(graph, settings=settings)
    engine.on_log(lambda level, m: print(f"[{level}] {m}"))
    engine.on_node(lambda node: print(f"-> {node.label or node.id} ({node.kind.value})"))
    engine.on_done(_done)
    engine.start()
    try:
        # Wait until thread finishes
        engine.join()
    except KeyboardInterrupt:
        engine.cancel()
        engine.join()
    return 0 if outcome["ok"] else 1


if __name__ == "__main__":
    raise SystemExit(main())
