from __future__ import annotations

import json
import os
import tempfile
from pathlib import Path
from typing import Any

from stagerun.orchestrator import StageRunResult

REPORT_SCHEMA_VERSION = 1


def write_json_atomic(path: Path, data: Any) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    with tempfile.NamedTemporaryFile(
        "w",
        encoding="utf-8",
        dir=path.parent,
        delete=False,
        prefix=f".{path.name}.",
        suffix=".tmp",
    ) as f:
        json.dump(data, f, indent=2, sort_keys=True)
        f.write("\n")
        tmp_name = f.name
    os.replace(tmp_name, path)


def build_report(result: StageRunResult) -> dict[str, Any]:
    projects: dict[str, dict[str, Any]] = {}
    for project_id in result.project_ids:
        state = result.states.get(project_id)
        error = result.errors.get(project_id)
        projects[project_id] = {
            "status": state.value if state is not None else None,
            "error": str(error) if error is not None else None,
        }
    return {
        "schema_version": REPORT_SCHEMA_VERSION,
        "stage": result.stage,
        "ok": result.ok,
        "projects": projects,
    }


def write_report(path: Path, result: StageRunResult) -> None:
    write_json_atomic(path, build_report(result))
