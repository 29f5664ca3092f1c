from __future__ import annotations

import logging
import subprocess
from typing import TextIO

from stagerun.commands import CommandSpec

logger = logging.getLogger(__name__)


class CommandExecutionError(RuntimeError):
    pass


def execute_command(stage: str, project_id: str, sink: TextIO, spec: CommandSpec) -> None:
    """Run ``spec`` to completion, writing combined stdout/stderr into ``sink``.

    Raises ``CommandExecutionError`` if the process cannot be started or exits
    non-zero. Whatever output was produced is in ``sink`` either way.
    """
    logger.debug("stage=%s project=%s cwd=%s running: %s", stage, project_id, spec.cwd, spec.display)
    try:
        completed = subprocess.run(
            list(spec.argv),
            cwd=spec.cwd,
            env=spec.merged_env(),
            stdin=subprocess.DEVNULL,
            stdout=subprocess.PIPE,
            stderr=subprocess.STDOUT,
            text=True,
            errors="replace",
            check=False,
        )
    except FileNotFoundError as e:
        if not spec.cwd.is_dir():
            raise CommandExecutionError(
                f"Working directory for project {project_id!r} does not exist: {spec.cwd}"
            ) from e
        raise CommandExecutionError(
            f"{spec.argv[0]} not found (install it and ensure it's on PATH)."
        ) from e
    except OSError as e:
        raise CommandExecutionError(f"Failed to start {spec.display}: {e}") from e

    sink.write(completed.stdout or "")
    if completed.returncode != 0:
        raise CommandExecutionError(f"{spec.display} failed (exit={completed.returncode})")
    logger.debug("stage=%s project=%s finished: %s", stage, project_id, spec.display)
