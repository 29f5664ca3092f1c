from __future__ import annotations

import io
import logging
from collections.abc import Callable, Sequence
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Any, TextIO

from stagerun.command_subprocess import execute_command
from stagerun.commands import CommandSpec, get_command
from stagerun.config import RunnerConfig
from stagerun.error_registry import ErrorRegistry
from stagerun.status_board import EntryState, StatusBoard, StatusEntry

logger = logging.getLogger(__name__)

Resolver = Callable[[str, str, RunnerConfig], CommandSpec]
Executor = Callable[[str, str, TextIO, CommandSpec], None]


def entry_label(project_id: str) -> str:
    return f"Project: {project_id}"


@dataclass(frozen=True, slots=True)
class StageRunResult:
    stage: str
    project_ids: tuple[str, ...]
    states: dict[str, EntryState] = field(default_factory=dict)
    errors: dict[str, BaseException] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return not self.errors

    @property
    def failed_project_ids(self) -> list[str]:
        return sorted(self.errors)


class StageRunError(RuntimeError):
    def __init__(self, result: StageRunResult) -> None:
        self.result = result
        failed = ", ".join(result.failed_project_ids)
        super().__init__(
            f"stage {result.stage!r} failed for {len(result.errors)} of "
            f"{len(result.project_ids)} project(s): {failed}"
        )


def _run_project(
    *,
    project_id: str,
    entry: StatusEntry,
    errors: ErrorRegistry,
    **kwargs: Any,
) -> None:
    try:
        _resolve_and_execute(project_id=project_id, entry=entry, errors=errors, **kwargs)
    except BaseException as e:
        # SystemExit and friends from a resolver/executor must still end the entry.
        if not entry.state.terminal:
            errors.record(project_id, e)
            entry.fail()
        raise


def _resolve_and_execute(
    *,
    stage: str,
    project_id: str,
    config: RunnerConfig,
    entry: StatusEntry,
    errors: ErrorRegistry,
    log: logging.Logger,
    resolver: Resolver,
    executor: Executor,
) -> None:
    try:
        spec = resolver(stage, project_id, config)
    except Exception as e:
        errors.record(project_id, e)
        entry.fail()
        return

    buff = io.StringIO()
    try:
        executor(stage, project_id, buff, spec)
    except Exception as e:
        errors.record(project_id, e)
        output = buff.getvalue()
        if output:
            log.error("%s", output.rstrip("\n"))
        entry.fail()
        return

    entry.done()


def run_stage(
    stage: str,
    project_ids: Sequence[str],
    config: RunnerConfig,
    *,
    board: StatusBoard | None = None,
    logger: logging.Logger | None = None,
    max_parallel: int | None = None,
    resolver: Resolver = get_command,
    executor: Executor = execute_command,
) -> StageRunResult:
    """Run ``stage`` for every project concurrently and aggregate failures.

    One worker per project resolves and executes its command. A failure in one
    project never stops the others. ``board.render()`` is the only barrier: once
    it returns every entry is terminal and no worker can still be writing to the
    error registry.

    Raises ``StageRunError`` (after logging one block per failed project) if any
    project failed.
    """
    log = logger if logger is not None else logging.getLogger(__name__)
    project_ids = tuple(project_ids)
    if len(set(project_ids)) != len(project_ids):
        raise ValueError(f"project ids must be unique, got {list(project_ids)}")
    if max_parallel is None:
        max_parallel = config.max_parallel
    if max_parallel is not None and max_parallel < 1:
        raise ValueError(f"max_parallel must be >= 1, got {max_parallel}")

    if not project_ids:
        log.debug("stage=%s: no projects selected", stage)
        return StageRunResult(stage=stage, project_ids=())

    if board is None:
        board = StatusBoard()
    errors = ErrorRegistry()
    entries: dict[str, StatusEntry] = {}

    workers = len(project_ids) if max_parallel is None else min(max_parallel, len(project_ids))
    log.debug("stage=%s: launching %d project(s) on %d worker(s)", stage, len(project_ids), workers)

    pool = ThreadPoolExecutor(max_workers=workers, thread_name_prefix="stagerun")
    try:
        for project_id in project_ids:
            entry = board.add(entry_label(project_id))
            entries[project_id] = entry
            pool.submit(
                _run_project,
                stage=stage,
                project_id=project_id,
                config=config,
                entry=entry,
                errors=errors,
                log=log,
                resolver=resolver,
                executor=executor,
            )
        board.render()
    finally:
        pool.shutdown(wait=True)

    failures = errors.snapshot()
    result = StageRunResult(
        stage=stage,
        project_ids=project_ids,
        states={project_id: entry.state for project_id, entry in entries.items()},
        errors=failures,
    )
    if failures:
        for project_id in result.failed_project_ids:
            log.error("Error with project %s:\n%s", project_id, failures[project_id])
        raise StageRunError(result)
    return result
