from __future__ import annotations

import os
import shlex
from collections.abc import Mapping
from dataclasses import dataclass, field
from pathlib import Path

from stagerun.config import RunnerConfig, StageCommand


class CommandResolutionError(RuntimeError):
    pass


@dataclass(frozen=True, slots=True)
class CommandSpec:
    argv: tuple[str, ...]
    cwd: Path
    env: dict[str, str] = field(default_factory=dict)

    @property
    def display(self) -> str:
        return shlex.join(self.argv)

    def merged_env(self, base: Mapping[str, str] | None = None) -> dict[str, str]:
        merged = dict(os.environ if base is None else base)
        merged.update(self.env)
        return merged


def _render_arg(template: str, params: Mapping[str, str], *, stage: str, project_id: str) -> str:
    try:
        return template.format_map(params)
    except KeyError as e:
        missing = e.args[0]
        raise CommandResolutionError(
            f"Command for stage {stage!r} in project {project_id!r} uses undefined "
            f"placeholder {{{missing}}} (known: {', '.join(sorted(params))})"
        ) from e
    except (ValueError, IndexError) as e:
        raise CommandResolutionError(
            f"Command for stage {stage!r} in project {project_id!r} has a malformed "
            f"template {template!r}: {e}"
        ) from e


def _stage_command(stage: str, project_id: str, config: RunnerConfig) -> StageCommand:
    project = config.projects[project_id]
    command = project.stages.get(stage) or config.stages.get(stage)
    if command is None:
        known = sorted(set(project.stages) | set(config.stages))
        raise CommandResolutionError(
            f"No command configured for stage {stage!r} in project {project_id!r} "
            f"(known stages: {', '.join(known) or '<none>'})"
        )
    return command


def get_command(stage: str, project_id: str, config: RunnerConfig) -> CommandSpec:
    """Resolve the command ``project_id`` runs for ``stage``.

    A project-level ``[projects.<id>.stages.<stage>]`` entry wins over the global
    ``[stages.<stage>]`` template. Each argv element is rendered with
    ``str.format_map`` against the project's ``vars`` plus ``project``, ``stage``,
    ``path`` and ``config_dir``.
    """
    if project_id not in config.projects:
        raise CommandResolutionError(
            f"Unknown project {project_id!r} "
            f"(known: {', '.join(config.project_ids()) or '<none>'})"
        )

    project = config.projects[project_id]
    command = _stage_command(stage, project_id, config)

    params: dict[str, str] = dict(project.vars)
    params.update(
        {
            "project": project_id,
            "stage": stage,
            "path": str(project.path),
            "config_dir": str(config.config_dir),
        }
    )

    argv = tuple(
        _render_arg(arg, params, stage=stage, project_id=project_id) for arg in command.argv
    )

    # Layering: global stage env, then project env, then project stage override env.
    env: dict[str, str] = {}
    global_command = config.stages.get(stage)
    if global_command is not None:
        env.update(global_command.env)
    env.update(project.env)
    override = project.stages.get(stage)
    if override is not None:
        env.update(override.env)
    env["STAGERUN_STAGE"] = stage
    env["STAGERUN_PROJECT"] = project_id

    return CommandSpec(argv=argv, cwd=project.path, env=env)
