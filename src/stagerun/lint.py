from __future__ import annotations

from stagerun.commands import CommandResolutionError, get_command
from stagerun.config import RunnerConfig


def lint_config(config: RunnerConfig) -> list[str]:
    issues: list[str] = []
    stage_names = config.stage_names()
    if not config.projects:
        issues.append(f"{config.path}: no projects configured")
    if not stage_names:
        issues.append(f"{config.path}: no stages configured")

    for project_id in config.project_ids():
        project = config.projects[project_id]
        if not project.path.exists():
            issues.append(f"projects.{project_id}.path: does not exist: {project.path}")
        elif not project.path.is_dir():
            issues.append(f"projects.{project_id}.path: must be a directory: {project.path}")

        resolved = 0
        for stage in stage_names:
            if stage not in project.stages and stage not in config.stages:
                continue
            try:
                get_command(stage, project_id, config)
            except CommandResolutionError as e:
                issues.append(f"projects.{project_id} stage {stage}: {e}")
                continue
            resolved += 1
        if stage_names and not resolved:
            issues.append(f"projects.{project_id}: no stage resolves to a command")
    return issues
