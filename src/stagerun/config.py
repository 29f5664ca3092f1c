from __future__ import annotations

import os
import shlex
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any


class ConfigError(ValueError):
    pass


DEFAULT_CONFIG_NAME = "stagerun.toml"


def default_config_path() -> Path:
    override = os.environ.get("STAGERUN_CONFIG")
    if override:
        return Path(override).expanduser()
    return Path(DEFAULT_CONFIG_NAME)


def _toml_load(path: Path) -> dict[str, Any]:
    try:
        import tomllib  # pyright: ignore[reportMissingImports]
    except ModuleNotFoundError:  # pragma: no cover
        import tomli as tomllib  # type: ignore[no-redef]

    try:
        with path.open("rb") as f:
            data = tomllib.load(f)
    except FileNotFoundError as e:
        raise ConfigError(f"Config file not found: {path}") from e
    except OSError as e:
        raise ConfigError(f"Failed to read config file: {path}") from e
    except Exception as e:  # tomllib.TOMLDecodeError is not public across tomli/tomllib
        raise ConfigError(f"Failed to parse TOML in {path}: {e}") from e

    if not isinstance(data, dict):
        raise ConfigError(f"Expected TOML document to be a table in {path}")
    return data


def _dedupe_preserve_order(items: Sequence[str]) -> list[str]:
    out: list[str] = []
    seen: set[str] = set()
    for item in items:
        if item in seen:
            continue
        out.append(item)
        seen.add(item)
    return out


def _check_keys(table: Mapping[str, Any], *, field: str, known: set[str], errors: list[str]) -> None:
    unknown = set(table) - known
    if unknown:
        errors.append(f"{field}: unknown keys {sorted(unknown)} (allowed: {sorted(known)})")


def _as_table(value: Any, *, field: str, errors: list[str]) -> dict[str, Any] | None:
    if value is None:
        return None
    if not isinstance(value, dict):
        errors.append(f"{field}: expected table, got {type(value).__name__}")
        return None
    return value


def _as_str(
    value: Any,
    *,
    field: str,
    errors: list[str],
) -> str | None:
    if value is None:
        return None
    if not isinstance(value, str):
        errors.append(f"{field}: expected string, got {type(value).__name__}")
        return None
    if not value.strip():
        errors.append(f"{field}: must be non-empty")
        return None
    return value


def _as_str_list(value: Any, *, field: str, errors: list[str]) -> list[str] | None:
    if value is None:
        return None
    if not isinstance(value, list):
        errors.append(f"{field}: expected list[str], got {type(value).__name__}")
        return None
    out: list[str] = []
    for idx, item in enumerate(value):
        if not isinstance(item, str):
            errors.append(f"{field}[{idx}]: expected string, got {type(item).__name__}")
            continue
        if not item.strip():
            errors.append(f"{field}[{idx}]: must be non-empty")
            continue
        out.append(item)
    return out


def _as_str_table(value: Any, *, field: str, errors: list[str]) -> dict[str, str]:
    table = _as_table(value, field=field, errors=errors)
    if table is None:
        return {}
    out: dict[str, str] = {}
    for key in sorted(table):
        item = table[key]
        if not isinstance(item, str):
            errors.append(f"{field}.{key}: expected string, got {type(item).__name__}")
            continue
        out[key] = item
    return out


def _as_command(value: Any, *, field: str, errors: list[str]) -> tuple[str, ...] | None:
    if value is None:
        errors.append(f"{field}: required field missing")
        return None
    if isinstance(value, str):
        try:
            argv = shlex.split(value)
        except ValueError as e:
            errors.append(f"{field}: failed to parse command into argv: {e}")
            return None
        if not argv:
            errors.append(f"{field}: must be non-empty")
            return None
        return tuple(argv)
    if isinstance(value, list):
        argv_list = _as_str_list(value, field=field, errors=errors)
        if argv_list is None or len(argv_list) != len(value):
            return None
        if not argv_list:
            errors.append(f"{field}: must be non-empty")
            return None
        return tuple(argv_list)
    errors.append(f"{field}: expected string or list[str], got {type(value).__name__}")
    return None


@dataclass(frozen=True, slots=True)
class StageCommand:
    argv: tuple[str, ...]
    env: dict[str, str] = field(default_factory=dict)


@dataclass(frozen=True, slots=True)
class ProjectConfig:
    project_id: str
    path: Path
    vars: dict[str, str] = field(default_factory=dict)
    env: dict[str, str] = field(default_factory=dict)
    stages: dict[str, StageCommand] = field(default_factory=dict)


@dataclass(frozen=True, slots=True)
class RunnerConfig:
    path: Path
    stages: dict[str, StageCommand]
    projects: dict[str, ProjectConfig]
    project_groups: dict[str, tuple[str, ...]] = field(default_factory=dict)
    max_parallel: int | None = None

    @property
    def config_dir(self) -> Path:
        return self.path.parent

    def project_ids(self) -> list[str]:
        return sorted(self.projects)

    def stage_names(self) -> list[str]:
        names = set(self.stages)
        for project in self.projects.values():
            names.update(project.stages)
        return sorted(names)

    def select_project_ids(
        self,
        *,
        project_ids: Sequence[str] | None = None,
        groups: Sequence[str] | None = None,
    ) -> list[str]:
        project_ids = [p for p in (project_ids or ()) if p]
        groups = [g for g in (groups or ()) if g]

        if not project_ids and not groups:
            return self.project_ids()

        unknown_groups = sorted({g for g in groups if g not in self.project_groups})
        if unknown_groups:
            raise ConfigError(
                "Unknown project group(s): "
                + ", ".join(repr(g) for g in unknown_groups)
                + " (known: "
                + ", ".join(sorted(self.project_groups) or ["<none>"])
                + ")"
            )

        selected = list(project_ids)
        for group_name in groups:
            selected.extend(self.project_groups[group_name])
        return _dedupe_preserve_order(selected)


def _load_stage_command(value: Any, *, field: str, errors: list[str]) -> StageCommand | None:
    table = _as_table(value, field=field, errors=errors)
    if table is None:
        return None
    _check_keys(table, field=field, known={"command", "env"}, errors=errors)
    argv = _as_command(table.get("command"), field=f"{field}.command", errors=errors)
    env = _as_str_table(table.get("env"), field=f"{field}.env", errors=errors)
    if argv is None:
        return None
    return StageCommand(argv=argv, env=env)


def _load_stages(value: Any, *, field: str, errors: list[str]) -> dict[str, StageCommand]:
    table = _as_table(value, field=field, errors=errors) or {}
    stages: dict[str, StageCommand] = {}
    for stage in sorted(table):
        command = _load_stage_command(table[stage], field=f"{field}.{stage}", errors=errors)
        if command is not None:
            stages[stage] = command
    return stages


def _load_project(
    project_id: str,
    value: Any,
    *,
    config_dir: Path,
    errors: list[str],
) -> ProjectConfig | None:
    prefix = f"projects.{project_id}"
    table = _as_table(value, field=prefix, errors=errors)
    if table is None:
        return None
    _check_keys(table, field=prefix, known={"path", "vars", "env", "stages"}, errors=errors)

    # Relative paths are anchored at the config file, not the caller's cwd.
    path_str = _as_str(table.get("path"), field=f"{prefix}.path", errors=errors)
    path = Path(path_str).expanduser() if path_str is not None else Path(".")
    if not path.is_absolute():
        path = config_dir / path

    return ProjectConfig(
        project_id=project_id,
        path=path,
        vars=_as_str_table(table.get("vars"), field=f"{prefix}.vars", errors=errors),
        env=_as_str_table(table.get("env"), field=f"{prefix}.env", errors=errors),
        stages=_load_stages(table.get("stages"), field=f"{prefix}.stages", errors=errors),
    )


def _validate_project_groups(
    project_ids: set[str],
    project_groups: dict[str, tuple[str, ...]],
    *,
    errors: list[str],
) -> None:
    for group_name, members in sorted(project_groups.items()):
        for member in members:
            if member not in project_ids:
                errors.append(
                    f"project_groups.{group_name}: unknown project {member!r} "
                    f"(known: {', '.join(sorted(project_ids)) or '<none>'})"
                )


def load_config(config_path: Path) -> RunnerConfig:
    config_path = Path(config_path).expanduser().resolve()
    data = _toml_load(config_path)
    errors: list[str] = []

    _check_keys(
        data,
        field="Top-level",
        known={"settings", "stages", "projects", "project_groups"},
        errors=errors,
    )

    max_parallel: int | None = None
    settings = _as_table(data.get("settings"), field="settings", errors=errors) or {}
    _check_keys(settings, field="settings", known={"max_parallel"}, errors=errors)
    raw_max_parallel = settings.get("max_parallel")
    if raw_max_parallel is not None:
        if isinstance(raw_max_parallel, bool) or not isinstance(raw_max_parallel, int):
            errors.append(
                f"settings.max_parallel: expected integer, got {type(raw_max_parallel).__name__}"
            )
        elif raw_max_parallel < 1:
            errors.append(f"settings.max_parallel: must be >= 1, got {raw_max_parallel}")
        else:
            max_parallel = raw_max_parallel

    stages = _load_stages(data.get("stages"), field="stages", errors=errors)

    projects: dict[str, ProjectConfig] = {}
    projects_table = _as_table(data.get("projects"), field="projects", errors=errors) or {}
    for project_id in sorted(projects_table):
        project = _load_project(
            project_id,
            projects_table[project_id],
            config_dir=config_path.parent,
            errors=errors,
        )
        if project is not None:
            projects[project_id] = project

    project_groups: dict[str, tuple[str, ...]] = {}
    groups_table = _as_table(data.get("project_groups"), field="project_groups", errors=errors) or {}
    for group_name in sorted(groups_table):
        members = _as_str_list(
            groups_table[group_name],
            field=f"project_groups.{group_name}",
            errors=errors,
        )
        project_groups[group_name] = tuple(members or ())

    _validate_project_groups(set(projects), project_groups, errors=errors)

    if errors:
        raise ConfigError("Invalid config:\n- " + "\n- ".join(errors))

    return RunnerConfig(
        path=config_path,
        stages=stages,
        projects=projects,
        project_groups=project_groups,
        max_parallel=max_parallel,
    )
