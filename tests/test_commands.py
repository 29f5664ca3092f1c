from __future__ import annotations

from pathlib import Path

import pytest

from stagerun.commands import CommandResolutionError, CommandSpec, get_command
from stagerun.config import RunnerConfig, load_config


def _config(tmp_path: Path) -> RunnerConfig:
    cfg = tmp_path / "stagerun.toml"
    cfg.write_text(
        "\n".join(
            [
                "[stages.build]",
                'command = "make -C {path} {project}-{stage}"',
                'env = { CI = "1", LEVEL = "global" }',
                "",
                "[stages.broken]",
                'command = "echo {nope}"',
                "",
                "[projects.api]",
                'path = "api"',
                'env = { LEVEL = "project" }',
                'vars = { target = "api-bin" }',
                "",
                "[projects.api.stages.deploy]",
                'command = ["deploy", "--target", "{target}"]',
                'env = { LEVEL = "override" }',
                "",
                "[projects.web]",
                "",
            ]
        ),
        encoding="utf-8",
    )
    return load_config(cfg)


def test_get_command_renders_global_template(tmp_path: Path) -> None:
    config = _config(tmp_path)
    spec = get_command("build", "api", config)

    api_path = tmp_path.resolve() / "api"
    assert spec.argv == ("make", "-C", str(api_path), "api-build")
    assert spec.cwd == api_path
    assert spec.env["CI"] == "1"
    assert spec.env["LEVEL"] == "project"
    assert spec.env["STAGERUN_STAGE"] == "build"
    assert spec.env["STAGERUN_PROJECT"] == "api"


def test_get_command_prefers_project_override(tmp_path: Path) -> None:
    config = _config(tmp_path)
    spec = get_command("deploy", "api", config)

    assert spec.argv == ("deploy", "--target", "api-bin")
    assert spec.env["LEVEL"] == "override"
    assert spec.display == "deploy --target api-bin"


def test_get_command_unknown_stage(tmp_path: Path) -> None:
    config = _config(tmp_path)
    with pytest.raises(CommandResolutionError) as excinfo:
        get_command("deploy", "web", config)
    assert "No command configured for stage 'deploy' in project 'web'" in str(excinfo.value)


def test_get_command_unknown_project(tmp_path: Path) -> None:
    config = _config(tmp_path)
    with pytest.raises(CommandResolutionError) as excinfo:
        get_command("build", "ghost", config)
    assert "Unknown project 'ghost'" in str(excinfo.value)


def test_get_command_undefined_placeholder(tmp_path: Path) -> None:
    config = _config(tmp_path)
    with pytest.raises(CommandResolutionError) as excinfo:
        get_command("broken", "web", config)
    assert "undefined placeholder {nope}" in str(excinfo.value)


def test_command_spec_merged_env_layers_over_base(tmp_path: Path) -> None:
    spec = CommandSpec(argv=("true",), cwd=tmp_path, env={"A": "spec"})
    assert spec.merged_env({"A": "base", "B": "base"}) == {"A": "spec", "B": "base"}
