from __future__ import annotations

from pathlib import Path

import pytest

from stagerun.config import ConfigError, default_config_path, load_config


def _write_config(path: Path, content: str) -> None:
    path.write_text(content, encoding="utf-8")


def test_load_config_orders_projects_and_resolves_paths(tmp_path: Path) -> None:
    cfg = tmp_path / "stagerun.toml"
    _write_config(
        cfg,
        "\n".join(
            [
                "[stages.build]",
                'command = "make build"',
                "",
                "[projects.b_proj]",
                'path = "svc/b"',
                "",
                "[projects.a_proj]",
                "",
            ]
        ),
    )

    config = load_config(cfg)
    assert config.project_ids() == ["a_proj", "b_proj"]
    assert config.projects["a_proj"].path == tmp_path.resolve()
    assert config.projects["b_proj"].path == tmp_path.resolve() / "svc" / "b"
    assert config.stages["build"].argv == ("make", "build")
    assert config.max_parallel is None


def test_load_config_accepts_list_commands_overrides_and_settings(tmp_path: Path) -> None:
    cfg = tmp_path / "stagerun.toml"
    _write_config(
        cfg,
        "\n".join(
            [
                "[settings]",
                "max_parallel = 2",
                "",
                "[stages.test]",
                'command = ["pytest", "-q", "{path}"]',
                'env = { CI = "1" }',
                "",
                "[projects.api]",
                'vars = { target = "api" }',
                "",
                "[projects.api.stages.deploy]",
                'command = "deploy {target}"',
                "",
            ]
        ),
    )

    config = load_config(cfg)
    assert config.max_parallel == 2
    assert config.stages["test"].argv == ("pytest", "-q", "{path}")
    assert config.stages["test"].env == {"CI": "1"}
    assert config.projects["api"].stages["deploy"].argv == ("deploy", "{target}")
    assert config.stage_names() == ["deploy", "test"]


def test_load_config_missing_file(tmp_path: Path) -> None:
    with pytest.raises(ConfigError) as excinfo:
        load_config(tmp_path / "nope.toml")
    assert "Config file not found" in str(excinfo.value)


def test_load_config_invalid_toml(tmp_path: Path) -> None:
    cfg = tmp_path / "stagerun.toml"
    _write_config(cfg, "[stages.build\n")
    with pytest.raises(ConfigError) as excinfo:
        load_config(cfg)
    assert "Failed to parse TOML" in str(excinfo.value)


def test_load_config_collects_all_errors(tmp_path: Path) -> None:
    cfg = tmp_path / "stagerun.toml"
    _write_config(
        cfg,
        "\n".join(
            [
                "bogus = 1",
                "",
                "[settings]",
                "max_parallel = 0",
                "",
                "[stages.build]",
                "command = 3",
                "",
                "[stages.test]",
                'cmd = "pytest"',
                "",
            ]
        ),
    )

    with pytest.raises(ConfigError) as excinfo:
        load_config(cfg)
    message = str(excinfo.value)
    assert message.startswith("Invalid config:")
    assert "Top-level: unknown keys ['bogus']" in message
    assert "settings.max_parallel: must be >= 1" in message
    assert "stages.build.command: expected string or list[str], got int" in message
    assert "stages.test.command: required field missing" in message
    assert "stages.test: unknown keys ['cmd']" in message


def test_load_config_rejects_unbalanced_quotes(tmp_path: Path) -> None:
    cfg = tmp_path / "stagerun.toml"
    _write_config(cfg, "[stages.build]\ncommand = \"echo 'oops\"\n")
    with pytest.raises(ConfigError) as excinfo:
        load_config(cfg)
    assert "failed to parse command into argv" in str(excinfo.value)


def test_project_groups_unknown_member_fails(tmp_path: Path) -> None:
    cfg = tmp_path / "stagerun.toml"
    _write_config(
        cfg,
        "\n".join(
            [
                "[projects.a]",
                "",
                "[project_groups]",
                'grp = ["missing"]',
                "",
            ]
        ),
    )
    with pytest.raises(ConfigError) as excinfo:
        load_config(cfg)
    assert "project_groups.grp: unknown project 'missing'" in str(excinfo.value)


def test_select_project_ids(tmp_path: Path) -> None:
    cfg = tmp_path / "stagerun.toml"
    _write_config(
        cfg,
        "\n".join(
            [
                "[projects.a]",
                "[projects.b]",
                "[projects.c]",
                "",
                "[project_groups]",
                'back = ["c", "a"]',
                "",
            ]
        ),
    )
    config = load_config(cfg)

    assert config.select_project_ids() == ["a", "b", "c"]
    assert config.select_project_ids(project_ids=["b"]) == ["b"]
    assert config.select_project_ids(project_ids=["a"], groups=["back"]) == ["a", "c"]
    # Unknown explicit ids pass through; they fail later during resolution.
    assert config.select_project_ids(project_ids=["zzz"]) == ["zzz"]

    with pytest.raises(ConfigError) as excinfo:
        config.select_project_ids(groups=["front"])
    assert "Unknown project group(s): 'front'" in str(excinfo.value)


def test_default_config_path_honours_env(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    monkeypatch.delenv("STAGERUN_CONFIG", raising=False)
    assert default_config_path() == Path("stagerun.toml")

    monkeypatch.setenv("STAGERUN_CONFIG", str(tmp_path / "other.toml"))
    assert default_config_path() == tmp_path / "other.toml"


def test_blank_project_path_is_rejected_and_missing_path_defaults(tmp_path: Path) -> None:
    cfg = tmp_path / "stagerun.toml"
    _write_config(cfg, '[projects.blank]\npath = "  "\n')
    with pytest.raises(ConfigError) as excinfo:
        load_config(cfg)
    assert "projects.blank.path: must be non-empty" in str(excinfo.value)

    _write_config(cfg, "[projects.nopath]\n")
    assert load_config(cfg).projects["nopath"].path == tmp_path.resolve()
