from __future__ import annotations

import argparse
import logging
from pathlib import Path

from rich.console import Console

from stagerun import __version__
from stagerun.config import ConfigError, RunnerConfig, default_config_path, load_config
from stagerun.lint import lint_config
from stagerun.orchestrator import StageRunError, run_stage
from stagerun.report import write_report
from stagerun.status_board import StatusBoard

_CONFIG_HELP = """\
stagerun runs one stage's command for many projects at once.

Configuration (TOML, default ./stagerun.toml or $STAGERUN_CONFIG):

  [settings]
  max_parallel = 4                  # optional; default is one worker per project

  [stages.build]
  command = "make -C {path} build"  # string (shlex-split) or list of argv strings
  env = { CI = "1" }                # optional

  [projects.api]
  path = "services/api"             # relative to the config file; default "."
  vars = { target = "api" }         # extra {placeholders} for command templates
  env = { API_MODE = "test" }       # optional

  [projects.api.stages.test]        # per-project override of a stage
  command = ["pytest", "-q"]

  [project_groups]
  backend = ["api", "worker"]

Placeholders: {project} {stage} {path} {config_dir} plus the project's vars.
Commands run with STAGERUN_STAGE and STAGERUN_PROJECT set in their environment.

Special stages:
  stagerun lint    validate the config and every project/stage command
  stagerun help    show this text
"""


class ConsoleLogHandler(logging.Handler):
    """Write records to a shared ``Console`` without wrapping, padding or markup.

    On a terminal the text goes through ``Console.out`` so it lands above the
    live status board. Otherwise it is written to the console's file as-is, so
    captured command output keeps long lines and tabs intact.
    """

    def __init__(self, console: Console) -> None:
        super().__init__()
        self.console = console

    def emit(self, record: logging.LogRecord) -> None:
        try:
            msg = self.format(record)
            if self.console.is_terminal:
                self.console.out(msg, highlight=False)
            else:
                stream = self.console.file
                stream.write(msg + "\n")
                stream.flush()
        except Exception:
            self.handleError(record)


def _configure_logging(console: Console, *, verbose: bool) -> logging.Logger:
    pkg_logger = logging.getLogger("stagerun")
    for existing in list(pkg_logger.handlers):
        if isinstance(existing, ConsoleLogHandler):
            pkg_logger.removeHandler(existing)
    handler = ConsoleLogHandler(console)
    handler.setFormatter(logging.Formatter("%(message)s"))
    pkg_logger.addHandler(handler)
    pkg_logger.setLevel(logging.DEBUG if verbose else logging.INFO)
    return pkg_logger


def _load_config(args: argparse.Namespace) -> RunnerConfig:
    config_path = Path(args.config).expanduser() if args.config else default_config_path()
    try:
        return load_config(config_path)
    except ConfigError as e:
        raise SystemExit(f"stagerun: {e}") from e


def _cmd_lint(config: RunnerConfig) -> int:
    issues = lint_config(config)
    if not issues:
        print(f"config ok: {config.path}")
        return 0
    for issue in issues:
        print(issue)
    return 1


def _cmd_run(args: argparse.Namespace, config: RunnerConfig, *, console: Console, log: logging.Logger) -> int:
    try:
        project_ids = config.select_project_ids(project_ids=args.projects, groups=args.group)
    except ConfigError as e:
        raise SystemExit(f"stagerun: {e}") from e

    board = StatusBoard(console=console)
    exit_code = 0
    try:
        result = run_stage(
            args.stage,
            project_ids,
            config,
            board=board,
            logger=log,
            max_parallel=args.max_parallel,
        )
    except StageRunError as e:
        result = e.result
        exit_code = 1

    if args.report:
        write_report(Path(args.report).expanduser(), result)
    return exit_code


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="stagerun",
        description="Run a stage (build, test, deploy, ...) across many projects concurrently.",
        epilog="Use `stagerun help` for the configuration reference and `stagerun lint` to check it.",
    )
    parser.add_argument(
        "--version",
        action="version",
        version=f"%(prog)s {__version__}",
    )
    parser.add_argument(
        "--config",
        default=None,
        help="Path to the TOML config (defaults to $STAGERUN_CONFIG or ./stagerun.toml).",
    )
    parser.add_argument(
        "--group",
        action="append",
        default=None,
        help="Add the projects of a [project_groups] entry (repeatable).",
    )
    parser.add_argument(
        "--max-parallel",
        type=int,
        default=None,
        help="Max projects to run at once (defaults to settings.max_parallel, else all).",
    )
    parser.add_argument(
        "--report",
        default=None,
        help="Write a JSON summary of the run to this path.",
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="Enable debug logging.")
    parser.add_argument("stage", nargs="?", default="", help="Stage to run, or `lint` / `help`.")
    parser.add_argument(
        "projects",
        nargs="*",
        default=[],
        help="Project ids to run (defaults to every configured project).",
    )
    return parser


def main(argv: list[str] | None = None) -> int:
    parser = _build_parser()
    args = parser.parse_args(argv)

    if not args.stage.strip():
        parser.print_usage()
        return 2
    if args.stage.lower() == "help":
        print(_CONFIG_HELP, end="")
        return 0
    if args.max_parallel is not None and args.max_parallel < 1:
        parser.error(f"--max-parallel must be >= 1, got {args.max_parallel}")

    console = Console()
    log = _configure_logging(console, verbose=bool(args.verbose))
    config = _load_config(args)

    if args.stage.lower() == "lint":
        return _cmd_lint(config)
    return _cmd_run(args, config, console=console, log=log)


if __name__ == "__main__":
    raise SystemExit(main())
