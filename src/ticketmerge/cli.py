from __future__ import annotations

import argparse
from pathlib import Path

from ticketmerge.config import AppConfig, load_config
from ticketmerge.console_mode import run_console_mode
from ticketmerge.observability import configure_logging
from ticketmerge.service_runner import build_service


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="ticketmerge")
    subparsers = parser.add_subparsers(dest="command", required=True)

    run_parser = subparsers.add_parser(
        "run", help="Poll the tracker and monitor pull requests without a UI"
    )
    _add_common_arguments(run_parser)
    run_parser.add_argument(
        "--once",
        action="store_true",
        help="Reconcile, run one ingestion cycle and one monitor tick, then exit",
    )

    console_parser = subparsers.add_parser(
        "console", help="Run both loops with the interactive status UI"
    )
    _add_common_arguments(console_parser)
    console_parser.add_argument(
        "--refresh-seconds",
        type=int,
        default=2,
        help="Status UI refresh interval",
    )

    projects_parser = subparsers.add_parser(
        "projects", help="Print the tracker project keys currently in scope"
    )
    _add_common_arguments(projects_parser)

    return parser


def _add_common_arguments(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--config", type=Path, default=Path("ticketmerge.toml"))
    parser.add_argument(
        "-v",
        "--verbose",
        nargs="?",
        const="high",
        default=None,
        choices=("low", "high"),
        help="Log runtime events to stderr (low: high-signal events only)",
    )


def main() -> None:
    args = build_parser().parse_args()
    configure_logging(getattr(args, "verbose", None))
    config = load_config(args.config)

    if args.command == "run":
        _cmd_run(config, once=bool(args.once))
        return
    if args.command == "console":
        run_console_mode(config=config, refresh_seconds=int(args.refresh_seconds))
        return
    if args.command == "projects":
        _cmd_projects(config)
        return

    raise RuntimeError(f"Unknown command: {args.command}")


def _cmd_run(config: AppConfig, *, once: bool) -> None:
    controller = build_service(config)
    try:
        controller.run(once=once)
    except KeyboardInterrupt:
        controller.stop()


def _cmd_projects(config: AppConfig) -> None:
    keys = build_service(config).list_projects()
    if not keys:
        print("No projects in scope.")
        return
    for key in keys:
        print(key)
