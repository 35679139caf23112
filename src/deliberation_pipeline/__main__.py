"""Entry point for `python -m deliberation_pipeline` and the `deliberate` CLI script."""

from __future__ import annotations

import argparse
import logging
from pathlib import Path

from deliberation_pipeline.agents import check_prerequisites
from deliberation_pipeline.exceptions import PipelineError, PipelineSetupError
from deliberation_pipeline.orchestrator import TASK_RESET_TARGETS, PipelineOrchestrator
from deliberation_pipeline.run_log import configure_logging
from deliberation_pipeline.settings import RuntimeSettings


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Drive the draft/challenge/refine/tiebreak delivery pipeline")
    parser.add_argument(
        "--root",
        type=Path,
        default=None,
        help="Project root holding the master plan and pipeline directory (default: cwd)",
    )
    parser.add_argument(
        "--log-level",
        default="INFO",
        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
        help="Logging verbosity",
    )
    commands = parser.add_subparsers(dest="command", required=True)

    bootstrap = commands.add_parser("bootstrap", help="Extract milestones from the master plan")
    bootstrap.add_argument("--force", action="store_true", help="Overwrite an existing state file")

    init = commands.add_parser("init", help="Build state from an existing milestones/ tree")
    init.add_argument("--force", action="store_true", help="Overwrite an existing state file")
    init.add_argument("--pre-planned", action="store_true", help="Lock every milestone and phase spec.md as-is")

    run = commands.add_parser("run", help="Resume the pipeline from the persisted state")
    run.add_argument("--dry-run", action="store_true", help="Use mock agents; no external calls are made")

    commands.add_parser("status", help="Print the progress tree")

    reset = commands.add_parser("reset", help="Rewind a milestone, phase or task")
    reset.add_argument("path", help="m01, m01/p01 or m01/p01/t01")
    reset.add_argument("--to", default=None, choices=list(TASK_RESET_TARGETS), help="Task target state")
    return parser.parse_args(argv)


def _require_agents(settings: RuntimeSettings) -> None:
    if settings.dry_run or settings.agent_backend != "cli":
        return
    missing = check_prerequisites(settings)
    if missing:
        raise PipelineSetupError(f"Missing agent binaries on PATH: {', '.join(missing)}")


def main(argv: list[str] | None = None) -> int:
    args = parse_args(argv)
    root = args.root.resolve() if args.root is not None else Path.cwd()

    try:
        settings = RuntimeSettings.from_env()
    except ValueError as exc:
        configure_logging(getattr(logging, args.log_level))
        logging.error("Invalid configuration: %s", exc)
        return 1

    if args.command == "run" and args.dry_run:
        settings = settings.with_dry_run(True)
    log_dir = settings.log_path(root) if args.command in ("bootstrap", "run") else None
    configure_logging(getattr(logging, args.log_level), log_dir)

    try:
        if args.command in ("bootstrap", "run"):
            _require_agents(settings)
        orchestrator = PipelineOrchestrator(settings, root=root)

        if args.command == "bootstrap":
            state = orchestrator.bootstrap(force=args.force)
            print(f"milestones={len(state.milestones)}")
            print(f"state={orchestrator.store.path}")
        elif args.command == "init":
            state = orchestrator.init_from_tree(force=args.force, pre_planned=args.pre_planned)
            print(f"milestones={len(state.milestones)}")
            print(f"state={orchestrator.store.path}")
        elif args.command == "run":
            orchestrator.run()
            print(orchestrator.status_report(orchestrator.state))
        elif args.command == "status":
            print(orchestrator.status_report())
        elif args.command == "reset":
            state = orchestrator.reset(args.path, to=args.to)
            print(f"reset={args.path}")
            print(orchestrator.status_report(state))
    except FileNotFoundError as exc:
        logging.error("%s", exc)
        if args.command in ("run", "status", "reset"):
            logging.error("Run 'deliberate bootstrap' or 'deliberate init' first.")
        return 1
    except (PipelineError, OSError, ValueError) as exc:
        logging.error("Pipeline %s failed: %s", args.command, exc)
        return 1
    except Exception as exc:  # noqa: BLE001
        logging.exception("Pipeline %s failed: %s", args.command, exc)
        return 1
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
