"""Command-line entry point: run one autopilot session."""

import argparse
import asyncio
import logging
import sys
from pathlib import Path

from rich.console import Console
from rich.markup import escape

from autopilot import __version__
from autopilot.config import Settings, load_settings
from autopilot.errors import AutopilotError, LockContention
from autopilot.executor import claude_executor, codex_executor
from autopilot.progress import ProgressLog, format_elapsed, progress_path, session_name
from autopilot.runner import Mode, Runner, RunnerConfig

log = logging.getLogger("autopilot")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="autopilot",
        description="Drive a coding agent through task, review and analysis phases",
    )
    parser.add_argument(
        "plan",
        nargs="?",
        default=None,
        help="Plan file to execute (required for --mode full)",
    )
    parser.add_argument(
        "--mode",
        choices=[m.value for m in Mode],
        default=Mode.FULL.value,
        help="full: task+review+analysis, review: skip tasks, analysis: analysis+review (default: full)",
    )
    parser.add_argument(
        "--max-iterations",
        type=int,
        default=None,
        help="Max task-phase iterations (default: from config, 50)",
    )
    parser.add_argument(
        "--max-review-iterations",
        type=int,
        default=None,
        help="Max iterations per review phase (default: from config, 10)",
    )
    parser.add_argument(
        "--timeout",
        type=int,
        default=None,
        help="Per-invocation timeout in seconds, 0 for none (default: from config, 0)",
    )
    parser.add_argument(
        "--config",
        default=None,
        help="Path to a YAML config file (default: ./.autopilot.yaml or ~/.config/autopilot/config.yaml)",
    )
    parser.add_argument(
        "--progress-dir",
        default=None,
        help="Directory for progress logs (default: from config, .autopilot)",
    )
    parser.add_argument("--debug", action="store_true", default=False, help="Verbose diagnostics")
    parser.add_argument("--no-color", action="store_true", default=False, help="Disable colour output")
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    return parser


def apply_overrides(settings: Settings, args: argparse.Namespace) -> Settings:
    """Command-line flags win over the config file."""
    if args.max_iterations is not None:
        settings.max_iterations = args.max_iterations
    if args.max_review_iterations is not None:
        settings.max_review_iterations = args.max_review_iterations
    if args.timeout is not None:
        settings.timeout = args.timeout
    if args.progress_dir is not None:
        settings.progress_dir = Path(args.progress_dir)
    return settings


async def run_session(settings: Settings, mode: Mode, plan: str | None, console: Console, debug: bool = False) -> None:
    """Open the session's progress log, run the pipeline, close the log."""
    name = session_name(plan, mode.value)
    progress = ProgressLog.open(
        progress_path(settings.progress_dir, name),
        session=name,
        plan_file=plan,
        mode=mode.value,
        console=console,
    )
    if progress.restarted:
        console.print(f"[yellow]Resuming unfinished session {escape(name)!r}[/yellow]")

    with progress:
        runner = Runner(
            RunnerConfig(
                plan_file=plan,
                mode=mode,
                max_iterations=settings.max_iterations,
                max_review_iterations=settings.max_review_iterations,
                analysis_enabled=settings.codex_enabled,
            ),
            progress,
            task_executor=claude_executor(settings, output_handler=progress.print_raw, debug=debug),
            analysis_executor=codex_executor(settings, output_handler=progress.print_raw, debug=debug),
        )
        try:
            await runner.run()
        except AutopilotError as exc:
            progress.print("session failed: %s", exc)
            raise
        elapsed = progress.elapsed()

    console.rule("[bold green]Session Complete")
    console.print(f"  Session:  {name}")
    console.print(f"  Mode:     {mode.value}")
    console.print(f"  Elapsed:  {format_elapsed(elapsed)}")
    console.print(f"  Log:      {progress.path}")


def main(argv: list[str] | None = None) -> None:
    args = build_parser().parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.debug else logging.INFO,
        format="%(asctime)s [%(name)s] %(levelname)s %(message)s",
        datefmt="%H:%M:%S",
    )
    console = Console(no_color=args.no_color, highlight=False)

    try:
        settings = apply_overrides(load_settings(args.config), args)
        asyncio.run(run_session(settings, Mode(args.mode), args.plan, console, debug=args.debug))
    except LockContention as exc:
        console.print(f"[bold red]Already running:[/bold red] {escape(str(exc))}")
        sys.exit(1)
    except AutopilotError as exc:
        console.print(f"[bold red]Failed:[/bold red] {escape(str(exc))}")
        log.debug("failure chain", exc_info=exc)
        sys.exit(1)
    except KeyboardInterrupt:
        console.print("\n[bold red]Interrupted![/bold red] Agent processes stopped, session can be resumed")
        log.warning("KeyboardInterrupt, shutting down")
        sys.exit(130)


if __name__ == "__main__":
    main()
