"""CLI entry point for autosolve.

Provides ``main()`` as the console-script entry point registered in
``pyproject.toml`` as ``autosolve = "autosolve.cli:main"``. Loads a YAML
contest file and an optional YAML config, runs every selected task
through the pipeline, and prints a per-task summary.
"""

from __future__ import annotations

import argparse
from pathlib import Path
import sys

from autosolve.controller import apply_env_overrides, configure_logging, run_sync
from autosolve.models import SolverConfig, Task, TaskStatus
from autosolve.pipeline import PipelineOutcome
from autosolve.sources import DirectorySubmissionSink, YamlProblemSource, read_yaml_mapping


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="autosolve",
        description="Generate, verify and submit solutions for contest problems.",
    )
    parser.add_argument(
        "--contest",
        required=True,
        help="Path to the contest YAML file (tasks, statements, samples).",
    )
    parser.add_argument(
        "--config",
        default=None,
        help="Path to an optional SolverConfig YAML file.",
    )
    parser.add_argument(
        "--output",
        default=None,
        help="Directory where passing solutions are saved for submission.",
    )
    parser.add_argument(
        "--select",
        nargs="+",
        default=None,
        metavar="NAME",
        help="Only process the named tasks.",
    )
    return parser


def _print_startup_summary(config: SolverConfig, contest: str) -> None:
    sep = "=" * 60
    print(sep)
    print("autosolve")
    print(sep)
    print(f"  Contest:      {contest}")
    print(f"  Language:     {config.language_name}")
    generation = "API" if config.api_key else "disabled"
    if config.handoff_enabled:
        generation += " + file handoff"
    print(f"  Generation:   {generation}")
    print(f"  Scratch dir:  {config.scratch_dir}")
    print(f"  Attempts:     {config.max_generation_attempts}")
    print(sep)


def _print_results(tasks: list[Task], outcomes: list[PipelineOutcome]) -> None:
    by_name = {outcome.task_name: outcome for outcome in outcomes}
    for task in tasks:
        outcome = by_name.get(task.name)
        detail = ""
        if outcome is not None and outcome.verdict is not None:
            detail = outcome.verdict.kind.value
        if outcome is not None and outcome.error:
            detail = outcome.error
        print(f"  {task.name:<12} {task.status.value:<10} {detail}")


def main() -> int:
    """Entry point for the autosolve CLI.

    Returns:
        Exit code: 0 when every processed task reached ``done``, 1 otherwise.
    """
    args = _build_parser().parse_args()

    try:
        config = SolverConfig()
        if args.config is not None:
            config = SolverConfig(**read_yaml_mapping(args.config, what="config"))
        config = apply_env_overrides(config)
        configure_logging(config)

        source = YamlProblemSource(args.contest)
        sink = None
        if args.output is not None:
            sink = DirectorySubmissionSink(
                args.output, suffix=Path(config.program_filename).suffix
            )

        _print_startup_summary(config, args.contest)
        tasks, outcomes = run_sync(
            config, source, source.contest_url, sink=sink, selected=args.select
        )
        _print_results(tasks, outcomes)
    except Exception as exc:
        print(f"Error: {exc}", file=sys.stderr)
        return 1

    if any(outcome.status != TaskStatus.DONE for outcome in outcomes):
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
