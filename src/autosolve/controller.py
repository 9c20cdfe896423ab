"""Task set controller: sequential, single-flight processing of contest tasks.

The controller owns the ordered task list and an explicit
``ControllerState``. While a fetch or run is active, further requests are
no-ops. Tasks are processed strictly one at a time because every pipeline
shares one scratch directory; cancellation is cooperative and checked only
between tasks.

Also hosts the ambient helpers used by entry points: environment variable
overrides, logging configuration, and a synchronous wrapper.
"""

from __future__ import annotations

import asyncio
import logging
import os
from pathlib import Path
from typing import TYPE_CHECKING, Any

from pydantic import BaseModel

from autosolve.execution import ScratchSlot
from autosolve.generation import ModelFailoverClient
from autosolve.handoff import FileHandoff
from autosolve.models import SolverConfig, Task, TaskStatus
from autosolve.pipeline import PipelineOutcome, TaskPipeline
from autosolve.sources import ProblemSource, SubmissionSink, clean_contest_url
from autosolve.verification import VerificationHarness

if TYPE_CHECKING:
    from collections.abc import Callable

logger = logging.getLogger(__name__)


class ControllerState(BaseModel):
    """Mutable runtime state of a ``TaskSetController``.

    Attributes:
        running: Whether a fetch or run is in progress.
        cancel_requested: Whether the active run should stop before the
            next task.
        current_task: Name of the task being processed, if any.
    """

    running: bool = False
    cancel_requested: bool = False
    current_task: str | None = None


class TaskSetController:
    """Iterates selected tasks through the pipeline, one at a time.

    Attributes:
        pipeline: Pipeline used for every task.
        source: Problem source used to list and preload tasks.
        tasks: Ordered task list.
        state: Explicit running/cancel state.
        cancel_event: Set by ``cancel`` so waits inside the active task,
            such as a file handoff, stop early.
    """

    def __init__(
        self,
        pipeline: TaskPipeline,
        source: ProblemSource,
        *,
        cancel_event: asyncio.Event | None = None,
    ) -> None:
        self.pipeline = pipeline
        self.source = source
        self.tasks: list[Task] = []
        self.state = ControllerState()
        self.cancel_event = cancel_event or asyncio.Event()

    async def fetch(self, contest_url: str) -> list[Task] | None:
        """Replace the task list with the tasks of *contest_url*.

        Each task whose problem can be loaded is marked ``loaded``; load
        failures are logged and leave the task ``idle``.

        Returns:
            The new task list, or ``None`` if another operation is active.
        """
        if self.state.running:
            logger.info("Controller busy; ignoring fetch request")
            return None
        self.state = ControllerState(running=True)
        try:
            contest_url = clean_contest_url(contest_url)
            logger.info("Fetching tasks from %s", contest_url)
            self.tasks = await self.source.list_tasks(contest_url)
            for task in self.tasks:
                if self.state.cancel_requested:
                    break
                try:
                    await self.source.fetch_problem(task)
                except Exception as exc:  # noqa: BLE001
                    logger.warning("Failed to load problem for %s: %s", task.name, exc)
                    continue
                task.status = TaskStatus.LOADED
            logger.info("Fetched %d tasks", len(self.tasks))
            return self.tasks
        finally:
            self.state = ControllerState()

    async def start(self) -> list[PipelineOutcome] | None:
        """Run the pipeline over every selected task, in order.

        Returns:
            One outcome per processed task, or ``None`` if a run was
            already active.
        """
        if self.state.running:
            logger.info("Run already active; ignoring start request")
            return None
        self.state = ControllerState(running=True)
        self.cancel_event.clear()
        outcomes: list[PipelineOutcome] = []
        try:
            selected = [task for task in self.tasks if task.selected]
            logger.info("Starting code generation for %d selected tasks", len(selected))
            for task in selected:
                if self.state.cancel_requested or self.cancel_event.is_set():
                    logger.warning("Cancellation requested; stopping before %s", task.name)
                    break
                self.state.current_task = task.name
                outcomes.append(await self.pipeline.run(task))
            logger.info("Processing completed (%d tasks)", len(outcomes))
            return outcomes
        finally:
            self.state = ControllerState()
            self.cancel_event.clear()

    def cancel(self) -> None:
        """Stop the active run before its next task and interrupt its waits."""
        if not self.state.running:
            return
        self.state.cancel_requested = True
        self.cancel_event.set()
        logger.warning("Stopping after current task...")

    def select(self, names: list[str]) -> None:
        """Select only the tasks named in *names*."""
        wanted = set(names)
        for task in self.tasks:
            task.selected = task.name in wanted

    def status(self) -> dict[str, TaskStatus]:
        """Return each task's status keyed by task name, in task order."""
        return {task.name: task.status for task in self.tasks}


# ---------------------------------------------------------------------------
# Wiring
# ---------------------------------------------------------------------------


def build_controller(
    config: SolverConfig,
    source: ProblemSource,
    *,
    sink: SubmissionSink | None = None,
    cancel_event: asyncio.Event | None = None,
) -> TaskSetController:
    """Assemble the generator, harness, handoff, pipeline, and controller.

    The verification harness and the file handoff share one scratch slot,
    and the handoff watches the controller's cancel event.
    """
    cancel_event = cancel_event or asyncio.Event()
    slot = ScratchSlot.from_config(config)
    handoff = (
        FileHandoff(
            slot,
            timeout_seconds=config.handoff_timeout_seconds,
            poll_seconds=config.handoff_poll_seconds,
            cancel_event=cancel_event,
        )
        if config.handoff_enabled
        else None
    )
    generator = ModelFailoverClient(config) if config.api_key else None
    pipeline = TaskPipeline(
        config,
        source,
        generator,
        VerificationHarness(config, slot=slot),
        sink=sink,
        handoff=handoff,
    )
    return TaskSetController(pipeline, source, cancel_event=cancel_event)


async def solve_contest(
    config: SolverConfig,
    source: ProblemSource,
    contest_url: str,
    *,
    sink: SubmissionSink | None = None,
    selected: list[str] | None = None,
    cancel_event: asyncio.Event | None = None,
) -> tuple[list[Task], list[PipelineOutcome]]:
    """Fetch the contest's tasks and run the pipeline over the selected ones.

    Setting *cancel_event* interrupts a pending file handoff; the task
    being processed then ends in error and no further task is started.
    """
    controller = build_controller(config, source, sink=sink, cancel_event=cancel_event)
    await controller.fetch(contest_url)
    if selected:
        controller.select(selected)
    outcomes = await controller.start() or []
    return controller.tasks, outcomes


def run_sync(
    config: SolverConfig,
    source: ProblemSource,
    contest_url: str,
    *,
    sink: SubmissionSink | None = None,
    selected: list[str] | None = None,
) -> tuple[list[Task], list[PipelineOutcome]]:
    """Synchronous wrapper around ``solve_contest`` for non-async callers."""
    return asyncio.run(
        solve_contest(config, source, contest_url, sink=sink, selected=selected)
    )


# ---------------------------------------------------------------------------
# Environment variable support
# ---------------------------------------------------------------------------


def _positive_int(raw: str) -> int | None:
    try:
        value = int(raw)
    except ValueError:
        return None
    return value if value >= 1 else None


_ENV_OVERRIDES: dict[str, tuple[str, Callable[[str], Any]]] = {
    "GEMINI_API_KEY": ("api_key", str),
    "AUTOSOLVE_LOG_LEVEL": ("log_level", str),
    "AUTOSOLVE_SCRATCH_DIR": ("scratch_dir", str),
    "AUTOSOLVE_MAX_ATTEMPTS": ("max_generation_attempts", _positive_int),
}
"""Environment variable -> (SolverConfig field, parser returning ``None`` on bad input)."""


def apply_env_overrides(config: SolverConfig) -> SolverConfig:
    """Fill the fields *config* left unset from environment variables.

    A field set explicitly, by keyword or from the config file, is never
    overridden, even when its value equals the default. Blank variables
    are ignored and unparseable ones are logged and skipped.

    Returns:
        *config* itself when nothing applies, otherwise an updated copy.
    """
    updates: dict[str, Any] = {}
    for env_var, (field_name, parse) in _ENV_OVERRIDES.items():
        if field_name in config.model_fields_set:
            continue
        raw = os.environ.get(env_var, "").strip()
        if not raw:
            continue
        value = parse(raw)
        if value is None:
            logger.warning("Ignoring %s=%r: not a valid %s", env_var, raw, field_name)
            continue
        updates[field_name] = value
    return config.model_copy(update=updates) if updates else config


# ---------------------------------------------------------------------------
# Logging configuration
# ---------------------------------------------------------------------------

_LOG_FORMAT = "%(asctime)s %(levelname)-8s %(name)s: %(message)s"
_CONSOLE_HANDLER = "autosolve.console"


def _add_named_handler(
    logger_: logging.Logger, name: str, make: Callable[[], logging.Handler]
) -> None:
    if any(handler.get_name() == name for handler in logger_.handlers):
        return
    handler = make()
    handler.set_name(name)
    handler.setFormatter(logging.Formatter(_LOG_FORMAT))
    logger_.addHandler(handler)


def configure_logging(config: SolverConfig) -> None:
    """Set the ``autosolve`` logger's level and attach its handlers.

    A console handler is always attached and a file handler is added per
    distinct ``config.log_file``. Handlers are identified by name, so
    calling this again (for example from tests) adds nothing new.
    """
    package_logger = logging.getLogger("autosolve")
    package_logger.setLevel(getattr(logging, config.log_level.upper(), logging.INFO))
    _add_named_handler(package_logger, _CONSOLE_HANDLER, logging.StreamHandler)
    if config.log_file is not None:
        log_path = Path(config.log_file).resolve()
        _add_named_handler(
            package_logger,
            f"autosolve.file:{log_path}",
            lambda: logging.FileHandler(log_path, encoding="utf-8"),
        )
