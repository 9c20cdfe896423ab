"""Per-task pipeline: fetch → generate → verify → submit.

``TaskPipeline.run`` drives one task from ``processing`` to exactly one
terminal status. Verification outcomes are branched on as verdict values;
any exception raised along the way is converted into the task's ``error``
status so that the controller can move on to the next task.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from pydantic import BaseModel, ConfigDict

from autosolve.generation import (
    EmptyPromptError,
    GenerationError,
    GenerationFailed,
    GenerationTimedOut,
    ModelFailoverClient,
    build_prompt,
)
from autosolve.models import (
    SolverConfig,
    Task,
    TaskStatus,
    VerificationVerdict,
)

if TYPE_CHECKING:
    from autosolve.handoff import FileHandoff
    from autosolve.sources import ProblemSource, SubmissionSink
    from autosolve.verification import VerificationHarness

logger = logging.getLogger(__name__)


class PipelineOutcome(BaseModel):
    """Summary of one pipeline run for one task.

    Attributes:
        task_name: Name of the processed task.
        status: Terminal status the task reached.
        verdict: Verification verdict, if verification ran.
        source_code: Generated program, if generation succeeded.
        model: Model that produced the program (``None`` for handoff).
        submitted: Whether the submission sink accepted the program.
        error: Error message when ``status`` is ``error``.
    """

    model_config = ConfigDict(frozen=True)

    task_name: str
    status: TaskStatus
    verdict: VerificationVerdict | None = None
    source_code: str | None = None
    model: str | None = None
    submitted: bool = False
    error: str | None = None


class TaskPipeline:
    """Runs the generate/verify/submit state machine for a single task.

    Attributes:
        config: Solver configuration.
        source: Supplies the problem statement and samples.
        generator: Model failover client; may be ``None`` when only the
            file handoff is used.
        harness: Verification harness.
        sink: Submission sink; ``None`` leaves every submission to a human.
        handoff: File handoff used when API generation is unavailable.
    """

    def __init__(
        self,
        config: SolverConfig,
        source: ProblemSource,
        generator: ModelFailoverClient | None,
        harness: VerificationHarness,
        *,
        sink: SubmissionSink | None = None,
        handoff: FileHandoff | None = None,
    ) -> None:
        self.config = config
        self.source = source
        self.generator = generator
        self.harness = harness
        self.sink = sink
        self.handoff = handoff

    async def run(self, task: Task) -> PipelineOutcome:
        """Process *task* to a terminal status.

        Never raises for failures inside the pipeline; they are recorded on
        the task and in the returned outcome.

        Raises:
            RuntimeError: If *task* is already being processed.
        """
        if task.status == TaskStatus.PROCESSING:
            msg = f"Task {task.name} is already being processed"
            raise RuntimeError(msg)

        task.status = TaskStatus.PROCESSING
        task.error_message = None
        task.verdict = None
        logger.info("Processing %s (%s)", task.name, task.url)

        source_code: str | None = None
        model: str | None = None
        verdict: VerificationVerdict | None = None
        submitted = False
        try:
            statement = await self.source.fetch_problem(task)
            logger.info(
                "Generating %s code for %s (samples: %d)",
                self.config.language_name,
                task.name,
                len(statement.samples),
            )
            source_code, model = await self._generate(statement.text)
            task.solution = source_code

            verdict = await self.harness.verify(source_code, statement.samples, task.url)
            task.verdict = verdict
            submitted = await self._maybe_submit(task, source_code, verdict)
        except Exception as exc:  # noqa: BLE001
            message = str(exc) or type(exc).__name__
            task.status = TaskStatus.ERROR
            task.error_message = message
            logger.error("Error on %s: %s", task.name, message)
            return PipelineOutcome(
                task_name=task.name,
                status=task.status,
                verdict=verdict,
                source_code=source_code,
                model=model,
                submitted=submitted,
                error=message,
            )

        task.status = TaskStatus.DONE
        logger.info("Finished %s: %s", task.name, verdict.kind)
        return PipelineOutcome(
            task_name=task.name,
            status=task.status,
            verdict=verdict,
            source_code=source_code,
            model=model,
            submitted=submitted,
        )

    async def _generate(self, problem_text: str) -> tuple[str, str | None]:
        """Return ``(source_code, model)`` from the API or the file handoff."""
        if self.generator is not None and self.config.api_key:
            try:
                result = await self.generator.generate(
                    build_prompt(problem_text, self.config)
                )
            except EmptyPromptError:
                raise
            except GenerationError as exc:
                if self.handoff is None:
                    raise
                logger.warning("Generation error: %s. Falling back to file handoff.", exc)
            else:
                return result.source_code, result.model
        elif self.handoff is None:
            msg = "No API key configured and file handoff is disabled"
            raise GenerationFailed(msg)

        source_code = await self.handoff.request_solution(problem_text)
        if source_code is None:
            msg = "Timed out waiting for a handed-off solution"
            raise GenerationTimedOut(msg)
        return source_code, None

    async def _maybe_submit(
        self, task: Task, source_code: str, verdict: VerificationVerdict
    ) -> bool:
        if not verdict.passed:
            logger.warning(
                "Verification did not pass for %s (%s); submission left to operator",
                task.name,
                verdict.kind,
            )
            return False
        if self.sink is None or not self.config.submit_on_pass:
            logger.info("Verification passed for %s; copy the code to submit", task.name)
            return False
        await self.sink.submit(task, source_code)
        logger.info("Submitted %s", task.name)
        return True
