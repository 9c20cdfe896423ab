"""Local verification harness: build a candidate program and diff its sample output.

``VerificationHarness.verify`` writes the program into the shared scratch
slot, builds it, and runs it once per sample, producing a
``VerificationVerdict``. Each step gates the next: a failed build runs no
samples, and heuristic contests and sample-less tasks skip execution.
Program failures are returned as verdicts; only a subprocess that cannot
be launched or times out raises ``HarnessError``.
"""

from __future__ import annotations

import logging

from autosolve.execution import ScratchSlot, run_process
from autosolve.models import (
    Sample,
    SampleResult,
    SampleResultKind,
    SolverConfig,
    VerdictKind,
    VerificationVerdict,
)

logger = logging.getLogger(__name__)

_RESULT_TO_VERDICT: dict[SampleResultKind, VerdictKind] = {
    SampleResultKind.RUNTIME_ERROR: VerdictKind.RUNTIME_ERROR,
    SampleResultKind.MISMATCH: VerdictKind.MISMATCH,
}


def normalize_output(text: str) -> str:
    """Normalize program output for comparison.

    Line endings become ``\\n``, trailing whitespace is dropped from each
    line, and leading/trailing whitespace is trimmed from the whole text.
    """
    unified = text.replace("\r\n", "\n").replace("\r", "\n")
    return "\n".join(line.rstrip() for line in unified.split("\n")).strip()


def outputs_match(expected: str, actual: str) -> bool:
    """Whether two outputs are equal after ``normalize_output``."""
    return normalize_output(expected) == normalize_output(actual)


def is_heuristic_contest(task_url: str, marker: str = "/ahc") -> bool:
    """Whether *task_url* belongs to a heuristic (optimization) contest.

    Such contests have no single correct output to diff against.
    """
    return bool(marker) and marker in task_url


class VerificationHarness:
    """Compiles a candidate program and runs it against ordered samples.

    Attributes:
        config: Solver configuration (commands, timeout, classifier marker).
        slot: Scratch slot the program is written into.
    """

    def __init__(self, config: SolverConfig, *, slot: ScratchSlot | None = None) -> None:
        self.config = config
        self.slot = slot or ScratchSlot.from_config(config)

    async def verify(
        self,
        source_code: str,
        samples: list[Sample],
        task_url: str,
    ) -> VerificationVerdict:
        """Build *source_code* and check it against every sample.

        Args:
            source_code: Candidate program text.
            samples: Samples in the order they should be run.
            task_url: Problem URL, used to classify heuristic contests.

        Returns:
            The verdict for this call.

        Raises:
            HarnessError: If a build or run subprocess cannot be launched or
                exceeds the configured timeout.
        """
        async with self.slot.lock:
            return await self._verify_locked(source_code, samples, task_url)

    async def _verify_locked(
        self,
        source_code: str,
        samples: list[Sample],
        task_url: str,
    ) -> VerificationVerdict:
        self.slot.write_program(source_code)

        if not samples and not self.config.build_without_samples:
            logger.info("No samples; skipping build and verification")
            return VerificationVerdict(kind=VerdictKind.SKIPPED_NO_SAMPLES)

        build = await run_process(
            self.config.build_command,
            self.slot.directory,
            timeout_seconds=self.config.subprocess_timeout_seconds,
        )
        if build.exit_code != 0:
            logger.warning("Compilation failed:\n%s", build.output)
            return VerificationVerdict(
                kind=VerdictKind.COMPILE_FAILED,
                compiler_output=build.output,
            )

        if is_heuristic_contest(task_url, self.config.heuristic_marker):
            logger.info("Heuristic contest detected; skipping sample verification")
            return VerificationVerdict(kind=VerdictKind.SKIPPED_HEURISTIC_CONTEST)

        if not samples:
            logger.info("No samples; build succeeded, nothing to verify")
            return VerificationVerdict(kind=VerdictKind.SKIPPED_NO_SAMPLES)

        results = [await self._run_sample(sample) for sample in samples]
        first_failure = next((r for r in results if not r.passed), None)
        if first_failure is None:
            logger.info("All %d samples passed", len(results))
            return VerificationVerdict(kind=VerdictKind.ALL_PASSED, sample_results=results)

        logger.warning(
            "%d of %d samples failed",
            sum(1 for r in results if not r.passed),
            len(results),
        )
        return VerificationVerdict(
            kind=_RESULT_TO_VERDICT[first_failure.kind],
            sample_results=results,
        )

    async def _run_sample(self, sample: Sample) -> SampleResult:
        run = await run_process(
            self.config.run_command,
            self.slot.directory,
            stdin_text=sample.input_text,
            timeout_seconds=self.config.subprocess_timeout_seconds,
        )
        expected = normalize_output(sample.expected_output)
        actual = normalize_output(run.output)

        if run.exit_code != 0:
            logger.warning("Sample %d: runtime error (exit %d)", sample.index, run.exit_code)
            kind = SampleResultKind.RUNTIME_ERROR
        elif actual == expected:
            logger.info("Sample %d: pass", sample.index)
            kind = SampleResultKind.PASSED
        else:
            logger.warning(
                "Sample %d: FAIL\nExpected:\n%s\nActual:\n%s",
                sample.index,
                expected,
                actual,
            )
            kind = SampleResultKind.MISMATCH

        return SampleResult(
            index=sample.index,
            kind=kind,
            exit_code=run.exit_code,
            expected=expected,
            actual=actual,
            duration_seconds=run.duration_seconds,
        )
