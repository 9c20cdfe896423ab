"""Core data models for the autosolve pipeline.

Defines the shared Pydantic models, enums, and configuration type used by
the generation, verification, pipeline, and controller modules. Every
record is frozen except ``Task``, whose status is driven by the pipeline
that is currently processing it.
"""

from __future__ import annotations

from enum import StrEnum

from pydantic import BaseModel, ConfigDict, computed_field, field_validator


class TaskStatus(StrEnum):
    """Lifecycle status of a single contest task."""

    IDLE = "idle"
    LOADED = "loaded"
    PROCESSING = "processing"
    DONE = "done"
    ERROR = "error"


TERMINAL_STATUSES: frozenset[TaskStatus] = frozenset(
    {TaskStatus.DONE, TaskStatus.ERROR}
)


# ---------------------------------------------------------------------------
# Problem data
# ---------------------------------------------------------------------------


class Sample(BaseModel):
    """A known-correct (input, output) pair extracted from a problem page.

    Attributes:
        index: Sample number as printed on the problem page.
        input_text: Text fed to the program on standard input.
        expected_output: Text the program must print.
    """

    model_config = ConfigDict(frozen=True)

    index: int
    input_text: str
    expected_output: str


class Task(BaseModel):
    """One problem within a contest, tracked through generate/verify/submit.

    Mutable: the pipeline processing this task updates ``status`` and
    records the outcome fields. Two pipelines never hold the same task.

    Attributes:
        name: Display name (e.g. ``"A"``).
        url: Canonical problem URL.
        status: Current lifecycle status.
        selected: Whether the task is included in the next run.
        error_message: Message captured when the task ends in ``error``.
        solution: Last generated source code for the task.
        verdict: Last verification verdict for the task.
    """

    name: str
    url: str
    status: TaskStatus = TaskStatus.IDLE
    selected: bool = True
    error_message: str | None = None
    solution: str | None = None
    verdict: VerificationVerdict | None = None


class ProblemStatement(BaseModel):
    """Problem text and ordered samples supplied by a problem source.

    Attributes:
        name: Task display name.
        url: Canonical problem URL.
        text: Plain-text statement used to build the generation prompt.
        samples: Samples ordered by index.
    """

    model_config = ConfigDict(frozen=True)

    name: str
    url: str
    text: str
    samples: list[Sample] = []


# ---------------------------------------------------------------------------
# Generation records
# ---------------------------------------------------------------------------


class ModelCandidate(BaseModel):
    """A generation model identifier with its preference rank.

    Attributes:
        name: Model identifier without the ``models/`` prefix.
        rank: Position in the static preference list; unranked models
            sort after every ranked one.
    """

    model_config = ConfigDict(frozen=True)

    name: str
    rank: int


class AttemptOutcome(StrEnum):
    """Classification of one request against the generative API."""

    SUCCESS = "success"
    PARSE_ERROR = "parse_error"
    QUOTA_EXHAUSTED = "quota_exhausted"
    RATE_LIMITED = "rate_limited"
    MODEL_NOT_FOUND = "model_not_found"
    TRANSPORT_ERROR = "transport_error"
    FAILED = "failed"


class GenerationAttempt(BaseModel):
    """One request made by the failover loop. Not persisted.

    Attributes:
        attempt: 1-based attempt number within one ``generate`` call.
        model: Model the request was sent to.
        status_code: HTTP status, or ``None`` on transport failure.
        wait_seconds: Delay applied before the next attempt, if any.
        outcome: How the response was classified.
        detail: Short human-readable detail (error body excerpt etc.).
    """

    model_config = ConfigDict(frozen=True)

    attempt: int
    model: str
    status_code: int | None = None
    wait_seconds: float | None = None
    outcome: AttemptOutcome
    detail: str = ""


class GenerationResult(BaseModel):
    """Source code produced by a successful ``generate`` call.

    Attributes:
        source_code: Extracted program text.
        model: Model that produced it.
        attempts: Every attempt made, in order, including the final one.
    """

    model_config = ConfigDict(frozen=True)

    source_code: str
    model: str
    attempts: list[GenerationAttempt] = []


# ---------------------------------------------------------------------------
# Verification records
# ---------------------------------------------------------------------------


class VerdictKind(StrEnum):
    """Overall outcome of a verification call."""

    COMPILE_FAILED = "compile_failed"
    RUNTIME_ERROR = "runtime_error"
    MISMATCH = "mismatch"
    ALL_PASSED = "all_passed"
    SKIPPED_NO_SAMPLES = "skipped_no_samples"
    SKIPPED_HEURISTIC_CONTEST = "skipped_heuristic_contest"


class SampleResultKind(StrEnum):
    """Outcome of running the program against one sample."""

    PASSED = "passed"
    RUNTIME_ERROR = "runtime_error"
    MISMATCH = "mismatch"


class SampleResult(BaseModel):
    """Result of one sample run.

    Attributes:
        index: Sample index the result belongs to.
        kind: Pass, runtime error, or output mismatch.
        exit_code: Exit code of the program run.
        expected: Normalized expected output.
        actual: Normalized captured output (stdout and stderr merged).
        duration_seconds: Wall-clock time of the run.
    """

    model_config = ConfigDict(frozen=True)

    index: int
    kind: SampleResultKind
    exit_code: int
    expected: str
    actual: str
    duration_seconds: float = 0.0

    @property
    def passed(self) -> bool:
        """Whether the sample produced the expected output."""
        return self.kind == SampleResultKind.PASSED


class VerificationVerdict(BaseModel):
    """Structured, immutable outcome of one verification call.

    ``kind`` is ``ALL_PASSED`` only when every sample passed; for a failing
    run it takes the kind of the first failing sample, while
    ``sample_results`` still holds a result for every sample.

    Attributes:
        kind: Overall verdict.
        sample_results: One entry per executed sample, in input order.
        compiler_output: Captured build output (set on compile failure).
    """

    model_config = ConfigDict(frozen=True)

    kind: VerdictKind
    sample_results: list[SampleResult] = []
    compiler_output: str | None = None

    @computed_field  # type: ignore[prop-decorator]
    @property
    def samples_examined(self) -> int:
        """Number of samples the program was run against."""
        return len(self.sample_results)

    @property
    def failing_samples(self) -> list[SampleResult]:
        """All failing sample results, in input order."""
        return [r for r in self.sample_results if not r.passed]

    @property
    def failing_sample(self) -> SampleResult | None:
        """The first failing sample result, or ``None``."""
        failing = self.failing_samples
        return failing[0] if failing else None

    @property
    def passed(self) -> bool:
        """Whether the verdict allows automatic submission."""
        return self.kind == VerdictKind.ALL_PASSED


Task.model_rebuild()


# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------

DEFAULT_PREFERRED_MODELS: tuple[str, ...] = (
    "gemini-2.0-flash-lite-preview",
    "gemini-flash-latest",
    "gemini-pro-latest",
    "gemini-1.5-flash",
    "gemini-pro",
)

DEFAULT_PROJECT_TEMPLATE = """\
<Project Sdk="Microsoft.NET.Sdk">
  <PropertyGroup>
    <OutputType>Exe</OutputType>
    <TargetFramework>net8.0</TargetFramework>
    <Nullable>disable</Nullable>
    <ImplicitUsings>enable</ImplicitUsings>
  </PropertyGroup>
</Project>
"""


class SolverConfig(BaseModel):
    """Every tunable of the generate/verify/submit pipeline.

    Attributes:
        api_key: Generative API key; ``None`` disables API generation.
        api_base_url: Base URL of the generative API.
        preferred_models: Static preference order, fastest/cheapest first.
        initial_model: First model tried before any discovery.
        fallback_model: Identifier used when discovery yields nothing.
        model_family: Substring identifying acceptable discovered models.
        max_generation_attempts: Attempt budget for one ``generate`` call.
        request_timeout_seconds: Timeout for each HTTP request.
        max_prompt_chars: Problem text is truncated to this length.
        language_name: Target language named in the prompt.
        code_fence_tag: Fence tag of the code block to extract.
        scratch_dir: Single shared compilation directory.
        program_filename: Program file inside the scratch directory.
        problem_filename: Problem text file inside the scratch directory.
        project_filename: Build project file seeded into the scratch directory
            when no file with its extension exists; ``None`` disables seeding.
        project_template: Content written when seeding the project file.
        build_command: Build step, run with the scratch dir as cwd.
        run_command: Per-sample run step, run with the scratch dir as cwd.
        subprocess_timeout_seconds: Wall-clock cap for each subprocess.
        heuristic_marker: URL fragment marking optimization contests.
        build_without_samples: Still run the build when there are no
            samples (compile-only sanity check).
        submit_on_pass: Call the submission sink when all samples pass.
        handoff_enabled: Fall back to the file-drop handoff when API
            generation is unavailable or fails.
        handoff_timeout_seconds: Deadline for the handoff wait.
        handoff_poll_seconds: Poll interval for the handoff wait.
        log_level: Logging level name.
        log_file: Optional log file path.
    """

    model_config = ConfigDict(frozen=True)

    api_key: str | None = None
    api_base_url: str = "https://generativelanguage.googleapis.com/v1beta"
    preferred_models: list[str] = list(DEFAULT_PREFERRED_MODELS)
    initial_model: str = "gemini-1.5-flash"
    fallback_model: str = "gemini-pro"
    model_family: str = "gemini"
    max_generation_attempts: int = 8
    request_timeout_seconds: float = 30.0
    max_prompt_chars: int = 4000

    language_name: str = "C#"
    code_fence_tag: str = "csharp"

    scratch_dir: str = "./scratch"
    program_filename: str = "Program.cs"
    problem_filename: str = "problem.txt"
    project_filename: str | None = "Solution.csproj"
    project_template: str = DEFAULT_PROJECT_TEMPLATE
    build_command: list[str] = ["dotnet", "build"]
    run_command: list[str] = ["dotnet", "run", "--no-build"]
    subprocess_timeout_seconds: float = 60.0
    heuristic_marker: str = "/ahc"
    build_without_samples: bool = True

    submit_on_pass: bool = True
    handoff_enabled: bool = False
    handoff_timeout_seconds: float = 600.0
    handoff_poll_seconds: float = 5.0

    log_level: str = "INFO"
    log_file: str | None = None

    @field_validator(
        "max_generation_attempts",
        "max_prompt_chars",
    )
    @classmethod
    def _must_be_positive(cls, v: int) -> int:
        """Validate that integer limits are >= 1."""
        if v < 1:
            msg = "Value must be >= 1"
            raise ValueError(msg)
        return v

    @field_validator(
        "request_timeout_seconds",
        "subprocess_timeout_seconds",
        "handoff_timeout_seconds",
        "handoff_poll_seconds",
    )
    @classmethod
    def _must_be_positive_seconds(cls, v: float) -> float:
        """Validate that durations are strictly positive."""
        if v <= 0:
            msg = "Duration must be > 0"
            raise ValueError(msg)
        return v

    @field_validator("build_command", "run_command")
    @classmethod
    def _command_must_be_nonempty(cls, v: list[str]) -> list[str]:
        """Validate that subprocess commands name an executable."""
        if not v:
            msg = "command must contain at least 1 entry"
            raise ValueError(msg)
        return v
