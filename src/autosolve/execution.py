"""Subprocess harness and scratch-directory management.

Provides the single shared scratch slot that candidate programs are
written to, and ``run_process`` which runs a build or program command as
an async subprocess with merged output capture and a wall-clock timeout.

The scratch slot is one fixed directory shared by every task and every
sample run. Only one pipeline may use it at a time; the task controller
processes tasks strictly sequentially, and ``ScratchSlot.lock`` is held
for the whole of a verification call.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import os
from pathlib import Path
import signal
import time
from typing import TYPE_CHECKING

from pydantic import BaseModel, ConfigDict

if TYPE_CHECKING:
    from autosolve.models import SolverConfig

logger = logging.getLogger(__name__)

_SIGNAL_GRACE_SECONDS = 5


class HarnessError(Exception):
    """A subprocess could not be launched or exceeded its timeout.

    Distinct from a program's own non-zero exit, which is reported as a
    verdict rather than raised.

    Attributes:
        command: The command that failed.
        timed_out: Whether the failure was a timeout.
    """

    def __init__(
        self, message: str, *, command: list[str], timed_out: bool = False
    ) -> None:
        super().__init__(message)
        self.command = command
        self.timed_out = timed_out


class ProcessResult(BaseModel):
    """Captured result of one subprocess run.

    Attributes:
        output: Standard output and standard error merged, UTF-8 decoded.
        exit_code: Process exit code.
        duration_seconds: Wall-clock run time in seconds.
    """

    model_config = ConfigDict(frozen=True)

    output: str
    exit_code: int
    duration_seconds: float


async def _kill_process_group(proc: asyncio.subprocess.Process) -> None:
    """Terminate the session started for *proc*, then kill it if it lingers.

    ``run_process`` starts every command in a new session, so the group id
    equals the leader's pid.
    """
    for sig in (signal.SIGTERM, signal.SIGKILL):
        try:
            os.killpg(proc.pid, sig)
        except (OSError, ProcessLookupError):
            return
        try:
            await asyncio.wait_for(proc.wait(), timeout=_SIGNAL_GRACE_SECONDS)
        except TimeoutError:
            logger.debug("Process group %d ignored %s", proc.pid, sig.name)
            continue
        return


async def run_process(
    command: list[str],
    cwd: str | Path,
    *,
    stdin_text: str | None = None,
    timeout_seconds: float,
) -> ProcessResult:
    """Run *command* in *cwd* and capture its merged output.

    Standard error is redirected into standard output so the caller sees
    one text buffer. Each run gets its own process group so a timeout
    kills any children too.

    Args:
        command: Executable and arguments.
        cwd: Working directory for the subprocess.
        stdin_text: Text written to standard input, or ``None`` to attach
            an empty input stream.
        timeout_seconds: Wall-clock cap for the run.

    Returns:
        The captured output, exit code, and duration.

    Raises:
        HarnessError: If the process cannot be started or times out.
    """
    start = time.monotonic()
    try:
        proc = await asyncio.create_subprocess_exec(
            *command,
            cwd=str(cwd),
            stdin=asyncio.subprocess.PIPE
            if stdin_text is not None
            else asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.STDOUT,
            start_new_session=True,
        )
    except OSError as exc:
        msg = f"Failed to start {command[0]!r}: {exc}"
        raise HarnessError(msg, command=command) from exc

    stdin_bytes = stdin_text.encode("utf-8") if stdin_text is not None else None
    communicate_task = asyncio.ensure_future(proc.communicate(stdin_bytes))
    try:
        stdout_bytes, _ = await asyncio.wait_for(
            asyncio.shield(communicate_task),
            timeout=timeout_seconds,
        )
    except TimeoutError:
        await _kill_process_group(proc)
        with contextlib.suppress(Exception):
            await communicate_task
        msg = f"{' '.join(command)} exceeded {timeout_seconds}s timeout"
        raise HarnessError(msg, command=command, timed_out=True) from None

    duration = time.monotonic() - start
    exit_code = proc.returncode if proc.returncode is not None else -1
    return ProcessResult(
        output=stdout_bytes.decode("utf-8", errors="replace"),
        exit_code=exit_code,
        duration_seconds=duration,
    )


class ScratchSlot:
    """The single on-disk location used to compile and run candidate programs.

    Holds exactly one problem file and one program file; every write
    overwrites the previous content and no history is kept. When a
    project filename is given, ``prepare`` also seeds the build project
    the build command needs, unless the directory already holds a file
    with the same extension.

    Attributes:
        directory: Scratch directory path.
        program_path: Path of the program file.
        problem_path: Path of the problem text file.
        project_path: Path of the seeded build project, or ``None``.
        lock: Held while a verification occupies the slot.
    """

    def __init__(
        self,
        directory: str | Path,
        program_filename: str = "Program.cs",
        problem_filename: str = "problem.txt",
        *,
        project_filename: str | None = None,
        project_template: str = "",
    ) -> None:
        self.directory = Path(directory)
        self.program_path = self.directory / program_filename
        self.problem_path = self.directory / problem_filename
        self.project_path = self.directory / project_filename if project_filename else None
        self.project_template = project_template
        self.lock = asyncio.Lock()

    @classmethod
    def from_config(cls, config: SolverConfig) -> ScratchSlot:
        """Build the slot described by *config*."""
        return cls(
            config.scratch_dir,
            program_filename=config.program_filename,
            problem_filename=config.problem_filename,
            project_filename=config.project_filename,
            project_template=config.project_template,
        )

    def prepare(self) -> Path:
        """Create the scratch directory and seed the project file if needed.

        Returns:
            The absolute scratch directory path.
        """
        self.directory.mkdir(parents=True, exist_ok=True)
        if self.project_path is not None and not self._has_project(self.project_path):
            self.project_path.write_text(self.project_template, encoding="utf-8")
            logger.info("Seeded build project %s", self.project_path)
        return self.directory.resolve()

    def _has_project(self, project_path: Path) -> bool:
        # A second project file of the same kind makes the build ambiguous.
        suffix = project_path.suffix
        return any(self.directory.glob(f"*{suffix}" if suffix else project_path.name))

    def write_program(self, source_code: str) -> Path:
        """Overwrite the program file with *source_code*."""
        self.prepare()
        self.program_path.write_text(source_code, encoding="utf-8")
        return self.program_path

    def write_problem(self, problem_text: str) -> Path:
        """Overwrite the problem file with *problem_text*."""
        self.prepare()
        self.problem_path.write_text(problem_text, encoding="utf-8")
        return self.problem_path

    def read_program(self) -> str:
        """Return the current program file content."""
        return self.program_path.read_text(encoding="utf-8")

    def program_mtime(self) -> float | None:
        """Modification time of the program file, or ``None`` if absent."""
        try:
            return self.program_path.stat().st_mtime
        except FileNotFoundError:
            return None
