"""Shared fixtures for the autosolve test suite."""

from __future__ import annotations

from collections.abc import Callable
import json
from pathlib import Path
import sys
from typing import Any

from autosolve.models import ProblemStatement, Sample, SolverConfig, Task
import httpx
import pytest

# ---------------------------------------------------------------------------
# Factory functions (plain functions, importable from conftest)
# ---------------------------------------------------------------------------

ECHO_SUM_PROGRAM = """\
import sys

data = sys.stdin.read().split()
n = int(data[0])
print(sum(int(x) for x in data[1:1 + n]))
"""


def make_config(**overrides: Any) -> SolverConfig:
    """Build a SolverConfig with an API key and sensible test defaults."""
    defaults: dict[str, Any] = {
        "api_key": "test-key",
        "api_base_url": "https://api.test/v1beta",
    }
    defaults.update(overrides)
    return SolverConfig(**defaults)


def make_python_config(scratch_dir: Path, **overrides: Any) -> SolverConfig:
    """Build a SolverConfig whose build/run steps use the current interpreter.

    The build step byte-compiles ``Program.py`` (non-zero exit on syntax
    errors) and the run step executes it.
    """
    defaults: dict[str, Any] = {
        "scratch_dir": str(scratch_dir),
        "program_filename": "Program.py",
        "project_filename": None,
        "build_command": [sys.executable, "-m", "py_compile", "Program.py"],
        "run_command": [sys.executable, "Program.py"],
        "subprocess_timeout_seconds": 20.0,
        "code_fence_tag": "python",
        "language_name": "Python",
    }
    defaults.update(overrides)
    return make_config(**defaults)


def make_task(**overrides: Any) -> Task:
    """Build a Task with sensible defaults."""
    defaults: dict[str, Any] = {
        "name": "A",
        "url": "https://atcoder.jp/contests/abc300/tasks/abc300_a",
    }
    defaults.update(overrides)
    return Task(**defaults)


def make_sample(
    index: int = 1, input_text: str = "2\n1 2\n", expected_output: str = "3\n"
) -> Sample:
    """Build a Sample."""
    return Sample(index=index, input_text=input_text, expected_output=expected_output)


def make_statement(task: Task | None = None, **overrides: Any) -> ProblemStatement:
    """Build a ProblemStatement for *task* with one sample by default."""
    task = task or make_task()
    defaults: dict[str, Any] = {
        "name": task.name,
        "url": task.url,
        "text": "Given N integers, print their sum.",
        "samples": [make_sample()],
    }
    defaults.update(overrides)
    return ProblemStatement(**defaults)


def gemini_success(text: str) -> dict[str, Any]:
    """Build a generateContent success payload carrying *text*."""
    return {"candidates": [{"content": {"parts": [{"text": text}]}}]}


def model_listing(*names: str, method: str = "generateContent") -> dict[str, Any]:
    """Build a model listing payload advertising *method* for every model."""
    return {
        "models": [
            {"name": f"models/{name}", "supportedGenerationMethods": [method]}
            for name in names
        ]
    }


class FakeGeminiApi:
    """Scripted stand-in for the generative API behind ``httpx.MockTransport``.

    Each model maps to a queue of ``(status, body)`` responses; the last
    entry repeats once the queue is drained. Every request is recorded.
    """

    def __init__(
        self,
        responses: dict[str, list[tuple[int, Any]]],
        listing: dict[str, Any] | None = None,
    ) -> None:
        self.responses = {k: list(v) for k, v in responses.items()}
        self.listing = listing if listing is not None else model_listing()
        self.generate_calls: list[str] = []
        self.listing_calls = 0

    def handler(self, request: httpx.Request) -> httpx.Response:
        path = request.url.path
        if request.method == "GET" and path.endswith("/models"):
            self.listing_calls += 1
            return httpx.Response(200, json=self.listing)
        if request.method == "POST" and path.endswith(":generateContent"):
            model = path.rsplit("/", 1)[-1].removesuffix(":generateContent")
            self.generate_calls.append(model)
            queue = self.responses.get(model)
            if not queue:
                return httpx.Response(404, json={"error": {"message": "not found"}})
            status, body = queue.pop(0) if len(queue) > 1 else queue[0]
            if isinstance(body, str):
                return httpx.Response(status, text=body)
            return httpx.Response(status, content=json.dumps(body).encode())
        return httpx.Response(500, text="unexpected request")

    def client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(transport=httpx.MockTransport(self.handler))


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture()
def sleeps() -> list[float]:
    """List collecting every delay passed to ``record_sleep``."""
    return []


@pytest.fixture()
def record_sleep(sleeps: list[float]) -> Callable[[float], Any]:
    """An async sleep replacement that records delays without waiting."""

    async def _sleep(seconds: float) -> None:
        sleeps.append(seconds)

    return _sleep


@pytest.fixture()
def scratch_dir(tmp_path: Path) -> Path:
    """A fresh scratch directory path (not yet created)."""
    return tmp_path / "scratch"
