"""Problem source and submission sink collaborators.

The pipeline only sees the ``ProblemSource`` and ``SubmissionSink``
protocols. This module also ships file-backed implementations used by the
CLI: a YAML contest file standing in for the contest site, and a directory
sink that stores passing programs for manual submission.
"""

from __future__ import annotations

import logging
from pathlib import Path
import re
from typing import Any, Protocol, runtime_checkable
from urllib.parse import parse_qs, urlparse

import yaml

from autosolve.models import ProblemStatement, Sample, Task

logger = logging.getLogger(__name__)

_SAFELINK_HOST = "safelinks.protection.outlook.com"
_UNSAFE_FILENAME_CHARS: re.Pattern[str] = re.compile(r"[^A-Za-z0-9._-]+")


@runtime_checkable
class ProblemSource(Protocol):
    """Supplies contest tasks and their problem statements."""

    async def list_tasks(self, contest_url: str) -> list[Task]: ...  # noqa: D102

    async def fetch_problem(self, task: Task) -> ProblemStatement: ...  # noqa: D102


@runtime_checkable
class SubmissionSink(Protocol):
    """Consumes the final program of a task whose samples all passed.

    ``submit`` either succeeds or raises.
    """

    async def submit(self, task: Task, source_code: str) -> None: ...  # noqa: D102


def clean_contest_url(url: str) -> str:
    """Unwrap an Outlook safe-link redirect to the contest URL it points at.

    Other URLs are returned stripped but otherwise unchanged.
    """
    url = url.strip()
    parsed = urlparse(url)
    if _SAFELINK_HOST not in parsed.netloc:
        return url
    target = parse_qs(parsed.query).get("url")
    if not target:
        return url
    logger.info("Cleaned URL: %s", target[0])
    return target[0]


def pair_samples(
    inputs: dict[int, str],
    outputs: dict[int, str],
) -> list[Sample]:
    """Pair sample inputs and outputs by index, ordered by index.

    Inputs without a matching output (and vice versa) are dropped.
    """
    return [
        Sample(index=index, input_text=inputs[index], expected_output=outputs[index])
        for index in sorted(inputs)
        if index in outputs
    ]


def read_yaml_mapping(path: str | Path, *, what: str) -> dict[str, Any]:
    """Parse the YAML file at *path*, which must hold a top-level mapping.

    *what* names the file in error messages ("contest", "config").

    Raises:
        FileNotFoundError: If *path* does not exist.
        ValueError: If the document is not a mapping.
    """
    path = Path(path)
    try:
        text = path.read_text(encoding="utf-8")
    except FileNotFoundError:
        msg = f"{what} file not found: {path}"
        raise FileNotFoundError(msg) from None
    data = yaml.safe_load(text)
    if not isinstance(data, dict):
        msg = f"{what} file must contain a YAML mapping, got {type(data).__name__}: {path}"
        raise ValueError(msg)
    return data


class YamlProblemSource:
    """Problem source backed by a YAML contest file.

    Expected layout::

        contest_url: https://atcoder.jp/contests/abc001
        tasks:
          - name: A
            url: https://atcoder.jp/contests/abc001/tasks/abc001_a
            statement: "..."          # or statement_file: a.txt
            samples:
              - input: "1 2\\n"
                output: "3\\n"

    Relative ``statement_file`` paths resolve against the YAML file.
    """

    def __init__(self, path: str | Path) -> None:
        self.path = Path(path)
        self._data = self._load()
        self._entries: dict[str, dict[str, Any]] = {}

    def _load(self) -> dict[str, Any]:
        data = read_yaml_mapping(self.path, what="contest")
        if not isinstance(data.get("tasks"), list):
            msg = f"contest file must contain a 'tasks' list: {self.path}"
            raise ValueError(msg)
        return data

    @property
    def contest_url(self) -> str:
        return clean_contest_url(str(self._data.get("contest_url", "")))

    async def list_tasks(self, contest_url: str) -> list[Task]:
        """Return the tasks in file order, de-duplicated by URL."""
        tasks: list[Task] = []
        self._entries.clear()
        for entry in self._data["tasks"]:
            url = str(entry["url"])
            if url in self._entries:
                continue
            self._entries[url] = entry
            tasks.append(Task(name=str(entry["name"]), url=url))
        logger.info("Found %d tasks for %s", len(tasks), contest_url or self.path)
        return tasks

    async def fetch_problem(self, task: Task) -> ProblemStatement:
        """Return the statement and paired samples for *task*.

        Raises:
            KeyError: If *task* is not in the contest file.
        """
        if not self._entries:
            await self.list_tasks(self.contest_url)
        entry = self._entries.get(task.url)
        if entry is None:
            msg = f"Unknown task: {task.url}"
            raise KeyError(msg)

        inputs: dict[int, str] = {}
        outputs: dict[int, str] = {}
        for position, raw in enumerate(entry.get("samples") or [], start=1):
            index = int(raw.get("index", position))
            if "input" in raw:
                inputs[index] = str(raw["input"])
            if "output" in raw:
                outputs[index] = str(raw["output"])

        return ProblemStatement(
            name=task.name,
            url=task.url,
            text=self._statement_text(entry),
            samples=pair_samples(inputs, outputs),
        )

    def _statement_text(self, entry: dict[str, Any]) -> str:
        if "statement_file" in entry:
            statement_path = self.path.parent / str(entry["statement_file"])
            return statement_path.read_text(encoding="utf-8")
        return str(entry.get("statement", ""))


class DirectorySubmissionSink:
    """Stores each passing program as ``<task name><suffix>`` in a directory."""

    def __init__(self, directory: str | Path, suffix: str = ".cs") -> None:
        self.directory = Path(directory)
        self.suffix = suffix

    def path_for(self, task: Task) -> Path:
        stem = _UNSAFE_FILENAME_CHARS.sub("_", task.name).strip("_") or "task"
        return self.directory / f"{stem}{self.suffix}"

    async def submit(self, task: Task, source_code: str) -> None:
        self.directory.mkdir(parents=True, exist_ok=True)
        target = self.path_for(task)
        target.write_text(source_code, encoding="utf-8")
        logger.info("Saved solution for %s to %s", task.name, target)
