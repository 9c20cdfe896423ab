"""Prompt template registry for solution generation.

Loads prompt templates from YAML files in this package directory and
provides keyed access by template name.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any

from pydantic import BaseModel, ConfigDict
import yaml

logger = logging.getLogger(__name__)

_PROMPTS_DIR: Path = Path(__file__).parent


class PromptTemplate(BaseModel):
    """A named prompt template with declared ``str.format`` variables.

    Attributes:
        name: Registry key.
        description: Human-readable purpose of the template.
        template: Template text with ``{variable}`` placeholders.
        variables: Names of the placeholders the template expects.
    """

    model_config = ConfigDict(frozen=True)

    name: str
    description: str = ""
    template: str
    variables: list[str]

    def render(self, **kwargs: Any) -> str:
        """Fill the template placeholders.

        Args:
            **kwargs: Values for every declared variable.

        Returns:
            The rendered prompt.

        Raises:
            KeyError: If a declared variable is missing from *kwargs*.
        """
        missing = [v for v in self.variables if v not in kwargs]
        if missing:
            msg = f"Missing prompt variables for {self.name!r}: {missing}"
            raise KeyError(msg)
        return self.template.format(**kwargs)


class PromptRegistry:
    """Registry of prompt templates keyed by name.

    Loads every ``.yaml`` file from the ``prompts/`` package directory (or
    *directory*, when given) on construction.
    """

    def __init__(self, directory: Path | None = None) -> None:
        """Load all YAML prompt templates.

        Args:
            directory: Directory to scan; defaults to this package.
        """
        self._directory = directory or _PROMPTS_DIR
        self._templates: dict[str, PromptTemplate] = {}
        for yaml_path in sorted(self._directory.glob("*.yaml")):
            self._load_yaml(yaml_path)

    def _load_yaml(self, path: Path) -> None:
        with path.open(encoding="utf-8") as fh:
            data = yaml.safe_load(fh)

        if not isinstance(data, dict) or "template" not in data:
            logger.warning("Skipping malformed prompt template file %s", path.name)
            return
        name = str(data.get("name") or path.stem)
        self._templates[name] = PromptTemplate(
            name=name,
            description=str(data.get("description", "")),
            template=str(data["template"]),
            variables=[str(v) for v in data.get("variables", [])],
        )

    def get(self, name: str) -> PromptTemplate:
        """Retrieve a prompt template by name.

        Raises:
            KeyError: If no template is registered under *name*.
        """
        if name not in self._templates:
            msg = f"No prompt template registered under {name!r}"
            raise KeyError(msg)
        return self._templates[name]

    def __len__(self) -> int:
        return len(self._templates)


# Module-level singleton for reuse across generation calls.
_singleton_registry: PromptRegistry | None = None


def get_registry() -> PromptRegistry:
    """Return the lazily created shared ``PromptRegistry``."""
    global _singleton_registry  # noqa: PLW0603
    if _singleton_registry is None:
        _singleton_registry = PromptRegistry()
    return _singleton_registry


def _reset_registry() -> None:
    """Reset the singleton registry (for testing only)."""
    global _singleton_registry  # noqa: PLW0603
    _singleton_registry = None
