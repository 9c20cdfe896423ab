"""Model failover orchestrator for the generative-text API.

Sends a solve prompt to the ``generateContent`` endpoint and keeps making
progress under rate and quota limits by switching between candidate
models. Recoverable responses (parse errors, rate limits, removed models,
transport failures) are absorbed by a bounded attempt loop; only hard
failures and an exhausted attempt budget surface to the caller.

The exhausted-model set lives for a single ``generate`` call and is
discarded when the call returns or raises.
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable, Iterable
import json
import logging
import re
from typing import Any

import httpx

from autosolve.models import (
    AttemptOutcome,
    GenerationAttempt,
    GenerationResult,
    ModelCandidate,
    SolverConfig,
)
from autosolve.prompts import PromptRegistry, get_registry

logger = logging.getLogger(__name__)

SleepFn = Callable[[float], Awaitable[None]]

GENERATE_METHOD = "generateContent"

DEFAULT_RATE_LIMIT_WAIT_SECONDS = 5.0
RATE_LIMIT_PADDING_SECONDS = 2.0
MAX_RATE_LIMIT_WAIT_SECONDS = 60.0
QUOTA_SETTLE_SECONDS = 2.0
NOT_FOUND_SETTLE_SECONDS = 1.0
PARSE_ERROR_SETTLE_SECONDS = 1.0
TRANSPORT_RETRY_SECONDS = 2.0

_RETRY_HINT_PATTERN: re.Pattern[str] = re.compile(
    r"retry in\s+([\d.]+)\s*s", re.IGNORECASE
)
_QUOTA_SIGNATURES: tuple[str, ...] = ("PerDay", "limit: 20", "Quota exceeded")
_BODY_EXCERPT_CHARS = 300


# ---------------------------------------------------------------------------
# Errors
# ---------------------------------------------------------------------------


class GenerationError(Exception):
    """Base class for errors that end a ``generate`` call.

    Attributes:
        attempts: Attempts made before the error was raised.
    """

    def __init__(
        self, message: str, *, attempts: list[GenerationAttempt] | None = None
    ) -> None:
        super().__init__(message)
        self.attempts = attempts or []


class EmptyPromptError(GenerationError):
    """The prompt was empty; no request was made."""


class GenerationFailed(GenerationError):
    """The API returned a non-recoverable status, or no model is left.

    Attributes:
        status_code: HTTP status of the failing response, if any.
        body: Response body excerpt, if any.
    """

    def __init__(
        self,
        message: str,
        *,
        attempts: list[GenerationAttempt] | None = None,
        status_code: int | None = None,
        body: str = "",
    ) -> None:
        super().__init__(message, attempts=attempts)
        self.status_code = status_code
        self.body = body


class GenerationTimedOut(GenerationError):
    """The attempt budget was used up without a usable response."""


# ---------------------------------------------------------------------------
# Response helpers
# ---------------------------------------------------------------------------


def parse_retry_hint(body: str) -> float | None:
    """Extract the ``retry in N s`` hint from a rate-limit error body.

    Args:
        body: Raw error response body.

    Returns:
        The hinted number of seconds, or ``None`` if absent or unparseable.
    """
    match = _RETRY_HINT_PATTERN.search(body)
    if match is None:
        return None
    try:
        return float(match.group(1))
    except ValueError:
        return None


def compute_rate_limit_wait(body: str) -> float:
    """Return the delay before retrying the same model after a 429.

    The hinted value is padded by two seconds and capped at sixty; bodies
    without a usable hint wait five seconds.
    """
    hint = parse_retry_hint(body)
    if hint is None:
        return DEFAULT_RATE_LIMIT_WAIT_SECONDS
    return min(hint + RATE_LIMIT_PADDING_SECONDS, MAX_RATE_LIMIT_WAIT_SECONDS)


def is_quota_exhausted(body: str) -> bool:
    """Whether a 429 body signals a daily quota rather than a short limit."""
    return any(signature in body for signature in _QUOTA_SIGNATURES)


def extract_code(text: str, fence_tag: str) -> str:
    """Extract the first fenced block tagged *fence_tag* from *text*.

    Falls back to *text* verbatim when no such block exists.
    """
    pattern = re.compile(rf"```{re.escape(fence_tag)}[^\S\n]*\n(.*?)```", re.DOTALL)
    match = pattern.search(text)
    if match is None:
        return text
    return match.group(1).strip()


def extract_candidate_text(payload: Any) -> str | None:
    """Return ``candidates[0].content.parts[0].text`` or ``None``.

    Missing keys, wrong types, and empty text all yield ``None``.
    """
    try:
        text = payload["candidates"][0]["content"]["parts"][0]["text"]
    except (KeyError, IndexError, TypeError):
        return None
    if not isinstance(text, str) or not text.strip():
        return None
    return text


def truncate_problem_text(text: str, limit: int) -> str:
    """Bound the problem text so request payloads stay size-bounded."""
    if len(text) <= limit:
        return text
    return text[:limit] + "..."


def build_prompt(
    problem_text: str,
    config: SolverConfig,
    registry: PromptRegistry | None = None,
) -> str:
    """Render the solve prompt for *problem_text*.

    Returns an empty string for a blank problem text so that ``generate``
    rejects it without a request.
    """
    if not problem_text.strip():
        return ""
    template = (registry or get_registry()).get("solve")
    return template.render(
        language=config.language_name,
        fence_tag=config.code_fence_tag,
        problem_text=truncate_problem_text(problem_text, config.max_prompt_chars),
    )


# ---------------------------------------------------------------------------
# Model ranking
# ---------------------------------------------------------------------------


def rank_candidates(
    available: Iterable[str],
    preferred: list[str],
) -> list[ModelCandidate]:
    """Order discovered models by the static preference list.

    A model's rank is the index of the first preferred entry it contains;
    models matching no entry get ``len(preferred)``. Ties keep the order in
    which the endpoint listed them.
    """
    candidates = []
    for name in available:
        rank = next(
            (i for i, entry in enumerate(preferred) if entry in name),
            len(preferred),
        )
        candidates.append(ModelCandidate(name=name, rank=rank))
    return sorted(candidates, key=lambda c: c.rank)


def select_model(
    available: list[str],
    config: SolverConfig,
    exhausted: Iterable[str] = (),
) -> str | None:
    """Pick the best eligible model.

    Preferred models win; otherwise the first model of the configured
    family; otherwise the configured fallback, unless it is exhausted.
    """
    excluded = set(exhausted)
    eligible = [name for name in available if name not in excluded]
    ranked = rank_candidates(eligible, config.preferred_models)
    if ranked and ranked[0].rank < len(config.preferred_models):
        return ranked[0].name
    family = next((name for name in eligible if config.model_family in name), None)
    if family is not None:
        return family
    if config.fallback_model in excluded:
        return None
    return config.fallback_model


def parse_model_listing(payload: Any) -> list[str]:
    """Return the names of listed models that support ``generateContent``."""
    names: list[str] = []
    for entry in payload.get("models", []) if isinstance(payload, dict) else []:
        if not isinstance(entry, dict):
            continue
        name = entry.get("name")
        methods = entry.get("supportedGenerationMethods") or []
        if not isinstance(name, str) or GENERATE_METHOD not in methods:
            continue
        names.append(name.removeprefix("models/"))
    return names


# ---------------------------------------------------------------------------
# Failover client
# ---------------------------------------------------------------------------


class ModelFailoverClient:
    """Generative API client that fails over between candidate models.

    Attributes:
        config: Solver configuration (endpoint, key, models, budgets).
    """

    def __init__(
        self,
        config: SolverConfig,
        *,
        http_client: httpx.AsyncClient | None = None,
        sleep: SleepFn = asyncio.sleep,
    ) -> None:
        """Initialize the client.

        Args:
            config: Solver configuration.
            http_client: Shared HTTP client; a short-lived one is created per
                ``generate`` call when omitted.
            sleep: Coroutine used for every backoff delay.
        """
        self.config = config
        self._http_client = http_client
        self._sleep = sleep

    async def generate(self, prompt: str) -> GenerationResult:
        """Generate source code for *prompt*, failing over between models.

        Args:
            prompt: Natural-language solve prompt.

        Returns:
            The extracted source code with the attempt history.

        Raises:
            EmptyPromptError: If *prompt* is blank.
            GenerationFailed: On a non-recoverable status, a missing API
                key, or when every candidate model is exhausted.
            GenerationTimedOut: When the attempt budget is used up.
        """
        if not prompt or not prompt.strip():
            msg = "Prompt is empty"
            raise EmptyPromptError(msg)
        if not self.config.api_key:
            msg = "No API key configured for generation"
            raise GenerationFailed(msg)

        if self._http_client is not None:
            return await self._run_attempts(self._http_client, prompt)
        timeout = httpx.Timeout(self.config.request_timeout_seconds)
        async with httpx.AsyncClient(timeout=timeout) as client:
            return await self._run_attempts(client, prompt)

    async def discover_model(
        self,
        exhausted: Iterable[str] = (),
        *,
        client: httpx.AsyncClient | None = None,
    ) -> str | None:
        """Query the model listing and select the best non-exhausted model.

        Listing failures are logged and fall back to the configured default
        model.

        Returns:
            A model identifier, or ``None`` when nothing eligible remains.
        """
        exhausted = list(exhausted)
        http = client or self._http_client
        if http is None:
            timeout = httpx.Timeout(self.config.request_timeout_seconds)
            async with httpx.AsyncClient(timeout=timeout) as owned:
                return await self._discover_with(owned, exhausted)
        return await self._discover_with(http, exhausted)

    async def _discover_with(
        self, client: httpx.AsyncClient, exhausted: list[str]
    ) -> str | None:
        available: list[str] = []
        try:
            response = await client.get(
                f"{self._base_url}/models",
                params={"key": self.config.api_key},
            )
            response.raise_for_status()
            available = parse_model_listing(response.json())
        except (httpx.HTTPError, json.JSONDecodeError, UnicodeDecodeError) as exc:
            logger.warning("Model discovery failed: %s", exc)
        else:
            eligible = [name for name in available if name not in exhausted]
            logger.info("Available models (filtered): %s", ", ".join(eligible))
        return select_model(available, self.config, exhausted)

    @property
    def _base_url(self) -> str:
        return self.config.api_base_url.rstrip("/")

    async def _run_attempts(
        self, client: httpx.AsyncClient, prompt: str
    ) -> GenerationResult:
        budget = self.config.max_generation_attempts
        body = {"contents": [{"parts": [{"text": prompt}]}]}
        exhausted: list[str] = []
        attempts: list[GenerationAttempt] = []
        model = self.config.initial_model

        for number in range(1, budget + 1):
            has_next = number < budget
            logger.info("Requesting %s (attempt %d/%d)", model, number, budget)
            try:
                response = await client.post(
                    f"{self._base_url}/models/{model}:{GENERATE_METHOD}",
                    params={"key": self.config.api_key},
                    json=body,
                )
            except httpx.TransportError as exc:
                wait = TRANSPORT_RETRY_SECONDS if has_next else None
                attempts.append(
                    GenerationAttempt(
                        attempt=number,
                        model=model,
                        wait_seconds=wait,
                        outcome=AttemptOutcome.TRANSPORT_ERROR,
                        detail=str(exc),
                    )
                )
                logger.warning("Request error on %s: %s; retrying", model, exc)
                await self._pause(wait)
                continue

            status = response.status_code
            if response.is_success:
                text = _response_text(response)
                if text is not None:
                    attempts.append(
                        GenerationAttempt(
                            attempt=number,
                            model=model,
                            status_code=status,
                            outcome=AttemptOutcome.SUCCESS,
                        )
                    )
                    logger.info("Response received from %s", model)
                    return GenerationResult(
                        source_code=extract_code(text, self.config.code_fence_tag),
                        model=model,
                        attempts=attempts,
                    )
                logger.warning("Unparseable response from %s; switching model", model)
                model = await self._record_and_switch(
                    client,
                    attempts,
                    exhausted,
                    GenerationAttempt(
                        attempt=number,
                        model=model,
                        status_code=status,
                        wait_seconds=PARSE_ERROR_SETTLE_SECONDS if has_next else None,
                        outcome=AttemptOutcome.PARSE_ERROR,
                        detail="empty or malformed candidate payload",
                    ),
                )
                continue

            error_body = response.text
            excerpt = error_body[:_BODY_EXCERPT_CHARS]
            if status == httpx.codes.TOO_MANY_REQUESTS:
                if is_quota_exhausted(error_body):
                    logger.warning(
                        "Daily quota exceeded for %s; switching model", model
                    )
                    model = await self._record_and_switch(
                        client,
                        attempts,
                        exhausted,
                        GenerationAttempt(
                            attempt=number,
                            model=model,
                            status_code=status,
                            wait_seconds=QUOTA_SETTLE_SECONDS if has_next else None,
                            outcome=AttemptOutcome.QUOTA_EXHAUSTED,
                            detail=excerpt,
                        ),
                    )
                    logger.warning("Switched to %s", model)
                    continue

                wait = compute_rate_limit_wait(error_body) if has_next else None
                attempts.append(
                    GenerationAttempt(
                        attempt=number,
                        model=model,
                        status_code=status,
                        wait_seconds=wait,
                        outcome=AttemptOutcome.RATE_LIMITED,
                        detail=excerpt,
                    )
                )
                if wait is not None:
                    logger.warning("Rate limited on %s; waiting %.1fs", model, wait)
                await self._pause(wait)
                continue

            if status == httpx.codes.NOT_FOUND:
                logger.warning("Model %s not found (404); switching", model)
                model = await self._record_and_switch(
                    client,
                    attempts,
                    exhausted,
                    GenerationAttempt(
                        attempt=number,
                        model=model,
                        status_code=status,
                        wait_seconds=NOT_FOUND_SETTLE_SECONDS if has_next else None,
                        outcome=AttemptOutcome.MODEL_NOT_FOUND,
                        detail=excerpt,
                    ),
                )
                continue

            attempts.append(
                GenerationAttempt(
                    attempt=number,
                    model=model,
                    status_code=status,
                    outcome=AttemptOutcome.FAILED,
                    detail=excerpt,
                )
            )
            logger.error("Generation failed on %s: %d %s", model, status, excerpt)
            msg = f"Generative API failed with status {status}"
            raise GenerationFailed(
                msg, attempts=attempts, status_code=status, body=error_body
            )

        msg = f"No usable response after {budget} attempts"
        raise GenerationTimedOut(msg, attempts=attempts)

    async def _record_and_switch(
        self,
        client: httpx.AsyncClient,
        attempts: list[GenerationAttempt],
        exhausted: list[str],
        attempt: GenerationAttempt,
    ) -> str:
        """Mark the attempt's model exhausted and select a replacement."""
        attempts.append(attempt)
        if attempt.model not in exhausted:
            exhausted.append(attempt.model)
        replacement = await self._discover_with(client, exhausted)
        if replacement is None:
            msg = "Every candidate model is exhausted"
            raise GenerationFailed(msg, attempts=attempts)
        await self._pause(attempt.wait_seconds)
        return replacement

    async def _pause(self, seconds: float | None) -> None:
        if seconds:
            await self._sleep(seconds)


def _response_text(response: httpx.Response) -> str | None:
    try:
        payload = response.json()
    except (json.JSONDecodeError, UnicodeDecodeError):
        return None
    return extract_candidate_text(payload)
