"""Tests for the model failover loop of ``ModelFailoverClient.generate``.

The generative API is faked with ``httpx.MockTransport`` and every backoff
delay is recorded instead of slept.
"""

from __future__ import annotations

from collections.abc import Callable
import json
from typing import Any

from autosolve.generation import (
    EmptyPromptError,
    GenerationFailed,
    GenerationTimedOut,
    ModelFailoverClient,
)
from autosolve.models import AttemptOutcome
import httpx
import pytest

from tests.conftest import FakeGeminiApi, gemini_success, make_config, model_listing

_QUOTA_BODY = {
    "error": {
        "code": 429,
        "message": "Quota exceeded for metric: GenerateRequestsPerDayPerProjectPerModel-FreeTier",
    }
}
_NOT_FOUND_BODY = {"error": {"code": 404, "message": "models/x is not found"}}
_CODE_REPLY = "Sure:\n```csharp\nclass Program { static void Main() {} }\n```"
_CODE = "class Program { static void Main() {} }"


def _client(
    http: httpx.AsyncClient, sleep: Callable[[float], Any], **config: Any
) -> ModelFailoverClient:
    return ModelFailoverClient(make_config(**config), http_client=http, sleep=sleep)


@pytest.mark.unit
class TestGenerateSuccess:
    """A 2xx response yields the fenced code on the first attempt."""

    @pytest.mark.asyncio
    async def test_first_attempt_success(self, record_sleep: Any, sleeps: list[float]) -> None:
        api = FakeGeminiApi({"gemini-1.5-flash": [(200, gemini_success(_CODE_REPLY))]})
        async with api.client() as http:
            result = await _client(http, record_sleep).generate("Solve A+B")

        assert result.source_code == _CODE
        assert result.model == "gemini-1.5-flash"
        assert [a.outcome for a in result.attempts] == [AttemptOutcome.SUCCESS]
        assert api.listing_calls == 0
        assert sleeps == []

    @pytest.mark.asyncio
    async def test_raw_text_when_no_fence(self, record_sleep: Any) -> None:
        api = FakeGeminiApi({"gemini-1.5-flash": [(200, gemini_success("using System;"))]})
        async with api.client() as http:
            result = await _client(http, record_sleep).generate("Solve A+B")
        assert result.source_code == "using System;"

    @pytest.mark.asyncio
    async def test_request_shape(self, record_sleep: Any) -> None:
        seen: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(200, json=gemini_success(_CODE_REPLY))

        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as http:
            client = ModelFailoverClient(make_config(), http_client=http, sleep=record_sleep)
            await client.generate("the prompt")

        request = seen[0]
        assert request.method == "POST"
        assert request.url.path == "/v1beta/models/gemini-1.5-flash:generateContent"
        assert request.url.params["key"] == "test-key"
        assert json.loads(request.read()) == {"contents": [{"parts": [{"text": "the prompt"}]}]}


@pytest.mark.unit
class TestGeneratePreconditions:
    """Invalid input fails before any network call."""

    @pytest.mark.asyncio
    @pytest.mark.parametrize("prompt", ["", "   \n\t"])
    async def test_empty_prompt(self, prompt: str, record_sleep: Any) -> None:
        api = FakeGeminiApi({})
        async with api.client() as http:
            with pytest.raises(EmptyPromptError):
                await _client(http, record_sleep).generate(prompt)
        assert api.generate_calls == []
        assert api.listing_calls == 0

    @pytest.mark.asyncio
    async def test_missing_api_key(self, record_sleep: Any) -> None:
        api = FakeGeminiApi({})
        async with api.client() as http:
            with pytest.raises(GenerationFailed, match="API key"):
                await _client(http, record_sleep, api_key=None).generate("x")
        assert api.generate_calls == []


@pytest.mark.unit
class TestQuotaExhaustion:
    """A daily-quota 429 exhausts the model for the rest of the call."""

    @pytest.mark.asyncio
    async def test_switches_model_after_settle_pause(
        self, record_sleep: Any, sleeps: list[float]
    ) -> None:
        api = FakeGeminiApi(
            {
                "gemini-1.5-flash": [(429, _QUOTA_BODY)],
                "gemini-flash-latest": [(200, gemini_success(_CODE_REPLY))],
            },
            listing=model_listing("gemini-1.5-flash", "gemini-flash-latest"),
        )
        async with api.client() as http:
            result = await _client(http, record_sleep).generate("p")

        assert api.generate_calls == ["gemini-1.5-flash", "gemini-flash-latest"]
        assert [a.outcome for a in result.attempts] == [
            AttemptOutcome.QUOTA_EXHAUSTED,
            AttemptOutcome.SUCCESS,
        ]
        assert sleeps == [2.0]

    @pytest.mark.asyncio
    async def test_exhausted_models_never_reselected(self, record_sleep: Any) -> None:
        api = FakeGeminiApi(
            {
                "gemini-1.5-flash": [(429, _QUOTA_BODY)],
                "gemini-flash-latest": [(429, _QUOTA_BODY)],
                "gemini-pro-latest": [(200, gemini_success(_CODE_REPLY))],
            },
            listing=model_listing(
                "gemini-1.5-flash", "gemini-flash-latest", "gemini-pro-latest"
            ),
        )
        async with api.client() as http:
            result = await _client(http, record_sleep).generate("p")

        assert api.generate_calls == [
            "gemini-1.5-flash",
            "gemini-flash-latest",
            "gemini-pro-latest",
        ]
        quota_models = [
            a.model for a in result.attempts if a.outcome == AttemptOutcome.QUOTA_EXHAUSTED
        ]
        assert quota_models == ["gemini-1.5-flash", "gemini-flash-latest"]

    @pytest.mark.asyncio
    async def test_exhausted_set_is_discarded_between_calls(self, record_sleep: Any) -> None:
        api = FakeGeminiApi(
            {
                "gemini-1.5-flash": [(429, _QUOTA_BODY), (200, gemini_success(_CODE_REPLY))],
                "gemini-flash-latest": [(200, gemini_success(_CODE_REPLY))],
            },
            listing=model_listing("gemini-1.5-flash", "gemini-flash-latest"),
        )
        async with api.client() as http:
            client = _client(http, record_sleep)
            await client.generate("p")
            second = await client.generate("p")

        assert second.model == "gemini-1.5-flash"
        assert api.generate_calls == [
            "gemini-1.5-flash",
            "gemini-flash-latest",
            "gemini-1.5-flash",
        ]

    @pytest.mark.asyncio
    async def test_fails_when_every_model_is_exhausted(self, record_sleep: Any) -> None:
        api = FakeGeminiApi({}, listing=model_listing())
        async with api.client() as http:
            with pytest.raises(GenerationFailed, match="exhausted") as excinfo:
                await _client(http, record_sleep).generate("p")

        assert api.generate_calls == ["gemini-1.5-flash", "gemini-pro"]
        assert len(excinfo.value.attempts) == 2


@pytest.mark.unit
class TestRateLimitWait:
    """A plain 429 waits min(hint + 2, 60) and retries the same model."""

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        ("body", "expected_wait"),
        [
            ("Resource exhausted. Please retry in 10s.", 12.0),
            ("Resource exhausted. Please retry in 95.2s.", 60.0),
            ("Resource exhausted.", 5.0),
        ],
    )
    async def test_wait_then_same_model(
        self, body: str, expected_wait: float, record_sleep: Any, sleeps: list[float]
    ) -> None:
        api = FakeGeminiApi(
            {"gemini-1.5-flash": [(429, body), (200, gemini_success(_CODE_REPLY))]}
        )
        async with api.client() as http:
            result = await _client(http, record_sleep).generate("p")

        assert api.generate_calls == ["gemini-1.5-flash", "gemini-1.5-flash"]
        assert sleeps == [expected_wait]
        assert result.attempts[0].outcome == AttemptOutcome.RATE_LIMITED
        assert result.attempts[0].wait_seconds == expected_wait
        assert api.listing_calls == 0

    @pytest.mark.asyncio
    async def test_budget_exhaustion_times_out(
        self, record_sleep: Any, sleeps: list[float]
    ) -> None:
        api = FakeGeminiApi({"gemini-1.5-flash": [(429, "retry in 1s")]})
        async with api.client() as http:
            with pytest.raises(GenerationTimedOut) as excinfo:
                await _client(http, record_sleep).generate("p")

        assert len(api.generate_calls) == 8
        assert len(excinfo.value.attempts) == 8
        # No pointless wait after the final attempt.
        assert sleeps == [3.0] * 7

    @pytest.mark.asyncio
    async def test_configured_budget(self, record_sleep: Any) -> None:
        api = FakeGeminiApi({"gemini-1.5-flash": [(429, "slow down")]})
        async with api.client() as http:
            with pytest.raises(GenerationTimedOut):
                await _client(http, record_sleep, max_generation_attempts=3).generate("p")
        assert len(api.generate_calls) == 3


@pytest.mark.unit
class TestModelNotFound:
    """A 404 exhausts the model and discovers a replacement."""

    @pytest.mark.asyncio
    async def test_two_missing_models_then_third_succeeds(
        self, record_sleep: Any, sleeps: list[float]
    ) -> None:
        api = FakeGeminiApi(
            {
                "gemini-1.5-flash": [(404, _NOT_FOUND_BODY)],
                "gemini-flash-latest": [(404, _NOT_FOUND_BODY)],
                "gemini-pro-latest": [(200, gemini_success(_CODE_REPLY))],
            },
            listing=model_listing(
                "gemini-1.5-flash", "gemini-flash-latest", "gemini-pro-latest"
            ),
        )
        async with api.client() as http:
            result = await _client(http, record_sleep).generate("p")

        assert result.model == "gemini-pro-latest"
        assert result.source_code == _CODE
        assert len(result.attempts) == 3
        assert len(result.attempts) <= make_config().max_generation_attempts
        assert [a.outcome for a in result.attempts] == [
            AttemptOutcome.MODEL_NOT_FOUND,
            AttemptOutcome.MODEL_NOT_FOUND,
            AttemptOutcome.SUCCESS,
        ]
        assert api.listing_calls == 2
        assert sleeps == [1.0, 1.0]

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        ("status", "content"),
        [
            (503, b"listing unavailable"),
            (200, b"<html>not json</html>"),
            (200, b'{"models": ["\xff\xfe"]}'),
        ],
        ids=["unavailable", "not-json", "not-utf8"],
    )
    async def test_discovery_failure_uses_default_model(
        self, status: int, content: bytes, record_sleep: Any
    ) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            if request.method == "GET":
                return httpx.Response(status, content=content)
            if "gemini-pro:" in request.url.path:
                return httpx.Response(200, json=gemini_success(_CODE_REPLY))
            return httpx.Response(404, json=_NOT_FOUND_BODY)

        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as http:
            client = ModelFailoverClient(make_config(), http_client=http, sleep=record_sleep)
            result = await client.generate("p")

        assert result.model == "gemini-pro"


@pytest.mark.unit
class TestParseAndTransportErrors:
    """Malformed payloads switch model; transport errors retry the same model."""

    @pytest.mark.asyncio
    async def test_malformed_payload_switches_model(self, record_sleep: Any) -> None:
        api = FakeGeminiApi(
            {
                "gemini-1.5-flash": [(200, {"candidates": []})],
                "gemini-flash-latest": [(200, gemini_success(_CODE_REPLY))],
            },
            listing=model_listing("gemini-1.5-flash", "gemini-flash-latest"),
        )
        async with api.client() as http:
            result = await _client(http, record_sleep).generate("p")

        assert result.attempts[0].outcome == AttemptOutcome.PARSE_ERROR
        assert result.model == "gemini-flash-latest"

    @pytest.mark.asyncio
    async def test_non_json_success_body_is_parse_error(self, record_sleep: Any) -> None:
        api = FakeGeminiApi(
            {
                "gemini-1.5-flash": [(200, "<html>oops</html>")],
                "gemini-flash-latest": [(200, gemini_success(_CODE_REPLY))],
            },
            listing=model_listing("gemini-flash-latest"),
        )
        async with api.client() as http:
            result = await _client(http, record_sleep).generate("p")
        assert result.attempts[0].outcome == AttemptOutcome.PARSE_ERROR
        assert result.source_code == _CODE

    @pytest.mark.asyncio
    async def test_transport_error_retries_same_model(
        self, record_sleep: Any, sleeps: list[float]
    ) -> None:
        calls: list[str] = []

        def handler(request: httpx.Request) -> httpx.Response:
            calls.append(request.url.path)
            if len(calls) == 1:
                raise httpx.ConnectError("connection refused", request=request)
            return httpx.Response(200, json=gemini_success(_CODE_REPLY))

        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as http:
            client = ModelFailoverClient(make_config(), http_client=http, sleep=record_sleep)
            result = await client.generate("p")

        assert calls[0] == calls[1]
        assert sleeps == [2.0]
        assert [a.outcome for a in result.attempts] == [
            AttemptOutcome.TRANSPORT_ERROR,
            AttemptOutcome.SUCCESS,
        ]


@pytest.mark.unit
class TestHardFailure:
    """Unclassified error statuses abort the loop immediately."""

    @pytest.mark.asyncio
    @pytest.mark.parametrize("status", [400, 403, 500])
    async def test_other_status_raises(
        self, status: int, record_sleep: Any, sleeps: list[float]
    ) -> None:
        api = FakeGeminiApi({"gemini-1.5-flash": [(status, {"error": "boom"})]})
        async with api.client() as http:
            with pytest.raises(GenerationFailed) as excinfo:
                await _client(http, record_sleep).generate("p")

        assert excinfo.value.status_code == status
        assert "boom" in excinfo.value.body
        assert api.generate_calls == ["gemini-1.5-flash"]
        assert sleeps == []
