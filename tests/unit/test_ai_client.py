"""HttpAIClient response mapping, exercised through httpx.MockTransport."""

from __future__ import annotations

import base64
import json
from typing import Callable

import httpx
import pytest

from roomfix.core.ai import (
    AIClientConfig,
    HttpAIClient,
    Media,
    ensure_safe,
    problems_payload,
    synthesize_fix_description,
)
from roomfix.core.errors import ContentPolicyViolation, TransientInfraError
from roomfix.core.models import MediaKind, Problem, ProblemRef, Solution
from roomfix.core.resilience import ExponentialBackoff, RetryPolicy


def _install(monkeypatch: pytest.MonkeyPatch, handler: Callable[[httpx.Request], httpx.Response]) -> None:
    real_client = httpx.AsyncClient

    def _factory(**kwargs):
        return real_client(transport=httpx.MockTransport(handler), **kwargs)

    monkeypatch.setattr(httpx, "AsyncClient", _factory)


def _client() -> HttpAIClient:
    return HttpAIClient(AIClientConfig(base_url="http://ai.test", timeout_seconds=5, api_key="k"))


def _ref(pid: str, title: str) -> ProblemRef:
    problem = Problem(problem_id=pid, title=title)
    return ProblemRef(dimension="lighting", problem=problem, solution=Solution(title=title))


@pytest.mark.asyncio
async def test_analyze_parses_draft(monkeypatch) -> None:
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["path"] = request.url.path
        seen["auth"] = request.headers.get("authorization")
        return httpx.Response(200, json={"overall": {"score": 72}, "dimensions": {"lighting": {"score": 60}}})

    _install(monkeypatch, handler)
    draft = await _client().analyze(Media(b"img", "image/jpeg"), MediaKind.IMAGE)

    assert draft.overall.score == 72
    assert seen == {"path": "/v1/analyze", "auth": "Bearer k"}


@pytest.mark.asyncio
async def test_generate_fix_decodes_media(monkeypatch) -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(
            200,
            json={
                "media_b64": base64.b64encode(b"new pixels").decode(),
                "changes_applied": ["Added lamp"],
                "fix_name": "Warm glow",
            },
        )

    _install(monkeypatch, handler)
    fix = await _client().generate_fix(Media(b"img", "image/jpeg"), [_ref("p1", "Add lamp")])

    assert fix.data == b"new pixels"
    assert fix.changes_applied == ["Added lamp"]
    assert fix.mime_type == "image/jpeg"


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "response,expected_retry_after",
    [
        (httpx.Response(429, headers={"retry-after": "7"}), 7.0),
        (httpx.Response(503, text="overloaded, retry in 12.5s"), 12.5),
        (httpx.Response(504), None),
    ],
)
async def test_transient_statuses_map_to_transient_error(monkeypatch, response, expected_retry_after) -> None:
    _install(monkeypatch, lambda request: response)

    with pytest.raises(TransientInfraError) as exc_info:
        await _client().moderate(Media(b"img", "image/jpeg"))

    assert exc_info.value.retry_after == expected_retry_after


@pytest.mark.asyncio
async def test_client_errors_are_not_transient(monkeypatch) -> None:
    _install(monkeypatch, lambda request: httpx.Response(400, json={"detail": "bad"}))

    with pytest.raises(httpx.HTTPStatusError):
        await _client().generate_plan(Media(b"img", "image/jpeg"), [])


@pytest.mark.asyncio
async def test_ensure_safe_maps_verdicts(monkeypatch) -> None:
    verdicts = iter([{"safe": False, "category": "violence", "reason": "weapon"}])

    _install(monkeypatch, lambda request: httpx.Response(200, json=next(verdicts)))
    retry = RetryPolicy(max_retries=0, backoff=ExponentialBackoff(jitter=0.0))

    with pytest.raises(ContentPolicyViolation) as exc_info:
        await ensure_safe(_client(), Media(b"img", "image/jpeg"), retry)

    assert exc_info.value.category == "violence"
    assert exc_info.value.counts_as_strike


def test_request_payload_lists_problems() -> None:
    payload = problems_payload([_ref("p1", "Add lamp")])
    assert json.loads(json.dumps(payload))[0]["problem_id"] == "p1"


def test_synthesized_description() -> None:
    refs = [_ref(f"p{i}", f"Step {i}") for i in range(5)]

    meta = synthesize_fix_description(refs)

    assert meta["fix_name"] == "Step 0 + 4 more"
    assert meta["summary"] == "Suggested changes: Step 0, Step 1, Step 2 and 2 more."
    assert synthesize_fix_description(refs[:1])["fix_name"] == "Step 0"
