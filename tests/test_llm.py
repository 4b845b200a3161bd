import json
from types import SimpleNamespace

import httpx
import pytest
from openai import RateLimitError
from pydantic import ValidationError

from engine.llm import LLM, response_format_for, retry_after_seconds
from engine.models import QueryPlan
from engine.usage import UsageTracker


def rate_limit_error(retry_after=None):
    headers = {"retry-after": retry_after} if retry_after is not None else {}
    request = httpx.Request("POST", "https://api.openai.com/v1/chat/completions")
    response = httpx.Response(429, request=request, headers=headers)
    return RateLimitError("Rate limit reached", response=response, body=None)


def completion(payload, prompt_tokens=10, completion_tokens=5):
    return SimpleNamespace(
        choices=[SimpleNamespace(message=SimpleNamespace(content=json.dumps(payload)))],
        usage=SimpleNamespace(
            prompt_tokens=prompt_tokens,
            completion_tokens=completion_tokens,
            total_tokens=prompt_tokens + completion_tokens,
        ),
    )


def client_with(responses):
    calls = {"count": 0, "kwargs": []}

    def create(**kwargs):
        calls["kwargs"].append(kwargs)
        item = responses[calls["count"]]
        calls["count"] += 1
        if isinstance(item, Exception):
            raise item
        return item

    client = SimpleNamespace(chat=SimpleNamespace(completions=SimpleNamespace(create=create)))
    return client, calls


PLAN = {"queries": [{"query": "quantum radar prototypes", "research_goal": "find builds"}]}


def test_generate_validates_schema_and_records_usage():
    tracker = UsageTracker()
    client, calls = client_with([completion(PLAN)])
    llm = LLM("gpt-4.1", usage_tracker=tracker, client=client)

    plan = llm.generate("system", "user", QueryPlan, stage="query_plan")

    assert plan.queries[0].query == "quantum radar prototypes"
    sent = calls["kwargs"][0]
    assert sent["model"] == "gpt-4.1"
    assert sent["response_format"]["json_schema"]["name"] == "QueryPlan"
    assert sent["response_format"]["json_schema"]["strict"] is True
    assert tracker.snapshot().total_tokens == 15
    assert tracker.to_dict()["by_stage"]["query_plan"]["calls"] == 1


def test_rate_limit_uses_retry_after_header_then_succeeds():
    sleeps = []
    client, calls = client_with([rate_limit_error("2"), completion(PLAN)])
    llm = LLM("gpt-4.1", client=client, sleep=sleeps.append)

    llm.generate("system", "user", QueryPlan)

    assert calls["count"] == 2
    assert sleeps == [2.0]


def test_rate_limit_without_header_backs_off_exponentially_then_raises():
    sleeps = []
    client, calls = client_with([rate_limit_error()] * 3)
    llm = LLM("gpt-4.1", client=client, max_retries=3, sleep=sleeps.append)

    with pytest.raises(RateLimitError):
        llm.generate("system", "user", QueryPlan)

    assert calls["count"] == 3
    assert sleeps == [pytest.approx(1.2), pytest.approx(2.4)]


def test_invalid_payload_raises_validation_error():
    client, _ = client_with([completion({"queries": "none"})])
    llm = LLM("gpt-4.1", client=client)

    with pytest.raises(ValidationError):
        llm.generate("system", "user", QueryPlan)


def test_llm_limiter_is_charged_with_prompt_tokens():
    charged = []

    class RecordingLimiter:
        def acquire(self, requests, tokens, sleep=None):
            charged.append((requests, tokens))
            return 0.0

        def update_from_response(self, total_tokens):
            charged.append(("response", total_tokens))

    client, _ = client_with([completion(PLAN, prompt_tokens=3, completion_tokens=4)])
    llm = LLM("gpt-4.1", rate_limiter=RecordingLimiter(), client=client)

    llm.generate("a" * 40, "b" * 40, QueryPlan)

    assert charged == [(1, 20), ("response", 7)]


def test_retry_after_helper_ignores_bad_values():
    assert retry_after_seconds(rate_limit_error("1.5")) == 1.5
    assert retry_after_seconds(rate_limit_error("soon")) is None
    assert retry_after_seconds(RuntimeError("no response")) is None
    assert response_format_for(QueryPlan)["type"] == "json_schema"
