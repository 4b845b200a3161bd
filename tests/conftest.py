import json
import math
import threading
from types import SimpleNamespace

import pytest

from engine import prompting


def approx_count_tokens(text: str) -> int:
    if not text:
        return 0
    return int(math.ceil(len(text) / 4))


@pytest.fixture(autouse=True)
def offline_token_counter(monkeypatch):
    # tiktoken downloads its BPE ranks on first use; tests stay offline.
    monkeypatch.setattr(prompting, "count_tokens", approx_count_tokens)


class ScriptedLLM:
    """Stands in for engine.llm.LLM; answers by stage."""

    def __init__(self, handlers):
        self.handlers = handlers
        self.calls = []
        self._lock = threading.Lock()

    def generate(self, system_prompt, user_prompt, schema, stage="unknown", metadata=None):
        with self._lock:
            self.calls.append(
                {"stage": stage, "prompt": user_prompt, "schema": schema, "metadata": metadata}
            )
        handler = self.handlers.get(stage)
        if handler is None:
            raise RuntimeError(f"no scripted answer for stage {stage}")
        return handler(user_prompt, metadata or {})

    def prompts(self, stage):
        return [c["prompt"] for c in self.calls if c["stage"] == stage]


class FakeChatClient:
    """OpenAI client double: chat.completions.create answers by response schema name."""

    def __init__(self, answers, usage=None):
        self.answers = answers
        self.usage = usage or {"prompt_tokens": 10, "completion_tokens": 5, "total_tokens": 15}
        self.requests = []
        self._lock = threading.Lock()
        self.chat = SimpleNamespace(completions=SimpleNamespace(create=self._create))

    def _create(self, model, messages, response_format=None, **_kwargs):
        name = response_format["json_schema"]["name"]
        with self._lock:
            self.requests.append({"model": model, "messages": messages, "schema": name})
        answer = self.answers[name]
        payload = answer(messages[-1]["content"]) if callable(answer) else answer
        return SimpleNamespace(
            choices=[SimpleNamespace(message=SimpleNamespace(content=json.dumps(payload)))],
            usage=SimpleNamespace(**self.usage),
        )


@pytest.fixture
def scripted_llm():
    return ScriptedLLM


@pytest.fixture
def fake_chat_client():
    return FakeChatClient
