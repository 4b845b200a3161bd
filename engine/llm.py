import time
from typing import Any, Callable, Dict, List, Optional, Type, TypeVar

from openai import OpenAI, RateLimitError
from pydantic import BaseModel

from engine import prompting
from engine.rate_limiter import DualTokenBucket
from engine.usage import UsageTracker


ModelT = TypeVar("ModelT", bound=BaseModel)


def retry_after_seconds(exc: Exception) -> Optional[float]:
    response = getattr(exc, "response", None)
    headers = getattr(response, "headers", None)
    if not headers:
        return None
    raw = headers.get("retry-after")
    if raw is None:
        return None
    try:
        value = float(str(raw).strip())
    except (TypeError, ValueError):
        return None
    return value if value >= 0 else None


def response_format_for(schema: Type[BaseModel]) -> Dict[str, Any]:
    return {
        "type": "json_schema",
        "json_schema": {
            "name": schema.__name__,
            "schema": schema.model_json_schema(),
            "strict": True,
        },
    }


class LLM:
    """Schema-constrained chat completion client.

    Each call is paced by an optional ``DualTokenBucket`` using the counted
    prompt tokens, retried on ``RateLimitError`` (server ``Retry-After`` first,
    exponential backoff otherwise) and reported to the ``UsageTracker``.
    Parsing and validation errors propagate to the caller.
    """

    def __init__(
        self,
        model: str,
        usage_tracker: UsageTracker | None = None,
        rate_limiter: DualTokenBucket | None = None,
        max_retries: int = 3,
        client: Any = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.client = client if client is not None else OpenAI()
        self.model = model
        self.max_retries = max(1, int(max_retries))
        self.usage_tracker = usage_tracker
        self.rate_limiter = rate_limiter
        self._sleep = sleep

    def generate(
        self,
        system_prompt: str,
        user_prompt: str,
        schema: Type[ModelT],
        stage: str = "unknown",
        metadata: Dict[str, Any] | None = None,
    ) -> ModelT:
        rsp = self._chat_completion(
            messages=[
                {"role": "system", "content": system_prompt},
                {"role": "user", "content": user_prompt},
            ],
            response_format=response_format_for(schema),
            stage=stage,
            metadata=metadata,
        )
        text = rsp.choices[0].message.content or "{}"
        return schema.model_validate_json(text)

    def _chat_completion(
        self,
        messages: List[Dict[str, str]],
        stage: str,
        metadata: Dict[str, Any] | None,
        **kwargs: Any,
    ) -> Any:
        if self.rate_limiter is not None:
            prompt_tokens = sum(prompting.count_tokens(m["content"]) for m in messages)
            self.rate_limiter.acquire(1, prompt_tokens, sleep=self._sleep)
        last_exc: Exception | None = None
        for attempt in range(self.max_retries):
            try:
                rsp = self.client.chat.completions.create(
                    model=self.model,
                    messages=messages,
                    **kwargs,
                )
                usage = getattr(rsp, "usage", None)
                if self.usage_tracker:
                    self.usage_tracker.record(
                        stage=stage,
                        model=self.model,
                        usage=usage,
                        attempt=attempt + 1,
                        metadata=metadata,
                    )
                if self.rate_limiter is not None:
                    self.rate_limiter.update_from_response(
                        getattr(usage, "total_tokens", 0) or 0
                    )
                return rsp
            except RateLimitError as exc:
                last_exc = exc
                if attempt < self.max_retries - 1:
                    delay = retry_after_seconds(exc)
                    if delay is None:
                        delay = 1.2 * (2**attempt)
                    self._sleep(delay)
                    continue
                raise
        if last_exc:
            raise last_exc
        raise RuntimeError("Unexpected failure in chat completion.")
