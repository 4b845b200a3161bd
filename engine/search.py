import json
import re
import textwrap
import time
from typing import Any, Callable, Dict, List, Optional, Protocol
from urllib.parse import urlparse

import httpx
from openai import OpenAI, RateLimitError

from engine import prompting
from engine.config import ResearchConfig
from engine.llm import retry_after_seconds
from engine.models import SearchItem
from engine.rate_limiter import DualTokenBucket
from engine.usage import UsageTracker


_RETRY_AFTER_RE = re.compile(r"retry after (\d+(?:\.\d+)?)\s*s", re.IGNORECASE)

# Long waits are sliced so an abort request is noticed within this interval.
ABORT_POLL_SECONDS = 0.5


class SearchQuotaExceeded(RuntimeError):
    def __init__(self, message: str, retry_after: Optional[float] = None) -> None:
        super().__init__(message)
        self.retry_after = retry_after


class SearchAborted(RuntimeError):
    pass


class SearchBackend(Protocol):
    def search(self, query: str, timeout: float, limit: int) -> List[SearchItem]:
        ...


def is_valid_absolute_http_url(url: str) -> bool:
    candidate = (url or "").strip()
    if not candidate:
        return False
    parsed = urlparse(candidate)
    if parsed.scheme not in {"http", "https"}:
        return False
    if not parsed.netloc:
        return False
    return True


def parse_retry_after(text: str) -> Optional[float]:
    match = _RETRY_AFTER_RE.search(text or "")
    if not match:
        return None
    return float(match.group(1))


class FirecrawlSearch:
    def __init__(
        self,
        api_key: str,
        base_url: str = "https://api.firecrawl.dev",
        client: httpx.Client | None = None,
    ) -> None:
        if not (api_key or "").strip():
            raise ValueError(
                "FIRECRAWL_KEY is required when SEARCH_PROVIDER=firecrawl."
            )
        self.api_key = api_key.strip()
        self.base_url = (base_url or "https://api.firecrawl.dev").rstrip("/")
        self._client = client

    def search(self, query: str, timeout: float, limit: int) -> List[SearchItem]:
        payload = {
            "query": query,
            "limit": limit,
            "timeout": int(timeout * 1000),
            "scrapeOptions": {"formats": ["markdown"]},
        }
        headers = {
            "Authorization": f"Bearer {self.api_key}",
            "Accept": "application/json",
        }
        url = f"{self.base_url}/v1/search"
        # Allow the service its own timeout plus transfer time.
        http_timeout = timeout + 5.0
        if self._client is not None:
            rsp = self._client.post(url, json=payload, headers=headers, timeout=http_timeout)
        else:
            with httpx.Client(timeout=http_timeout) as client:
                rsp = client.post(url, json=payload, headers=headers)
        if rsp.status_code == 429:
            raise SearchQuotaExceeded(
                f"Firecrawl rate limit exceeded for query: {query}",
                retry_after=self._retry_after(rsp),
            )
        rsp.raise_for_status()
        data = rsp.json()
        if not isinstance(data, dict):
            raise RuntimeError("Invalid Firecrawl search response.")
        items: List[SearchItem] = []
        for entry in data.get("data", []) or []:
            if not isinstance(entry, dict):
                continue
            link = str(entry.get("url", "") or "").strip()
            if not is_valid_absolute_http_url(link):
                continue
            content = entry.get("markdown") or entry.get("description") or ""
            items.append(SearchItem(url=link, content=str(content)))
        return items

    def _retry_after(self, rsp: httpx.Response) -> Optional[float]:
        header = rsp.headers.get("retry-after")
        if header:
            try:
                return float(header)
            except ValueError:
                pass
        try:
            body = rsp.json()
        except ValueError:
            return parse_retry_after(rsp.text)
        if isinstance(body, dict):
            return parse_retry_after(
                " ".join(str(body.get(k, "")) for k in ("error", "details", "message"))
            )
        return parse_retry_after(rsp.text)


class OpenAIWebSearch:
    def __init__(
        self,
        model: str,
        usage_tracker: UsageTracker | None = None,
        tool_types: List[str] | None = None,
        client: Any = None,
    ) -> None:
        self.client = client if client is not None else OpenAI()
        self.model = model
        self.usage_tracker = usage_tracker
        # Current Responses API web search tool first, with a compatibility fallback.
        self.tool_types = tool_types or ["web_search_preview", "web_search"]

    def search(self, query: str, timeout: float, limit: int) -> List[SearchItem]:
        prompt = textwrap.dedent(
            f"""
            Search the web for the query below and return STRICT JSON:
            {{
              "results": [
                {{"url": "https://...", "content": "..."}}
              ]
            }}
            Rules:
            - Return at most {limit} results.
            - Include only results with valid absolute URLs.
            - Put the most fact-dense passage of each page in "content".

            Query: {query}
            """
        ).strip()
        errors: List[str] = []
        for tool_type in self.tool_types:
            try:
                rsp = self.client.responses.create(
                    model=self.model,
                    tools=[{"type": tool_type}],
                    tool_choice={"type": tool_type},
                    input=prompt,
                    timeout=timeout,
                )
                if self.usage_tracker:
                    self.usage_tracker.record(
                        stage="web_search",
                        model=self.model,
                        usage=getattr(rsp, "usage", None),
                        metadata={"query": query, "tool_type": tool_type},
                    )
                data = self._parse_results_json(rsp.output_text)
                items = data.get("results", []) if isinstance(data, dict) else []
                if not isinstance(items, list):
                    items = []
                return [
                    SearchItem(url=i["url"].strip(), content=str(i.get("content", "")))
                    for i in items
                    if isinstance(i, dict)
                    and isinstance(i.get("url"), str)
                    and is_valid_absolute_http_url(i["url"])
                ][:limit]
            except RateLimitError as exc:
                raise SearchQuotaExceeded(
                    f"OpenAI web search rate limited for query: {query}",
                    retry_after=retry_after_seconds(exc),
                ) from exc
            except Exception as exc:
                errors.append(f"{tool_type}: {exc}")
                continue
        raise RuntimeError(" | ".join(errors) if errors else "unknown search error")

    def _parse_results_json(self, text: str) -> Dict[str, Any]:
        try:
            return json.loads(text)
        except json.JSONDecodeError:
            start = text.find("{")
            end = text.rfind("}")
            if start != -1 and end != -1 and end > start:
                return json.loads(text[start : end + 1])
            raise ValueError("Failed to parse OpenAI web search response as JSON.")


def build_search_backend(
    config: ResearchConfig, usage_tracker: UsageTracker | None = None
) -> SearchBackend:
    if config.search_provider == "openai":
        return OpenAIWebSearch(model=config.model, usage_tracker=usage_tracker)
    return FirecrawlSearch(
        api_key=config.firecrawl_api_key, base_url=config.firecrawl_base_url
    )


class SearchExecutor:
    def __init__(
        self,
        backend: SearchBackend,
        rate_limiter: DualTokenBucket,
        timeout_seconds: float = 15.0,
        result_limit: int = 5,
        max_retries: int = 3,
        backoff_seconds: float = 60.0,
        request_delay_seconds: float | None = None,
        sleep: Callable[[float], None] = time.sleep,
        verbose: bool = True,
        should_abort: Optional[Callable[[], bool]] = None,
    ) -> None:
        self.backend = backend
        self.rate_limiter = rate_limiter
        self.timeout_seconds = timeout_seconds
        self.result_limit = max(1, int(result_limit))
        self.max_retries = max(0, int(max_retries))
        self.backoff_seconds = max(0.0, float(backoff_seconds))
        if request_delay_seconds is None:
            request_delay_seconds = rate_limiter.window_seconds / rate_limiter.request_limit
        self.request_delay_seconds = max(0.0, float(request_delay_seconds))
        self._sleep = sleep
        self.verbose = verbose
        self.should_abort = should_abort

    @classmethod
    def from_config(
        cls,
        backend: SearchBackend,
        rate_limiter: DualTokenBucket,
        config: ResearchConfig,
        sleep: Callable[[float], None] = time.sleep,
        verbose: bool = True,
        should_abort: Optional[Callable[[], bool]] = None,
    ) -> "SearchExecutor":
        return cls(
            backend=backend,
            rate_limiter=rate_limiter,
            timeout_seconds=config.search_timeout_seconds,
            result_limit=config.search_result_limit,
            max_retries=config.search_max_retries,
            backoff_seconds=config.search_backoff_seconds,
            request_delay_seconds=config.search_delay_seconds,
            sleep=sleep,
            verbose=verbose,
            should_abort=should_abort,
        )

    def search(self, query: str) -> List[SearchItem]:
        retries = 0
        while True:
            self.rate_limiter.acquire(
                1, self.rate_limiter.estimated_tokens(), sleep=self._wait
            )
            short = query if len(query) <= 100 else query[:100] + "..."
            self._log(f"Executing search: \"{short}\"")
            try:
                items = self.backend.search(
                    query, timeout=self.timeout_seconds, limit=self.result_limit
                )
            except SearchQuotaExceeded as exc:
                if retries >= self.max_retries:
                    self._log(f"Search quota still exceeded after {retries} retries; giving up.")
                    raise
                retries += 1
                delay = exc.retry_after if exc.retry_after is not None else self.backoff_seconds
                self._log(
                    f"Rate limited; waiting {delay:.1f}s before retry {retries}/{self.max_retries}."
                )
                self._wait(delay)
                self.rate_limiter.reset()
                continue
            items = list(items)[: self.result_limit]
            self.rate_limiter.update_from_response(
                sum(prompting.count_tokens(i.content) for i in items)
            )
            if self.request_delay_seconds > 0:
                self._log(
                    f"Waiting {self.request_delay_seconds:.1f}s before next request..."
                )
                try:
                    self._wait(self.request_delay_seconds)
                except SearchAborted:
                    self._log("Abort requested; skipping request spacing.")
            return items

    def _wait(self, seconds: float) -> None:
        """Sleep ``seconds``; with ``should_abort`` set, poll it and raise SearchAborted."""
        if self.should_abort is None:
            self._sleep(seconds)
            return
        remaining = seconds
        while remaining > 0:
            if self.should_abort():
                raise SearchAborted("Search aborted while waiting")
            step = min(ABORT_POLL_SECONDS, remaining)
            self._sleep(step)
            remaining -= step
        if self.should_abort():
            raise SearchAborted("Search aborted while waiting")

    def _log(self, message: str) -> None:
        if self.verbose:
            print(f"[progress] {message}")
