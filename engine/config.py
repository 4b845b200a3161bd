import math
import os
from dataclasses import dataclass, fields
from typing import Any, Dict, Mapping, Optional


DEFAULT_RESEARCH_CONFIG: Dict[str, Any] = {
    "model": "gpt-4.1",
    "report_model": "gpt-4.1",
    "search_provider": "firecrawl",
    "firecrawl_api_key": "",
    "firecrawl_base_url": "https://api.firecrawl.dev",
    "search_request_limit": 5,
    "search_token_limit": 1_000_000,
    "concurrency_limit": 1,
    "search_result_limit": 5,
    "search_timeout_seconds": 15.0,
    "search_max_retries": 3,
    "search_backoff_seconds": 60.0,
    "llm_request_limit": 2000,
    "llm_token_limit": 4_000_000,
    "llm_max_retries": 3,
    "rate_window_seconds": 60.0,
    "input_cost_per_million": 2.0,
    "output_cost_per_million": 8.0,
    "content_token_budget": 25_000,
    "report_token_budget": 150_000,
}

# field name -> environment variable
ENV_VARS: Dict[str, str] = {
    "model": "OPENAI_MODEL",
    "report_model": "OPENAI_REPORT_MODEL",
    "search_provider": "SEARCH_PROVIDER",
    "firecrawl_api_key": "FIRECRAWL_KEY",
    "firecrawl_base_url": "FIRECRAWL_BASE_URL",
    "search_request_limit": "FIRECRAWL_SEARCH_LIMIT",
    "search_token_limit": "SEARCH_TOKEN_LIMIT",
    "concurrency_limit": "FIRECRAWL_CONCURRENCY_LIMIT",
    "search_result_limit": "SEARCH_RESULT_LIMIT",
    "search_timeout_seconds": "SEARCH_TIMEOUT_SECONDS",
    "search_max_retries": "SEARCH_MAX_RETRIES",
    "search_backoff_seconds": "SEARCH_BACKOFF_SECONDS",
    "llm_request_limit": "LLM_REQUEST_LIMIT",
    "llm_token_limit": "LLM_TOKEN_LIMIT",
    "llm_max_retries": "LLM_MAX_RETRIES",
    "rate_window_seconds": "RATE_WINDOW_SECONDS",
    "input_cost_per_million": "INPUT_COST_PER_MILLION",
    "output_cost_per_million": "OUTPUT_COST_PER_MILLION",
    "content_token_budget": "CONTENT_TOKEN_BUDGET",
    "report_token_budget": "REPORT_TOKEN_BUDGET",
}

SEARCH_PROVIDERS = ("firecrawl", "openai")

# Lower bounds applied after coercion. Limits and windows must stay positive
# because the rate limiter divides by them.
_MINIMUMS: Dict[str, float] = {
    "search_request_limit": 1,
    "search_token_limit": 1,
    "concurrency_limit": 1,
    "search_result_limit": 1,
    "search_timeout_seconds": 1.0,
    "search_max_retries": 0,
    "search_backoff_seconds": 0.0,
    "llm_request_limit": 1,
    "llm_token_limit": 1,
    "llm_max_retries": 1,
    "rate_window_seconds": 0.001,
    "input_cost_per_million": 0.0,
    "output_cost_per_million": 0.0,
    "content_token_budget": 1,
    "report_token_budget": 1,
}


@dataclass(frozen=True)
class ResearchConfig:
    model: str = DEFAULT_RESEARCH_CONFIG["model"]
    report_model: str = DEFAULT_RESEARCH_CONFIG["report_model"]
    search_provider: str = DEFAULT_RESEARCH_CONFIG["search_provider"]
    firecrawl_api_key: str = DEFAULT_RESEARCH_CONFIG["firecrawl_api_key"]
    firecrawl_base_url: str = DEFAULT_RESEARCH_CONFIG["firecrawl_base_url"]
    search_request_limit: int = DEFAULT_RESEARCH_CONFIG["search_request_limit"]
    search_token_limit: int = DEFAULT_RESEARCH_CONFIG["search_token_limit"]
    concurrency_limit: int = DEFAULT_RESEARCH_CONFIG["concurrency_limit"]
    search_result_limit: int = DEFAULT_RESEARCH_CONFIG["search_result_limit"]
    search_timeout_seconds: float = DEFAULT_RESEARCH_CONFIG["search_timeout_seconds"]
    search_max_retries: int = DEFAULT_RESEARCH_CONFIG["search_max_retries"]
    search_backoff_seconds: float = DEFAULT_RESEARCH_CONFIG["search_backoff_seconds"]
    llm_request_limit: int = DEFAULT_RESEARCH_CONFIG["llm_request_limit"]
    llm_token_limit: int = DEFAULT_RESEARCH_CONFIG["llm_token_limit"]
    llm_max_retries: int = DEFAULT_RESEARCH_CONFIG["llm_max_retries"]
    rate_window_seconds: float = DEFAULT_RESEARCH_CONFIG["rate_window_seconds"]
    input_cost_per_million: float = DEFAULT_RESEARCH_CONFIG["input_cost_per_million"]
    output_cost_per_million: float = DEFAULT_RESEARCH_CONFIG["output_cost_per_million"]
    content_token_budget: int = DEFAULT_RESEARCH_CONFIG["content_token_budget"]
    report_token_budget: int = DEFAULT_RESEARCH_CONFIG["report_token_budget"]

    @property
    def search_delay_seconds(self) -> float:
        """Minimum spacing between successful searches (window / per-window limit)."""
        return self.rate_window_seconds / float(self.search_request_limit)

    def to_dict(self) -> Dict[str, Any]:
        out = {f.name: getattr(self, f.name) for f in fields(self)}
        if out.get("firecrawl_api_key"):
            out["firecrawl_api_key"] = "***"
        return out


def _coerce(name: str, raw: Any) -> Any:
    default = DEFAULT_RESEARCH_CONFIG[name]
    if raw is None:
        return default
    if isinstance(default, str):
        value = str(raw).strip()
        if name in ("model", "report_model", "firecrawl_base_url") and not value:
            return default
        if name == "search_provider":
            value = value.lower()
            return value if value in SEARCH_PROVIDERS else default
        return value
    try:
        number = float(str(raw).strip())
    except (TypeError, ValueError):
        return default
    if not math.isfinite(number):
        return default
    value = int(number) if isinstance(default, int) else number
    minimum = _MINIMUMS.get(name)
    if minimum is not None and value < minimum:
        return default
    return value


def load_research_config(
    env: Optional[Mapping[str, str]] = None, **overrides: Any
) -> ResearchConfig:
    source = os.environ if env is None else env
    values: Dict[str, Any] = {}
    for name, env_var in ENV_VARS.items():
        raw = source.get(env_var)
        if raw is not None and str(raw).strip() == "" and name != "firecrawl_api_key":
            raw = None
        values[name] = _coerce(name, raw)
    for name, raw in overrides.items():
        if name in DEFAULT_RESEARCH_CONFIG and raw is not None:
            values[name] = _coerce(name, raw)
    return ResearchConfig(**values)
