from engine.config import DEFAULT_RESEARCH_CONFIG, ResearchConfig, load_research_config


def test_defaults_when_environment_is_empty():
    cfg = load_research_config(env={})

    assert cfg == ResearchConfig()
    assert cfg.search_request_limit == 5
    assert cfg.concurrency_limit == 1
    assert cfg.search_delay_seconds == 12.0


def test_environment_values_are_coerced():
    cfg = load_research_config(
        env={
            "OPENAI_MODEL": "gpt-4.1-mini",
            "SEARCH_PROVIDER": " OpenAI ",
            "FIRECRAWL_KEY": "fc-123",
            "FIRECRAWL_SEARCH_LIMIT": "10",
            "FIRECRAWL_CONCURRENCY_LIMIT": "3",
            "SEARCH_TIMEOUT_SECONDS": "20.5",
        }
    )

    assert cfg.model == "gpt-4.1-mini"
    assert cfg.search_provider == "openai"
    assert cfg.firecrawl_api_key == "fc-123"
    assert cfg.search_request_limit == 10
    assert cfg.concurrency_limit == 3
    assert cfg.search_timeout_seconds == 20.5
    assert cfg.search_delay_seconds == 6.0


def test_invalid_values_fall_back_to_defaults():
    cfg = load_research_config(
        env={
            "FIRECRAWL_SEARCH_LIMIT": "many",
            "FIRECRAWL_CONCURRENCY_LIMIT": "0",
            "RATE_WINDOW_SECONDS": "-5",
            "SEARCH_PROVIDER": "bing",
            "OPENAI_MODEL": "   ",
        }
    )

    assert cfg.search_request_limit == DEFAULT_RESEARCH_CONFIG["search_request_limit"]
    assert cfg.concurrency_limit == DEFAULT_RESEARCH_CONFIG["concurrency_limit"]
    assert cfg.rate_window_seconds == DEFAULT_RESEARCH_CONFIG["rate_window_seconds"]
    assert cfg.search_provider == "firecrawl"
    assert cfg.model == DEFAULT_RESEARCH_CONFIG["model"]


def test_non_finite_numbers_fall_back_to_defaults():
    cfg = load_research_config(
        env={
            "FIRECRAWL_SEARCH_LIMIT": "inf",
            "LLM_TOKEN_LIMIT": "-inf",
            "RATE_WINDOW_SECONDS": "nan",
            "SEARCH_BACKOFF_SECONDS": "NaN",
            "INPUT_COST_PER_MILLION": "infinity",
        }
    )

    assert cfg.search_request_limit == DEFAULT_RESEARCH_CONFIG["search_request_limit"]
    assert cfg.llm_token_limit == DEFAULT_RESEARCH_CONFIG["llm_token_limit"]
    assert cfg.rate_window_seconds == DEFAULT_RESEARCH_CONFIG["rate_window_seconds"]
    assert cfg.search_backoff_seconds == DEFAULT_RESEARCH_CONFIG["search_backoff_seconds"]
    assert cfg.input_cost_per_million == DEFAULT_RESEARCH_CONFIG["input_cost_per_million"]
    assert cfg.search_delay_seconds == 12.0


def test_overrides_win_over_environment():
    cfg = load_research_config(
        env={"FIRECRAWL_CONCURRENCY_LIMIT": "2"}, concurrency_limit=4, unknown_key=1
    )

    assert cfg.concurrency_limit == 4


def test_to_dict_masks_api_key():
    cfg = load_research_config(env={"FIRECRAWL_KEY": "secret"})

    assert cfg.to_dict()["firecrawl_api_key"] == "***"
