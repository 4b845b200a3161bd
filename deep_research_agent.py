import argparse
import json
import time
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, List, Optional

from engine.config import ResearchConfig, load_research_config
from engine.extractor import LearningExtractor
from engine.llm import LLM
from engine.models import UsageTotals
from engine.planner import QueryPlanner
from engine.rate_limiter import DualTokenBucket
from engine.report import ReportSynthesizer
from engine.research import ResearchEngine
from engine.search import SearchBackend, SearchExecutor, build_search_backend
from engine.usage import UsageTracker


DEFAULT_BREADTH = 4
DEFAULT_DEPTH = 2


def slugify_for_filename(text: str, max_len: int = 80) -> str:
    raw = "".join(ch.lower() if ch.isalnum() else "-" for ch in text.strip())
    compact = "-".join(part for part in raw.split("-") if part)
    if not compact:
        compact = "research-task"
    return compact[:max_len].strip("-") or "research-task"


def combine_feedback(topic: str, questions: List[str], answers: List[str]) -> str:
    qa = "\n".join(
        f"Q: {q}\nA: {answers[i] if i < len(answers) else ''}"
        for i, q in enumerate(questions)
    )
    return f"Initial Query: {topic}\nFollow-up Questions and Answers:\n{qa}"


class DeepResearchAgent:
    """One research session: limiters, usage tracker, clients and components.

    Nothing here is shared between agents, so two sessions never pace or
    bill against each other.
    """

    def __init__(
        self,
        config: ResearchConfig | None = None,
        domain: str = "",
        context: str = "",
        verbose: bool = True,
        event_callback: Optional[Callable[[Dict[str, Any]], None]] = None,
        should_abort: Optional[Callable[[], bool]] = None,
        usage_listener: Optional[Callable[[UsageTotals], None]] = None,
        llm_client: Any = None,
        search_backend: SearchBackend | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.config = config or load_research_config()
        self.domain = (domain or "").strip()
        self.context = (context or "").strip()
        self.verbose = verbose
        cfg = self.config

        self.usage_tracker = UsageTracker(
            input_cost_per_million=cfg.input_cost_per_million,
            output_cost_per_million=cfg.output_cost_per_million,
            listener=usage_listener,
        )
        self.search_limiter = DualTokenBucket(
            cfg.search_request_limit, cfg.search_token_limit, cfg.rate_window_seconds
        )
        self.llm_limiter = DualTokenBucket(
            cfg.llm_request_limit, cfg.llm_token_limit, cfg.rate_window_seconds
        )
        self.llm = LLM(
            model=cfg.model,
            usage_tracker=self.usage_tracker,
            rate_limiter=self.llm_limiter,
            max_retries=cfg.llm_max_retries,
            client=llm_client,
            sleep=sleep,
        )
        self.report_llm = LLM(
            model=cfg.report_model,
            usage_tracker=self.usage_tracker,
            rate_limiter=self.llm_limiter,
            max_retries=cfg.llm_max_retries,
            client=self.llm.client,
            sleep=sleep,
        )
        backend = search_backend or build_search_backend(cfg, self.usage_tracker)
        self.searcher = SearchExecutor.from_config(
            backend,
            self.search_limiter,
            cfg,
            sleep=sleep,
            verbose=verbose,
            should_abort=should_abort,
        )
        self.planner = QueryPlanner(self.llm, verbose=verbose)
        self.extractor = LearningExtractor(
            self.llm, content_token_budget=cfg.content_token_budget, verbose=verbose
        )
        self.engine = ResearchEngine(
            self.planner,
            self.searcher,
            self.extractor,
            concurrency_limit=cfg.concurrency_limit,
            should_abort=should_abort,
            event_callback=event_callback,
            verbose=verbose,
        )
        self.reporter = ReportSynthesizer(
            self.report_llm,
            learnings_token_budget=cfg.report_token_budget,
            verbose=verbose,
        )

    def focused_query(self, topic: str) -> str:
        parts = [topic.strip()]
        if self.domain:
            parts.append(f"Domain Focus: {self.domain}")
        if self.context:
            parts.append(f"Additional Context: {self.context}")
        return "\n\n".join(parts)

    def clarifying_questions(self, topic: str, num_questions: int = 3) -> List[str]:
        return self.planner.feedback(topic, num_questions=num_questions)

    def run_research(
        self, topic: str, breadth: int = DEFAULT_BREADTH, depth: int = DEFAULT_DEPTH
    ) -> Dict[str, List[str]]:
        if self.domain:
            self._log(f"Starting deep research for domain: {self.domain}")
        result = self.engine.research(self.focused_query(topic), breadth, depth)
        return result.to_dict()

    def generate_report(
        self, topic: str, learnings: Iterable[str], visited_urls: Iterable[str]
    ) -> str:
        return self.reporter.synthesize(self.focused_query(topic), learnings, visited_urls)

    def usage(self) -> Dict[str, Any]:
        return self.usage_tracker.to_dict()

    def _log(self, message: str) -> None:
        if self.verbose:
            print(f"[progress] {message}")


def run_research(
    topic: str, breadth: int = DEFAULT_BREADTH, depth: int = DEFAULT_DEPTH, **agent_kwargs: Any
) -> Dict[str, List[str]]:
    return DeepResearchAgent(**agent_kwargs).run_research(topic, breadth, depth)


def generate_report(
    topic: str, learnings: Iterable[str], visited_urls: Iterable[str], **agent_kwargs: Any
) -> str:
    return DeepResearchAgent(**agent_kwargs).generate_report(topic, learnings, visited_urls)


def ask_clarifications(
    agent: DeepResearchAgent, topic: str, input_fn: Callable[[str], str] = input
) -> str:
    questions = agent.clarifying_questions(topic)
    if not questions:
        return topic
    print("\nTo better understand your research needs, please answer these follow-up questions:")
    answers = [input_fn(f"\n{q}\nYour answer: ") for q in questions]
    return combine_feedback(topic, questions, answers)


def write_text(path_str: str, text: str) -> Path:
    path = Path(path_str)
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(text, encoding="utf-8")
    return path


def main(argv: List[str] | None = None) -> None:
    parser = argparse.ArgumentParser(description="Deep Research Agent")
    parser.add_argument("topic", help="Research topic or question")
    parser.add_argument(
        "--breadth",
        type=int,
        default=DEFAULT_BREADTH,
        help="Queries planned per research step (recommended 2-10)",
    )
    parser.add_argument(
        "--depth",
        type=int,
        default=DEFAULT_DEPTH,
        help="Recursive research depth (recommended 1-5)",
    )
    parser.add_argument("--domain", default="", help="Optional domain focus")
    parser.add_argument("--context", default="", help="Optional additional context")
    parser.add_argument(
        "--clarify",
        action="store_true",
        help="Answer follow-up questions before research starts",
    )
    parser.add_argument(
        "--report-file",
        default="",
        help="Optional path for final report output (markdown text)",
    )
    parser.add_argument(
        "--usage-file",
        default="",
        help="Optional path for token usage report JSON",
    )
    parser.add_argument(
        "--quiet",
        action="store_true",
        help="Disable progress updates",
    )
    args = parser.parse_args(argv)

    agent = DeepResearchAgent(
        domain=args.domain, context=args.context, verbose=not args.quiet
    )
    topic = args.topic
    if args.clarify:
        topic = ask_clarifications(agent, topic)

    result = agent.run_research(topic, args.breadth, args.depth)
    print("[usage] after research")
    agent.usage_tracker.log_total()
    print("\n\nLearnings:\n\n" + "\n".join(result["learnings"]))
    print(
        f"\n\nVisited URLs ({len(result['visited_urls'])}):\n\n"
        + "\n".join(result["visited_urls"])
    )

    report = agent.generate_report(topic, result["learnings"], result["visited_urls"])
    if args.report_file:
        report_path = write_text(args.report_file, report)
    else:
        ts = datetime.now(timezone.utc).strftime("%Y%m%dT%H%M%SZ")
        slug = slugify_for_filename(args.topic)
        report_path = write_text(f"reports/report_{slug}_{ts}.md", report)
    print(f"[report] saved: {report_path}")
    if args.usage_file:
        usage_path = write_text(
            args.usage_file, json.dumps(agent.usage(), ensure_ascii=False, indent=2)
        )
        print(f"[usage] saved: {usage_path}")
    agent.usage_tracker.log_total()
    print(report)


if __name__ == "__main__":
    main()
