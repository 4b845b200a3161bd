import math
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Iterable, List, Optional, Sequence

from engine.models import ResearchQuery, ResearchResult, dedupe_preserve_order
from engine.planner import fallback_query
from engine.search import SearchAborted


def next_breadth(breadth: int) -> int:
    return int(math.ceil(breadth / 2))


def refine_query(query: str, learnings: Sequence[str], direction: Optional[str]) -> str:
    refined = f"{query}\n\nNew findings:\n" + "\n".join(learnings)
    if direction:
        refined += f"\n\nResearch direction: {direction}"
    return refined


class ResearchEngine:
    """Expands a query into a bounded tree of searches.

    Each call plans up to ``breadth`` queries, runs them on a worker pool of
    ``concurrency_limit`` threads, extracts learnings from every search and
    recurses with ``ceil(breadth / 2)`` and ``depth - 1`` while learnings keep
    coming. A failing branch contributes nothing; it never aborts its siblings.
    """

    def __init__(
        self,
        planner: Any,
        searcher: Any,
        extractor: Any,
        concurrency_limit: int = 1,
        should_abort: Optional[Callable[[], bool]] = None,
        event_callback: Optional[Callable[[Dict[str, Any]], None]] = None,
        verbose: bool = True,
    ) -> None:
        self.planner = planner
        self.searcher = searcher
        self.extractor = extractor
        self.concurrency_limit = max(1, int(concurrency_limit))
        self.should_abort = should_abort
        self.event_callback = event_callback
        self.verbose = verbose

    def research(self, query: str, breadth: int, depth: int) -> ResearchResult:
        self._emit("research_started", {"query": query, "breadth": breadth, "depth": depth})
        result = self.research_branch(query, breadth, depth)
        self._emit(
            "research_completed",
            {
                "learnings_count": len(result.learnings),
                "visited_urls_count": len(result.visited_urls),
            },
        )
        return result

    def research_branch(
        self,
        query: str,
        breadth: int,
        depth: int,
        learnings: Iterable[str] = (),
        visited_urls: Iterable[str] = (),
    ) -> ResearchResult:
        breadth = max(0, int(breadth))
        depth = max(0, int(depth))
        base = ResearchResult.of(learnings, visited_urls)
        if depth == 0:
            return base
        if self._aborted("plan"):
            return base

        self._log(f"Starting research phase (depth: {depth}, breadth: {breadth})")
        with ThreadPoolExecutor(max_workers=2) as pool:
            plan_future = pool.submit(
                self.planner.plan, query, base.learnings, breadth
            )
            feedback_future = pool.submit(
                self._safe_feedback, query, base.learnings, breadth
            )
            serp_queries = self._clean_queries(query, plan_future.result(), breadth)
            directions = feedback_future.result()
        self._emit(
            "queries_generated",
            {
                "depth": depth,
                "breadth": breadth,
                "queries": [q.query for q in serp_queries],
                "count": len(serp_queries),
            },
        )

        self._log(
            f"Executing {len(serp_queries)} search queries with "
            f"{self.concurrency_limit} concurrent requests"
        )
        with ThreadPoolExecutor(max_workers=self.concurrency_limit) as pool:
            futures = [
                pool.submit(
                    self._run_query,
                    query,
                    serp_query,
                    directions[idx] if idx < len(directions) else None,
                    breadth,
                    depth,
                    base,
                )
                for idx, serp_query in enumerate(serp_queries)
            ]
            branch_results = [f.result() for f in futures]

        merged = base.merge(*branch_results)
        self._log(
            f"Research phase complete: {len(merged.learnings)} unique learnings, "
            f"{len(merged.visited_urls)} unique sources"
        )
        return merged

    def _run_query(
        self,
        query: str,
        serp_query: ResearchQuery,
        direction: Optional[str],
        breadth: int,
        depth: int,
        base: ResearchResult,
    ) -> ResearchResult:
        if self._aborted("query_start"):
            return ResearchResult()
        try:
            self._log(f"Executing query: \"{serp_query.query}\" goal: {serp_query.research_goal}")
            self._emit(
                "query_started",
                {"query": serp_query.query, "research_goal": serp_query.research_goal, "depth": depth},
            )
            results = self.searcher.search(serp_query.query)
        except SearchAborted:
            self._log(f"Abort requested while searching \"{serp_query.query}\"; returning partial results.")
            return ResearchResult()
        except Exception as exc:
            self._log(f"Error running query: \"{serp_query.query}\": {exc}")
            self._emit("branch_failed", {"query": serp_query.query, "depth": depth, "error": str(exc)})
            return ResearchResult()

        new_urls = dedupe_preserve_order(item.url for item in results)
        self._log(f"Found {len(new_urls)} new sources")
        self._emit(
            "search_completed",
            {"query": serp_query.query, "depth": depth, "urls": new_urls},
        )

        new_breadth = next_breadth(breadth)
        new_depth = depth - 1
        try:
            extracted = self.extractor.extract(serp_query.query, results, new_breadth)
        except Exception as exc:
            self._log(f"Learning extraction failed for \"{serp_query.query}\": {exc}")
            extracted = None
        new_learnings = list(extracted.learnings) if extracted else []
        self._emit(
            "learnings_extracted",
            {"query": serp_query.query, "depth": depth, "learnings": new_learnings},
        )
        if not new_learnings:
            self._log("No learnings extracted from search results. Skipping deeper research.")
            return ResearchResult.of((), new_urls)

        merged = base.merge(ResearchResult.of(new_learnings, new_urls))
        if new_depth <= 0 or self._aborted("recurse"):
            return merged
        return self.research_branch(
            refine_query(query, new_learnings, direction),
            new_breadth,
            new_depth,
            merged.learnings,
            merged.visited_urls,
        )

    def _clean_queries(
        self, query: str, planned: Optional[List[ResearchQuery]], breadth: int
    ) -> List[ResearchQuery]:
        queries = [q for q in (planned or []) if q.query.strip()]
        if breadth > 0:
            queries = queries[:breadth]
        if not queries:
            self._log("No valid search queries generated. Using default query.")
            queries = [fallback_query(query)]
        return queries

    def _safe_feedback(self, query: str, learnings: Sequence[str], breadth: int) -> List[str]:
        try:
            return list(self.planner.feedback(query, learnings, breadth))
        except Exception as exc:
            self._log(f"Follow-up questions unavailable: {exc}")
            return []

    def _aborted(self, context: str) -> bool:
        if self.should_abort and self.should_abort():
            self._log(f"Abort requested ({context}); returning partial results.")
            return True
        return False

    def _log(self, message: str) -> None:
        if self.verbose:
            print(f"[progress] {message}")

    def _emit(self, event_type: str, payload: Dict[str, Any]) -> None:
        if not self.event_callback:
            return
        event = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "event_type": event_type,
            "payload": payload,
        }
        try:
            self.event_callback(event)
        except Exception:
            # Observability must not break core execution flow.
            pass
