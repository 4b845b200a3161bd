from typing import Any, Iterable, List

from engine.models import FeedbackQuestions, QueryPlan, ResearchQuery, dedupe_preserve_order
from engine.prompting import system_prompt


FALLBACK_GOAL = "Gather general information and research about the topic"


def fallback_query(topic: str) -> ResearchQuery:
    return ResearchQuery(
        query=f"{topic.strip()} research studies analysis".strip(),
        research_goal=FALLBACK_GOAL,
    )


def _format_learnings(learnings: Iterable[str]) -> str:
    items = dedupe_preserve_order(learnings)
    if not items:
        return ""
    return (
        "\n\nHere are some learnings from previous research, use them to generate "
        "more specific queries:\n" + "\n".join(items)
    )


class QueryPlanner:
    def __init__(self, llm: Any, verbose: bool = True) -> None:
        self.llm = llm
        self.verbose = verbose

    def plan(
        self, topic: str, learnings: Iterable[str] = (), num_queries: int = 3
    ) -> List[ResearchQuery]:
        if num_queries <= 0:
            return [fallback_query(topic)]
        prompt = (
            "Given the following prompt from the user, generate a list of SERP queries "
            f"to research the topic. Return a maximum of {num_queries} queries, but feel "
            "free to return less if the original prompt is clear. Make sure each query "
            f"is unique and not similar to each other: <prompt>{topic}</prompt>"
            f"{_format_learnings(learnings)}"
        )
        try:
            plan = self.llm.generate(
                system_prompt(),
                prompt,
                QueryPlan,
                stage="query_plan",
                metadata={"num_queries": num_queries},
            )
        except Exception as exc:
            self._log(f"Query planning failed; using fallback query. error={exc}")
            return [fallback_query(topic)]

        queries: List[ResearchQuery] = []
        seen = set()
        for q in plan.queries:
            text = q.query.strip()
            key = text.lower()
            if not text or key in seen:
                continue
            seen.add(key)
            queries.append(ResearchQuery(query=text, research_goal=q.research_goal.strip()))
        if not queries:
            self._log("No valid search queries generated; using fallback query.")
            return [fallback_query(topic)]
        return queries[:num_queries]

    def feedback(
        self, topic: str, learnings: Iterable[str] = (), num_questions: int = 3
    ) -> List[str]:
        if num_questions <= 0:
            return []
        prompt = (
            "Given the following query from the user, ask some follow up questions to "
            f"clarify the research direction. Return a maximum of {num_questions} "
            "questions, but feel free to return less if the original query is clear: "
            f"<query>{topic}</query>"
        )
        known = dedupe_preserve_order(learnings)
        if known:
            prompt += (
                "\n\nDo not ask about what previous research already established:\n"
                + "\n".join(known)
            )
        try:
            result = self.llm.generate(
                system_prompt(),
                prompt,
                FeedbackQuestions,
                stage="feedback",
                metadata={"num_questions": num_questions},
            )
        except Exception as exc:
            self._log(f"Follow-up question generation failed. error={exc}")
            return []
        return dedupe_preserve_order(result.questions)[:num_questions]

    def _log(self, message: str) -> None:
        if self.verbose:
            print(f"[progress] {message}")
