from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Tuple

from pydantic import BaseModel, ConfigDict, Field


def dedupe_preserve_order(items: Iterable[Any]) -> List[str]:
    seen = set()
    out: List[str] = []
    for item in items:
        if not isinstance(item, str):
            continue
        key = item.strip()
        if not key or key in seen:
            continue
        seen.add(key)
        out.append(key)
    return out


# --- structured LLM responses -------------------------------------------------
# Every model forbids extra keys and has no optional fields so the generated
# JSON schema is accepted by strict structured-output mode.


class ResearchQuery(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)

    query: str = Field(description="The search query to use")
    research_goal: str = Field(description="The goal of this specific search query")


class QueryPlan(BaseModel):
    model_config = ConfigDict(extra="forbid")

    queries: List[ResearchQuery] = Field(
        description="List of search queries to execute"
    )


class FeedbackQuestions(BaseModel):
    model_config = ConfigDict(extra="forbid")

    questions: List[str] = Field(
        description="Follow up questions to clarify the research direction"
    )
    research_directions: List[str] = Field(
        description="Initial research directions to explore"
    )


class SerpExtraction(BaseModel):
    model_config = ConfigDict(extra="forbid")

    learnings: List[str] = Field(
        description="Key factual learnings and insights from the search results"
    )
    research_directions: List[str] = Field(
        description="Potential research directions identified from analyzing the learnings"
    )
    follow_up_questions: List[str] = Field(
        description="Specific follow-up questions to explore the identified research directions"
    )


class ReportDraft(BaseModel):
    model_config = ConfigDict(extra="forbid")

    report_markdown: str = Field(
        description="The final research report in markdown format"
    )


# --- engine values ------------------------------------------------------------


@dataclass(frozen=True)
class SearchItem:
    url: str
    content: str = ""


@dataclass(frozen=True)
class LearningSet:
    learnings: Tuple[str, ...] = ()
    follow_up_questions: Tuple[str, ...] = ()

    @classmethod
    def empty(cls) -> "LearningSet":
        return cls()


@dataclass(frozen=True, eq=False)
class ResearchResult:
    """Accumulated learnings and visited URLs of a research branch.

    Both collections keep first-seen order for presentation, but the value
    behaves as a pair of sets: ``merge`` is a union and equality ignores order,
    so merging sibling results is commutative and idempotent.
    """

    learnings: Tuple[str, ...] = ()
    visited_urls: Tuple[str, ...] = ()

    @classmethod
    def of(cls, learnings: Iterable[str] = (), visited_urls: Iterable[str] = ()) -> "ResearchResult":
        return cls(
            learnings=tuple(dedupe_preserve_order(learnings)),
            visited_urls=tuple(dedupe_preserve_order(visited_urls)),
        )

    def merge(self, *others: "ResearchResult") -> "ResearchResult":
        learnings = list(self.learnings)
        urls = list(self.visited_urls)
        for other in others:
            learnings.extend(other.learnings)
            urls.extend(other.visited_urls)
        return ResearchResult.of(learnings, urls)

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, ResearchResult):
            return NotImplemented
        return set(self.learnings) == set(other.learnings) and set(
            self.visited_urls
        ) == set(other.visited_urls)

    def __hash__(self) -> int:
        return hash((frozenset(self.learnings), frozenset(self.visited_urls)))

    def to_dict(self) -> Dict[str, List[str]]:
        return {
            "learnings": list(self.learnings),
            "visited_urls": list(self.visited_urls),
        }


@dataclass(frozen=True)
class UsageTotals:
    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0
    estimated_cost_usd: float = 0.0
    calls: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "prompt_tokens": self.prompt_tokens,
            "completion_tokens": self.completion_tokens,
            "total_tokens": self.total_tokens,
            "estimated_cost_usd": round(self.estimated_cost_usd, 8),
            "calls": self.calls,
        }
