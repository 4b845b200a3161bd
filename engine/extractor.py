from typing import Any, List, Sequence

from engine import prompting
from engine.models import LearningSet, SearchItem, SerpExtraction, dedupe_preserve_order


MAX_LEARNINGS = 3


class LearningExtractor:
    def __init__(
        self, llm: Any, content_token_budget: int = 25_000, verbose: bool = True
    ) -> None:
        self.llm = llm
        self.content_token_budget = content_token_budget
        self.verbose = verbose

    def extract(
        self,
        query: str,
        results: Sequence[SearchItem],
        num_follow_up_questions: int = 3,
    ) -> LearningSet:
        contents: List[str] = [
            prompting.trim_prompt(item.content, self.content_token_budget)
            for item in results
            if item.content and item.content.strip()
        ]
        self._log(f"Ran {query}, found {len(contents)} contents")
        if not contents:
            return LearningSet.empty()

        joined = "\n".join(f"<content>\n{c}\n</content>" for c in contents)
        prompt = (
            "Given the following contents from a SERP search for the query "
            f"<query>{query}</query>, generate a list of learnings from the contents. "
            f"Return a maximum of {MAX_LEARNINGS} learnings, but feel free to return less "
            "if the contents are clear. Make sure each learning is unique and not similar "
            "to each other. The learnings should be concise and to the point, as detailed "
            "and information dense as possible. Make sure to include any entities like "
            "people, places, companies, products, things, etc in the learnings, as well as "
            "any exact metrics, numbers, or dates. The learnings will be used to research "
            f"the topic further. Also return up to {max(0, num_follow_up_questions)} "
            "follow-up questions.\n\n"
            f"<contents>{joined}</contents>"
        )
        try:
            extraction = self.llm.generate(
                prompting.system_prompt(),
                prompt,
                SerpExtraction,
                stage="extract_learnings",
                metadata={"query": query[:120]},
            )
        except Exception as exc:
            self._log(f"Error processing SERP result for '{query}': {exc}")
            return LearningSet.empty()

        learnings = dedupe_preserve_order(extraction.learnings)[:MAX_LEARNINGS]
        follow_ups = dedupe_preserve_order(extraction.follow_up_questions)
        return LearningSet(
            learnings=tuple(learnings),
            follow_up_questions=tuple(follow_ups[: max(0, num_follow_up_questions)]),
        )

    def _log(self, message: str) -> None:
        if self.verbose:
            print(f"[progress] {message}")
