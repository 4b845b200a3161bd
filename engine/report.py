from typing import Any, Iterable, List

from engine import prompting
from engine.models import ReportDraft, dedupe_preserve_order


def sources_section(visited_urls: Iterable[str]) -> str:
    urls = dedupe_preserve_order(visited_urls)
    return "\n\n## Sources\n\n" + "\n".join(f"- {url}" for url in urls)


def fallback_report(error: Exception, learnings: List[str]) -> str:
    bullets = "\n".join(f"- {learning}" for learning in learnings)
    return f"# Research Report\n\nError generating report: {error}\n\n## Learnings\n{bullets}"


class ReportSynthesizer:
    def __init__(
        self, llm: Any, learnings_token_budget: int = 150_000, verbose: bool = True
    ) -> None:
        self.llm = llm
        self.learnings_token_budget = learnings_token_budget
        self.verbose = verbose

    def synthesize(
        self, topic: str, learnings: Iterable[str], visited_urls: Iterable[str]
    ) -> str:
        items = dedupe_preserve_order(learnings)
        wrapped = "\n".join(f"<learning>\n{learning}\n</learning>" for learning in items)
        learnings_block = prompting.trim_prompt(wrapped, self.learnings_token_budget)
        prompt = (
            "Given the following prompt from the user, write a final report on the topic "
            "using the learnings from research. Make it as detailed as possible, aim for 3 "
            "or more pages, include ALL the learnings from research:\n\n"
            f"<prompt>{topic}</prompt>\n\n"
            "Here are all the learnings from previous research:\n\n"
            f"<learnings>\n{learnings_block}\n</learnings>"
        )
        self._log(f"Writing final report from {len(items)} learnings")
        try:
            draft = self.llm.generate(
                prompting.system_prompt(),
                prompt,
                ReportDraft,
                stage="final_report",
                metadata={"learnings": len(items)},
            )
            body = draft.report_markdown
        except Exception as exc:
            self._log(f"Report generation failed; writing fallback report. error={exc}")
            body = fallback_report(exc, items)
        return body + sources_section(visited_urls)

    def _log(self, message: str) -> None:
        if self.verbose:
            print(f"[progress] {message}")
