from engine import prompting
from engine.prompting import MIN_CHUNK_SIZE, trim_prompt


PARAGRAPH = (
    "Quantum radar uses entangled photon pairs to detect objects. "
    "Researchers at the University of Waterloo reported a prototype in 2019. "
    "Noise from thermal backgrounds remains the main obstacle for field use."
)


def test_text_within_budget_is_returned_unchanged():
    assert trim_prompt(PARAGRAPH, 10_000) == PARAGRAPH


def test_empty_text_stays_empty():
    assert trim_prompt("", 10) == ""


def test_over_budget_text_fits_and_is_not_empty():
    text = "\n\n".join([PARAGRAPH] * 40)
    budget = 120

    trimmed = trim_prompt(text, budget)

    assert trimmed
    assert prompting.count_tokens(trimmed) <= budget
    assert text.startswith(trimmed)


def test_text_without_separators_is_cut_to_fit():
    text = "x" * 5000

    trimmed = trim_prompt(text, 100)

    assert 0 < prompting.count_tokens(trimmed) <= 100


def test_tiny_budget_cuts_the_min_chunk_until_it_fits():
    text = "word " * 400

    for budget in (1, 10, 34):
        trimmed = trim_prompt(text, budget)

        assert trimmed
        assert prompting.count_tokens(trimmed) <= budget
        assert text[:MIN_CHUNK_SIZE].startswith(trimmed)


def test_system_prompt_mentions_today():
    assert "Today is" in prompting.system_prompt()
