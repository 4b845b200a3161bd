import functools
from datetime import datetime, timezone

import tiktoken
from langchain_text_splitters import RecursiveCharacterTextSplitter


MIN_CHUNK_SIZE = 140
CHARS_PER_TOKEN = 4
TOKEN_ENCODING = "o200k_base"


@functools.lru_cache(maxsize=1)
def _encoding() -> "tiktoken.Encoding":
    return tiktoken.get_encoding(TOKEN_ENCODING)


def count_tokens(text: str) -> int:
    if not text:
        return 0
    return len(_encoding().encode(text, disallowed_special=()))


def trim_prompt(text: str, context_size: int) -> str:
    """Cut ``text`` down until it fits in ``context_size`` tokens.

    The overflow is converted to characters (~4 per token) and the text is
    cut at the best paragraph/sentence/word boundary below that length. If the
    splitter cannot shrink the text, a hard character slice is used instead.
    """
    if not text:
        return ""
    length = count_tokens(text)
    if length <= context_size:
        return text

    overflow_tokens = length - context_size
    chunk_size = len(text) - overflow_tokens * CHARS_PER_TOKEN
    if chunk_size < MIN_CHUNK_SIZE:
        return _hard_cut(text[:MIN_CHUNK_SIZE], context_size)

    splitter = RecursiveCharacterTextSplitter(chunk_size=chunk_size, chunk_overlap=0)
    chunks = splitter.split_text(text)
    trimmed = chunks[0] if chunks else ""
    if not trimmed or len(trimmed) >= len(text):
        return trim_prompt(text[:chunk_size], context_size)
    return trim_prompt(trimmed, context_size)


def _hard_cut(text: str, context_size: int) -> str:
    length = count_tokens(text)
    while text and length > context_size:
        keep = len(text) * max(0, context_size) // length
        text = text[: min(len(text) - 1, keep)]
        length = count_tokens(text)
    return text


def system_prompt() -> str:
    now = datetime.now(timezone.utc).isoformat()
    return f"""You are an expert researcher. Today is {now}. Follow these instructions when responding:
- You may be asked to research subjects that are after your knowledge cutoff, assume the user is right when presented with news.
- The user is a highly experienced analyst, no need to simplify it, be as detailed as possible and make sure your response is correct.
- Be highly organized.
- Suggest solutions that I didn't think about.
- Be proactive and anticipate my needs.
- Treat me as an expert in all subject matter.
- Mistakes erode my trust, so be accurate and thorough.
- Provide detailed explanations, I'm comfortable with lots of detail.
- Value good arguments over authorities, the source is irrelevant.
- Consider new technologies and contrarian ideas, not just the conventional wisdom.
- You may use high levels of speculation or prediction, just flag it for me.
You are working as part of an automated research pipeline: no chit-chat, no preambles, only the requested output."""
