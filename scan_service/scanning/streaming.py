from __future__ import annotations

import re
from collections.abc import AsyncIterable, Iterable
from typing import Any

from scan_service.normalize import NOT_FOUND

_LINE_SPLIT = re.compile(r"\r?\n")


def _chunk_text(chunk: Any) -> str:
    if chunk is None:
        return ""
    if isinstance(chunk, str):
        return chunk
    # GenerateContentResponse.text is None for chunks that carry no text part
    return getattr(chunk, "text", None) or ""


async def aggregate_stream(stream: AsyncIterable[Any] | Iterable[Any]) -> str:
    """Concatenate every chunk of a streamed response, in arrival order.

    Returns only once the stream is exhausted.  Errors raised by the stream
    propagate; a half-read answer is never returned.
    """
    parts: list[str] = []
    if hasattr(stream, "__aiter__"):
        async for chunk in stream:  # type: ignore[union-attr]
            parts.append(_chunk_text(chunk))
    else:
        for chunk in stream:  # type: ignore[union-attr]
            parts.append(_chunk_text(chunk))
    return "".join(parts)


def split_answers(text: str, expected: int) -> list[str]:
    """One answer per image: line *i* belongs to image *i* of the batch.

    Short responses are padded with ``NOT_FOUND``; extra lines are ignored.
    """
    lines = [s.strip() for s in _LINE_SPLIT.split(text or "")]
    lines = [s for s in lines if s]
    answers = lines[:expected]
    answers.extend([NOT_FOUND] * (expected - len(answers)))
    return answers
