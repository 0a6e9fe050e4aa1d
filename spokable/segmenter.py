"""Split long text into overlapping, token-sized chunks."""
from __future__ import annotations

from typing import List, Optional

from .models import Chunk
from .token_utils import TokenCounter, estimate_tokens

BOUNDARY_LOOKAHEAD = 200


def segment(
    text: str,
    target_tokens: int,
    overlap_tokens: int = 0,
    token_counter: Optional[TokenCounter] = None,
) -> List[Chunk]:
    counter = token_counter or estimate_tokens
    if not text:
        return []
    total_tokens = counter(text)
    if total_tokens <= target_tokens:
        return [Chunk(index=0, text=text, start=0, end=len(text), tokens=total_tokens)]

    length = len(text)
    chars_per_chunk = max(1, int(target_tokens / total_tokens * length))
    overlap_chars = max(0, int(overlap_tokens / total_tokens * length))

    chunks: List[Chunk] = []
    position = 0
    while position < length:
        start = max(0, position - overlap_chars)
        end = min(length, position + chars_per_chunk)
        if end < length:
            end = _snap_boundary(text, end)
        snippet = text[start:end]
        chunks.append(
            Chunk(index=len(chunks), text=snippet, start=start, end=end, tokens=counter(snippet))
        )
        position = end
    return chunks


def _snap_boundary(text: str, end: int) -> int:
    limit = end + BOUNDARY_LOOKAHEAD
    period = text.find(". ", end)
    if period != -1 and period < limit:
        return period + 1
    newline = text.find("\n", end)
    if newline != -1 and newline < limit:
        return newline + 1
    return end
