from __future__ import annotations

from functools import lru_cache
from typing import Callable, List, Optional

import tiktoken

TokenCounter = Callable[[str], int]
_TOKEN_COUNTER: Optional[TokenCounter] = None
# Gemini tokenizers are not published through tiktoken; cl100k is a close enough proxy.
_DEFAULT_ENCODING = "cl100k_base"


def build_token_counter(model_hint: Optional[str] = None) -> TokenCounter:
    """
    Return a callable that counts tokens with a tiktoken encoding.
    Falls back to the character heuristic when no encoding can be loaded.
    """

    encoding = _resolve_encoding(model_hint)
    if encoding is None:
        return _fallback_counter

    def _count(text: str) -> int:
        if not text:
            return 0
        try:
            return len(encoding.encode_ordinary(text))
        except ValueError:
            return _fallback_counter(text)

    return _count


def configure_token_counter(counter: Optional[TokenCounter]) -> None:
    global _TOKEN_COUNTER
    _TOKEN_COUNTER = counter


def estimate_tokens(text: str) -> int:
    """Return the configured token count or the ~4 characters per token heuristic."""
    if not text:
        return 0
    if _TOKEN_COUNTER:
        return max(1, _TOKEN_COUNTER(text))
    return _fallback_counter(text)


@lru_cache(maxsize=8)
def _resolve_encoding(model_hint: Optional[str]):
    for candidate in _model_hint_candidates(model_hint):
        if not candidate:
            continue
        try:
            return tiktoken.encoding_for_model(candidate)
        except KeyError:
            continue
    try:
        return tiktoken.get_encoding(_DEFAULT_ENCODING)
    except (ValueError, OSError):
        # Encodings are downloaded on first use; offline machines end up here.
        return None


def _fallback_counter(text: str) -> int:
    if not text:
        return 0
    ascii_chars = 0
    non_ascii_chars = 0
    for char in text:
        if char.isascii():
            ascii_chars += 1
        else:
            non_ascii_chars += 1
    ascii_estimate = (ascii_chars + 3) // 4 if ascii_chars else 0
    non_ascii_estimate = non_ascii_chars + max(1, non_ascii_chars // 5) if non_ascii_chars else 0
    return max(1, ascii_estimate + non_ascii_estimate)


def _model_hint_candidates(model_hint: Optional[str]) -> List[str]:
    if not model_hint:
        return [""]
    raw = model_hint.strip().lower()
    if not raw:
        return [""]
    candidates = [raw]
    if "/" in raw:
        suffix = raw.rsplit("/", 1)[-1]
        if suffix not in candidates:
            candidates.append(suffix)
    return candidates
