import math
from typing import Callable, Optional

import tiktoken

from mnemos.config import settings
from mnemos.logging import logger

TokenCounter = Callable[[str], int]

_counter: Optional[TokenCounter] = None


def estimate_tokens(text: str) -> int:
    """Four characters per token, rounded up."""
    if not text:
        return 0
    return math.ceil(len(text) / 4)


def build_counter(kind: str | None = None, encoding: str | None = None) -> TokenCounter:
    kind = kind or settings.TOKEN_COUNTER
    if kind == "chars":
        return estimate_tokens
    try:
        encoder = tiktoken.get_encoding(encoding or settings.TOKEN_ENCODING)
    except Exception as e:
        # The encoding file is fetched on first use and may be unavailable offline
        logger.warning(f"Token encoding unavailable, estimating by characters: {e}")
        return estimate_tokens

    def count(text: str) -> int:
        if not text:
            return 0
        return len(encoder.encode(text, disallowed_special=()))

    return count


def get_token_counter() -> TokenCounter:
    global _counter
    if _counter is None:
        _counter = build_counter()
    return _counter


def count_tokens(text: str) -> int:
    return get_token_counter()(text)
