#!/usr/bin/env python3
# CUI // SP-PROPIN
"""Token estimation for context budgeting.

The default estimator is the cheap ``ceil(characters / 4)`` heuristic used
throughout the portal. A real tokenizer can be plugged in per model family
by passing any ``estimate(text) -> int`` callable, for example the one
returned by tiktoken_estimator().
"""

import math
import re
from typing import Callable

from tools.context.models import ConfigurationError

CHARS_PER_TOKEN = 4

TokenEstimator = Callable[[str], int]

_WORD_RE = re.compile(r"\S+")


def estimate_tokens(text: str) -> int:
    """Estimate tokens as ceil(len(text) / 4). Empty or None text is 0."""
    if not text:
        return 0
    return math.ceil(len(text) / CHARS_PER_TOKEN)


def count_words(text: str) -> int:
    if not text:
        return 0
    return len(_WORD_RE.findall(text))


def tiktoken_estimator(encoding_name: str = "cl100k_base") -> TokenEstimator:
    """Return an estimator backed by a tiktoken encoding."""
    import tiktoken

    enc = tiktoken.get_encoding(encoding_name)

    def _estimate(text: str) -> int:
        if not text:
            return 0
        return len(enc.encode(text, disallowed_special=()))

    return _estimate


def resolve_estimator(name: str = "heuristic") -> TokenEstimator:
    """Resolve a config string to an estimator.

    ``heuristic`` -> estimate_tokens; ``tiktoken`` or ``tiktoken:<encoding>``
    -> tiktoken_estimator().
    """
    name = (name or "heuristic").strip().lower()
    if name in ("heuristic", "chars", "chars/4"):
        return estimate_tokens
    if name.startswith("tiktoken"):
        _, _, encoding = name.partition(":")
        return tiktoken_estimator(encoding or "cl100k_base")
    raise ConfigurationError(f"Unknown token estimator '{name}'")
