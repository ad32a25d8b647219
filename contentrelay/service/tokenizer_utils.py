from __future__ import annotations

import math

CHARS_PER_TOKEN = 4


def estimate_token_count(text: str) -> int:
    """Character-based token estimate used for every context budget.

    Summarizer tiers and the final budget guard must agree on one estimator,
    so this stays a pure function of length: ``ceil(len / 4)``.
    """

    if not text:
        return 0
    return math.ceil(len(text) / CHARS_PER_TOKEN)


def max_chars_for_budget(token_budget: int) -> int:
    return max(0, token_budget) * CHARS_PER_TOKEN


def fits_budget(text: str, token_budget: int) -> bool:
    return estimate_token_count(text) <= token_budget


def truncate_to_budget(text: str, token_budget: int, *, marker: str = "") -> str:
    """Cut ``text`` so its estimate is within ``token_budget``.

    When a marker is given it is appended inside the budget, not after it.
    """

    if fits_budget(text, token_budget):
        return text
    limit = max_chars_for_budget(token_budget)
    if marker and len(marker) < limit:
        return text[: limit - len(marker)] + marker
    return text[:limit]
