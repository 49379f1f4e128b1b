"""Title similarity used as the fuzzy-match gate.

Scores are normalized edit distance on lightly normalized titles:
lower-cased, everything but ASCII letters, digits and whitespace removed.
"""

from __future__ import annotations

import re

from rapidfuzz.distance import Levenshtein

__all__ = ["normalize_for_similarity", "similarity"]

_NON_ALNUM_RE = re.compile(r"[^a-z0-9\s]")


def normalize_for_similarity(text: str) -> str:
    """Lower-case ``text`` and keep only ``[a-z0-9]`` and whitespace."""
    return _NON_ALNUM_RE.sub("", (text or "").lower()).strip()


def similarity(a: str, b: str) -> float:
    """Compute ``1 - levenshtein(a, b) / max(len(a), len(b))`` on normalized titles.

    Args:
        a: First title string
        b: Second title string

    Returns:
        Score in [0, 1]; 0.0 when either title is empty after normalization
    """
    norm_a = normalize_for_similarity(a)
    norm_b = normalize_for_similarity(b)
    if not norm_a or not norm_b:
        return 0.0
    return 1 - Levenshtein.distance(norm_a, norm_b) / max(len(norm_a), len(norm_b))
