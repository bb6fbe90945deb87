"""
Organization name folding used as an index key for by-name lookups.
"""

from __future__ import annotations

import re
import unicodedata
from typing import Iterable

from rapidfuzz import fuzz, process

_WHITESPACE_RE = re.compile(r"\s+")

DEFAULT_SUGGESTION_CUTOFF = 85.0


def normalize_name(value: object | None) -> str | None:
    """
    Fold a display name into its matching key.

    - Lower-case and trim
    - Collapse inner whitespace runs to a single space
    - Decompose (NFD) and drop combining marks so accents do not matter

    The key is never written back to the store; canonical names stay as entered.
    """

    if value is None:
        return None
    token = str(value).strip().lower()
    if not token:
        return None
    token = _WHITESPACE_RE.sub(" ", token)
    token = unicodedata.normalize("NFD", token)
    token = "".join(char for char in token if not unicodedata.combining(char))
    return token or None


def suggest_similar_names(
    name: object | None,
    candidates: Iterable[str],
    *,
    limit: int = 3,
    score_cutoff: float = DEFAULT_SUGGESTION_CUTOFF,
) -> list[str]:
    """
    Return up to ``limit`` normalized candidate names that look like ``name``.

    Suggestions are advisory notes for operators; resolution never uses them.
    """

    key = normalize_name(name)
    if key is None:
        return []
    matches = process.extract(
        key,
        list(candidates),
        scorer=fuzz.token_sort_ratio,
        limit=limit,
        score_cutoff=score_cutoff,
    )
    return [candidate for candidate, _score, _index in matches if candidate != key]
