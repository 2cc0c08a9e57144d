from __future__ import annotations

import re
from typing import Iterable, List, Optional


STOP_WORDS = frozenset({"the", "a", "an", "and", "or", "but", "in", "on", "at", "to", "for", "with", "by", "of"})


def _words(name: str) -> List[str]:
    return [w for w in (name or "").lower().split() if w]


def word_overlap_similarity(name1: str, name2: str) -> float:
    """Share of words the two names have in common, in [0, 1].

    A word matches when one contains the other ("1l" matches "1l", "choc"
    matches "chocolate"). Matches are counted from both sides and the smaller
    count is used, so similarity(a, b) == similarity(b, a).
    """
    words1 = _words(name1)
    words2 = _words(name2)
    if not words1 or not words2:
        return 0.0

    def _count(left: List[str], right: List[str]) -> int:
        return sum(1 for w1 in left if any(w1 in w2 or w2 in w1 for w2 in right))

    matching = min(_count(words1, words2), _count(words2, words1))
    return matching / max(len(words1), len(words2))


def name_prefixes(name: Optional[str]) -> List[str]:
    """Growing prefixes of a product name, used as a search index."""
    full = (name or "").strip()
    return [full[:i] for i in range(1, len(full) + 1)]


def normalize_prefixes(name: str, prefixes: Optional[Iterable[str]]) -> List[str]:
    """Keep model supplied prefixes only if they end with the full name."""
    full = (name or "").strip()
    values = [p for p in (prefixes or []) if isinstance(p, str)]
    if values and values[-1] == full:
        return values
    return name_prefixes(full)


def extract_keywords(text: Optional[str], extra: Optional[Iterable[str]] = None) -> List[str]:
    """Lower-cased, de-duplicated search keywords without stop words."""
    parts = [text or ""]
    parts.extend(s for s in (extra or []) if isinstance(s, str))
    seen: List[str] = []
    for part in parts:
        cleaned = re.sub(r"[^\w\s]", " ", part.lower())
        for word in cleaned.split():
            if len(word) > 1 and word not in STOP_WORDS and word not in seen:
                seen.append(word)
    return seen
