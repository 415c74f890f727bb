import re
import unicodedata
from dataclasses import dataclass
from typing import Any, Iterable, Optional, Sequence

from rapidfuzz.distance import Levenshtein

DEFAULT_THRESHOLD = 0.85

_UMLAUTS = {"ä": "ae", "ö": "oe", "ü": "ue", "ß": "ss"}
_NON_ALNUM = re.compile(r"[^a-z0-9\s]")
_SPACES = re.compile(r"\s+")


def normalize(text: str) -> str:
    """Lowercase, transliterate umlauts, strip accents and punctuation, collapse spaces."""
    text = text.lower().strip()
    for src, dst in _UMLAUTS.items():
        text = text.replace(src, dst)
    text = unicodedata.normalize("NFD", text)
    text = "".join(ch for ch in text if not unicodedata.combining(ch))
    text = _NON_ALNUM.sub("", text)
    return _SPACES.sub(" ", text).strip()


def similarity(a: str, b: str) -> float:
    """1 - levenshtein / max_len on already-normalized strings."""
    if a == b:
        return 1.0
    if not a or not b:
        return 0.0
    return Levenshtein.normalized_similarity(a, b)


def similar(text: str, canonical: str, aliases: Iterable[str] = ()) -> float:
    """Best similarity of `text` against the canonical name or any alias."""
    needle = normalize(text)
    return max(similarity(needle, normalize(c)) for c in [canonical, *aliases])


@dataclass
class MatchResult:
    is_match: bool
    item_id: Optional[str] = None
    display: Optional[str] = None
    confidence: float = 0.0
    match_type: str = "none"  # exact | alias | fuzzy | none
    already_claimed: bool = False


def check_answer(
    text: str,
    items: Sequence[Any],
    claimed_ids: Iterable[str] = (),
    threshold: float = DEFAULT_THRESHOLD,
) -> MatchResult:
    """
    Match free text against items exposing `id`, `display` and `aliases`.

    Exact display match wins, then exact alias, then the best fuzzy score at or
    above `threshold`. Claimed items still match so the caller can tell a
    duplicate from a miss (`already_claimed`).
    """
    needle = normalize(text)
    if not needle:
        return MatchResult(is_match=False)
    claimed = set(claimed_ids)

    def _hit(item: Any, confidence: float, match_type: str) -> MatchResult:
        if item.id in claimed:
            return MatchResult(False, item.id, item.display, confidence, match_type, already_claimed=True)
        return MatchResult(True, item.id, item.display, confidence, match_type)

    for item in items:
        if normalize(item.display) == needle:
            return _hit(item, 1.0, "exact")
    for item in items:
        if any(normalize(alias) == needle for alias in item.aliases):
            return _hit(item, 1.0, "alias")

    best: Optional[Any] = None
    best_score = 0.0
    for item in items:
        score = max(similarity(needle, normalize(c)) for c in [item.display, *item.aliases])
        if score > best_score:
            best, best_score = item, score
    if best is not None and best_score >= threshold:
        return _hit(best, best_score, "fuzzy")
    return MatchResult(is_match=False, confidence=best_score)


def answer_matches(text: str, answer: str, aliases: Iterable[str] = (), threshold: float = DEFAULT_THRESHOLD) -> bool:
    if not normalize(text):
        return False
    return similar(text, answer, aliases) >= threshold
