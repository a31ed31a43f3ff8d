"""
FAQ Matcher.

Keyword scoring over FAQ entries already narrowed to the caller's scope
and ordered by scope priority (1=doctor, 2=clinic, 3=organization).
"""

import logging
from dataclasses import dataclass, field
from typing import Optional

logger = logging.getLogger(__name__)

KEYWORD_WEIGHT = 1.0
QUESTION_WORD_WEIGHT = 0.5
MIN_WORD_LENGTH = 3


@dataclass
class FAQEntry:
    id: str
    question: str
    answer: str
    keywords: list[str] = field(default_factory=list)
    scope_priority: int = 3
    display_order: int = 0


def normalize_query(text: str) -> str:
    return " ".join(text.lower().split())


def score_entry(query: str, entry: FAQEntry) -> float:
    """
    Score one entry against a normalized query.

    Each keyword contained in the query counts 1, and each query word of
    three or more characters found in the question counts 0.5.
    """
    score = 0.0
    for keyword in entry.keywords:
        if keyword and keyword.lower() in query:
            score += KEYWORD_WEIGHT

    question = entry.question.lower()
    for word in query.split():
        if len(word) >= MIN_WORD_LENGTH and word in question:
            score += QUESTION_WORD_WEIGHT
    return score


def match_faq(query: str, entries: list[FAQEntry]) -> Optional[FAQEntry]:
    """
    Best-scoring entry, or None when nothing scores above zero.

    Entries are ranked by scope priority first, so on a tie the more
    specific (earlier) entry wins.
    """
    normalized = normalize_query(query)
    if not normalized:
        return None

    ordered = sorted(entries, key=lambda e: (e.scope_priority, e.display_order))
    best: Optional[FAQEntry] = None
    best_score = 0.0
    for entry in ordered:
        score = score_entry(normalized, entry)
        if score > best_score:
            best, best_score = entry, score

    if best is not None:
        logger.debug(f"FAQ match {best.id} score={best_score}")
    return best
