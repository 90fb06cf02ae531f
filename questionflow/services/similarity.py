"""
Doubt Similarity & Topic Extraction for QuestionFlow

Two near-identical questions ("What is recursion?" / "what is recursion")
should fold into one doubt on the instructor's board.  Matching is a
deterministic lexical score:

  1. Normalise: lower-case, strip punctuation, drop stop words,
     fold simple plural / -ing / -ed endings.
  2. Score: Jaccard overlap of the two token sets (0-1).
  3. Similar when score >= threshold.  Two questions made only of stop words
     are similar only if their normalised text is identical.

Candidates are the session's canonical doubts only; results are sorted by
score (desc), then creation time (asc), so on a tie the earliest doubt wins.
"""
from __future__ import annotations

import re
from dataclasses import dataclass
from typing import FrozenSet, List

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from questionflow.db.models import Doubt

_WORD_RE = re.compile(r"[a-z0-9+#]+")

STOP_WORDS = frozenset("""
a an the is are was were be been being am do does did doing have has had
i me my we our you your he she it its they them their this that these those
what which who whom whose why how when where there here
can could should would will shall may might must
of in on at to for from by with about into over under between through
and or but if then so than too very just also not no
please pls sir maam mam teacher explain again understand understood
someone anyone get got know
""".split())

# Subject keywords checked first when guessing a doubt's topic.
TOPIC_KEYWORDS = {
    "recursion": ["recursion", "recursive", "base case", "call stack"],
    "loops": ["loop", "for loop", "while loop", "iteration", "iterate"],
    "functions": ["function", "method", "parameter", "argument", "return value"],
    "arrays": ["array", "list", "index", "element"],
    "sorting": ["sort", "sorting", "quicksort", "mergesort", "bubble sort"],
    "searching": ["search", "binary search", "linear search", "lookup"],
    "complexity": ["big o", "complexity", "time complexity", "space complexity"],
    "pointers": ["pointer", "reference", "address", "memory"],
    "classes": ["class", "object", "inheritance", "polymorphism", "oop"],
    "data structures": ["stack", "queue", "linked list", "tree", "graph", "hash"],
    "databases": ["sql", "database", "query", "table", "join"],
    "calculus": ["derivative", "integral", "limit", "differentiation"],
    "algebra": ["equation", "variable", "matrix", "polynomial"],
    "probability": ["probability", "random", "distribution", "expected value"],
}

DEFAULT_TOPIC = "General"


def normalize(text: str) -> str:
    return " ".join(_WORD_RE.findall(text.lower()))


_SIBILANT_PLURALS = ("sses", "xes", "zes", "ches", "shes")


def _stem(token: str) -> str:
    # "classes" -> "class", "cases" -> "case", "class" stays "class"
    if len(token) > 4 and token.endswith(_SIBILANT_PLURALS):
        return token[:-2]
    if token.endswith("ss"):
        return token
    for suffix in ("ing", "ed", "s"):
        if len(token) > len(suffix) + 2 and token.endswith(suffix):
            return token[: -len(suffix)]
    return token


def tokenize(text: str) -> FrozenSet[str]:
    """Content tokens of ``text`` (stop words removed, lightly stemmed)."""
    return frozenset(
        _stem(tok) for tok in _WORD_RE.findall(text.lower()) if tok not in STOP_WORDS
    )


def similarity_score(a: str, b: str) -> float:
    """Jaccard overlap between the content tokens of two questions."""
    tokens_a, tokens_b = tokenize(a), tokenize(b)
    if not tokens_a and not tokens_b:
        return 1.0 if normalize(a) == normalize(b) else 0.0
    union = tokens_a | tokens_b
    return len(tokens_a & tokens_b) / len(union)


def extract_topic(question: str) -> str:
    """Best-effort topic keyword for a question."""
    text = f" {normalize(question)} "
    for topic, keywords in TOPIC_KEYWORDS.items():
        for keyword in keywords:
            if f" {keyword}" in text:
                return topic

    content = [tok for tok in _WORD_RE.findall(question.lower())
               if tok not in STOP_WORDS and not tok.isdigit()]
    if not content:
        return DEFAULT_TOPIC
    # Longest word is usually the most specific; first one wins on ties
    return max(content, key=len)


@dataclass
class SimilarityMatch:
    doubt: Doubt
    score: float


class SimilarityMatcher:
    """Finds canonical doubts in a session that match a new question."""

    def __init__(self, threshold: float = 0.6, max_candidates: int = 500):
        self.threshold = threshold
        self.max_candidates = max_candidates

    def rank(self, question: str, candidates: List[Doubt]) -> List[SimilarityMatch]:
        """Score ``candidates`` against ``question``; keep those above threshold."""
        matches = []
        for doubt in candidates:
            if doubt.merged_with is not None:
                continue
            score = similarity_score(question, doubt.question)
            if score >= self.threshold:
                matches.append(SimilarityMatch(doubt=doubt, score=score))
        matches.sort(key=lambda m: (-m.score, m.doubt.created_at, m.doubt.id))
        return matches

    async def find_similar(
        self, db: AsyncSession, session_id: str, question: str,
    ) -> List[Doubt]:
        """Canonical doubts in ``session_id`` similar to ``question``, best first."""
        result = await db.execute(
            select(Doubt)
            .where(Doubt.session_id == session_id, Doubt.merged_with.is_(None))
            .order_by(Doubt.created_at.desc())
            .limit(self.max_candidates)
        )
        candidates = list(result.scalars().all())
        return [m.doubt for m in self.rank(question, candidates)]
