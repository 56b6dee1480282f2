"""
agentmem keywords -- token extraction, importance and category heuristics.

Keyword matching is the lexical half of recall and the only recall signal
when no embedding provider is configured, so the same ``extract_keywords``
runs at store time and at query time.
"""

import re
from datetime import datetime
from typing import Dict, List, Sequence

from agentmem.types import Importance

MAX_KEYWORDS = 30

_NON_WORD_RE = re.compile(r"[^a-z0-9\s'-]")
_WHITESPACE_RE = re.compile(r"\s+")

STOP_WORDS = frozenset({
    "the", "a", "an", "and", "or", "but", "in", "on", "at", "to", "for",
    "of", "with", "by", "from", "is", "it", "this", "that", "was", "be",
    "are", "were", "been", "being", "have", "has", "had", "do", "does",
    "did", "will", "would", "could", "should", "may", "might", "can",
    "shall", "not", "no", "nor", "if", "then", "than", "so", "as", "up",
    "out", "about", "into", "over", "after", "before", "between", "each",
    "all", "both", "few", "more", "most", "other", "some", "such", "only",
    "own", "same", "too", "very", "just", "because", "also", "its", "my",
    "me", "we", "us", "our", "your", "you", "he", "she", "him", "her",
    "his", "they", "them", "their", "what", "which", "who", "how", "when",
    "where", "why", "here", "there", "i", "am", "get", "got", "go", "went",
    "say", "said", "one", "two", "three", "still", "well", "back", "even",
    "new", "want", "now", "like", "make", "know", "take", "come", "think",
    "see", "need", "look", "give", "tell", "help", "let", "try", "ask",
})


def extract_keywords(text: str, limit: int = MAX_KEYWORDS) -> List[str]:
    """Lower-cased tokens longer than two chars, minus stop words.

    Order of first appearance is kept and duplicates dropped, then the list
    is capped at ``limit``.

    >>> extract_keywords("The dentist moved to Friday, dentist confirmed")
    ['dentist', 'moved', 'friday', 'confirmed']
    """
    if not text:
        return []
    cleaned = _NON_WORD_RE.sub(" ", text.lower())
    seen: Dict[str, None] = {}
    for word in _WHITESPACE_RE.split(cleaned):
        if len(word) > 2 and word not in STOP_WORDS:
            seen.setdefault(word, None)
    return list(seen)[:limit]


def classify_importance(message: str, levels: Dict[str, Sequence[str]]) -> Importance:
    """Critical if any critical phrase occurs in message, else high, else medium."""
    lower = message.lower()
    if any(kw in lower for kw in levels.get("critical", ())):
        return Importance.CRITICAL
    if any(kw in lower for kw in levels.get("high", ())):
        return Importance.HIGH
    return Importance.MEDIUM


# First match wins, in this order.
_CATEGORY_RULES = (
    ("communication_draft", ("draft", "respond", "reply", "text")),
    ("schedule", ("schedule", "week", "pickup", "drop")),
    ("financial", ("support", "money", "pay", "expense")),
    ("wedding", ("vendor", "wedding", "venue")),
    ("development", ("bug", "feature", "code", "deploy")),
    ("research", ("research", "analysis", "market")),
)


def infer_category(message: str) -> str:
    lower = message.lower()
    for category, needles in _CATEGORY_RULES:
        if any(n in lower for n in needles):
            return category
    return "conversation"


def format_memories_as_context(memories) -> str:
    """Render recalled entries as a prompt section. Empty input gives ''."""
    if not memories:
        return ""
    sections = ["## RELEVANT CONTEXT FROM PREVIOUS CONVERSATIONS\n"]
    for mem in memories:
        created: datetime = mem.created_at
        date = f"{created:%b} {created.day}, {created.year}"
        tag = " [IMPORTANT]" if mem.importance == Importance.CRITICAL else ""
        sections.append(f"[{date}]{tag} ({mem.category})\n{mem.content}\n")
    return "\n".join(sections)
