"""Deterministic heuristics used when the LLM is unavailable."""

from __future__ import annotations

import re
from collections.abc import Iterable

from ..core.models import MessageAnalysis, PersistedMessage
from .priority import score_priority

URGENT_THRESHOLD = 8

_KEYWORD_PATTERNS = (
    re.compile(r"\burgent\b", re.IGNORECASE),
    re.compile(r"\basap\b", re.IGNORECASE),
    re.compile(r"\baction required\b", re.IGNORECASE),
    re.compile(r"\bplease\b", re.IGNORECASE),
)
_URGENT_PATTERN = re.compile(r"\b(urgent|asap|immediately)\b", re.IGNORECASE)

# First matching category wins.
_CATEGORY_KEYWORDS: tuple[tuple[str, tuple[str, ...]], ...] = (
    ("meeting", ("meeting", "calendar", "invite", "schedule", "zoom", "call")),
    ("finance", ("invoice", "payment", "receipt", "billing", "statement")),
    ("project", ("project", "milestone", "release", "sprint", "deliverable")),
    ("newsletter", ("newsletter", "unsubscribe", "digest", "weekly update")),
    ("notification", ("notification", "alert", "no-reply", "noreply")),
)


def analyze_heuristically(message: PersistedMessage) -> MessageAnalysis:
    """Derive tags from the subject, sender and plain-text body."""
    body_text = message.body_text or ""
    action_items = [_normalise_line(line) for line in _collect_action_items(body_text)]
    filtered_actions = tuple(item for item in action_items if item)[:5]

    priority = score_priority(message, filtered_actions)
    urgent = priority >= URGENT_THRESHOLD or bool(
        _URGENT_PATTERN.search(message.subject or "")
    )
    return MessageAnalysis(
        priority=priority,
        urgent=urgent,
        category=classify(message),
        action_items=filtered_actions,
    )


def classify(message: PersistedMessage) -> str:
    """Return the first keyword category matching the message."""
    haystack = " ".join(
        (message.subject or "", message.sender or "", (message.body_text or "")[:1000])
    ).lower()
    for category, keywords in _CATEGORY_KEYWORDS:
        if any(keyword in haystack for keyword in keywords):
            return category
    return "general"


def _collect_action_items(body_text: str) -> Iterable[str]:
    for line in body_text.splitlines():
        cleaned = line.strip()
        if not cleaned:
            continue
        if cleaned.lower().startswith(("please", "todo", "action", "kindly")):
            yield cleaned
            continue
        if any(pattern.search(cleaned) for pattern in _KEYWORD_PATTERNS):
            yield cleaned


def _normalise_line(line: str) -> str:
    line = line.strip()
    return re.sub(r"\s+", " ", line)


__all__ = ["analyze_heuristically", "classify"]
