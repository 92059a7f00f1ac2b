from __future__ import annotations

import re

# Keyword index over node content: lowercase word tokens longer than two
# characters, minus common function words.
_WORD_RE = re.compile(r"\w+")

_STOP = {
    "the",
    "and",
    "but",
    "for",
    "with",
    "are",
    "was",
    "were",
    "been",
    "being",
    "have",
    "has",
    "had",
    "does",
    "did",
    "will",
    "would",
    "could",
    "should",
    "may",
    "might",
    "must",
    "can",
    "this",
    "that",
    "these",
    "those",
    "you",
    "she",
    "they",
    "him",
    "her",
    "them",
}


def extract_keywords(text: str) -> list[str]:
    """Return unique keywords in first-seen order."""
    out: list[str] = []
    seen: set[str] = set()
    for m in _WORD_RE.finditer(text.lower()):
        w = m.group(0)
        if len(w) <= 2 or w in _STOP or w in seen:
            continue
        seen.add(w)
        out.append(w)
    return out


def norm_label(text: str) -> str:
    # Normalize for stable matching.
    return re.sub(r"\s+", " ", text.strip()).lower()


def mentions(text: str | None, *phrases: str) -> bool:
    """Case/whitespace-insensitive match of any phrase in text, on word boundaries."""
    if not text:
        return False
    hay = norm_label(text)
    for p in phrases:
        if not p.strip():
            continue
        if re.search(rf"(?<!\w){re.escape(norm_label(p))}(?!\w)", hay):
            return True
    return False
