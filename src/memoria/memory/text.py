"""Text normalisation and query tokenisation helpers.

Content is cleaned before it is stored or embedded; queries are split into
the lowercase terms used by keyword search and relevance ranking.
"""

from __future__ import annotations

import re

# Maximum stored content length (1 MB).  Longer input is truncated on a
# codepoint boundary.
MAX_TEXT_BYTES: int = 1_048_576

# Query terms this short carry no signal for matching.
MIN_TERM_LENGTH: int = 3

_TERM_PATTERN = re.compile(r"[\w']+", re.UNICODE)
_CONTEXT_HINT_PATTERN = re.compile(r"\bcontext:([\w-]+)", re.IGNORECASE)


def preprocess_text(text: str | None) -> str:
    """Sanitize and normalize *text* before storing or embedding it.

    * ``None`` or empty string -> returns ``""``
    * NUL bytes (``\\x00``) which PostgreSQL rejects are removed
    * Consecutive whitespace collapses into single spaces
    * Leading / trailing whitespace is stripped
    * Output is truncated to :data:`MAX_TEXT_BYTES` UTF-8 bytes
    """
    if not text:
        return ""
    cleaned = re.sub(r"\s+", " ", text.replace("\x00", "")).strip()
    encoded = cleaned.encode("utf-8")
    if len(encoded) > MAX_TEXT_BYTES:
        cleaned = encoded[:MAX_TEXT_BYTES].decode("utf-8", errors="ignore").rstrip()
    return cleaned


def query_terms(query: str | None) -> list[str]:
    """Return the distinct lowercase terms of *query* that are long enough to match on.

    ``context:<label>`` hints are not terms and are removed first.  Order of
    first appearance is preserved.
    """
    if not query:
        return []
    stripped = _CONTEXT_HINT_PATTERN.sub(" ", query.lower())
    terms: list[str] = []
    for term in _TERM_PATTERN.findall(stripped):
        term = term.strip("'")
        if len(term) >= MIN_TERM_LENGTH and term not in terms:
            terms.append(term)
    return terms


def split_context_hints(query: str) -> tuple[str, list[str]]:
    """Separate ``context:<label>`` hints from *query*.

    Returns:
        The query with hints removed (whitespace collapsed) and the hint
        labels in order of appearance, lowercased and de-duplicated.
    """
    labels: list[str] = []
    for label in _CONTEXT_HINT_PATTERN.findall(query):
        label = label.lower()
        if label not in labels:
            labels.append(label)
    clean = preprocess_text(_CONTEXT_HINT_PATTERN.sub(" ", query))
    return clean, labels
