"""Lexical tokenization for keyword search."""

from __future__ import annotations

import re
import unicodedata

_WORD_RE = re.compile(r"\w+", re.UNICODE)

STOP_WORDS: frozenset[str] = frozenset(
    """
    a about above after again against all am an and any are as at be because been
    before being below between both but by can could did do does doing down during
    each few for from further had has have having he her here hers herself him
    himself his how i if in into is it its itself just me more most my myself no
    nor not now of off on once only or other our ours ourselves out over own re
    same she should so some such than that the their theirs them themselves then
    there these they this those through to too under until up very was we were
    what when where which while who whom why will with would you your yours
    yourself yourselves fwd fw
    """.split()
)


def tokenize(text: str | None) -> list[str]:
    """Case-folded, stop-word filtered terms in first-occurrence order."""

    if not text:
        return []

    normalized = unicodedata.normalize("NFKC", text).casefold()
    seen: set[str] = set()
    terms: list[str] = []
    for term in _WORD_RE.findall(normalized):
        if len(term) < 2 or term in STOP_WORDS or term.replace("_", "") == "":
            continue
        if term not in seen:
            seen.add(term)
            terms.append(term)
    return terms


def build_index_text(subject: str | None, body: str | None, sender: str | None = None) -> str:
    """Stable text contract used for both lexical terms and embeddings."""

    parts = [p.strip() for p in (subject or "", sender or "", body or "") if p and p.strip()]
    return "\n".join(parts)
