from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from typing import Callable, Generic, Iterable, Sequence, TypeVar

from grantforge.proposal import KnowledgeChunk, Partner

logger = logging.getLogger("grantforge.ranking")

KEYWORD_MATCH_WEIGHT = 10
TOKEN_MATCH_WEIGHT = 1
MIN_TOKEN_LENGTH = 4
MAX_MATCH_REASONS = 3

TOKEN_SPLIT_PATTERN = re.compile(r"\W+")

SMART_KEYWORD_PATTERNS = (
    re.compile(r"KA\d{3}(?:-(?:ADU|VET|YOU|HED))?", re.IGNORECASE),
    re.compile(r"Erasmus\+", re.IGNORECASE),
    re.compile(r"Horizon Europe", re.IGNORECASE),
    re.compile(r"Creative Europe", re.IGNORECASE),
    re.compile(r"Adult Education", re.IGNORECASE),
    re.compile(r"Vocational Education", re.IGNORECASE),
    re.compile(r"High Density", re.IGNORECASE),
    re.compile(r"Inclusion", re.IGNORECASE),
    re.compile(r"Digital", re.IGNORECASE),
    re.compile(r"Sustainable", re.IGNORECASE),
    re.compile(r"Innovation", re.IGNORECASE),
    re.compile(r"Mobility", re.IGNORECASE),
)
HIGH_VALUE_KEYWORDS = ("Impact", "Relevance", "Needs analysis", "Priority", "Outcome")

T = TypeVar("T")


@dataclass
class ScoredCandidate(Generic[T]):
    candidate: T
    relevance_score: int = 0
    match_reasons: list[str] = field(default_factory=list)


def tokenize_context(context: str) -> list[str]:
    """Unique lowercase words longer than three characters, in first-seen order."""
    tokens = (token for token in TOKEN_SPLIT_PATTERN.split(context.lower()) if len(token) >= MIN_TOKEN_LENGTH)
    return list(dict.fromkeys(tokens))


def score_candidate(
    context: str,
    tokens: Sequence[str],
    keywords: Iterable[str],
    texts: Iterable[str],
) -> tuple[int, list[str]]:
    lowered_context = context.lower()
    score = 0
    reasons: list[str] = []

    for keyword in dict.fromkeys(keyword.strip() for keyword in keywords):
        if keyword and keyword.lower() in lowered_context:
            score += KEYWORD_MATCH_WEIGHT
            reasons.append(f"Keyword match: {keyword}")

    # Each text field counts on its own, so a token found in both description
    # and experience scores twice.
    for text in texts:
        lowered_text = (text or "").lower()
        if not lowered_text:
            continue
        score += TOKEN_MATCH_WEIGHT * sum(1 for token in tokens if token in lowered_text)

    return score, reasons[:MAX_MATCH_REASONS]


def rank_candidates(
    context: str,
    candidates: Sequence[T],
    *,
    keywords_of: Callable[[T], Iterable[str]],
    texts_of: Callable[[T], Iterable[str]],
) -> list[ScoredCandidate[T]]:
    """Score candidates against ``context`` and sort them, best first.

    Equal scores keep their input order.
    """
    context = context or ""
    tokens = tokenize_context(context)
    scored: list[ScoredCandidate[T]] = []
    for candidate in candidates:
        if not context.strip():
            scored.append(ScoredCandidate(candidate))
            continue
        score, reasons = score_candidate(context, tokens, keywords_of(candidate), texts_of(candidate))
        scored.append(ScoredCandidate(candidate, score, reasons))
    return sorted(scored, key=lambda item: item.relevance_score, reverse=True)


def rank_partners(context: str, partners: Sequence[Partner]) -> list[ScoredCandidate[Partner]]:
    return rank_candidates(
        context,
        partners,
        keywords_of=lambda partner: partner.keywords,
        texts_of=lambda partner: (partner.description, partner.experience),
    )


def rank_knowledge(context: str, chunks: Sequence[KnowledgeChunk]) -> list[ScoredCandidate[KnowledgeChunk]]:
    return rank_candidates(
        context,
        chunks,
        keywords_of=lambda chunk: chunk.keywords,
        texts_of=lambda chunk: (chunk.content,),
    )


def select_grounding_chunks(context: str, chunks: Sequence[KnowledgeChunk], top_k: int) -> list[KnowledgeChunk]:
    if top_k < 1 or not chunks:
        return []
    ranked = [item for item in rank_knowledge(context, chunks) if item.relevance_score > 0]
    selected = [item.candidate for item in ranked[:top_k]]
    logger.info(
        "grounding_selected",
        extra={
            "event": "grounding_selected",
            "available_chunks": len(chunks),
            "selected_chunks": len(selected),
            "top_scores": [item.relevance_score for item in ranked[:top_k]],
        },
    )
    return selected


def render_grounding(chunks: Sequence[KnowledgeChunk]) -> str:
    blocks = [
        f"--- EXPERT KNOWLEDGE FROM: {chunk.sourceName} ({chunk.type or 'Guideline'}) ---\n{chunk.content.strip()}"
        for chunk in chunks
    ]
    return "\n\n".join(blocks)


def extract_smart_keywords(text: str) -> list[str]:
    """Programme codes and topic words worth matching guideline fragments against."""
    if not text:
        return []
    keywords: dict[str, None] = {}
    for pattern in SMART_KEYWORD_PATTERNS:
        for match in pattern.finditer(text):
            keywords.setdefault(match.group(0), None)
    lowered = text.lower()
    for keyword in HIGH_VALUE_KEYWORDS:
        if keyword.lower() in lowered:
            keywords.setdefault(keyword, None)
    return list(keywords)
