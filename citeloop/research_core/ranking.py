"""Dedup, canonical collapse, scoring and selection of candidate documents.

Steps always run in the same order: content-hash dedup, canonical URL collapse,
scoring, per-host cap (discovery only), truncation. The output order is the
index that `[Source N]` markers bind to downstream, so callers must not re-sort
a ranked list once citations have been extracted from it.
"""
from __future__ import annotations

import math
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Iterable, Sequence

from citeloop.config import settings
from citeloop.models.documents import CanonicalDocument
from citeloop.research_core.text import hash_content
from citeloop.tools.web_utils import dedupe_key_for_url, host_matches

NEUTRAL_PROVIDER_SCORE = 0.5
CONTENT_LENGTH_THRESHOLD = 1000
TITLE_LENGTH_THRESHOLD = 50
EXCERPT_LENGTH_THRESHOLD = 100
CONTENT_BONUS = 0.1
TITLE_BONUS = 0.05
EXCERPT_BONUS = 0.05


@dataclass(slots=True)
class RankingConfig:
    authority_domains: list[str] = field(default_factory=list)
    authority_bonus: float = 0.3
    recency_bonus: float = 0.2
    half_life_days: float = 90.0
    max_per_host: int = 3
    discovery_target: int = 16
    max_evidence: int = 50

    @classmethod
    def from_settings(cls) -> "RankingConfig":
        return cls(
            authority_domains=settings.authority_domain_list,
            authority_bonus=float(settings.authority_bonus),
            recency_bonus=float(settings.recency_bonus),
            half_life_days=max(float(settings.recency_half_life_days), 1.0),
            max_per_host=max(int(settings.max_per_host), 1),
            discovery_target=max(int(settings.discovery_target_count), 1),
            max_evidence=max(int(settings.max_evidence), 1),
        )


def parse_published(value: str | None) -> datetime | None:
    if not value:
        return None
    text = value.strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError:
        try:
            parsed = datetime.strptime(text[:10], "%Y-%m-%d")
        except ValueError:
            return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def days_since_published(doc: CanonicalDocument, now: datetime | None = None) -> float | None:
    published = parse_published(doc.published_at)
    if published is None:
        return None
    current = now or datetime.now(timezone.utc)
    return max((current - published).total_seconds() / 86400.0, 0.0)


def dedupe_by_content_hash(documents: Iterable[CanonicalDocument]) -> list[CanonicalDocument]:
    """Keep the first document per content hash; documents without content pass through."""
    seen: set[str] = set()
    kept: list[CanonicalDocument] = []
    for doc in documents:
        if doc.has_content:
            digest = hash_content(doc.content or "")
            if digest in seen:
                continue
            seen.add(digest)
        kept.append(doc)
    return kept


def _resolved_differs(doc: CanonicalDocument) -> bool:
    return bool(doc.resolved_url) and dedupe_key_for_url(doc.resolved_url or "") != dedupe_key_for_url(doc.url)


def normalized_key_for(doc: CanonicalDocument) -> str:
    """Identity of the page a document points at."""
    if doc.normalized_key:
        return doc.normalized_key
    if doc.canonical_url:
        return dedupe_key_for_url(doc.canonical_url)
    if _resolved_differs(doc):
        return dedupe_key_for_url(doc.resolved_url or "")
    return dedupe_key_for_url(doc.url)


def canonical_priority(doc: CanonicalDocument) -> int:
    if doc.canonical_url:
        return 3
    if _resolved_differs(doc):
        return 2
    return 1


def collapse_canonical(documents: Iterable[CanonicalDocument]) -> list[CanonicalDocument]:
    """One document per normalized key; groups keep first-appearance order."""
    winners: dict[str, CanonicalDocument] = {}
    for doc in documents:
        key = normalized_key_for(doc)
        current = winners.get(key)
        if current is None:
            winners[key] = doc
            continue
        challenger = (canonical_priority(doc), len(doc.content or ""))
        incumbent = (canonical_priority(current), len(current.content or ""))
        if challenger > incumbent:
            winners[key] = doc
    return [doc.with_updates(normalized_key=key) for key, doc in winners.items()]


def normalize_provider_scores(documents: Sequence[CanonicalDocument]) -> list[float]:
    """Min-max scale provider scores to [0, 1]; missing scores become neutral."""
    present = [d.provider_score for d in documents if d.provider_score is not None]
    if not present:
        return [NEUTRAL_PROVIDER_SCORE] * len(documents)
    low, high = min(present), max(present)
    span = high - low
    scaled: list[float] = []
    for doc in documents:
        if doc.provider_score is None:
            scaled.append(NEUTRAL_PROVIDER_SCORE)
        elif span <= 0:
            scaled.append(1.0)
        else:
            scaled.append((doc.provider_score - low) / span)
    return scaled


def is_authoritative(hostname: str, authority_domains: Sequence[str]) -> bool:
    return any(host_matches(hostname, domain) for domain in authority_domains)


def recency_bonus(days: float | None, *, weight: float, half_life_days: float) -> float:
    if days is None:
        return 0.0
    return weight * math.pow(0.5, days / half_life_days)


def score_document(
    doc: CanonicalDocument,
    *,
    base: float,
    config: RankingConfig,
    now: datetime | None = None,
) -> float:
    score = base
    if is_authoritative(doc.hostname, config.authority_domains):
        score += config.authority_bonus
    score += recency_bonus(
        days_since_published(doc, now),
        weight=config.recency_bonus,
        half_life_days=config.half_life_days,
    )
    if len(doc.content or "") > CONTENT_LENGTH_THRESHOLD:
        score += CONTENT_BONUS
    if len(doc.title or "") > TITLE_LENGTH_THRESHOLD:
        score += TITLE_BONUS
    if len(doc.excerpt or "") > EXCERPT_LENGTH_THRESHOLD:
        score += EXCERPT_BONUS
    return score


def cap_per_host(documents: Iterable[CanonicalDocument], max_per_host: int) -> list[CanonicalDocument]:
    counts: dict[str, int] = {}
    kept: list[CanonicalDocument] = []
    for doc in documents:
        host = doc.hostname or dedupe_key_for_url(doc.url).split("/", 1)[0]
        if counts.get(host, 0) >= max_per_host:
            continue
        counts[host] = counts.get(host, 0) + 1
        kept.append(doc)
    return kept


class RankingEngine:
    """Runs the full dedup and ranking pipeline with one configuration."""

    def __init__(self, config: RankingConfig | None = None):
        self.config = config or RankingConfig.from_settings()

    def rank(
        self,
        documents: Iterable[CanonicalDocument],
        *,
        discovery: bool = False,
        limit: int | None = None,
        now: datetime | None = None,
    ) -> list[CanonicalDocument]:
        unique = collapse_canonical(dedupe_by_content_hash(documents))
        if discovery:
            bases = normalize_provider_scores(unique)
        else:
            bases = [1.0] * len(unique)

        scored: list[CanonicalDocument] = []
        for doc, base in zip(unique, bases):
            score = score_document(doc, base=base, config=self.config, now=now)
            if discovery:
                score = min(score, 1.0)
            scored.append(doc.with_updates(normalized_score=round(score, 6)))

        # sorted() is stable, so equal scores keep input order
        ordered = sorted(scored, key=lambda d: d.normalized_score or 0.0, reverse=True)
        if discovery:
            ordered = cap_per_host(ordered, self.config.max_per_host)
            cap = limit if limit is not None else self.config.discovery_target
        else:
            cap = limit if limit is not None else self.config.max_evidence
        return ordered[: max(cap, 0)]
