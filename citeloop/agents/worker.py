from __future__ import annotations

import asyncio
import re
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Sequence

from loguru import logger

from citeloop.config import settings
from citeloop.models.documents import CanonicalDocument
from citeloop.models.tasks import ResearchTask, WorkerResult
from citeloop.research_core.ranking import (
    collapse_canonical,
    days_since_published,
    dedupe_by_content_hash,
)
from citeloop.tools.web_utils import dedupe_key_for_url

PROVIDER_SCORE_WEIGHT = 0.4
NEUTRAL_PROVIDER_CONTRIBUTION = 0.3
TITLE_KEYWORD_BONUS = 0.2
EXCERPT_KEYWORD_BONUS = 0.1
KEYWORD_BONUS_CAP = 0.3
RECENCY_WEIGHT = 0.2
RECENCY_WINDOW_DAYS = 365.0
CONTENT_BONUS = 0.1
SUMMARY_SOURCE_NAMES = 3


@dataclass(slots=True)
class ScoredCandidate:
    document: CanonicalDocument
    score: float


def _aspect_keywords(aspect: str) -> list[str]:
    return [w for w in re.findall(r"[a-z0-9]+", aspect.lower()) if len(w) > 2]


def score_candidate(
    doc: CanonicalDocument,
    aspect: str,
    *,
    now: datetime | None = None,
) -> float:
    """Provider score, aspect keyword hits, recency and content presence."""
    if doc.provider_score is not None:
        score = doc.provider_score * PROVIDER_SCORE_WEIGHT
    elif doc.normalized_score is not None:
        score = doc.normalized_score * PROVIDER_SCORE_WEIGHT
    else:
        score = NEUTRAL_PROVIDER_CONTRIBUTION

    keywords = _aspect_keywords(aspect)
    if keywords:
        title = (doc.title or "").lower()
        excerpt = (doc.excerpt or "").lower()
        keyword_bonus = 0.0
        if any(k in title for k in keywords):
            keyword_bonus += TITLE_KEYWORD_BONUS
        if any(k in excerpt for k in keywords):
            keyword_bonus += EXCERPT_KEYWORD_BONUS
        score += min(keyword_bonus, KEYWORD_BONUS_CAP)

    days = days_since_published(doc, now)
    if days is not None:
        score += max(0.0, 1.0 - days / RECENCY_WINDOW_DAYS) * RECENCY_WEIGHT

    if doc.has_content:
        score += CONTENT_BONUS
    return score


def worker_confidence(selected: Sequence[ScoredCandidate], target: int) -> float:
    if not selected:
        return 0.0
    count_term = min(len(selected) / max(target, 1), 1.0) * 0.4
    avg_score = min(sum(c.score for c in selected) / len(selected), 1.0)
    content_ratio = sum(1 for c in selected if c.document.has_content) / len(selected)
    return round(min(count_term + avg_score * 0.3 + content_ratio * 0.3, 1.0), 4)


def summarize(aspect: str, documents: Sequence[CanonicalDocument]) -> str:
    if not documents:
        return f"No relevant documents found for {aspect}"
    hosts = list(dict.fromkeys(d.hostname for d in documents if d.hostname))
    named = ", ".join(hosts[:SUMMARY_SOURCE_NAMES])
    return (
        f"Found {len(documents)} relevant documents for {aspect} "
        f"from {len(hosts)} sources including {named}"
    )


class ResearchWorker:
    """Executes one task: search its queries, score, keep the best, enrich them."""

    name = "worker"

    def __init__(
        self,
        gateway,
        *,
        batch_size: int | None = None,
        batch_delay_seconds: float | None = None,
        max_results_per_query: int | None = None,
        top_documents: int | None = None,
    ):
        self.gateway = gateway
        self.batch_size = max(int(batch_size or settings.worker_batch_size), 1)
        self.batch_delay_seconds = max(
            float(
                batch_delay_seconds
                if batch_delay_seconds is not None
                else settings.worker_batch_delay_seconds
            ),
            0.0,
        )
        self.max_results_per_query = max(
            int(max_results_per_query or settings.worker_max_results_per_query), 1
        )
        self.top_documents = max(int(top_documents or settings.worker_top_documents), 1)

    async def _search_one(self, query: str, constraints: dict[str, Any]) -> list[CanonicalDocument]:
        try:
            return await self.gateway.search(
                query,
                max_results=self.max_results_per_query,
                include_domains=constraints.get("domains") or None,
                exclude_domains=constraints.get("exclude_domains") or None,
            )
        except Exception as exc:
            logger.warning(f"Worker query failed '{query}': {exc}")
            return []

    async def _run_queries(
        self, queries: list[str], constraints: dict[str, Any]
    ) -> list[CanonicalDocument]:
        found: list[CanonicalDocument] = []
        for start in range(0, len(queries), self.batch_size):
            if start > 0 and self.batch_delay_seconds:
                await asyncio.sleep(self.batch_delay_seconds)
            batch = queries[start : start + self.batch_size]
            for documents in await asyncio.gather(*(self._search_one(q, constraints) for q in batch)):
                found.extend(documents)
        return found

    def assess_candidates(
        self,
        documents: Sequence[CanonicalDocument],
        aspect: str,
        *,
        now: datetime | None = None,
    ) -> list[ScoredCandidate]:
        unique = collapse_canonical(dedupe_by_content_hash(documents))
        scored: list[ScoredCandidate] = []
        for doc in unique:
            scored.append(ScoredCandidate(document=doc, score=score_candidate(doc, aspect, now=now)))
        return sorted(scored, key=lambda c: c.score, reverse=True)

    async def _enrich(self, selected: list[ScoredCandidate]) -> list[ScoredCandidate]:
        urls = [c.document.url for c in selected if not c.document.has_content]
        if not urls:
            return selected
        try:
            enriched = await self.gateway.enrich(urls)
        except Exception as exc:
            logger.warning(f"Enrichment failed for {len(urls)} urls: {exc}")
            return selected
        by_url = {dedupe_key_for_url(doc.url): doc for doc in enriched if doc.has_content}
        merged: list[ScoredCandidate] = []
        for candidate in selected:
            filled = by_url.get(dedupe_key_for_url(candidate.document.url))
            if filled is None:
                merged.append(candidate)
                continue
            document = candidate.document.with_updates(
                content=filled.content,
                resolved_url=filled.resolved_url or candidate.document.resolved_url,
                canonical_url=filled.canonical_url or candidate.document.canonical_url,
                normalized_key=filled.normalized_key or candidate.document.normalized_key,
                excerpt=candidate.document.excerpt or filled.excerpt,
            )
            merged.append(ScoredCandidate(document=document, score=candidate.score + CONTENT_BONUS))
        return merged

    async def execute(
        self, task: ResearchTask, constraints: dict[str, Any] | None = None
    ) -> WorkerResult:
        found = await self._run_queries(task.queries, constraints or {})
        ranked = self.assess_candidates(found, task.aspect)
        selected = await self._enrich(ranked[: self.top_documents])
        documents = [
            c.document.with_updates(normalized_score=round(min(c.score, 1.0), 6)) for c in selected
        ]
        logger.info(
            f"Worker {task.id} ({task.aspect}): {len(found)} found, {len(documents)} selected"
        )
        return WorkerResult(
            task_id=task.id,
            aspect=task.aspect,
            documents=documents,
            summary=summarize(task.aspect, documents),
            confidence=worker_confidence(selected, self.top_documents),
            queries_executed=len(task.queries),
            documents_found=len(found),
            documents_selected=len(documents),
        )


async def run_workers(
    tasks: Sequence[ResearchTask],
    worker: ResearchWorker,
    *,
    max_parallel: int | None = None,
    constraints: dict[str, Any] | None = None,
) -> list[WorkerResult]:
    """Fan tasks out to concurrent workers and join in task order.

    Workers get an immutable snapshot of the task list; results are appended
    here by the coordinator, never by the workers themselves. A worker that
    raises contributes no result.
    """
    snapshot = tuple(tasks)
    semaphore = asyncio.Semaphore(max(int(max_parallel or settings.max_parallel_workers), 1))

    async def run_one(task: ResearchTask) -> WorkerResult:
        async with semaphore:
            return await worker.execute(task, constraints)

    outcomes = await asyncio.gather(*(run_one(t) for t in snapshot), return_exceptions=True)
    results: list[WorkerResult] = []
    for task, outcome in zip(snapshot, outcomes):
        if isinstance(outcome, BaseException):
            logger.error(f"Worker for task {task.id} failed: {outcome}")
            continue
        results.append(outcome)
    return results
