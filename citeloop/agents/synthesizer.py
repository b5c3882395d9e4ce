from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime
from enum import StrEnum
from typing import Any, Sequence

from loguru import logger

from citeloop.agents.base import LLMAgent
from citeloop.config import settings
from citeloop.errors import PreconditionError, SynthesisError
from citeloop.models.documents import CanonicalDocument, Draft
from citeloop.models.tasks import WorkerResult
from citeloop.research_core import citations as citation_utils
from citeloop.research_core.ranking import RankingEngine
from citeloop.services.prompt_store import render_prompt
from citeloop.tools.web_utils import dedupe_key_for_url

WORKER_CONFIDENCE_WEIGHT = 0.1


class SynthesisMode(StrEnum):
    WORKERS = "workers"
    ITERATIVE = "iterative"


@dataclass(slots=True)
class SynthesisResult:
    """A draft plus the exact indexed evidence list its `[Source N]` markers refer to."""

    draft: Draft
    evidence: list[CanonicalDocument] = field(default_factory=list)


def no_results_draft(goal: str) -> Draft:
    return Draft(text=f"No research results found for: {goal}", citations=[], confidence=0.0)


def merge_candidates(documents: Sequence[CanonicalDocument]) -> list[CanonicalDocument]:
    """Dedup by normalized URL, keeping the higher-scored copy or the one with content."""
    kept: dict[str, CanonicalDocument] = {}
    for doc in documents:
        key = dedupe_key_for_url(doc.url)
        current = kept.get(key)
        if current is None:
            kept[key] = doc
            continue
        gains_content = doc.has_content and not current.has_content
        if doc.score > current.score or gains_content:
            kept[key] = doc
    return list(kept.values())


class Synthesizer(LLMAgent):
    """Writes the cited narrative from whatever evidence the research phase produced."""

    name = "synthesizer"

    def __init__(
        self,
        model: str | None = None,
        client: Any | None = None,
        *,
        max_sources: int | None = None,
        max_tokens: int | None = None,
        ranking: RankingEngine | None = None,
    ):
        super().__init__(model=model, client=client)
        self.ranking = ranking or RankingEngine()
        self.max_sources = max(int(max_sources or settings.max_sources_for_synthesis), 1)
        self.max_tokens = max(int(max_tokens or settings.synthesis_max_tokens), 500)

    def rank_for_synthesis(
        self,
        documents: Sequence[CanonicalDocument],
        worker_results: Sequence[WorkerResult] = (),
        *,
        now: datetime | None = None,
    ) -> list[CanonicalDocument]:
        confidence_by_url: dict[str, float] = {}
        for result in worker_results:
            for doc in result.documents:
                key = dedupe_key_for_url(doc.url)
                confidence_by_url[key] = confidence_by_url.get(key, 0.0) + result.confidence

        def synthesis_score(doc: CanonicalDocument) -> float:
            boost = confidence_by_url.get(dedupe_key_for_url(doc.url), 0.0) * WORKER_CONFIDENCE_WEIGHT
            return doc.score + boost

        ranked = self.ranking.rank(merge_candidates(documents), now=now)
        ordered = sorted(ranked, key=synthesis_score, reverse=True)
        return ordered[: self.max_sources]

    @staticmethod
    def _worker_summaries(worker_results: Sequence[WorkerResult]) -> str:
        if not worker_results:
            return "none"
        return "\n".join(
            f"- {r.aspect} (confidence {r.confidence:.2f}): {r.summary}" for r in worker_results
        )

    async def _generate(
        self,
        goal: str,
        evidence: list[CanonicalDocument],
        worker_results: Sequence[WorkerResult],
        revision_instructions: Sequence[str],
        previous_draft: Draft | None,
    ) -> str:
        evidence_block = citation_utils.build_evidence_block(evidence)
        if revision_instructions and previous_draft is not None:
            user = render_prompt(
                "synthesizer.revision_user",
                goal=goal,
                evidence_block=evidence_block,
                source_count=len(evidence),
                previous_draft=previous_draft.text,
                instructions="\n".join(f"- {item}" for item in revision_instructions),
            )
        else:
            user = render_prompt(
                "synthesizer.user",
                goal=goal,
                evidence_block=evidence_block,
                source_count=len(evidence),
                worker_summaries=self._worker_summaries(worker_results),
                instructions="\n".join(f"- {item}" for item in revision_instructions) or "- none",
            )
        try:
            text = await self._complete(
                "synthesizer.draft",
                system=render_prompt("synthesizer.system", today_iso=date.today().isoformat()),
                user=user,
                max_tokens=self.max_tokens,
            )
        except Exception as exc:
            raise SynthesisError(f"Draft generation failed: {exc}", cause=exc) from exc
        if not text.strip():
            raise SynthesisError("Draft generation returned no text")
        return text

    async def synthesize(
        self,
        goal: str,
        *,
        mode: SynthesisMode = SynthesisMode.WORKERS,
        worker_results: Sequence[WorkerResult] = (),
        all_sources: Sequence[CanonicalDocument] = (),
        revision_instructions: Sequence[str] = (),
        previous_draft: Draft | None = None,
    ) -> SynthesisResult:
        """Produce a draft and the evidence list it cites.

        Raises PreconditionError when iterative mode has no evidence at all, and
        SynthesisError when the LLM call fails.
        """
        candidates: list[CanonicalDocument] = list(all_sources)
        for result in worker_results:
            candidates.extend(result.documents)

        if not candidates:
            if mode == SynthesisMode.ITERATIVE:
                raise PreconditionError("No evidence available")
            logger.info(f"No worker documents for '{goal}'; returning placeholder draft")
            return SynthesisResult(draft=no_results_draft(goal), evidence=[])

        evidence = self.rank_for_synthesis(candidates, worker_results)
        raw_text = await self._generate(
            goal, evidence, worker_results, revision_instructions, previous_draft
        )
        text = citation_utils.normalize_citation_markers(raw_text)
        # `evidence` is frozen from here on; marker N means evidence[N - 1]
        citations = citation_utils.extract_citations(text, evidence)
        confidence = citation_utils.calculate_confidence(evidence, citations, text)
        logger.info(
            f"Draft written: {len(text)} chars, {len(citations)} citations over "
            f"{len(evidence)} sources, confidence {confidence:.2f}"
        )
        return SynthesisResult(
            draft=Draft(text=text, citations=citations, confidence=confidence),
            evidence=evidence,
        )
