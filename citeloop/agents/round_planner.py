from __future__ import annotations

import asyncio
import json
from dataclasses import dataclass, field
from datetime import date
from typing import Any, AsyncGenerator

from loguru import logger

from citeloop.agents.base import LLMAgent
from citeloop.config import settings
from citeloop.llm_client import get_planner_model
from citeloop.models.documents import CanonicalDocument, Finding, FindingMetadata, utc_now_iso
from citeloop.models.events import PipelineEvent
from citeloop.research_core.ranking import RankingEngine
from citeloop.services import streaming
from citeloop.services.prompt_store import render_prompt
from citeloop.tools.search_gateway import dedupe_documents

ROUND_QUERY_LIMITS = {1: 3, 2: 4, 3: 3}
MAX_PARSED_QUERIES = 5
ROUND1_FALLBACK_GAPS = [
    "Detailed quantitative data",
    "Technical specifics",
    "Recent developments",
    "Comparative analysis",
]
ROUND2_FALLBACK_GAPS = [
    "Validation of key claims",
    "Cross-referencing sources",
    "Final context verification",
]


@dataclass(slots=True)
class RoundPlannerOutcome:
    findings: list[Finding] = field(default_factory=list)
    all_sources: list[CanonicalDocument] = field(default_factory=list)


def extract_queries_from_text(text: str, max_queries: int = MAX_PARSED_QUERIES) -> list[str]:
    """Pull search queries out of an LLM reply: a JSON array, else one per line."""
    cleaned = LLMAgent._strip_code_fence(text or "")
    if not cleaned:
        return []
    try:
        parsed = LLMAgent._extract_json_array(cleaned)
    except json.JSONDecodeError:
        parsed = None
    if parsed is not None:
        return LLMAgent._normalize_text_list(
            [str(item) for item in parsed if isinstance(item, (str, int, float))],
            max_items=max_queries,
            min_len=3,
        )

    lines: list[str] = []
    for raw_line in cleaned.splitlines():
        line = raw_line.strip()
        if not line or line.startswith("{") or line.startswith("["):
            continue
        line = line.lstrip("-*•0123456789.) ").strip().strip('"').strip("'").strip()
        if line:
            lines.append(line)
    return LLMAgent._normalize_text_list(lines, max_items=max_queries, min_len=3)


def fallback_round1_queries(goal: str) -> list[str]:
    return [f"{goal} overview", f"{goal} recent developments", f"{goal} key facts"]


def fallback_gap_queries(goal: str, gaps: list[str], round_number: int) -> list[str]:
    suffix = " validation" if round_number == 3 else ""
    limit = ROUND_QUERY_LIMITS[round_number]
    return [f"{goal} {gap}{suffix}" for gap in gaps][:limit]


class RoundPlanner(LLMAgent):
    """Three fixed research rounds: orientation, deep dive, validation.

    Each round's queries run one after another with a short pause; between rounds
    an LLM gap analysis decides what the next round should look for. Every LLM
    step has a goal-derived fallback so a round never ends without queries.
    """

    name = "round_planner"

    def __init__(
        self,
        gateway,
        *,
        model: str | None = None,
        client: Any | None = None,
        query_delay_seconds: float | None = None,
        results_per_query: int | None = None,
        ranking: RankingEngine | None = None,
    ):
        super().__init__(model=model or get_planner_model(), client=client)
        self.gateway = gateway
        self.ranking = ranking or RankingEngine()
        self.query_delay_seconds = max(
            float(
                query_delay_seconds
                if query_delay_seconds is not None
                else settings.round_query_delay_seconds
            ),
            0.0,
        )
        self.results_per_query = max(int(results_per_query or settings.results_per_query), 1)
        self.outcome = RoundPlannerOutcome()

    async def generate_round1_queries(self, goal: str) -> list[str]:
        try:
            text = await self._complete(
                "round_planner.round1",
                system=render_prompt(
                    "round_planner.round1_system",
                    today_iso=date.today().isoformat(),
                ),
                user=render_prompt("round_planner.round1_user", goal=goal),
                max_tokens=400,
            )
        except Exception as exc:
            logger.warning(f"Round 1 query generation failed, using templates: {exc}")
            return fallback_round1_queries(goal)
        queries = extract_queries_from_text(text)[: ROUND_QUERY_LIMITS[1]]
        return queries or fallback_round1_queries(goal)

    async def analyze_gaps(
        self,
        goal: str,
        *,
        round_number: int,
        queries: list[str],
        results_count: int,
        total_sources: int,
    ) -> list[str]:
        fallback = ROUND1_FALLBACK_GAPS if round_number == 1 else ROUND2_FALLBACK_GAPS
        try:
            text = await self._complete(
                f"round_planner.gaps_round{round_number}",
                system=render_prompt("round_planner.gaps_system"),
                user=render_prompt(
                    "round_planner.gaps_user",
                    goal=goal,
                    round_number=round_number,
                    queries="\n".join(f"- {q}" for q in queries) or "- none",
                    results_count=results_count,
                    total_sources=total_sources,
                ),
                max_tokens=500,
            )
        except Exception as exc:
            logger.warning(f"Gap analysis after round {round_number} failed: {exc}")
            return list(fallback)
        gaps = extract_queries_from_text(text, max_queries=len(fallback))
        return gaps or list(fallback)

    async def generate_gap_queries(self, goal: str, gaps: list[str], round_number: int) -> list[str]:
        limit = ROUND_QUERY_LIMITS[round_number]
        try:
            text = await self._complete(
                f"round_planner.queries_round{round_number}",
                system=render_prompt(
                    "round_planner.gap_queries_system",
                    max_queries=limit,
                    purpose="validate and cross-check" if round_number == 3 else "fill",
                ),
                user=render_prompt(
                    "round_planner.gap_queries_user",
                    goal=goal,
                    gaps="\n".join(f"- {g}" for g in gaps),
                ),
                max_tokens=400,
            )
        except Exception as exc:
            logger.warning(f"Round {round_number} query generation failed: {exc}")
            text = ""
        queries = extract_queries_from_text(text)[:limit]
        if not queries:
            queries = fallback_gap_queries(goal, gaps, round_number)
        return queries or fallback_round1_queries(goal)[:limit]

    def _providers_for(self, round_number: int, index: int) -> list[str] | None:
        names = list(getattr(self.gateway, "provider_names", []) or [])
        if round_number != 2 or len(names) < 2:
            return None
        return [names[index % 2]]

    async def execute_round(
        self,
        round_number: int,
        queries: list[str],
        constraints: dict[str, Any],
    ) -> tuple[list[CanonicalDocument], list[str], list[PipelineEvent]]:
        results: list[CanonicalDocument] = []
        providers_used: list[str] = []
        events: list[PipelineEvent] = []
        for idx, query in enumerate(queries):
            if idx > 0 and self.query_delay_seconds:
                await asyncio.sleep(self.query_delay_seconds)
            try:
                documents = await self.gateway.search(
                    query,
                    max_results=self.results_per_query,
                    include_domains=constraints.get("domains") or None,
                    exclude_domains=constraints.get("exclude_domains") or None,
                    providers=self._providers_for(round_number, idx),
                )
            except Exception as exc:
                logger.warning(f"Round {round_number} search failed for '{query}': {exc}")
                documents = []
            for doc in documents:
                if doc.provider not in providers_used:
                    providers_used.append(doc.provider)
            results.extend(documents)
            events.append(streaming.search_result(query, documents, step=round_number))
        ranked = self.ranking.rank(dedupe_documents(results), discovery=True)
        return ranked, providers_used, events

    async def run(
        self, goal: str, constraints: dict[str, Any] | None = None
    ) -> AsyncGenerator[PipelineEvent, None]:
        """Run rounds 1 to 3, yielding progress events. Result lands in `self.outcome`."""
        constraints = constraints or {}
        findings: list[Finding] = []
        all_sources: list[CanonicalDocument] = []
        gaps: list[str] = []

        for round_number in (1, 2, 3):
            started_at = utc_now_iso()
            if round_number == 1:
                queries = await self.generate_round1_queries(goal)
                reasoning = "Broad orientation across the goal"
            else:
                previous = findings[-1]
                gaps = await self.analyze_gaps(
                    goal,
                    round_number=round_number - 1,
                    queries=previous.queries,
                    results_count=len(previous.results),
                    total_sources=len(all_sources),
                )
                findings[-1] = previous.model_copy(update={"gaps": gaps})
                queries = await self.generate_gap_queries(goal, gaps, round_number)
                reasoning = (
                    "Deep dive into gaps left by round 1"
                    if round_number == 2
                    else "Validation of claims gathered so far"
                )

            yield streaming.round_started(round_number, queries)
            results, providers_used, events = await self.execute_round(
                round_number, queries, constraints
            )
            for event in events:
                yield event

            all_sources = dedupe_documents([*all_sources, *results])
            findings.append(
                Finding(
                    round=round_number,
                    queries=queries,
                    results=results,
                    reasoning=reasoning,
                    metadata=FindingMetadata(
                        queries_generated=len(queries),
                        sources_found=len(results),
                        providers_used=providers_used,
                        started_at=started_at,
                        completed_at=utc_now_iso(),
                    ),
                )
            )
            yield streaming.round_completed(round_number, sources_found=len(results), gaps=gaps)

        self.outcome = RoundPlannerOutcome(findings=findings, all_sources=all_sources)
