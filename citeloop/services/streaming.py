from __future__ import annotations

from typing import Any

from citeloop.models.documents import CanonicalDocument, Draft
from citeloop.models.events import EventType, PipelineEvent
from citeloop.models.quality import IterationCounters, QualityIssue, Route
from citeloop.models.tasks import ResearchTask


def agent_started(agent: str, step: int | None = None, **kwargs: Any) -> PipelineEvent:
    data: dict[str, Any] = {"agent": agent}
    if step is not None:
        data["step"] = step
    data.update(kwargs)
    return PipelineEvent(event=EventType.AGENT_STARTED, data=data)


def agent_completed(agent: str, **kwargs: Any) -> PipelineEvent:
    return PipelineEvent(event=EventType.AGENT_COMPLETED, data={"agent": agent, **kwargs})


def round_started(round_number: int, queries: list[str]) -> PipelineEvent:
    return PipelineEvent(
        event=EventType.ROUND_STARTED,
        data={"round": round_number, "queries": queries},
    )


def round_completed(round_number: int, *, sources_found: int, gaps: list[str]) -> PipelineEvent:
    return PipelineEvent(
        event=EventType.ROUND_COMPLETED,
        data={"round": round_number, "sources_found": sources_found, "gaps": gaps},
    )


def tasks_planned(tasks: list[ResearchTask], *, route: Route, reasoning: str = "") -> PipelineEvent:
    return PipelineEvent(
        event=EventType.TASKS_PLANNED,
        data={
            "route": route.value,
            "reasoning": reasoning,
            "tasks": [
                {
                    "id": task.id,
                    "aspect": task.aspect,
                    "queries": task.queries,
                    "priority": task.priority,
                }
                for task in tasks
            ],
        },
    )


def search_result(
    query: str,
    results: list[CanonicalDocument],
    step: int | None = None,
) -> PipelineEvent:
    data: dict[str, Any] = {
        "query": query,
        "results": [
            {
                "title": doc.title or "",
                "url": doc.url,
                "provider": doc.provider,
                "snippet": (doc.excerpt or "")[:200],
            }
            for doc in results
        ],
    }
    if step is not None:
        data["step"] = step
    return PipelineEvent(event=EventType.SEARCH_RESULT, data=data)


def synthesis_started(*, sources: int, revision: bool) -> PipelineEvent:
    return PipelineEvent(
        event=EventType.SYNTHESIS_STARTED,
        data={"sources": sources, "revision": revision},
    )


def draft_created(draft: Draft) -> PipelineEvent:
    return PipelineEvent(
        event=EventType.DRAFT_CREATED,
        data={
            "confidence": round(draft.confidence, 4),
            "citations": len(draft.citations),
            "characters": len(draft.text),
        },
    )


def quality_checked(issues: list[QualityIssue], counters: IterationCounters) -> PipelineEvent:
    return PipelineEvent(
        event=EventType.QUALITY_CHECKED,
        data={
            "issues": [issue.model_dump(mode="json") for issue in issues],
            "counters": counters.model_dump(),
        },
    )


def route_decided(route: Route, reason: str) -> PipelineEvent:
    return PipelineEvent(event=EventType.ROUTE_DECIDED, data={"route": route.value, "reason": reason})


def research_complete(
    report: str,
    *,
    citations: list[dict[str, Any]],
    confidence: float,
    warnings: list[str],
    counters: IterationCounters,
) -> PipelineEvent:
    return PipelineEvent(
        event=EventType.RESEARCH_COMPLETE,
        data={
            "report": report,
            "citations": citations,
            "confidence": round(confidence, 4),
            "warnings": warnings,
            "counters": counters.model_dump(),
        },
    )


def error(message: str, **kwargs: Any) -> PipelineEvent:
    return PipelineEvent(event=EventType.ERROR, data={"message": message, **kwargs})
