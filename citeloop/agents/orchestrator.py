from __future__ import annotations

import json
import re
from dataclasses import dataclass, field
from datetime import date
from typing import Any

from loguru import logger
from pydantic import ValidationError

from citeloop.agents.base import LLMAgent
from citeloop.config import settings
from citeloop.llm_client import get_planner_model
from citeloop.models.quality import IssueType, QualityIssue, Route
from citeloop.models.tasks import Complexity, GoalAnalysis, ResearchTask, TaskDecomposition
from citeloop.services.prompt_store import render_prompt

MIN_QUERIES_PER_TASK = 2
MAX_QUERIES_PER_TASK = 4
PRIORITY_DECREMENT = 0.1
FALLBACK_ASPECTS = ["overview", "analysis", "recent trends"]
_FOCUS_STOPWORDS = {
    "the", "a", "an", "and", "or", "of", "to", "in", "on", "for", "with", "is", "are",
    "was", "were", "has", "have", "draft", "report", "needs", "more", "lacks", "missing",
    "below", "threshold", "only", "although", "available", "insufficient",
}


@dataclass(slots=True)
class OrchestratorPlan:
    """What the control loop should do next after the orchestrator ran."""

    tasks: list[ResearchTask] = field(default_factory=list)
    route: Route = Route.WORKERS
    revision_instructions: list[str] = field(default_factory=list)
    reasoning: str = ""
    analysis: GoalAnalysis | None = None


def _issue_focus(description: str, max_words: int = 6) -> str:
    words = [
        w
        for w in re.findall(r"[A-Za-z][A-Za-z0-9'-]*", description)
        if w.lower() not in _FOCUS_STOPWORDS
    ]
    return " ".join(words[:max_words])


class Orchestrator(LLMAgent):
    """Splits the goal, or a gate's research feedback, into independent worker tasks.

    Modes:
      1. Initial: analyze the goal, then decompose it into 3-8 tasks
      2. Supplemental: 1-2 narrow tasks aimed at `needs_research` issues
      3. Pure revision: no research issues at all, so no tasks; route to synthesis
    """

    name = "orchestrator"

    def __init__(
        self,
        model: str | None = None,
        client: Any | None = None,
        *,
        min_workers: int | None = None,
        max_workers: int | None = None,
        max_supplemental_tasks: int | None = None,
    ):
        super().__init__(model=model or get_planner_model(), client=client)
        self.min_workers = max(int(min_workers or settings.min_workers), 1)
        self.max_workers = max(int(max_workers or settings.max_workers), self.min_workers)
        self.max_supplemental_tasks = max(
            int(max_supplemental_tasks or settings.max_supplemental_tasks), 1
        )
        self._task_counter = 0
        self._supplemental_passes = 0

    def _next_task_id(self, prefix: str = "task") -> str:
        self._task_counter += 1
        return f"{prefix}-{self._task_counter}"

    @staticmethod
    def fallback_analysis(goal: str) -> GoalAnalysis:
        return GoalAnalysis(
            complexity=Complexity.MODERATE,
            domains=[],
            aspects=list(FALLBACK_ASPECTS),
            estimated_workers=len(FALLBACK_ASPECTS),
            strategy=f"Cover {goal} broadly, then its analysis and recent trends",
        )

    async def analyze_goal(self, goal: str, constraints: dict[str, Any] | None = None) -> GoalAnalysis:
        try:
            text = await self._complete(
                "orchestrator.analyze",
                system=render_prompt("orchestrator.analyze_system", today_iso=date.today().isoformat()),
                user=render_prompt(
                    "orchestrator.analyze_user",
                    goal=goal,
                    constraints_json=json.dumps(constraints or {}),
                ),
                max_tokens=700,
            )
            payload = self._extract_json_object(text)
        except json.JSONDecodeError:
            logger.warning("Goal analysis returned unparseable output; using fallback")
            return self.fallback_analysis(goal)
        except Exception as exc:
            logger.warning(f"Goal analysis failed; using fallback: {exc}")
            return self.fallback_analysis(goal)

        aspects = self._normalize_text_list(payload.get("aspects"), max_items=10, min_len=2)
        if not aspects:
            return self.fallback_analysis(goal)
        raw_workers = payload.get("estimatedWorkers", payload.get("estimated_workers", len(aspects)))
        try:
            estimated = int(raw_workers)
        except (TypeError, ValueError):
            estimated = len(aspects)
        try:
            complexity = Complexity(str(payload.get("complexity", "moderate")).lower().strip())
        except ValueError:
            complexity = Complexity.MODERATE
        return GoalAnalysis(
            complexity=complexity,
            domains=self._normalize_text_list(payload.get("domains"), max_items=8, min_len=2),
            aspects=aspects,
            estimated_workers=min(max(estimated, 1), 10),
            strategy=str(payload.get("strategy", "")).strip(),
        )

    def fallback_tasks(self, goal: str, aspects: list[str]) -> list[ResearchTask]:
        tasks: list[ResearchTask] = []
        for idx, aspect in enumerate(aspects[: self.max_workers]):
            tasks.append(
                ResearchTask(
                    id=self._next_task_id(),
                    aspect=aspect,
                    queries=[
                        f"{goal} {aspect}",
                        f"{goal} {aspect} analysis",
                        f"{goal} {aspect} recent developments",
                    ],
                    priority=round(max(1.0 - idx * PRIORITY_DECREMENT, 0.0), 4),
                )
            )
        return tasks

    def _clean_tasks(self, raw_tasks: Any) -> list[ResearchTask]:
        if not isinstance(raw_tasks, list):
            return []
        tasks: list[ResearchTask] = []
        used_queries: set[str] = set()
        for idx, raw in enumerate(raw_tasks):
            if not isinstance(raw, dict):
                continue
            aspect = " ".join(str(raw.get("aspect", "")).split())
            queries = [
                q
                for q in self._normalize_text_list(
                    raw.get("queries"), max_items=MAX_QUERIES_PER_TASK, min_len=3
                )
                if q.lower() not in used_queries
            ]
            if not aspect or not queries:
                continue
            used_queries.update(q.lower() for q in queries)
            try:
                priority = float(raw.get("priority", 1.0 - idx * PRIORITY_DECREMENT))
            except (TypeError, ValueError):
                priority = 1.0 - idx * PRIORITY_DECREMENT
            try:
                tasks.append(
                    ResearchTask(
                        id=self._next_task_id(),
                        aspect=aspect,
                        queries=queries,
                        priority=min(max(priority, 0.0), 1.0),
                    )
                )
            except ValidationError as exc:
                logger.debug(f"Dropping malformed task {raw!r}: {exc}")
        return tasks

    async def decompose_into_tasks(
        self,
        goal: str,
        analysis: GoalAnalysis,
        constraints: dict[str, Any] | None = None,
    ) -> TaskDecomposition:
        try:
            text = await self._complete(
                "orchestrator.decompose",
                system=render_prompt(
                    "orchestrator.decompose_system",
                    min_workers=self.min_workers,
                    max_workers=self.max_workers,
                    min_queries=MIN_QUERIES_PER_TASK,
                    max_queries=MAX_QUERIES_PER_TASK,
                ),
                user=render_prompt(
                    "orchestrator.decompose_user",
                    goal=goal,
                    analysis_json=analysis.model_dump_json(),
                    constraints_json=json.dumps(constraints or {}),
                ),
                max_tokens=1600,
            )
            payload = self._extract_json_object(text)
        except json.JSONDecodeError:
            logger.warning("Task decomposition returned unparseable output; one task per aspect")
            payload = {}
        except Exception as exc:
            logger.warning(f"Task decomposition failed; one task per aspect: {exc}")
            payload = {}

        tasks = self._clean_tasks(payload.get("tasks"))
        reasoning = str(payload.get("reasoning", "")).strip()
        if not tasks:
            aspects = list(analysis.aspects)
            for extra in FALLBACK_ASPECTS:
                if len(aspects) >= self.min_workers:
                    break
                if extra not in aspects:
                    aspects.append(extra)
            tasks = self.fallback_tasks(goal, aspects)
            reasoning = reasoning or "Fallback decomposition: one task per analyzed aspect"

        if len(tasks) > self.max_workers:
            tasks = sorted(tasks, key=lambda t: t.priority, reverse=True)[: self.max_workers]
        if len(tasks) < self.min_workers:
            logger.warning(
                f"Decomposition produced {len(tasks)} tasks, fewer than the {self.min_workers} expected"
            )
        return TaskDecomposition(tasks=tasks, reasoning=reasoning)

    def fallback_supplemental_tasks(
        self, goal: str, issues: list[QualityIssue], prefix: str
    ) -> list[ResearchTask]:
        tasks: list[ResearchTask] = []
        for idx, issue in enumerate(issues[: self.max_supplemental_tasks]):
            focus = _issue_focus(issue.description) or "supporting evidence"
            tasks.append(
                ResearchTask(
                    id=self._next_task_id(prefix),
                    aspect=focus,
                    queries=[f"{goal} {focus}", f"{goal} {focus} data sources"],
                    priority=round(max(1.0 - idx * PRIORITY_DECREMENT, 0.0), 4),
                )
            )
        return tasks

    async def plan_supplemental(self, goal: str, issues: list[QualityIssue]) -> list[ResearchTask]:
        self._supplemental_passes += 1
        prefix = f"supp-{self._supplemental_passes}"
        try:
            text = await self._complete(
                "orchestrator.supplemental",
                system=render_prompt(
                    "orchestrator.supplemental_system",
                    max_tasks=self.max_supplemental_tasks,
                ),
                user=render_prompt(
                    "orchestrator.supplemental_user",
                    goal=goal,
                    issues="\n".join(f"- {issue.description}" for issue in issues),
                ),
                max_tokens=800,
            )
            payload = self._extract_json_object(text)
        except json.JSONDecodeError:
            logger.warning("Supplemental planning returned unparseable output; using issue queries")
            payload = {}
        except Exception as exc:
            logger.warning(f"Supplemental planning failed; using issue queries: {exc}")
            payload = {}

        raw_tasks = payload.get("tasks")
        tasks: list[ResearchTask] = []
        if isinstance(raw_tasks, list):
            for raw in raw_tasks[: self.max_supplemental_tasks]:
                if not isinstance(raw, dict):
                    continue
                aspect = " ".join(str(raw.get("aspect", "")).split())
                queries = self._normalize_text_list(
                    raw.get("queries"), max_items=MAX_QUERIES_PER_TASK, min_len=3
                )
                if aspect and queries:
                    tasks.append(
                        ResearchTask(
                            id=self._next_task_id(prefix),
                            aspect=aspect,
                            queries=queries,
                            priority=1.0,
                        )
                    )
        return tasks or self.fallback_supplemental_tasks(goal, issues, prefix)

    async def plan(
        self,
        goal: str,
        issues: list[QualityIssue] | None = None,
        constraints: dict[str, Any] | None = None,
    ) -> OrchestratorPlan:
        if not issues:
            analysis = await self.analyze_goal(goal, constraints)
            decomposition = await self.decompose_into_tasks(goal, analysis, constraints)
            return OrchestratorPlan(
                tasks=decomposition.tasks,
                route=Route.WORKERS,
                reasoning=decomposition.reasoning or analysis.strategy,
                analysis=analysis,
            )

        research = [i for i in issues if i.type == IssueType.NEEDS_RESEARCH]
        revision = [i.description for i in issues if i.type == IssueType.NEEDS_REVISION]
        if not research:
            return OrchestratorPlan(
                tasks=[],
                route=Route.SYNTHESIZER,
                revision_instructions=revision,
                reasoning="Only revision issues outstanding; skipping new research",
            )

        tasks = await self.plan_supplemental(goal, research)
        return OrchestratorPlan(
            tasks=tasks,
            route=Route.WORKERS,
            revision_instructions=revision,
            reasoning=f"Supplemental research for {len(research)} evidence gap(s)",
        )
