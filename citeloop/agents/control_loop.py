from __future__ import annotations

from dataclasses import dataclass
from typing import Any, AsyncGenerator

from loguru import logger

from citeloop.agents.orchestrator import Orchestrator
from citeloop.agents.quality_gate import QualityGate
from citeloop.agents.round_planner import RoundPlanner
from citeloop.agents.synthesizer import SynthesisMode, Synthesizer, no_results_draft
from citeloop.agents.worker import ResearchWorker, run_workers
from citeloop.config import settings
from citeloop.errors import PreconditionError, SynthesisError
from citeloop.models.events import PipelineEvent
from citeloop.models.quality import IssueType, Route
from citeloop.models.state import ResearchState, RunStatus, apply_update
from citeloop.models.tasks import ResearchTask
from citeloop.research_core.harvest import Harvester
from citeloop.services import logger as log_service
from citeloop.services import streaming
from citeloop.tools.search_gateway import SearchGateway


@dataclass(slots=True)
class LoopLimits:
    max_total: int = 3
    max_research: int = 1
    max_revision: int = 2

    @classmethod
    def from_settings(cls) -> "LoopLimits":
        return cls(
            max_total=max(int(settings.max_total_iterations), 1),
            max_research=max(int(settings.max_research_iterations), 0),
            max_revision=max(int(settings.max_revision_iterations), 0),
        )


@dataclass(slots=True)
class RouteDecision:
    route: Route
    reason: str


def route_after_gate(state: ResearchState, limits: LoopLimits) -> RouteDecision:
    """Where the loop goes after a quality gate pass. Checked strictly in this order."""
    counters = state.counters
    blocking = [issue for issue in state.issues if issue.is_blocking]

    if counters.total_iterations >= limits.max_total:
        return RouteDecision(Route.END, f"iteration ceiling {limits.max_total} reached")
    if counters.force_approved:
        return RouteDecision(Route.END, "force approved on final pass")
    if not blocking:
        return RouteDecision(Route.END, "draft accepted")
    if (
        any(issue.type == IssueType.NEEDS_RESEARCH for issue in blocking)
        and counters.research_iterations < limits.max_research
    ):
        return RouteDecision(Route.ORCHESTRATOR, "evidence gaps need supplemental research")
    if (
        any(issue.type == IssueType.NEEDS_REVISION for issue in blocking)
        and counters.revision_iterations < limits.max_revision
    ):
        return RouteDecision(Route.SYNTHESIZER, "draft needs revision")
    return RouteDecision(Route.END, "iteration budgets exhausted; remaining issues kept as warnings")


class ControlLoop:
    """Runs research, synthesis and review until the draft is accepted or budgets run out.

    Flow:
      1. Research: three planned rounds (iterative mode) or orchestrator + workers
      2. Synthesize a cited draft
      3. Quality gate pass, then route: end, supplemental research, or revision
    Every pass increments `total_iterations`, so the loop ends within
    `limits.max_total` gate passes.
    """

    def __init__(
        self,
        *,
        gateway: SearchGateway,
        orchestrator: Orchestrator,
        worker: ResearchWorker,
        synthesizer: Synthesizer,
        quality_gate: QualityGate,
        round_planner: RoundPlanner | None = None,
        limits: LoopLimits | None = None,
        mode: str | None = None,
        max_parallel_workers: int | None = None,
    ):
        self.gateway = gateway
        self.orchestrator = orchestrator
        self.worker = worker
        self.synthesizer = synthesizer
        self.quality_gate = quality_gate
        self.round_planner = round_planner or RoundPlanner(gateway)
        self.limits = limits or LoopLimits.from_settings()
        # the gate must force-approve on the same pass that hits the loop ceiling
        self.quality_gate.max_total_iterations = self.limits.max_total
        mode_name = str(mode or settings.research_mode).lower().strip()
        self.mode = SynthesisMode.ITERATIVE if mode_name == "iterative" else SynthesisMode.WORKERS
        self.max_parallel_workers = max(int(max_parallel_workers or settings.max_parallel_workers), 1)
        self.result: ResearchState | None = None

    @classmethod
    def build(cls, *, mode: str | None = None) -> "ControlLoop":
        """Wire the default collaborators from settings."""
        harvester = Harvester() if settings.harvest_enabled else None
        gateway = SearchGateway(harvester=harvester)
        return cls(
            gateway=gateway,
            orchestrator=Orchestrator(),
            worker=ResearchWorker(gateway),
            synthesizer=Synthesizer(),
            quality_gate=QualityGate(),
            round_planner=RoundPlanner(gateway),
            mode=mode,
        )

    async def _run_tasks(self, state: ResearchState, tasks: list[ResearchTask]) -> ResearchState:
        results = await run_workers(
            tasks,
            self.worker,
            max_parallel=self.max_parallel_workers,
            constraints=state.constraints,
        )
        log_service.log_research_step(
            state.run_id,
            "workers",
            "completed",
            {"tasks": len(tasks), "results": len(results)},
        )
        return apply_update(state, {"tasks": tasks, "worker_results": results})

    async def _initial_research(self, state: ResearchState) -> AsyncGenerator[PipelineEvent | ResearchState, None]:
        if self.mode == SynthesisMode.ITERATIVE:
            yield streaming.agent_started("round_planner")
            async for event in self.round_planner.run(state.goal, state.constraints):
                yield event
            outcome = self.round_planner.outcome
            yield streaming.agent_completed(
                "round_planner", rounds=len(outcome.findings), sources=len(outcome.all_sources)
            )
            yield apply_update(
                state,
                {"findings": outcome.findings, "all_sources": outcome.all_sources},
            )
            return

        yield streaming.agent_started("orchestrator")
        plan = await self.orchestrator.plan(state.goal, None, state.constraints)
        yield streaming.tasks_planned(plan.tasks, route=plan.route, reasoning=plan.reasoning)
        yield await self._run_tasks(state, plan.tasks)

    async def run(
        self, goal: str, constraints: dict[str, Any] | None = None
    ) -> AsyncGenerator[PipelineEvent, None]:
        """Yield progress events; the final state is left in `self.result`.

        Raises PreconditionError for an empty goal or an evidence-free iterative run.
        """
        if not goal or not goal.strip():
            raise PreconditionError("A research goal is required")

        state = ResearchState(
            goal=goal.strip(),
            constraints=dict(constraints or {}),
            status=RunStatus.RESEARCHING,
        )
        log_service.log_research_step(state.run_id, "run", "started", {"goal": state.goal, "mode": self.mode.value})

        async for item in self._initial_research(state):
            if isinstance(item, ResearchState):
                state = item
            else:
                yield item

        while True:
            revision_pass = bool(state.revision_instructions) and state.draft is not None
            state = apply_update(state, {"status": RunStatus.SYNTHESIZING})
            yield streaming.synthesis_started(
                sources=len(state.all_sources) + sum(len(r.documents) for r in state.worker_results),
                revision=revision_pass,
            )
            try:
                synthesis = await self.synthesizer.synthesize(
                    state.goal,
                    mode=self.mode,
                    worker_results=state.worker_results,
                    all_sources=state.all_sources,
                    revision_instructions=state.revision_instructions,
                    previous_draft=state.draft if revision_pass else None,
                )
            except SynthesisError as exc:
                logger.error(f"Synthesis failed for run {state.run_id}: {exc}")
                yield streaming.error(str(exc), recoverable=False)
                state = apply_update(
                    state,
                    {
                        "draft": state.draft or no_results_draft(state.goal),
                        "errors": [str(exc)],
                        "final_route": Route.END,
                    },
                )
                break

            state = apply_update(
                state,
                {
                    "draft": synthesis.draft,
                    "evidence": synthesis.evidence,
                    "status": RunStatus.REVIEWING,
                },
            )
            yield streaming.draft_created(synthesis.draft)

            gate = await self.quality_gate.evaluate(
                state.draft, state.evidence, state.goal, state.counters
            )
            state = apply_update(state, {"issues": gate.issues, "counters": gate.counters})
            yield streaming.quality_checked(gate.issues, gate.counters)
            log_service.log_research_step(
                state.run_id,
                "quality_gate",
                "completed",
                {
                    "pass": gate.counters.total_iterations,
                    "blocking": len(gate.blocking_issues),
                    "force_approved": gate.counters.force_approved,
                },
            )

            decision = route_after_gate(state, self.limits)
            yield streaming.route_decided(decision.route, decision.reason)
            if decision.route == Route.END:
                state = apply_update(state, {"final_route": Route.END})
                break

            blocking = [issue for issue in state.issues if issue.is_blocking]
            if decision.route == Route.ORCHESTRATOR:
                state = apply_update(
                    state,
                    {
                        "counters": {"research_iterations": state.counters.research_iterations + 1},
                        "status": RunStatus.RESEARCHING,
                    },
                )
                plan = await self.orchestrator.plan(state.goal, blocking, state.constraints)
                yield streaming.tasks_planned(plan.tasks, route=plan.route, reasoning=plan.reasoning)
                if plan.route == Route.WORKERS and plan.tasks:
                    state = await self._run_tasks(state, plan.tasks)
                state = apply_update(state, {"revision_instructions": plan.revision_instructions})
            else:
                state = apply_update(
                    state,
                    {
                        "counters": {"revision_iterations": state.counters.revision_iterations + 1},
                        "revision_instructions": [
                            issue.description
                            for issue in blocking
                            if issue.type == IssueType.NEEDS_REVISION
                        ],
                    },
                )

        state = apply_update(state, {"status": RunStatus.COMPLETED})
        self.result = state
        draft = state.draft or no_results_draft(state.goal)
        log_service.log_research_step(
            state.run_id,
            "run",
            "completed",
            {"counters": state.counters.model_dump(), "citations": len(draft.citations)},
        )
        yield streaming.research_complete(
            draft.text,
            citations=[c.model_dump() for c in draft.citations],
            confidence=draft.confidence,
            warnings=[issue.description for issue in state.issues],
            counters=state.counters,
        )
