from __future__ import annotations

import pytest
from conftest import FakeGateway, failing_llm, make_doc

from citeloop.agents.control_loop import ControlLoop, LoopLimits, route_after_gate
from citeloop.agents.orchestrator import OrchestratorPlan
from citeloop.agents.quality_gate import GateResult, QualityGate, progressive_thresholds
from citeloop.agents.round_planner import RoundPlanner
from citeloop.agents.synthesizer import SynthesisMode, SynthesisResult, Synthesizer
from citeloop.agents.worker import ResearchWorker
from citeloop.errors import PreconditionError, SynthesisError
from citeloop.models.documents import Draft
from citeloop.models.events import EventType
from citeloop.models.quality import IssueType, IterationCounters, QualityIssue, Route
from citeloop.models.state import ResearchState, RunStatus
from citeloop.models.tasks import ResearchTask

GOAL = "offshore wind economics"
LIMITS = LoopLimits(max_total=3, max_research=1, max_revision=2)


def _issue(kind: IssueType, description: str = "problem") -> QualityIssue:
    return QualityIssue(type=kind, description=description)


class FakeOrchestrator:
    def __init__(self):
        self.calls: list[list[QualityIssue] | None] = []

    async def plan(self, goal, issues=None, constraints=None):
        self.calls.append(issues)
        if not issues:
            return OrchestratorPlan(
                tasks=[ResearchTask(id="task-1", aspect="costs", queries=["wind costs"])],
                route=Route.WORKERS,
            )
        revision = [i.description for i in issues if i.type == IssueType.NEEDS_REVISION]
        return OrchestratorPlan(
            tasks=[ResearchTask(id="supp-1-2", aspect="more data", queries=["wind data"])],
            route=Route.WORKERS,
            revision_instructions=revision,
        )


class FakeSynthesizer:
    def __init__(self, draft: Draft | None = None, error: Exception | None = None):
        self.draft = draft or Draft(text="Weak.", citations=[], confidence=0.1)
        self.error = error
        self.calls: list[dict] = []

    async def synthesize(self, goal, **kwargs):
        self.calls.append(kwargs)
        if self.error is not None:
            raise self.error
        documents = [d for r in kwargs["worker_results"] for d in r.documents] + list(kwargs["all_sources"])
        return SynthesisResult(draft=self.draft, evidence=documents)


class ScriptedGate:
    """Returns canned issue lists, bumping counters the way the real gate does."""

    def __init__(self, *passes: list[QualityIssue]):
        self.passes = list(passes)

    async def evaluate(self, draft, evidence, goal, counters):
        issues = self.passes.pop(0)
        return GateResult(
            issues=issues,
            counters=counters.model_copy(update={"total_iterations": counters.total_iterations + 1}),
            thresholds=progressive_thresholds(counters.total_iterations),
        )


def _gateway() -> FakeGateway:
    return FakeGateway(
        {
            "wind costs": [make_doc("https://a.com/costs", content="Costs fell.")],
            "wind data": [make_doc("https://b.com/data", content="Capacity data.")],
        }
    )


def _loop(*, synthesizer=None, gate=None, orchestrator=None, gateway=None, mode="orchestrator") -> ControlLoop:
    gateway = gateway or _gateway()
    return ControlLoop(
        gateway=gateway,
        orchestrator=orchestrator or FakeOrchestrator(),
        worker=ResearchWorker(gateway, batch_delay_seconds=0),
        synthesizer=synthesizer or FakeSynthesizer(),
        quality_gate=gate or QualityGate(client=failing_llm(), max_total_iterations=LIMITS.max_total),
        round_planner=RoundPlanner(gateway, client=failing_llm(), query_delay_seconds=0),
        limits=LIMITS,
        mode=mode,
        max_parallel_workers=2,
    )


async def _run(loop: ControlLoop, goal: str = GOAL):
    return [event async for event in loop.run(goal)]


def _routes(events) -> list[str]:
    return [e.data["route"] for e in events if e.event == EventType.ROUTE_DECIDED]


class TestRouting:
    def _state(self, issues, **counters) -> ResearchState:
        return ResearchState(goal=GOAL, issues=issues, counters=IterationCounters(**counters))

    def test_ceiling_wins_over_everything(self):
        state = self._state([_issue(IssueType.NEEDS_RESEARCH)], total_iterations=3)
        assert route_after_gate(state, LIMITS).route == Route.END

    def test_force_approval_ends(self):
        state = self._state([], total_iterations=1, force_approved=True)
        assert route_after_gate(state, LIMITS).route == Route.END

    def test_only_warnings_end(self):
        warning = _issue(IssueType.NEEDS_RESEARCH).as_warning()
        assert route_after_gate(self._state([warning], total_iterations=1), LIMITS).route == Route.END

    def test_research_before_revision(self):
        issues = [_issue(IssueType.NEEDS_REVISION), _issue(IssueType.NEEDS_RESEARCH)]
        assert route_after_gate(self._state(issues, total_iterations=1), LIMITS).route == Route.ORCHESTRATOR

    def test_exhausted_research_budget_falls_through_to_revision(self):
        issues = [_issue(IssueType.NEEDS_REVISION), _issue(IssueType.NEEDS_RESEARCH)]
        state = self._state(issues, total_iterations=1, research_iterations=1)
        assert route_after_gate(state, LIMITS).route == Route.SYNTHESIZER

    def test_all_budgets_exhausted_ends(self):
        state = self._state(
            [_issue(IssueType.NEEDS_RESEARCH)], total_iterations=2, research_iterations=1
        )
        decision = route_after_gate(state, LIMITS)
        assert decision.route == Route.END
        assert "budgets exhausted" in decision.reason


class TestControlLoop:
    @pytest.mark.asyncio
    async def test_weak_drafts_terminate_at_iteration_ceiling(self):
        synthesizer = FakeSynthesizer()
        loop = _loop(synthesizer=synthesizer)
        events = await _run(loop)

        state = loop.result
        assert state.status == RunStatus.COMPLETED
        assert state.counters.total_iterations == LIMITS.max_total
        assert state.counters.force_approved
        assert state.counters.research_iterations == 1
        assert state.counters.revision_iterations == 1
        assert _routes(events) == ["orchestrator", "synthesizer", "end"]
        assert len(synthesizer.calls) == 3
        assert all(issue.severity == "warning" for issue in state.issues)

        complete = events[-1]
        assert complete.event == EventType.RESEARCH_COMPLETE
        assert complete.data["warnings"]
        assert complete.data["counters"]["force_approved"] is True

    @pytest.mark.asyncio
    async def test_gate_ceiling_follows_loop_limits(self):
        gate = QualityGate(client=failing_llm(), max_total_iterations=9)
        loop = _loop(gate=gate)
        assert gate.max_total_iterations == LIMITS.max_total

        await _run(loop)
        assert loop.result.counters.total_iterations == LIMITS.max_total
        assert loop.result.counters.force_approved
        assert all(issue.severity == "warning" for issue in loop.result.issues)

    @pytest.mark.asyncio
    async def test_supplemental_research_appends_worker_results(self):
        gate = ScriptedGate([_issue(IssueType.NEEDS_RESEARCH, "need more data")], [])
        orchestrator = FakeOrchestrator()
        synthesizer = FakeSynthesizer()
        loop = _loop(synthesizer=synthesizer, gate=gate, orchestrator=orchestrator)
        events = await _run(loop)

        assert _routes(events) == ["orchestrator", "end"]
        assert [r.task_id for r in loop.result.worker_results] == ["task-1", "supp-1-2"]
        assert orchestrator.calls[1][0].description == "need more data"
        second_pass_docs = [d.url for r in synthesizer.calls[1]["worker_results"] for d in r.documents]
        assert second_pass_docs == ["https://a.com/costs", "https://b.com/data"]
        assert loop.result.counters.research_iterations == 1

    @pytest.mark.asyncio
    async def test_revision_pass_gets_instructions_and_previous_draft(self):
        gate = ScriptedGate([_issue(IssueType.NEEDS_REVISION, "Add paragraph breaks")], [])
        synthesizer = FakeSynthesizer()
        loop = _loop(synthesizer=synthesizer, gate=gate)
        events = await _run(loop)

        assert _routes(events) == ["synthesizer", "end"]
        assert synthesizer.calls[1]["revision_instructions"] == ["Add paragraph breaks"]
        assert synthesizer.calls[1]["previous_draft"] == synthesizer.draft
        assert synthesizer.calls[0]["previous_draft"] is None
        assert loop.result.counters.revision_iterations == 1
        assert loop.result.issues == []

    @pytest.mark.asyncio
    async def test_synthesis_error_ends_with_placeholder(self):
        synthesizer = FakeSynthesizer(error=SynthesisError("Draft generation failed: timeout"))
        loop = _loop(synthesizer=synthesizer)
        events = await _run(loop)

        errors = [e for e in events if e.event == EventType.ERROR]
        assert errors and "timeout" in errors[0].data["message"]
        assert loop.result.final_route == Route.END
        assert loop.result.draft.text == f"No research results found for: {GOAL}"
        assert loop.result.errors == ["Draft generation failed: timeout"]
        assert events[-1].event == EventType.RESEARCH_COMPLETE

    @pytest.mark.asyncio
    async def test_empty_goal_is_rejected(self):
        with pytest.raises(PreconditionError):
            await _run(_loop(), goal="   ")

    @pytest.mark.asyncio
    async def test_iterative_mode_runs_three_rounds_before_synthesis(self):
        gateway = FakeGateway(
            {f"{GOAL} overview": [make_doc("https://a.com/overview", content="Overview text.")]}
        )
        synthesizer = FakeSynthesizer()
        gate = ScriptedGate([])
        loop = _loop(synthesizer=synthesizer, gate=gate, gateway=gateway, mode="iterative")
        events = await _run(loop)

        assert loop.mode == SynthesisMode.ITERATIVE
        rounds = [e.data["round"] for e in events if e.event == EventType.ROUND_COMPLETED]
        assert rounds == [1, 2, 3]
        assert [f.round for f in loop.result.findings] == [1, 2, 3]
        assert [d.url for d in synthesizer.calls[0]["all_sources"]] == ["https://a.com/overview"]
        assert synthesizer.calls[0]["mode"] == SynthesisMode.ITERATIVE

    @pytest.mark.asyncio
    async def test_iterative_mode_without_evidence_is_fatal(self):
        gateway = FakeGateway()
        loop = _loop(
            synthesizer=Synthesizer(client=failing_llm()),
            gateway=gateway,
            mode="iterative",
        )
        with pytest.raises(PreconditionError):
            await _run(loop)
