from __future__ import annotations

import json

import pytest
from conftest import failing_llm, make_doc, mock_llm

from citeloop.agents.quality_gate import (
    QualityGate,
    classify_issue_text,
    deterministic_checks,
    progressive_thresholds,
)
from citeloop.models.documents import Citation, Draft
from citeloop.models.quality import IssueType, IterationCounters, Severity

EVIDENCE = [
    make_doc("https://a.com/1", title="Storage A", content="Storage capacity grows steadily."),
    make_doc("https://b.com/1", title="Storage B", content="Battery costs keep falling."),
]
GOOD_TEXT = "\n\n".join(["Storage capacity grows steadily across markets. " * 20] * 2)
GOOD_DRAFT = Draft(
    text=GOOD_TEXT,
    citations=[
        Citation(id="source-1", url="https://a.com/1", title="Storage A", excerpt="Storage capacity grows steadily."),
        Citation(id="source-2", url="https://b.com/1", title="Storage B"),
    ],
    confidence=0.8,
)
APPROVING_REPLY = json.dumps({"overallScore": 0.9, "issues": [], "strengths": ["clear structure"]})


class TestThresholds:
    def test_thresholds_start_at_base_values(self):
        t = progressive_thresholds(0)
        assert (t.min_confidence, t.min_citation_density, t.min_quality_score) == (0.6, 2.0, 0.7)

    def test_thresholds_never_tighten(self):
        previous = progressive_thresholds(0)
        for i in range(1, 8):
            current = progressive_thresholds(i)
            assert current.min_confidence <= previous.min_confidence
            assert current.min_citation_density <= previous.min_citation_density
            assert current.min_quality_score <= previous.min_quality_score
            assert current.min_confidence >= 0.0
            previous = current


class TestDeterministicChecks:
    def test_good_draft_has_no_issues(self):
        assert deterministic_checks(GOOD_DRAFT, EVIDENCE, progressive_thresholds(0)) == []

    def test_uncited_low_confidence_draft_needs_research(self):
        draft = Draft(text="Short text.", citations=[], confidence=0.1)
        issues = deterministic_checks(draft, EVIDENCE, progressive_thresholds(0))
        types = {issue.type for issue in issues}
        assert types == {IssueType.NEEDS_RESEARCH, IssueType.NEEDS_REVISION}
        assert any("no citations" in issue.description for issue in issues)
        assert any("too short" in issue.description for issue in issues)
        assert all(issue.severity == Severity.ERROR for issue in issues)

    def test_mostly_unused_evidence_flagged(self):
        extra = [make_doc(f"https://extra{i}.com/page") for i in range(6)]
        issues = deterministic_checks(GOOD_DRAFT, EVIDENCE + extra, progressive_thresholds(0))
        assert [issue.description for issue in issues] == [
            "6 of 8 gathered documents are never cited; draw on more of the material"
        ]
        assert issues[0].type == IssueType.NEEDS_REVISION

    def test_placeholder_text_flagged(self):
        draft = GOOD_DRAFT.model_copy(update={"text": GOOD_TEXT + "\n\n[TBD: add numbers]"})
        issues = deterministic_checks(draft, EVIDENCE, progressive_thresholds(0))
        assert [issue.description for issue in issues] == [
            "Draft contains placeholder text that must be replaced"
        ]

    def test_classify_issue_text(self):
        assert classify_issue_text("Claims lack supporting evidence") == IssueType.NEEDS_RESEARCH
        assert classify_issue_text("Tone is too informal") == IssueType.NEEDS_REVISION


class TestAssessmentParsing:
    def test_json_reply(self):
        assessment = QualityGate.parse_assessment('```json\n{"overallScore": 0.65, "issues": ["Too vague"]}\n```')
        assert assessment.score == 0.65
        assert assessment.issues == ["Too vague"]

    def test_free_text_reply(self):
        text = "Overall score: 7\nIssues:\n- Too vague\n- Missing data sources\nStrengths:\n- Clear"
        assessment = QualityGate.parse_assessment(text)
        assert assessment.score == pytest.approx(0.7)
        assert assessment.issues == ["Too vague", "Missing data sources"]

    def test_unreadable_reply_defaults_to_neutral_score(self):
        assert QualityGate.parse_assessment("I cannot judge this.").score == 0.5


class TestEvaluate:
    @pytest.mark.asyncio
    async def test_good_draft_passes_and_counts_iteration(self):
        gate = QualityGate(client=mock_llm(APPROVING_REPLY), max_total_iterations=3)
        result = await gate.evaluate(GOOD_DRAFT, EVIDENCE, "storage", IterationCounters())

        assert result.issues == []
        assert result.counters.total_iterations == 1
        assert not result.counters.force_approved
        assert result.llm_score == 0.9

    @pytest.mark.asyncio
    async def test_llm_issues_are_blocking_before_final_pass(self):
        reply = json.dumps({"overallScore": 0.4, "issues": ["Claims lack supporting evidence"]})
        gate = QualityGate(client=mock_llm(reply), max_total_iterations=3)
        result = await gate.evaluate(GOOD_DRAFT, EVIDENCE, "storage", IterationCounters())

        assert [i.type for i in result.blocking_issues] == [IssueType.NEEDS_REVISION, IssueType.NEEDS_RESEARCH]

    @pytest.mark.asyncio
    async def test_final_pass_force_approves_weak_draft(self):
        gate = QualityGate(client=failing_llm(), max_total_iterations=3)
        draft = Draft(text="Weak.", citations=[], confidence=0.1)
        counters = IterationCounters(total_iterations=2, research_iterations=1, revision_iterations=1)
        result = await gate.evaluate(draft, EVIDENCE, "storage", counters)

        assert result.counters.force_approved
        assert result.counters.total_iterations == 3
        assert result.blocking_issues == []
        assert result.issues
        assert all(issue.severity == Severity.WARNING for issue in result.issues)

    @pytest.mark.asyncio
    async def test_assessment_failure_is_only_a_warning(self):
        gate = QualityGate(client=failing_llm(), max_total_iterations=3)
        result = await gate.evaluate(GOOD_DRAFT, EVIDENCE, "storage", IterationCounters())

        assert result.blocking_issues == []
        assert [i.description for i in result.issues] == ["Quality assessment failed due to technical error"]
        assert result.llm_score is None

    @pytest.mark.asyncio
    async def test_fabricated_excerpt_fails_provenance(self):
        draft = GOOD_DRAFT.model_copy(
            update={
                "citations": [
                    Citation(id="source-1", url="https://a.com/1", title="Storage A", excerpt="A quote nobody wrote"),
                    Citation(id="source-2", url="https://b.com/1", title="Storage B"),
                ]
            }
        )
        gate = QualityGate(client=mock_llm(APPROVING_REPLY), max_total_iterations=3)
        result = await gate.evaluate(draft, EVIDENCE, "storage", IterationCounters())

        assert len(result.blocking_issues) == 1
        assert "provenance" in result.blocking_issues[0].description
