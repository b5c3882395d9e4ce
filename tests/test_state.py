from __future__ import annotations

import json

import pytest
from conftest import make_doc

from citeloop.models.documents import Draft
from citeloop.models.events import EventType
from citeloop.models.quality import IssueType, IterationCounters, QualityIssue, Route
from citeloop.models.state import ResearchState, apply_update
from citeloop.services import streaming


class TestApplyUpdate:
    def test_append_fields_accumulate(self):
        state = ResearchState(goal="g", all_sources=[make_doc("https://a.com")], errors=["first"])
        updated = apply_update(state, {"all_sources": [make_doc("https://b.com")], "errors": ["second"]})

        assert [d.url for d in updated.all_sources] == ["https://a.com", "https://b.com"]
        assert updated.errors == ["first", "second"]
        assert [d.url for d in state.all_sources] == ["https://a.com"]

    def test_replace_fields_overwrite(self):
        issue = QualityIssue(type=IssueType.NEEDS_REVISION, description="old")
        state = ResearchState(goal="g", issues=[issue], draft=Draft(text="v1"))
        updated = apply_update(state, {"issues": [], "draft": Draft(text="v2")})

        assert updated.issues == []
        assert updated.draft.text == "v2"

    def test_patch_fields_merge(self):
        state = ResearchState(goal="g", constraints={"domains": ["a.com"]})
        updated = apply_update(
            state,
            {"constraints": {"exclude_domains": ["b.com"]}, "counters": {"revision_iterations": 1}},
        )

        assert updated.constraints == {"domains": ["a.com"], "exclude_domains": ["b.com"]}
        assert updated.counters == IterationCounters(revision_iterations=1)

    def test_counters_never_decrease(self):
        state = ResearchState(goal="g", counters=IterationCounters(total_iterations=2))
        with pytest.raises(ValueError):
            apply_update(state, {"counters": {"total_iterations": 1}})

    def test_force_approval_is_sticky(self):
        state = ResearchState(goal="g", counters=IterationCounters(force_approved=True))
        with pytest.raises(ValueError):
            apply_update(state, {"counters": IterationCounters(force_approved=False)})

    def test_unknown_field_rejected(self):
        with pytest.raises(KeyError):
            apply_update(ResearchState(goal="g"), {"run_id": "x"})


class TestEvents:
    def test_event_formats_as_sse_frame(self):
        event = streaming.route_decided(Route.SYNTHESIZER, "draft needs revision")
        frame = event.format()

        assert frame.startswith("event: route_decided\ndata: ")
        assert frame.endswith("\n\n")
        assert json.loads(frame.split("data: ", 1)[1]) == {
            "route": "synthesizer",
            "reason": "draft needs revision",
        }

    def test_quality_checked_serializes_issues_and_counters(self):
        issue = QualityIssue(type=IssueType.NEEDS_RESEARCH, description="more sources")
        event = streaming.quality_checked([issue], IterationCounters(total_iterations=1))

        assert event.event == EventType.QUALITY_CHECKED
        assert event.data["issues"] == [
            {"type": "needs_research", "description": "more sources", "severity": "error"}
        ]
        assert event.data["counters"]["total_iterations"] == 1
