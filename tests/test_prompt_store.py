from __future__ import annotations

import pytest

from citeloop.services.prompt_store import render_prompt


def test_render_prompt_substitutes_template_values():
    prompt = render_prompt("synthesizer.system", today_iso="2026-02-21")
    assert "2026-02-21" in prompt
    assert "[Source N]" in prompt


def test_render_prompt_joins_line_lists():
    prompt = render_prompt(
        "round_planner.gap_queries_user",
        goal="solid state batteries",
        gaps="- cost data",
    )
    assert prompt.splitlines() == ["Research goal: solid state batteries", "Gaps:", "- cost data"]


def test_render_prompt_raises_for_unknown_key():
    with pytest.raises(KeyError):
        render_prompt("missing.prompt.key")


def test_render_prompt_raises_for_missing_value():
    with pytest.raises(KeyError, match="goal"):
        render_prompt("round_planner.round1_user")


def test_render_prompt_rejects_section_keys():
    with pytest.raises(TypeError, match="quality_gate"):
        render_prompt("quality_gate")
