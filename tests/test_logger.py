from __future__ import annotations

import json

import pytest
from loguru import logger

from citeloop.services import logger as log_service


@pytest.fixture
def records():
    lines: list[str] = []
    sink_id = logger.add(lines.append, format="{level}|{extra[run_id]}|{message}", level="DEBUG")
    yield lines
    logger.remove(sink_id)


def _parse(line: str) -> tuple[str, str, str, dict]:
    level, run_id, message = line.rstrip("\n").split("|", 2)
    tag, payload = message.split(" ", 1)
    return level, run_id, tag, json.loads(payload)


def test_research_step_carries_run_id(records):
    log_service.log_research_step("run-42", "gate", "completed", {"issues": 2})
    level, run_id, tag, payload = _parse(records[-1])
    assert (level, run_id, tag) == ("INFO", "run-42", "RESEARCH_STEP")
    assert payload == {"step": "gate", "status": "completed", "data": {"issues": 2}}


def test_failed_calls_log_as_warnings_without_empty_fields(records):
    log_service.log_llm_call(model="m", caller="synthesizer", status="error", error="timeout")
    log_service.log_provider_call("exa", "search", "success", results=3)

    llm_level, run_id, llm_tag, llm_payload = _parse(records[-2])
    assert (llm_level, run_id, llm_tag) == ("WARNING", "-", "LLM_CALL_FAILED")
    assert llm_payload["error"] == "timeout"

    provider_level, _, provider_tag, provider_payload = _parse(records[-1])
    assert (provider_level, provider_tag) == ("DEBUG", "PROVIDER_CALL")
    assert "error" not in provider_payload
    assert provider_payload["results"] == 3
