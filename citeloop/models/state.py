"""Shared run state and its explicit transition function.

Each pass of the control loop returns a partial update; `apply_update` folds it
into a new state according to `FIELD_POLICY` instead of mutating in place.
"""
from __future__ import annotations

from enum import StrEnum
from typing import Any, Optional
from uuid import uuid4

from pydantic import BaseModel, Field

from citeloop.models.documents import CanonicalDocument, Draft, Finding
from citeloop.models.quality import IterationCounters, QualityIssue, Route
from citeloop.models.tasks import ResearchTask, WorkerResult


class MergePolicy(StrEnum):
    REPLACE = "replace"
    APPEND = "append"
    PATCH = "patch"


class RunStatus(StrEnum):
    PENDING = "pending"
    RESEARCHING = "researching"
    SYNTHESIZING = "synthesizing"
    REVIEWING = "reviewing"
    COMPLETED = "completed"
    FAILED = "failed"


class ResearchState(BaseModel):
    run_id: str = Field(default_factory=lambda: uuid4().hex)
    goal: str
    constraints: dict[str, Any] = {}
    findings: list[Finding] = []
    all_sources: list[CanonicalDocument] = []
    tasks: list[ResearchTask] = []
    worker_results: list[WorkerResult] = []
    evidence: list[CanonicalDocument] = []  # the indexed list the current draft cites
    draft: Optional[Draft] = None
    issues: list[QualityIssue] = []
    revision_instructions: list[str] = []
    counters: IterationCounters = Field(default_factory=IterationCounters)
    status: RunStatus = RunStatus.PENDING
    final_route: Optional[Route] = None
    errors: list[str] = []


FIELD_POLICY: dict[str, MergePolicy] = {
    "goal": MergePolicy.REPLACE,
    "constraints": MergePolicy.PATCH,
    "findings": MergePolicy.APPEND,
    "all_sources": MergePolicy.APPEND,
    "tasks": MergePolicy.REPLACE,
    "worker_results": MergePolicy.APPEND,
    "evidence": MergePolicy.REPLACE,
    "draft": MergePolicy.REPLACE,
    "issues": MergePolicy.REPLACE,
    "revision_instructions": MergePolicy.REPLACE,
    "counters": MergePolicy.PATCH,
    "status": MergePolicy.REPLACE,
    "final_route": MergePolicy.REPLACE,
    "errors": MergePolicy.APPEND,
}

_MONOTONIC_COUNTERS = ("total_iterations", "research_iterations", "revision_iterations")


def _patch_counters(current: IterationCounters, patch: Any) -> IterationCounters:
    values = patch.model_dump() if isinstance(patch, IterationCounters) else dict(patch)
    for name in _MONOTONIC_COUNTERS:
        if name in values and int(values[name]) < getattr(current, name):
            raise ValueError(f"Counter {name} cannot decrease ({getattr(current, name)} -> {values[name]})")
    if current.force_approved and values.get("force_approved") is False:
        raise ValueError("force_approved cannot be cleared once set")
    return current.model_copy(update=values)


def apply_update(state: ResearchState, update: dict[str, Any]) -> ResearchState:
    """Return a new state with `update` merged in per field policy."""
    changes: dict[str, Any] = {}
    for name, value in update.items():
        policy = FIELD_POLICY.get(name)
        if policy is None:
            raise KeyError(f"Unknown state field: {name}")
        if policy is MergePolicy.REPLACE:
            changes[name] = value
        elif policy is MergePolicy.APPEND:
            changes[name] = [*getattr(state, name), *list(value)]
        elif name == "counters":
            changes[name] = _patch_counters(state.counters, value)
        else:
            changes[name] = {**getattr(state, name), **dict(value)}
    return state.model_copy(update=changes)
