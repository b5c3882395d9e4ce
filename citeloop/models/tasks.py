from __future__ import annotations

from enum import StrEnum

from pydantic import BaseModel, ConfigDict, Field

from citeloop.models.documents import CanonicalDocument


class Complexity(StrEnum):
    SIMPLE = "simple"
    MODERATE = "moderate"
    COMPLEX = "complex"


class GoalAnalysis(BaseModel):
    complexity: Complexity = Complexity.MODERATE
    domains: list[str] = []
    aspects: list[str] = []
    estimated_workers: int = Field(default=3, ge=1, le=10)
    strategy: str = ""


class ResearchTask(BaseModel):
    """One independent unit of work handed to a single worker."""
    id: str
    aspect: str
    queries: list[str]
    priority: float = Field(default=0.5, ge=0.0, le=1.0)


class TaskDecomposition(BaseModel):
    tasks: list[ResearchTask] = []
    reasoning: str = ""


class WorkerResult(BaseModel):
    model_config = ConfigDict(frozen=True)

    task_id: str
    aspect: str
    documents: list[CanonicalDocument] = []
    summary: str = ""
    confidence: float = Field(default=0.0, ge=0.0, le=1.0)
    queries_executed: int = 0
    documents_found: int = 0
    documents_selected: int = 0
