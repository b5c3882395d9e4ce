from __future__ import annotations

from enum import StrEnum

from pydantic import BaseModel


class IssueType(StrEnum):
    NEEDS_RESEARCH = "needs_research"
    NEEDS_REVISION = "needs_revision"


class Severity(StrEnum):
    ERROR = "error"
    WARNING = "warning"


class Route(StrEnum):
    ORCHESTRATOR = "orchestrator"
    WORKERS = "workers"
    SYNTHESIZER = "synthesizer"
    END = "end"


class QualityIssue(BaseModel):
    type: IssueType
    description: str
    severity: Severity = Severity.ERROR

    @property
    def is_blocking(self) -> bool:
        return self.severity == Severity.ERROR

    def as_warning(self) -> "QualityIssue":
        return self.model_copy(update={"severity": Severity.WARNING})


class IterationCounters(BaseModel):
    """Loop counters; every field only ever grows during a run."""
    total_iterations: int = 0
    research_iterations: int = 0
    revision_iterations: int = 0
    force_approved: bool = False


class Thresholds(BaseModel):
    min_confidence: float
    min_citation_density: float
    min_quality_score: float
