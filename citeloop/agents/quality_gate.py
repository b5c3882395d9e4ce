"""Deterministic and LLM checks that decide whether a draft is good enough.

Thresholds relax with every pass, and the last permitted pass never blocks:
its findings are reported as warnings and the draft is force-approved.
"""
from __future__ import annotations

import json
import re
from dataclasses import dataclass, field
from typing import Any, Sequence

from loguru import logger

from citeloop.agents.base import LLMAgent
from citeloop.config import settings
from citeloop.models.documents import CanonicalDocument, Draft, Evidence
from citeloop.models.quality import (
    IssueType,
    IterationCounters,
    QualityIssue,
    Severity,
    Thresholds,
)
from citeloop.research_core.provenance import calculate_citation_coverage, validate_citations_provenance
from citeloop.research_core.text import word_count
from citeloop.services.prompt_store import render_prompt

BASE_MIN_CONFIDENCE = 0.6
BASE_MIN_CITATION_DENSITY = 2.0  # citations per 1,000 words
BASE_MIN_QUALITY_SCORE = 0.7
CONFIDENCE_STEP = 0.15
CITATION_DENSITY_STEP = 0.75
QUALITY_SCORE_STEP = 0.15
DEFAULT_LLM_SCORE = 0.5
MAX_PARSED_ISSUES = 5

PLACEHOLDER_PATTERNS = (
    re.compile(r"\b(todo|placeholder|lorem ipsum)\b", re.IGNORECASE),
    re.compile(r"\[(?:TBD|TODO|INSERT|FIXME|REPLACE)[^\]]*\]", re.IGNORECASE),
)
RESEARCH_ISSUE_RE = re.compile(r"\b(evidence|source|sources|citation|citations|data|reference|references)\b", re.IGNORECASE)
SCORE_RE = re.compile(r"(?:score|rating|overall)[\s:\"]*([\d.]+)", re.IGNORECASE)


def progressive_thresholds(total_iterations: int) -> Thresholds:
    """Acceptance bar for a pass; never tighter than the previous pass."""
    i = max(int(total_iterations), 0)
    return Thresholds(
        min_confidence=max(BASE_MIN_CONFIDENCE - i * CONFIDENCE_STEP, 0.0),
        min_citation_density=max(BASE_MIN_CITATION_DENSITY - i * CITATION_DENSITY_STEP, 0.0),
        min_quality_score=max(BASE_MIN_QUALITY_SCORE - i * QUALITY_SCORE_STEP, 0.0),
    )


def classify_issue_text(text: str) -> IssueType:
    if RESEARCH_ISSUE_RE.search(text):
        return IssueType.NEEDS_RESEARCH
    return IssueType.NEEDS_REVISION


@dataclass(slots=True)
class LLMAssessment:
    score: float
    issues: list[str] = field(default_factory=list)
    strengths: list[str] = field(default_factory=list)


@dataclass(slots=True)
class GateResult:
    issues: list[QualityIssue]
    counters: IterationCounters
    thresholds: Thresholds
    llm_score: float | None = None

    @property
    def blocking_issues(self) -> list[QualityIssue]:
        return [issue for issue in self.issues if issue.is_blocking]


def deterministic_checks(
    draft: Draft,
    evidence: Sequence[CanonicalDocument],
    thresholds: Thresholds,
    *,
    min_words: int = 200,
    max_words: int = 5000,
    max_unused_ratio: float = 0.7,
) -> list[QualityIssue]:
    issues: list[QualityIssue] = []
    text = draft.text or ""
    words = word_count(text)
    citations = draft.citations

    if not citations and evidence:
        issues.append(
            QualityIssue(
                type=IssueType.NEEDS_RESEARCH,
                description=f"Draft has no citations although {len(evidence)} evidence documents are available",
            )
        )

    if draft.confidence < thresholds.min_confidence:
        issues.append(
            QualityIssue(
                type=IssueType.NEEDS_RESEARCH,
                description=(
                    f"Confidence {draft.confidence:.2f} is below the required "
                    f"{thresholds.min_confidence:.2f}; more supporting evidence is needed"
                ),
            )
        )

    if words < min_words:
        issues.append(
            QualityIssue(
                type=IssueType.NEEDS_REVISION,
                description=f"Draft is too short ({words} words, minimum {min_words})",
            )
        )
    elif words > max_words:
        issues.append(
            QualityIssue(
                type=IssueType.NEEDS_REVISION,
                description=f"Draft is too long ({words} words, maximum {max_words}); tighten it",
            )
        )

    if evidence:
        coverage = calculate_citation_coverage(citations, [doc.url for doc in evidence])
        if 1.0 - coverage.utilization > max_unused_ratio:
            issues.append(
                QualityIssue(
                    type=IssueType.NEEDS_REVISION,
                    description=(
                        f"{coverage.unused} of {coverage.total} gathered documents are never cited; "
                        "draw on more of the material"
                    ),
                )
            )

    if words > 0:
        density = len(citations) / (words / 1000.0)
        if density < thresholds.min_citation_density:
            issues.append(
                QualityIssue(
                    type=IssueType.NEEDS_RESEARCH,
                    description=(
                        f"Citation density {density:.2f} per 1,000 words is below "
                        f"{thresholds.min_citation_density:.2f}"
                    ),
                )
            )

    if text.strip() and "\n\n" not in text.strip():
        issues.append(
            QualityIssue(
                type=IssueType.NEEDS_REVISION,
                description="Draft lacks paragraph structure; split it into paragraphs",
            )
        )

    if any(pattern.search(text) for pattern in PLACEHOLDER_PATTERNS):
        issues.append(
            QualityIssue(
                type=IssueType.NEEDS_REVISION,
                description="Draft contains placeholder text that must be replaced",
            )
        )

    return issues


def provenance_issues(draft: Draft, evidence: Sequence[CanonicalDocument]) -> list[QualityIssue]:
    if not draft.citations:
        return []
    report = validate_citations_provenance(
        draft.citations, [Evidence.from_document(doc) for doc in evidence]
    )
    if report.is_valid:
        return []
    reasons = "; ".join(f"{item.citation_id}: {item.reason}" for item in report.invalid_citations[:5])
    return [
        QualityIssue(
            type=IssueType.NEEDS_REVISION,
            description=(
                f"{len(report.invalid_citations)} of {report.total_citations} citations "
                f"fail provenance checks ({reasons})"
            ),
        )
    ]


class QualityGate(LLMAgent):
    name = "quality_gate"

    def __init__(
        self,
        model: str | None = None,
        client: Any | None = None,
        *,
        max_total_iterations: int | None = None,
    ):
        super().__init__(model=model, client=client)
        self.max_total_iterations = max(
            int(max_total_iterations or settings.max_total_iterations), 1
        )
        self.min_words = max(int(settings.min_word_count), 1)
        self.max_words = max(int(settings.max_word_count), self.min_words)
        self.max_unused_ratio = float(settings.max_unused_evidence_ratio)

    def is_final_iteration(self, counters: IterationCounters) -> bool:
        return counters.total_iterations >= self.max_total_iterations - 1

    @staticmethod
    def parse_assessment(text: str) -> LLMAssessment:
        try:
            payload = LLMAgent._extract_json_object(text)
        except json.JSONDecodeError:
            payload = None

        if payload is not None:
            raw_score = payload.get("overallScore", payload.get("overall_score", DEFAULT_LLM_SCORE))
            try:
                score = float(raw_score)
            except (TypeError, ValueError):
                score = DEFAULT_LLM_SCORE
            return LLMAssessment(
                score=min(max(score, 0.0), 1.0),
                issues=LLMAgent._normalize_text_list(payload.get("issues"), max_items=10, min_len=3),
                strengths=LLMAgent._normalize_text_list(payload.get("strengths"), max_items=10, min_len=3),
            )

        score = DEFAULT_LLM_SCORE
        match = SCORE_RE.search(text or "")
        if match:
            try:
                value = float(match.group(1).rstrip("."))
                score = value / 10.0 if value > 1.0 else value
            except ValueError:
                score = DEFAULT_LLM_SCORE
        issues: list[str] = []
        in_issues = False
        for raw_line in (text or "").splitlines():
            line = raw_line.strip()
            if re.match(r"^(issues|problems|weaknesses)\b", line, re.IGNORECASE):
                in_issues = True
                continue
            if in_issues and re.match(r"^(strengths|score|overall)\b", line, re.IGNORECASE):
                break
            if in_issues and (line.startswith(("-", "*", "•")) or re.match(r"^\d+[.)]", line)):
                issues.append(line.lstrip("-*•0123456789.) ").strip())
        return LLMAssessment(
            score=min(max(score, 0.0), 1.0),
            issues=LLMAgent._normalize_text_list(issues, max_items=MAX_PARSED_ISSUES, min_len=3),
        )

    async def llm_quality_check(
        self, draft: Draft, goal: str, thresholds: Thresholds
    ) -> tuple[list[QualityIssue], float | None]:
        try:
            text = await self._complete(
                "quality_gate.assess",
                system=render_prompt("quality_gate.system"),
                user=render_prompt("quality_gate.user", goal=goal, draft=draft.text),
                max_tokens=800,
            )
        except Exception as exc:
            logger.warning(f"Quality assessment call failed: {exc}")
            return [
                QualityIssue(
                    type=IssueType.NEEDS_REVISION,
                    description="Quality assessment failed due to technical error",
                    severity=Severity.WARNING,
                )
            ], None

        assessment = self.parse_assessment(text)
        issues: list[QualityIssue] = []
        if assessment.score < thresholds.min_quality_score:
            issues.append(
                QualityIssue(
                    type=IssueType.NEEDS_REVISION,
                    description=(
                        f"Overall quality score {assessment.score:.2f} is below "
                        f"{thresholds.min_quality_score:.2f}"
                    ),
                )
            )
        for description in assessment.issues:
            issues.append(QualityIssue(type=classify_issue_text(description), description=description))
        return issues, assessment.score

    async def evaluate(
        self,
        draft: Draft | None,
        evidence: Sequence[CanonicalDocument],
        goal: str,
        counters: IterationCounters,
    ) -> GateResult:
        """Check the current draft; the returned issues replace any earlier ones."""
        thresholds = progressive_thresholds(counters.total_iterations)
        final_pass = self.is_final_iteration(counters)
        llm_score: float | None = None

        if draft is None:
            issues = [
                QualityIssue(
                    type=IssueType.NEEDS_REVISION,
                    description="No draft was produced for review",
                )
            ]
        else:
            issues = deterministic_checks(
                draft,
                evidence,
                thresholds,
                min_words=self.min_words,
                max_words=self.max_words,
                max_unused_ratio=self.max_unused_ratio,
            )
            issues.extend(provenance_issues(draft, evidence))
            llm_issues, llm_score = await self.llm_quality_check(draft, goal, thresholds)
            issues.extend(llm_issues)

        updates: dict[str, Any] = {"total_iterations": counters.total_iterations + 1}
        if final_pass:
            issues = [issue.as_warning() for issue in issues]
            updates["force_approved"] = True
            logger.info(
                f"Final permitted pass ({counters.total_iterations + 1}/{self.max_total_iterations}); "
                f"force-approving with {len(issues)} warning(s)"
            )
        return GateResult(
            issues=issues,
            counters=counters.model_copy(update=updates),
            thresholds=thresholds,
            llm_score=llm_score,
        )
