"""Checks that every citation points at real evidence and quotes it faithfully."""
from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Sequence

from citeloop.models.documents import Citation, Evidence
from citeloop.tools.web_utils import dedupe_key_for_url

EXCERPT_MATCH_LENGTH = 100
TITLE_SIMILARITY_THRESHOLD = 0.8


@dataclass(slots=True)
class InvalidCitation:
    citation_id: str
    reason: str


@dataclass(slots=True)
class ProvenanceReport:
    is_valid: bool
    validated_citations: int
    total_citations: int
    invalid_citations: list[InvalidCitation] = field(default_factory=list)


@dataclass(slots=True)
class CitationCoverage:
    cited: int  # distinct evidence documents cited at least once
    total: int  # distinct evidence documents

    @property
    def unused(self) -> int:
        return self.total - self.cited

    @property
    def utilization(self) -> float:
        return self.cited / self.total if self.total else 0.0


def _words(text: str) -> set[str]:
    return set(re.findall(r"[a-z0-9]+", text.lower()))


def titles_match(left: str, right: str) -> bool:
    a = " ".join(left.lower().split())
    b = " ".join(right.lower().split())
    if not a or not b:
        return True
    if a == b or a in b or b in a:
        return True
    words_a, words_b = _words(a), _words(b)
    union = words_a | words_b
    if not union:
        return False
    return len(words_a & words_b) / len(union) > TITLE_SIMILARITY_THRESHOLD


def _flatten(text: str) -> str:
    return " ".join(text.split()).lower()


def excerpt_found(excerpt: str, evidence: Evidence) -> bool:
    """Case- and whitespace-insensitive check of the excerpt's first 100 characters."""
    needle = _flatten(excerpt)
    if needle.endswith("..."):
        needle = needle[:-3].rstrip()
    needle = needle[:EXCERPT_MATCH_LENGTH]
    if not needle:
        return True
    haystacks = [chunk.content for chunk in evidence.chunks] + [evidence.content, evidence.snippet]
    return any(needle in _flatten(hay) for hay in haystacks if hay)


def _matching_evidence(citation: Citation, evidence: Sequence[Evidence]) -> Evidence | None:
    target = dedupe_key_for_url(citation.url)
    for item in evidence:
        candidates = {item.url, item.resolved_url or "", item.canonical_url or ""}
        if any(c and dedupe_key_for_url(c) == target for c in candidates):
            return item
    return None


def validate_citation_against_evidence(
    citation: Citation, evidence: Sequence[Evidence]
) -> InvalidCitation | None:
    """None when the citation holds up, otherwise the reason it does not."""
    match = _matching_evidence(citation, evidence)
    if match is None:
        return InvalidCitation(citation.id, f"no evidence for url {citation.url}")
    if citation.title and match.title and not titles_match(citation.title, match.title):
        return InvalidCitation(citation.id, "title does not match evidence")
    if citation.excerpt and not excerpt_found(citation.excerpt, match):
        return InvalidCitation(citation.id, "excerpt not found in evidence content")
    return None


def validate_citations_provenance(
    citations: Sequence[Citation], evidence: Sequence[Evidence]
) -> ProvenanceReport:
    invalid: list[InvalidCitation] = []
    for citation in citations:
        failure = validate_citation_against_evidence(citation, evidence)
        if failure is not None:
            invalid.append(failure)
    return ProvenanceReport(
        is_valid=not invalid,
        validated_citations=len(citations) - len(invalid),
        total_citations=len(citations),
        invalid_citations=invalid,
    )


def calculate_citation_coverage(
    citations: Sequence[Citation], evidence_urls: Sequence[str]
) -> CitationCoverage:
    """How much of the gathered evidence the citations actually draw on."""
    cited_keys = {dedupe_key_for_url(c.url) for c in citations}
    evidence_keys = {dedupe_key_for_url(url) for url in evidence_urls}
    return CitationCoverage(cited=len(cited_keys & evidence_keys), total=len(evidence_keys))
