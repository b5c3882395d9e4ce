from __future__ import annotations

import re
from typing import Sequence

from citeloop.models.documents import CanonicalDocument, Citation
from citeloop.research_core.text import split_sentences

CONTEXT_WINDOW = 200
MIN_KEYWORD_LENGTH = 4
MAX_KEYWORDS = 10
MIN_SENTENCE_LENGTH = 20
FALLBACK_EXCERPT_LENGTH = 200
PREVIEW_LENGTH = 1000

REPUTABLE_URL_PATTERNS = (
    re.compile(r"\.edu\b"),
    re.compile(r"\.gov\b"),
    re.compile(r"\.org\b"),
    re.compile(r"research"),
    re.compile(r"journal"),
    re.compile(r"academic"),
    re.compile(r"university"),
    re.compile(r"institution"),
    re.compile(r"study"),
    re.compile(r"publication"),
)

_SUP_RE = re.compile(r"<sup>\s*(\d+)\s*</sup>", re.IGNORECASE)
_PAREN_SOURCE_RE = re.compile(r"\(\s*Source\s+(\d+)\s*\)", re.IGNORECASE)
_SOURCE_BRACKET_RE = re.compile(r"\bSource\s*\[(\d+)\]", re.IGNORECASE)
_SOURCE_LIST_RE = re.compile(r"\[\s*Sources?\s+(\d+(?:\s*(?:,|and)\s*\d+)+)\s*\]", re.IGNORECASE)
_BARE_SOURCE_RE = re.compile(r"(?<!\[)\bSource\s+(\d+)\b(?!\])", re.IGNORECASE)
_CANONICAL_RE = re.compile(r"\[\s*Source\s+(\d+)\s*\]", re.IGNORECASE)

# Tried in order; the first one that yields a citation wins.
EXTRACTION_PATTERNS = (
    _CANONICAL_RE,
    re.compile(r"\[(\d+)\]"),
    re.compile(r"\((\d+)\)"),
)

_STOPWORDS = {
    "that", "this", "with", "from", "have", "were", "which", "their", "there",
    "been", "also", "into", "than", "they", "these", "those", "about", "such",
}


def normalize_citation_markers(text: str) -> str:
    """Rewrite the accepted marker variants to `[Source N]`."""
    text = _SUP_RE.sub(lambda m: f"[Source {m.group(1)}]", text)
    text = _PAREN_SOURCE_RE.sub(lambda m: f"[Source {m.group(1)}]", text)
    text = _SOURCE_BRACKET_RE.sub(lambda m: f"[Source {m.group(1)}]", text)
    text = _SOURCE_LIST_RE.sub(
        lambda m: "".join(f"[Source {n}]" for n in re.findall(r"\d+", m.group(1))),
        text,
    )
    text = _BARE_SOURCE_RE.sub(lambda m: f"[Source {m.group(1)}]", text)
    return text


def _keywords(context: str) -> list[str]:
    cleaned = _CANONICAL_RE.sub(" ", context).lower()
    words: list[str] = []
    for word in re.findall(r"[a-z0-9][a-z0-9'-]*", cleaned):
        if len(word) < MIN_KEYWORD_LENGTH or word in _STOPWORDS or word in words:
            continue
        words.append(word)
        if len(words) >= MAX_KEYWORDS:
            break
    return words


def source_text(document: CanonicalDocument) -> str:
    return document.content or document.excerpt or ""


def find_relevant_excerpt(document: CanonicalDocument, context: str) -> str:
    """Sentence from the document that best overlaps the citing context.

    Always returns text copied from the document so provenance checks can find it.
    """
    text = source_text(document)
    if not text:
        return document.title or ""
    keywords = _keywords(context)
    best_sentence = ""
    best_hits = 0
    if keywords:
        for sentence in split_sentences(text):
            if len(sentence) <= MIN_SENTENCE_LENGTH:
                continue
            lowered = sentence.lower()
            hits = sum(1 for keyword in keywords if keyword in lowered)
            if hits > best_hits:
                best_hits = hits
                best_sentence = sentence
    if best_sentence:
        return best_sentence
    head = text[:FALLBACK_EXCERPT_LENGTH].strip()
    return head + "..." if len(text) > FALLBACK_EXCERPT_LENGTH else head


def extract_citations(text: str, documents: Sequence[CanonicalDocument]) -> list[Citation]:
    """Map markers in `text` to the 1-based positions of `documents`.

    Out-of-range indices are ignored; each source is cited once, in order of
    first appearance.
    """
    for pattern in EXTRACTION_PATTERNS:
        citations: list[Citation] = []
        seen: set[int] = set()
        for match in pattern.finditer(text):
            index = int(match.group(1))
            if index < 1 or index > len(documents) or index in seen:
                continue
            seen.add(index)
            document = documents[index - 1]
            start = max(0, match.start() - CONTEXT_WINDOW)
            end = min(len(text), match.end() + CONTEXT_WINDOW)
            citations.append(
                Citation(
                    id=f"source-{index}",
                    url=document.url,
                    title=document.title or document.hostname,
                    excerpt=find_relevant_excerpt(document, text[start:end]),
                )
            )
        if citations:
            return citations
    return []


def document_quality(document: CanonicalDocument) -> float:
    url = document.url.lower()
    quality = 0.5
    for pattern in REPUTABLE_URL_PATTERNS:
        if pattern.search(url):
            quality += 0.1
    if len(document.content or "") > 1000:
        quality += 0.05
    return min(quality, 1.0)


def source_quality(documents: Sequence[CanonicalDocument]) -> float:
    if not documents:
        return 0.0
    return sum(document_quality(d) for d in documents) / len(documents)


def citation_density(text: str, citations: Sequence[Citation]) -> float:
    """Citations per 1,000 characters."""
    if not text:
        return 0.0
    return len(citations) / (len(text) / 1000.0)


def calculate_confidence(
    documents: Sequence[CanonicalDocument],
    citations: Sequence[Citation],
    text: str,
) -> float:
    source_coverage = min(len(documents) / 10.0, 1.0)
    citation_coverage = min(len(citations) / 5.0, 1.0)
    density = min(citation_density(text, citations) / 2.0, 1.0)
    confidence = (
        0.5
        + source_coverage * 0.3
        + citation_coverage * 0.3
        + source_quality(documents) * 0.2
        + density * 0.2
    )
    return round(min(confidence, 1.0), 4)


def build_evidence_block(documents: Sequence[CanonicalDocument]) -> str:
    blocks: list[str] = []
    for idx, doc in enumerate(documents, start=1):
        preview = source_text(doc)[:PREVIEW_LENGTH]
        blocks.append(
            "\n".join(
                [
                    f"[Source {idx}] {doc.title or doc.hostname}",
                    f"URL: {doc.url}",
                    f"Published: {doc.published_at or 'unknown'}",
                    f"Content Preview: {preview}",
                    "---",
                ]
            )
        )
    return "\n".join(blocks)


def format_citations(citations: Sequence[Citation]) -> str:
    """Numbered reference list for the end of a report."""
    lines = [
        f"[{citation.index}] {citation.title or citation.url} - {citation.url}"
        for citation in sorted(citations, key=lambda c: c.index)
    ]
    return "\n".join(lines)
