from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Optional

from pydantic import BaseModel, Field

from citeloop.research_core.text import chunk_text, hash_content, short_hash
from citeloop.tools.web_utils import extract_domain


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


class CanonicalDocument(BaseModel):
    """One search hit in the shape every stage of the pipeline shares.

    `content` stays None until enrichment. `normalized_score` is written by the
    ranking engine; nothing else mutates a document once it is in a ranked list.
    """
    id: str  # short hash of the url
    provider: str
    query: str
    url: str
    hostname: str
    title: Optional[str] = None
    excerpt: Optional[str] = None
    content: Optional[str] = None
    published_at: Optional[str] = None  # ISO date or datetime
    provider_score: Optional[float] = None
    normalized_score: Optional[float] = None
    resolved_url: Optional[str] = None  # final url after redirects
    canonical_url: Optional[str] = None  # <link rel="canonical">
    normalized_key: Optional[str] = None
    author: Optional[str] = None
    fetched_at: str = Field(default_factory=utc_now_iso)
    source_meta: dict[str, Any] = Field(default_factory=dict)

    @classmethod
    def from_hit(
        cls,
        *,
        provider: str,
        query: str,
        url: str,
        title: str | None = None,
        excerpt: str | None = None,
        content: str | None = None,
        published_at: str | None = None,
        provider_score: float | None = None,
        author: str | None = None,
        source_meta: dict[str, Any] | None = None,
    ) -> "CanonicalDocument":
        """Build a document from one provider record."""
        return cls(
            id=short_hash(url),
            provider=provider,
            query=query,
            url=url,
            hostname=extract_domain(url),
            title=(title or "").strip() or None,
            excerpt=(excerpt or "").strip() or None,
            content=content or None,
            published_at=published_at or None,
            provider_score=provider_score,
            author=author or None,
            source_meta=source_meta or {},
        )

    def with_updates(self, **fields: Any) -> "CanonicalDocument":
        return self.model_copy(update=fields)

    @property
    def has_content(self) -> bool:
        return bool(self.content and self.content.strip())

    @property
    def score(self) -> float:
        """Best available relevance signal, used when ordering across stages."""
        if self.normalized_score is not None:
            return self.normalized_score
        if self.provider_score is not None:
            return self.provider_score
        return 0.0


class Chunk(BaseModel):
    content: str
    chunk_index: int


class Evidence(BaseModel):
    """Fetched page content with provenance, produced by the harvester."""
    url: str
    title: str = ""
    snippet: str = ""
    text: str = ""
    content_hash: str
    chunks: list[Chunk] = []
    source: str = "harvest"
    resolved_url: Optional[str] = None
    canonical_url: Optional[str] = None

    @property
    def content(self) -> str:
        # chunks overlap, so only text holds the page exactly as fetched
        return self.text or self.snippet

    @classmethod
    def from_document(cls, document: CanonicalDocument) -> "Evidence":
        content = document.content or document.excerpt or ""
        return cls(
            url=document.url,
            title=document.title or "",
            snippet=(document.excerpt or content)[:500],
            text=content,
            content_hash=hash_content(content),
            chunks=[
                Chunk(content=text, chunk_index=idx)
                for idx, text in enumerate(chunk_text(content))
            ],
            source=document.provider,
            resolved_url=document.resolved_url,
            canonical_url=document.canonical_url,
        )


class Citation(BaseModel):
    id: str  # "source-N"
    url: str
    title: str = ""
    excerpt: str = ""

    @property
    def index(self) -> int:
        return int(self.id.rsplit("-", 1)[-1])


class Draft(BaseModel):
    text: str
    citations: list[Citation] = []
    confidence: float = Field(default=0.0, ge=0.0, le=1.0)


class FindingMetadata(BaseModel):
    queries_generated: int = 0
    sources_found: int = 0
    providers_used: list[str] = []
    started_at: str = Field(default_factory=utc_now_iso)
    completed_at: Optional[str] = None


class Finding(BaseModel):
    """Outcome of one research round; rounds are appended in order 1..3."""
    round: int = Field(ge=1, le=3)
    queries: list[str]
    results: list[CanonicalDocument] = []
    reasoning: str = ""
    gaps: list[str] = []
    metadata: FindingMetadata = Field(default_factory=FindingMetadata)
