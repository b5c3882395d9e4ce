from __future__ import annotations

from typing import Any
from unittest.mock import AsyncMock, MagicMock

import pytest

from citeloop.llm_client import reset_client
from citeloop.models.documents import CanonicalDocument


@pytest.fixture(autouse=True)
def _fresh_llm_client():
    reset_client()
    yield
    reset_client()


def make_doc(
    url: str,
    *,
    provider: str = "tavily",
    query: str = "q",
    title: str | None = "Title",
    excerpt: str | None = "excerpt",
    content: str | None = None,
    provider_score: float | None = None,
    published_at: str | None = None,
    **updates: Any,
) -> CanonicalDocument:
    doc = CanonicalDocument.from_hit(
        provider=provider,
        query=query,
        url=url,
        title=title,
        excerpt=excerpt,
        content=content,
        provider_score=provider_score,
        published_at=published_at,
    )
    return doc.with_updates(**updates) if updates else doc


def llm_response(text: str) -> MagicMock:
    response = MagicMock()
    response.content = [MagicMock(text=text, type="text")]
    response.usage = MagicMock(input_tokens=10, output_tokens=20)
    return response


def mock_llm(*texts: str) -> AsyncMock:
    """Client whose messages.create returns the given texts in order."""
    client = AsyncMock()
    client.messages.create = AsyncMock(side_effect=[llm_response(t) for t in texts])
    return client


def failing_llm(exc: Exception | None = None) -> AsyncMock:
    client = AsyncMock()
    client.messages.create = AsyncMock(side_effect=exc or RuntimeError("llm down"))
    return client


class FakeGateway:
    """Stands in for SearchGateway; answers from a dict of query -> documents."""

    def __init__(
        self,
        results: dict[str, list[CanonicalDocument]] | None = None,
        *,
        enriched: list[CanonicalDocument] | None = None,
        provider_names: list[str] | None = None,
        failing_queries: set[str] | None = None,
    ):
        self.results = results or {}
        self.enriched = enriched or []
        self.provider_names = provider_names or ["tavily", "exa"]
        self.failing_queries = failing_queries or set()
        self.search_calls: list[dict[str, Any]] = []
        self.enrich_calls: list[list[str]] = []

    async def search(self, query: str, **kwargs: Any) -> list[CanonicalDocument]:
        self.search_calls.append({"query": query, **kwargs})
        if query in self.failing_queries:
            raise RuntimeError(f"search failed for {query}")
        return list(self.results.get(query, []))

    async def enrich(self, urls: list[str]) -> list[CanonicalDocument]:
        self.enrich_calls.append(list(urls))
        return list(self.enriched)
