from __future__ import annotations

from typing import Any

from tavily import AsyncTavilyClient

from citeloop.config import settings
from citeloop.errors import ProviderError
from citeloop.models.documents import CanonicalDocument

PROVIDER = "tavily"


def _client() -> AsyncTavilyClient:
    if not settings.tavily_api_key:
        raise ProviderError(PROVIDER, "TAVILY_API_KEY is not configured")
    return AsyncTavilyClient(api_key=settings.tavily_api_key)


async def search(
    query: str,
    *,
    max_results: int = 10,
    search_depth: str = "advanced",
    include_domains: list[str] | None = None,
    exclude_domains: list[str] | None = None,
) -> list[CanonicalDocument]:
    """Discovery search: snippets only, no raw page content."""
    kwargs: dict[str, Any] = {
        "query": query,
        "search_depth": search_depth,
        "max_results": max_results,
        "include_raw_content": False,
    }
    if include_domains:
        kwargs["include_domains"] = include_domains
    if exclude_domains:
        kwargs["exclude_domains"] = exclude_domains

    response = await _client().search(**kwargs)

    return [
        CanonicalDocument.from_hit(
            provider=PROVIDER,
            query=query,
            url=r.get("url", ""),
            title=r.get("title"),
            excerpt=r.get("content"),
            published_at=r.get("published_date"),
            provider_score=r.get("score"),
            source_meta=r,
        )
        for r in response.get("results", [])
        if r.get("url")
    ]


async def extract(urls: list[str]) -> list[CanonicalDocument]:
    """Full page content for specific URLs."""
    if not urls:
        return []
    response = await _client().extract(urls=urls)

    documents: list[CanonicalDocument] = []
    for r in response.get("results", []):
        url = r.get("url", "")
        content = r.get("raw_content") or ""
        if not url or not content.strip():
            continue
        documents.append(
            CanonicalDocument.from_hit(
                provider=PROVIDER,
                query="",
                url=url,
                title=r.get("title"),
                content=content,
                source_meta={"failed": False},
            )
        )
    return documents
