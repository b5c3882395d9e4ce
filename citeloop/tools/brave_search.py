from __future__ import annotations

from typing import Any

import httpx

from citeloop.config import settings
from citeloop.errors import ProviderError
from citeloop.models.documents import CanonicalDocument

PROVIDER = "brave"
BRAVE_SEARCH_URL = "https://api.search.brave.com/res/v1/web/search"


def _site_clause(include_domains: list[str] | None, exclude_domains: list[str] | None) -> str:
    parts: list[str] = []
    if include_domains:
        parts.append("(" + " OR ".join(f"site:{d}" for d in include_domains) + ")")
    for domain in exclude_domains or []:
        parts.append(f"-site:{domain}")
    return " ".join(parts)


async def search(
    query: str,
    *,
    max_results: int = 10,
    include_domains: list[str] | None = None,
    exclude_domains: list[str] | None = None,
) -> list[CanonicalDocument]:
    """Execute a Brave web search and normalize results."""
    if not settings.brave_api_key:
        raise ProviderError(PROVIDER, "BRAVE_API_KEY is not configured")

    site_clause = _site_clause(include_domains, exclude_domains)
    params: dict[str, Any] = {
        "q": f"{query} {site_clause}".strip(),
        "count": max_results,
    }

    async with httpx.AsyncClient(timeout=float(settings.search_timeout_seconds)) as client:
        response = await client.get(
            BRAVE_SEARCH_URL,
            params=params,
            headers={
                "Accept": "application/json",
                "X-Subscription-Token": settings.brave_api_key,
            },
        )
        response.raise_for_status()
        payload = response.json()

    raw_results = payload.get("web", {}).get("results", [])
    total = max(len(raw_results), 1)
    documents: list[CanonicalDocument] = []
    for idx, item in enumerate(raw_results):
        url = item.get("url", "")
        if not url:
            continue
        snippets = item.get("extra_snippets", []) or []
        description = item.get("description", "") or ""
        # Brave does not expose a relevance score; rank position stands in for it.
        score = max(0.0, 1.0 - (idx / total))
        documents.append(
            CanonicalDocument.from_hit(
                provider=PROVIDER,
                query=query,
                url=url,
                title=item.get("title"),
                excerpt=description.strip() or " ".join(snippets).strip(),
                published_at=item.get("page_age"),
                provider_score=score,
            )
        )
    return documents
