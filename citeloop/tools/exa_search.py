from __future__ import annotations

from typing import Any

import httpx

from citeloop.config import settings
from citeloop.errors import ProviderError
from citeloop.models.documents import CanonicalDocument

PROVIDER = "exa"
EXA_SEARCH_URL = "https://api.exa.ai/search"
EXA_CONTENTS_URL = "https://api.exa.ai/contents"


def _headers() -> dict[str, str]:
    if not settings.exa_api_key:
        raise ProviderError(PROVIDER, "EXA_API_KEY is not configured")
    return {
        "Accept": "application/json",
        "Content-Type": "application/json",
        "x-api-key": settings.exa_api_key,
    }


async def _post(url: str, payload: dict[str, Any]) -> dict[str, Any]:
    headers = _headers()
    async with httpx.AsyncClient(timeout=float(settings.search_timeout_seconds)) as client:
        response = await client.post(url, json=payload, headers=headers)
        response.raise_for_status()
        return response.json()


async def search(
    query: str,
    *,
    max_results: int = 10,
    include_domains: list[str] | None = None,
    exclude_domains: list[str] | None = None,
) -> list[CanonicalDocument]:
    """Discovery search returning one highlight sentence per result."""
    payload: dict[str, Any] = {
        "query": query,
        "numResults": max_results,
        "type": "auto",
        "contents": {"highlights": {"numSentences": 1}},
    }
    if include_domains:
        payload["includeDomains"] = include_domains
    if exclude_domains:
        payload["excludeDomains"] = exclude_domains

    data = await _post(EXA_SEARCH_URL, payload)

    documents: list[CanonicalDocument] = []
    for item in data.get("results", []):
        url = item.get("url", "")
        if not url:
            continue
        highlights = item.get("highlights") or []
        excerpt = highlights[0] if highlights else (item.get("summary") or "")
        documents.append(
            CanonicalDocument.from_hit(
                provider=PROVIDER,
                query=query,
                url=url,
                title=item.get("title"),
                excerpt=excerpt,
                published_at=item.get("publishedDate"),
                provider_score=item.get("score"),
                author=item.get("author"),
                source_meta={"id": item.get("id")},
            )
        )
    return documents


async def contents(urls: list[str]) -> list[CanonicalDocument]:
    """Full text for specific URLs."""
    if not urls:
        return []
    data = await _post(EXA_CONTENTS_URL, {"urls": urls, "text": True})

    documents: list[CanonicalDocument] = []
    for item in data.get("results", []):
        url = item.get("url", "")
        text = item.get("text") or ""
        if not url or not text.strip():
            continue
        documents.append(
            CanonicalDocument.from_hit(
                provider=PROVIDER,
                query="",
                url=url,
                title=item.get("title"),
                content=text,
                published_at=item.get("publishedDate"),
                author=item.get("author"),
            )
        )
    return documents
