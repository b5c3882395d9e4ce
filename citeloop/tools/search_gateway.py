"""Multi-provider search with best-effort merging.

Discovery (`search`) returns snippet-only documents from every configured
provider at once. Enrichment (`enrich`) fills in full content for chosen URLs.
A provider that errors or times out contributes zero documents; it never fails
the call.
"""
from __future__ import annotations

import asyncio
import math
import time
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Iterable, Sequence

from loguru import logger

from citeloop.config import settings
from citeloop.models.documents import CanonicalDocument
from citeloop.services import logger as log_service
from citeloop.tools import brave_search, exa_search, tavily_search
from citeloop.tools.rate_limiter import RateLimiter
from citeloop.tools.web_utils import dedupe_key_for_url, is_valid_url

SearchFn = Callable[..., Awaitable[list[CanonicalDocument]]]
EnrichFn = Callable[[list[str]], Awaitable[list[CanonicalDocument]]]

TOPIC_DOMAIN_MAP: dict[str, list[str]] = {
    "finance": ["reuters.com", "bloomberg.com", "wsj.com", "ft.com", "sec.gov"],
    "technology": ["techcrunch.com", "arstechnica.com", "theverge.com", "wired.com"],
    "health": ["nih.gov", "who.int", "mayoclinic.org", "webmd.com", "healthline.com"],
    "science": ["nature.com", "science.org", "sciencedaily.com", "phys.org", "arxiv.org"],
    "news": ["reuters.com", "apnews.com", "bbc.com", "npr.org", "cnn.com"],
}


@dataclass(slots=True)
class SearchProvider:
    name: str
    search: SearchFn
    enrich: EnrichFn | None = None
    limiter: RateLimiter | None = None


@dataclass(slots=True)
class SearchResponse:
    documents: list[CanonicalDocument] = field(default_factory=list)
    providers_used: list[str] = field(default_factory=list)
    failed_providers: dict[str, str] = field(default_factory=dict)
    retried_without_filters: bool = False


def resolve_domain_filters(values: Iterable[str] | None) -> list[str]:
    """Expand topic names into their domains and keep anything that looks like a host."""
    resolved: list[str] = []
    seen: set[str] = set()
    for raw in values or []:
        value = str(raw).strip().lower()
        if not value:
            continue
        domains = TOPIC_DOMAIN_MAP.get(value)
        if domains is None:
            domains = [value] if "." in value else []
        for domain in domains:
            if domain not in seen:
                seen.add(domain)
                resolved.append(domain)
    return resolved


def dedupe_documents(documents: Iterable[CanonicalDocument]) -> list[CanonicalDocument]:
    """Keep the first document per URL dedupe key; hits without an http(s) URL are dropped."""
    seen: set[str] = set()
    unique: list[CanonicalDocument] = []
    for doc in documents:
        if not is_valid_url(doc.url):
            continue
        key = dedupe_key_for_url(doc.url)
        if key in seen:
            continue
        seen.add(key)
        unique.append(doc)
    return unique


def default_providers(names: Sequence[str] | None = None) -> list[SearchProvider]:
    registry = {
        "tavily": SearchProvider(
            name="tavily",
            search=tavily_search.search,
            enrich=tavily_search.extract,
            limiter=RateLimiter(settings.tavily_requests_per_second),
        ),
        "exa": SearchProvider(
            name="exa",
            search=exa_search.search,
            enrich=exa_search.contents,
            limiter=RateLimiter(settings.exa_requests_per_second),
        ),
        "brave": SearchProvider(
            name="brave",
            search=brave_search.search,
            limiter=RateLimiter(settings.brave_requests_per_second),
        ),
    }
    selected = list(names) if names is not None else settings.search_provider_list
    providers: list[SearchProvider] = []
    for name in selected:
        provider = registry.get(name)
        if provider is None:
            raise ValueError(f"Unsupported search provider: {name}")
        providers.append(provider)
    return providers


class SearchGateway:
    """Fans a query out to every provider and merges what comes back."""

    def __init__(
        self,
        providers: list[SearchProvider] | None = None,
        *,
        harvester=None,
        timeout_seconds: float | None = None,
    ):
        self.providers = providers if providers is not None else default_providers()
        self.harvester = harvester
        self.timeout_seconds = float(
            timeout_seconds if timeout_seconds is not None else settings.search_timeout_seconds
        )
        self.excerpt_chars = max(int(settings.enrich_excerpt_chars), 1)

    @property
    def provider_names(self) -> list[str]:
        return [p.name for p in self.providers]

    def _select(self, names: Sequence[str] | None) -> list[SearchProvider]:
        if not names:
            return list(self.providers)
        wanted = {n.lower() for n in names}
        selected = [p for p in self.providers if p.name in wanted]
        return selected or list(self.providers)

    async def _call_provider(
        self,
        provider: SearchProvider,
        operation: str,
        call: Callable[[], Awaitable[list[CanonicalDocument]]],
    ) -> list[CanonicalDocument]:
        t0 = time.monotonic()
        if provider.limiter is not None:
            await provider.limiter.acquire()
        documents = await asyncio.wait_for(call(), timeout=self.timeout_seconds)
        log_service.log_provider_call(
            provider.name,
            operation,
            "success",
            results=len(documents),
            duration_ms=int((time.monotonic() - t0) * 1000),
        )
        return documents

    async def _fan_out(
        self,
        providers: list[SearchProvider],
        query: str,
        *,
        per_provider: int,
        include_domains: list[str],
        exclude_domains: list[str],
        response: SearchResponse,
    ) -> list[CanonicalDocument]:
        def make_call(provider: SearchProvider):
            return lambda: provider.search(
                query,
                max_results=per_provider,
                include_domains=include_domains or None,
                exclude_domains=exclude_domains or None,
            )

        outcomes = await asyncio.gather(
            *(self._call_provider(p, "search", make_call(p)) for p in providers),
            return_exceptions=True,
        )
        merged: list[CanonicalDocument] = []
        for provider, outcome in zip(providers, outcomes):
            if isinstance(outcome, BaseException):
                reason = str(outcome) or type(outcome).__name__
                response.failed_providers[provider.name] = reason
                log_service.log_provider_call(provider.name, "search", "error", error=reason)
                continue
            if outcome and provider.name not in response.providers_used:
                response.providers_used.append(provider.name)
            merged.extend(outcome)
        return merged

    async def search_with_report(
        self,
        query: str,
        *,
        max_results: int = 10,
        include_domains: Iterable[str] | None = None,
        exclude_domains: Iterable[str] | None = None,
        providers: Sequence[str] | None = None,
    ) -> SearchResponse:
        response = SearchResponse()
        selected = self._select(providers)
        if not selected or max_results <= 0:
            return response

        include = resolve_domain_filters(include_domains)
        exclude = resolve_domain_filters(exclude_domains)
        per_provider = math.ceil(max_results / len(selected))

        merged = await self._fan_out(
            selected,
            query,
            per_provider=per_provider,
            include_domains=include,
            exclude_domains=exclude,
            response=response,
        )
        if not merged and include:
            logger.info(f"No results for '{query}' with domain filter {include}; retrying unfiltered")
            response.retried_without_filters = True
            merged = await self._fan_out(
                selected,
                query,
                per_provider=per_provider,
                include_domains=[],
                exclude_domains=exclude,
                response=response,
            )

        response.documents = dedupe_documents(merged)[:max_results]
        return response

    async def search(
        self,
        query: str,
        *,
        max_results: int = 10,
        include_domains: Iterable[str] | None = None,
        exclude_domains: Iterable[str] | None = None,
        providers: Sequence[str] | None = None,
    ) -> list[CanonicalDocument]:
        """Discovery search: snippet-only documents, deduplicated by URL."""
        response = await self.search_with_report(
            query,
            max_results=max_results,
            include_domains=include_domains,
            exclude_domains=exclude_domains,
            providers=providers,
        )
        return response.documents

    async def enrich(self, urls: Sequence[str]) -> list[CanonicalDocument]:
        """Fetch full content for specific URLs, in input order.

        URLs no provider could fill are handed to the harvester when one is set.
        """
        unique_urls = list(dict.fromkeys(u for u in urls if is_valid_url(u)))
        if not unique_urls:
            return []

        enrichers = [p for p in self.providers if p.enrich is not None]

        def make_call(provider: SearchProvider):
            return lambda: provider.enrich(unique_urls)

        outcomes = await asyncio.gather(
            *(self._call_provider(p, "enrich", make_call(p)) for p in enrichers),
            return_exceptions=True,
        )

        best: dict[str, CanonicalDocument] = {}
        for provider, outcome in zip(enrichers, outcomes):
            if isinstance(outcome, BaseException):
                log_service.log_provider_call(
                    provider.name, "enrich", "error", error=str(outcome) or type(outcome).__name__
                )
                continue
            for doc in outcome:
                if not doc.has_content:
                    continue
                key = dedupe_key_for_url(doc.url)
                current = best.get(key)
                if current is None or len(doc.content or "") > len(current.content or ""):
                    best[key] = doc

        missing = [u for u in unique_urls if dedupe_key_for_url(u) not in best]
        if missing and self.harvester is not None:
            for doc in await self.harvester.harvest_documents(missing):
                best.setdefault(dedupe_key_for_url(doc.url), doc)

        enriched: list[CanonicalDocument] = []
        for url in unique_urls:
            doc = best.get(dedupe_key_for_url(url))
            if doc is None:
                continue
            excerpt = doc.excerpt or (doc.content or "")[: self.excerpt_chars]
            enriched.append(doc.with_updates(excerpt=excerpt))
        return enriched
