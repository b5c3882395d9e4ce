from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import Sequence
from urllib.parse import urljoin
from urllib.robotparser import RobotFileParser

import httpx
import trafilatura
from bs4 import BeautifulSoup
from loguru import logger

from citeloop.config import settings
from citeloop.models.documents import CanonicalDocument, Chunk, Evidence
from citeloop.research_core.text import chunk_text, clean_text, hash_content
from citeloop.tools.web_utils import dedupe_key_for_url, robots_txt_url

ACCEPTED_CONTENT_TYPES = ("text/html", "text/plain")


@dataclass(slots=True)
class PageMeta:
    title: str
    canonical_url: str | None
    text: str


def parse_page(raw: str, *, base_url: str, content_type: str) -> PageMeta:
    """Title, declared canonical URL and main text of a fetched page."""
    if content_type.startswith("text/plain"):
        return PageMeta(title="", canonical_url=None, text=clean_text(raw))

    soup = BeautifulSoup(raw, "html.parser")
    title = soup.title.get_text(" ", strip=True) if soup.title else ""
    canonical_url = None
    for link in soup.find_all("link", href=True):
        rel = link.get("rel") or []
        rel_values = rel if isinstance(rel, list) else [rel]
        if any(str(r).lower() == "canonical" for r in rel_values):
            canonical_url = urljoin(base_url, link["href"].strip())
            break

    text = trafilatura.extract(raw, output_format="txt") or ""
    if not text.strip():
        for tag in soup(["script", "style", "noscript", "nav", "footer", "header"]):
            tag.decompose()
        text = soup.get_text("\n")
    return PageMeta(title=title, canonical_url=canonical_url, text=clean_text(text))


class Harvester:
    """Fetches pages directly when no search provider could supply their content."""

    def __init__(
        self,
        *,
        timeout_seconds: float | None = None,
        respect_robots: bool | None = None,
        min_content_length: int | None = None,
        max_parallel: int | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.timeout_seconds = float(
            timeout_seconds if timeout_seconds is not None else settings.harvest_timeout_seconds
        )
        self.respect_robots = (
            bool(settings.harvest_respect_robots) if respect_robots is None else respect_robots
        )
        self.min_content_length = max(
            int(min_content_length if min_content_length is not None else settings.harvest_min_content_length),
            1,
        )
        self.max_parallel = max(int(max_parallel or settings.harvest_max_parallel), 1)
        self.chunk_size = max(int(settings.chunk_size), 100)
        self.chunk_overlap = max(int(settings.chunk_overlap), 0)
        self._transport = transport
        self._robots: dict[str, RobotFileParser | None] = {}

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            timeout=self.timeout_seconds,
            follow_redirects=True,
            headers={"User-Agent": settings.harvest_user_agent},
            transport=self._transport,
        )

    async def _allowed(self, client: httpx.AsyncClient, url: str) -> bool:
        if not self.respect_robots:
            return True
        robots_url = robots_txt_url(url)
        if robots_url not in self._robots:
            parser: RobotFileParser | None = None
            try:
                response = await client.get(robots_url)
                if response.status_code == 200:
                    parser = RobotFileParser()
                    parser.parse(response.text.splitlines())
            except httpx.HTTPError as exc:
                logger.debug(f"robots.txt unavailable for {url}: {exc}")
            self._robots[robots_url] = parser
        parser = self._robots[robots_url]
        return parser is None or parser.can_fetch(settings.harvest_user_agent, url)

    async def harvest(self, url: str) -> Evidence | None:
        """Fetch one URL and return chunked evidence, or None when it is unusable."""
        async with self._client() as client:
            if not await self._allowed(client, url):
                logger.info(f"Skipping {url}: disallowed by robots.txt")
                return None
            try:
                response = await client.get(url)
                response.raise_for_status()
            except httpx.HTTPError as exc:
                logger.warning(f"Harvest failed for {url}: {exc}")
                return None

        content_type = response.headers.get("content-type", "").split(";")[0].strip().lower()
        if content_type not in ACCEPTED_CONTENT_TYPES:
            logger.info(f"Skipping {url}: unsupported content type {content_type or 'unknown'}")
            return None

        resolved_url = str(response.url)
        page = parse_page(response.text, base_url=resolved_url, content_type=content_type)
        if len(page.text) < self.min_content_length:
            logger.info(f"Skipping {url}: only {len(page.text)} characters of text")
            return None

        chunks = chunk_text(page.text, max_chunk_size=self.chunk_size, overlap_size=self.chunk_overlap)
        return Evidence(
            url=url,
            title=page.title,
            snippet=page.text[:500],
            text=page.text,
            content_hash=hash_content(page.text),
            chunks=[Chunk(content=text, chunk_index=idx) for idx, text in enumerate(chunks)],
            source="harvest",
            resolved_url=resolved_url if resolved_url != url else None,
            canonical_url=page.canonical_url,
        )

    @staticmethod
    def to_document(evidence: Evidence, query: str = "") -> CanonicalDocument:
        doc = CanonicalDocument.from_hit(
            provider="harvest",
            query=query,
            url=evidence.url,
            title=evidence.title,
            excerpt=evidence.snippet,
            content=evidence.content,
        )
        key_source = evidence.canonical_url or evidence.resolved_url or evidence.url
        return doc.with_updates(
            resolved_url=evidence.resolved_url,
            canonical_url=evidence.canonical_url,
            normalized_key=dedupe_key_for_url(key_source),
        )

    async def harvest_many(self, urls: Sequence[str]) -> list[Evidence]:
        semaphore = asyncio.Semaphore(self.max_parallel)

        async def run_one(url: str) -> Evidence | None:
            async with semaphore:
                return await self.harvest(url)

        outcomes = await asyncio.gather(*(run_one(u) for u in urls), return_exceptions=True)
        evidence: list[Evidence] = []
        for url, outcome in zip(urls, outcomes):
            if isinstance(outcome, BaseException):
                logger.warning(f"Harvest raised for {url}: {outcome}")
                continue
            if outcome is not None:
                evidence.append(outcome)
        return evidence

    async def harvest_documents(self, urls: Sequence[str], query: str = "") -> list[CanonicalDocument]:
        return [self.to_document(item, query) for item in await self.harvest_many(urls)]
