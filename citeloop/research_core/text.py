from __future__ import annotations

import hashlib
import re


def hash_content(content: str) -> str:
    """SHA-256 hex digest of the text."""
    return hashlib.sha256(content.encode("utf-8")).hexdigest()


def short_hash(content: str) -> str:
    return hash_content(content)[:12]


def clean_text(text: str) -> str:
    text = text.replace("\xa0", " ")
    text = re.sub(r"\r\n?", "\n", text)
    text = re.sub(r"[ \t]+", " ", text)
    text = re.sub(r"\n{3,}", "\n\n", text)
    return text.strip()


def _split_long(paragraph: str, max_chunk_size: int, overlap_size: int) -> list[str]:
    step = max(max_chunk_size - overlap_size, 1)
    pieces: list[str] = []
    start = 0
    while start < len(paragraph):
        piece = paragraph[start : start + max_chunk_size].strip()
        if piece:
            pieces.append(piece)
        if start + max_chunk_size >= len(paragraph):
            break
        start += step
    return pieces


def chunk_text(
    text: str,
    *,
    max_chunk_size: int = 1000,
    overlap_size: int = 100,
    separator: str = "\n\n",
) -> list[str]:
    """Pack paragraphs into chunks of at most `max_chunk_size` characters.

    Each new chunk starts with the last `overlap_size` characters of the previous one.
    Paragraphs longer than a chunk are split with a sliding window.
    """
    cleaned = clean_text(text)
    if not cleaned:
        return []
    if len(cleaned) <= max_chunk_size:
        return [cleaned]

    chunks: list[str] = []
    current = ""
    for paragraph in (p.strip() for p in cleaned.split(separator)):
        if not paragraph:
            continue
        if len(paragraph) > max_chunk_size:
            if current:
                chunks.append(current)
                current = ""
            chunks.extend(_split_long(paragraph, max_chunk_size, overlap_size))
            continue
        candidate = f"{current}{separator}{paragraph}" if current else paragraph
        if len(candidate) <= max_chunk_size:
            current = candidate
            continue
        if current:
            chunks.append(current)
            tail = current[-overlap_size:].strip() if overlap_size > 0 else ""
            current = f"{tail}{separator}{paragraph}" if tail else paragraph
            if len(current) > max_chunk_size:
                current = paragraph
        else:
            current = paragraph
    if current:
        chunks.append(current)
    return chunks


def word_count(text: str) -> int:
    return len(text.split())


def split_sentences(text: str) -> list[str]:
    return [s.strip() for s in re.split(r"(?<=[.!?])\s+", text) if s.strip()]
