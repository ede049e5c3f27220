from __future__ import annotations

import logging
import re

from .content import ContentProvider
from .models import DocChunk

logger = logging.getLogger(__name__)

MAX_KEYWORDS = 20
MAX_CHUNK_CHARS = 2_000

_HEADING = re.compile(r"^#{1,6}\s+(.+?)\s*#*\s*$", re.MULTILINE)
_BACKTICK = re.compile(r"`([^`\n]+)`")
_BOLD = re.compile(r"\*\*([^*\n]+)\*\*")


def extract_keywords(markdown: str, limit: int = MAX_KEYWORDS) -> list[str]:
    """Keywords from headings, backticked identifiers and bold text, in that order."""
    keywords: list[str] = []
    for pattern in (_HEADING, _BACKTICK, _BOLD):
        for match in pattern.finditer(markdown):
            keyword = match.group(1).strip()
            if keyword and keyword not in keywords:
                keywords.append(keyword)
    return keywords[:limit]


def _title_for(path: str, content: str) -> str:
    heading = _HEADING.search(content)
    if heading:
        return heading.group(1).strip()
    return path.rsplit("/", 1)[-1].removesuffix(".md")


def build_docs_index(
    provider: ContentProvider,
    docs_directory: str = "docs",
    *,
    max_chunks: int = 50,
) -> list[DocChunk]:
    """Index markdown files under ``docs_directory``.

    Returns at most ``max_chunks`` chunks, one per file, with content truncated
    to ``MAX_CHUNK_CHARS`` characters. A missing directory yields an empty index.
    """
    if max_chunks <= 0 or not provider.exists(docs_directory):
        return []
    chunks: list[DocChunk] = []
    for path in provider.walk_directory(docs_directory):
        if not path.endswith(".md"):
            continue
        content = provider.read_file_or_none(path)
        if not content:
            continue
        chunks.append(
            DocChunk(
                file_path=path,
                title=_title_for(path, content),
                content=content[:MAX_CHUNK_CHARS],
                keywords=extract_keywords(content),
            )
        )
        if len(chunks) >= max_chunks:
            logger.info("Documentation index capped at %d chunks", max_chunks)
            break
    return chunks


def find_related_docs(concepts: list[str], chunks: list[DocChunk], limit: int = 3) -> list[str]:
    """Doc paths whose keywords or title mention any of ``concepts``, best match first."""
    if not concepts:
        return []
    ranked: list[tuple[int, str]] = []
    for chunk in chunks:
        haystack = " ".join([chunk.title, *chunk.keywords]).lower()
        hits = sum(1 for concept in concepts if concept.lower() in haystack)
        if hits:
            ranked.append((hits, chunk.file_path))
    ranked.sort(key=lambda item: (-item[0], item[1]))
    return [path for _, path in ranked[:limit]]
