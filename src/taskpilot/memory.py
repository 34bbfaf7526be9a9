from __future__ import annotations

import asyncio
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Protocol

STOP_WORDS = frozenset(
    {
        "a", "an", "and", "are", "as", "at", "be", "by", "for", "from", "has", "he", "in",
        "is", "it", "its", "of", "on", "that", "the", "to", "was", "were", "will", "with",
        "this", "these", "they", "should", "would", "could", "can", "may", "might", "must",
        "shall", "into", "all", "any", "each", "when", "then", "than", "also", "make", "use",
        "add", "new", "not", "but", "our", "your", "you",
    }
)
MAX_KEYWORDS = 10
WORD_PATTERN = re.compile(r"[a-z][a-z0-9_]+")


def extract_keywords(text: str, limit: int = MAX_KEYWORDS) -> list[str]:
    keywords: list[str] = []
    for word in WORD_PATTERN.findall(text.lower()):
        if len(word) <= 2 or word in STOP_WORDS or word in keywords:
            continue
        keywords.append(word)
        if len(keywords) >= limit:
            break
    return keywords


@dataclass(frozen=True, slots=True)
class MemoryExcerpt:
    key: str
    content: str
    score: float = 0.0


class MemoryStore(Protocol):
    async def search(self, query: str, limit: int) -> list[MemoryExcerpt]: ...


class NotesMemoryStore:
    """Keyword search over a directory of markdown notes."""

    def __init__(self, notes_dir: Path, *, max_excerpt_chars: int = 1200) -> None:
        self.notes_dir = notes_dir
        self.max_excerpt_chars = max_excerpt_chars

    def _search_sync(self, query: str, limit: int) -> list[MemoryExcerpt]:
        terms = set(extract_keywords(query, limit=MAX_KEYWORDS * 2))
        if not terms or not self.notes_dir.is_dir():
            return []
        scored: list[MemoryExcerpt] = []
        for path in sorted(self.notes_dir.rglob("*.md")):
            try:
                content = path.read_text(encoding="utf-8")
            except (OSError, UnicodeDecodeError):
                continue
            words = WORD_PATTERN.findall(content.lower())
            if not words:
                continue
            hits = sum(1 for word in words if word in terms)
            if hits == 0:
                continue
            matched = len(terms.intersection(words))
            scored.append(
                MemoryExcerpt(
                    key=str(path.relative_to(self.notes_dir)),
                    content=content.strip()[: self.max_excerpt_chars],
                    score=matched + hits / len(words),
                )
            )
        scored.sort(key=lambda item: item.score, reverse=True)
        return scored[:limit]

    async def search(self, query: str, limit: int) -> list[MemoryExcerpt]:
        return await asyncio.to_thread(self._search_sync, query, limit)
