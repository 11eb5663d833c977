"""
Reference knowledge fed to the classification oracle.

JSON files under the knowledge directory are loaded once an hour and
searched by term overlap; every string leaf is a candidate match.
"""

import asyncio
import json
import re
import time
from collections.abc import Callable
from pathlib import Path
from typing import Any

from support_agent.infrastructure.observability.logging import get_logger
from support_agent.models.domain.support_domain import KnowledgeMatch, KnowledgeResult

logger = get_logger(__name__)

CACHE_TTL_SECONDS = 3600
MAX_MATCHES_PER_CATEGORY = 10
MIN_TERM_LENGTH = 3


class KnowledgeBase:
    def __init__(
        self,
        directory: str | Path,
        files: list[str] | None = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._directory = Path(directory)
        self._files = files
        self._clock = clock
        self._cache: dict[str, Any] | None = None
        self._loaded_at: float | None = None

    def _resolve_files(self) -> list[Path]:
        if self._files:
            return [self._directory / name for name in self._files]
        if not self._directory.is_dir():
            return []
        return sorted(self._directory.glob("*.json"))

    def _read_all(self) -> dict[str, Any]:
        knowledge: dict[str, Any] = {}
        for path in self._resolve_files():
            try:
                knowledge[path.stem] = json.loads(path.read_text(encoding="utf-8"))
            except (OSError, json.JSONDecodeError) as e:
                # One bad file should not hide the rest
                logger.warning("Failed to load knowledge file", file=path.name, error=str(e))
        return knowledge

    async def get_knowledge(self, refresh: bool = False) -> dict[str, Any]:
        """All loaded categories, reloading when forced or older than an hour."""
        expired = (
            self._loaded_at is None or self._clock() - self._loaded_at > CACHE_TTL_SECONDS
        )
        if refresh or expired or self._cache is None:
            self._cache = await asyncio.to_thread(self._read_all)
            self._loaded_at = self._clock()
            logger.info("Knowledge base loaded", categories=len(self._cache))
        return self._cache

    async def search(self, query: str, category: str | None = None) -> list[KnowledgeResult]:
        """
        Find string leaves containing any query term.

        Relevance is the share of query terms a leaf contains. Results are
        grouped per category, best first, at most ten per category. Any
        failure yields an empty result.
        """
        terms = _search_terms(query)
        if not terms:
            return []

        try:
            knowledge = await self.get_knowledge()
        except Exception as e:
            logger.error("Knowledge search failed", error=str(e))
            return []

        categories = [category] if category else list(knowledge)
        results = []
        for name in categories:
            data = knowledge.get(name)
            if data is None:
                continue
            matches = _search_in_data(data, terms)
            if matches:
                results.append(KnowledgeResult(category=name, items=tuple(matches)))

        logger.info("Knowledge search complete", categories_matched=len(results))
        return results


def _search_terms(query: str) -> list[str]:
    seen: list[str] = []
    for term in re.findall(r"[\w'-]+", query.lower()):
        if len(term) >= MIN_TERM_LENGTH and term not in seen:
            seen.append(term)
    return seen


def _search_in_data(data: Any, terms: list[str]) -> list[KnowledgeMatch]:
    matches: list[KnowledgeMatch] = []

    def visit(node: Any, path: str) -> None:
        if isinstance(node, str):
            lowered = node.lower()
            hits = sum(1 for term in terms if term in lowered)
            if hits:
                matches.append(KnowledgeMatch(path=path, content=node, relevance=hits / len(terms)))
        elif isinstance(node, list):
            for index, item in enumerate(node):
                visit(item, f"{path}[{index}]")
        elif isinstance(node, dict):
            for key, value in node.items():
                visit(value, f"{path}.{key}" if path else str(key))

    visit(data, "")
    matches.sort(key=lambda match: match.relevance, reverse=True)
    return matches[:MAX_MATCHES_PER_CATEGORY]
