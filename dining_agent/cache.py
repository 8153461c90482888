"""
Semantic response cache.

SemanticCache stores (prompt, response, attributes, TTL) entries in a Chroma
collection and answers lookups with an exact strategy (same prompt text) and
a semantic strategy (cosine similarity above a threshold). Strategies run in
the order given and the first one that produces an entry wins.

An entry is only visible to lookups carrying the same attributes: entries
written for a session never answer an unscoped lookup, and shared entries
never answer a session-scoped one. Expiry is passive: expired entries are
filtered out at lookup time.

CacheGateway is the boundary the orchestrator talks to. Lookup failures are
logged and reported as a miss; store failures are logged and reported as
``False``.
"""
import asyncio
import hashlib
import json
import logging
import time
from typing import Any, Callable, Dict, List, Optional, Sequence

from langchain_chroma import Chroma
from langchain_core.embeddings import Embeddings
from langsmith import traceable

from dining_agent.config import CACHE_CONFIG
from dining_agent.errors import UpstreamUnavailableError
from dining_agent.observability import record_cache_operation, record_error
from dining_agent.ttl_policy import format_ttl

logger = logging.getLogger(__name__)

EXACT = "exact"
SEMANTIC = "semantic"
DEFAULT_STRATEGIES = (EXACT, SEMANTIC)

SHARED_SCOPE = "shared"


def scope_key(attributes: Optional[Dict[str, Any]]) -> str:
    """Canonical string for a set of scoping attributes."""
    if not attributes:
        return SHARED_SCOPE
    pairs = [f"{name}={attributes[name]}" for name in sorted(attributes) if attributes[name] is not None]
    return "&".join(pairs) or SHARED_SCOPE


class SemanticCache:
    """Chroma-backed prompt/response cache with exact and semantic search."""

    def __init__(
        self,
        embeddings: Embeddings,
        collection_name: Optional[str] = None,
        persist_directory: Optional[str] = None,
        similarity_threshold: Optional[float] = None,
        clock: Optional[Callable[[], float]] = None,
    ):
        if persist_directory is None:
            persist_directory = CACHE_CONFIG["persist_directory"]

        self.store = Chroma(
            collection_name=collection_name or CACHE_CONFIG["collection_name"],
            embedding_function=embeddings,
            persist_directory=persist_directory or None,
            collection_metadata={"hnsw:space": "cosine"},
        )
        self.similarity_threshold = (
            similarity_threshold if similarity_threshold is not None
            else CACHE_CONFIG["similarity_threshold"]
        )
        self._clock = clock or time.time

    def _now_ms(self) -> int:
        return int(self._clock() * 1000)

    def search(
        self,
        prompt: str,
        search_strategies: Sequence[str] = DEFAULT_STRATEGIES,
        attributes: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, List[Dict[str, Any]]]:
        """Return ``{"data": [entry]}`` for the first strategy that matches, else ``{"data": []}``."""
        eligible = [
            {"scope": scope_key(attributes)},
            {"expires_at": {"$gt": self._now_ms()}},
        ]

        for strategy in search_strategies:
            if strategy == EXACT:
                entry = self._search_exact(prompt, eligible)
            elif strategy == SEMANTIC:
                entry = self._search_semantic(prompt, eligible)
            else:
                raise ValueError(f"Unknown cache search strategy: {strategy}")

            if entry is not None:
                entry["strategy"] = strategy
                return {"data": [entry]}

        return {"data": []}

    def _search_exact(self, prompt: str, eligible: List[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
        result = self.store.get(
            where={"$and": [{"prompt": prompt}, *eligible]},
            include=["metadatas"],
        )
        metadatas = result.get("metadatas") or []
        if not metadatas:
            return None
        latest = max(metadatas, key=lambda m: m["created_at"])
        return self._to_entry(latest, similarity=1.0)

    def _search_semantic(self, prompt: str, eligible: List[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
        if not self.store.get(limit=1, include=[])["ids"]:
            return None

        results = self.store.similarity_search_with_score(prompt, k=1, filter={"$and": eligible})
        if not results:
            return None

        document, distance = results[0]
        similarity = 1.0 - float(distance)
        if similarity < self.similarity_threshold:
            logger.debug(f"Closest cached prompt below threshold ({similarity:.3f} < {self.similarity_threshold})")
            return None
        return self._to_entry(document.metadata, similarity=similarity)

    def set(
        self,
        prompt: str,
        response: str,
        ttl_millis: int,
        attributes: Optional[Dict[str, Any]] = None,
    ) -> str:
        """Store an entry; the same prompt in the same scope is overwritten."""
        if ttl_millis <= 0:
            raise ValueError("ttl_millis must be positive")

        scope = scope_key(attributes)
        now = self._now_ms()
        entry_id = hashlib.sha256(f"{scope}\n{prompt}".encode("utf-8")).hexdigest()

        self.store.add_texts(
            [prompt],
            metadatas=[{
                "prompt": prompt,
                "response": response,
                "scope": scope,
                "attributes": json.dumps(attributes or {}, sort_keys=True),
                "created_at": now,
                "expires_at": now + int(ttl_millis),
            }],
            ids=[entry_id],
        )
        return entry_id

    @staticmethod
    def _to_entry(metadata: Dict[str, Any], similarity: float) -> Dict[str, Any]:
        return {
            "prompt": metadata["prompt"],
            "response": metadata["response"],
            "similarity": round(similarity, 4),
            "attributes": json.loads(metadata.get("attributes") or "{}"),
            "expires_at": metadata["expires_at"],
        }


class CacheGateway:
    """Async boundary between the orchestrator and the semantic cache."""

    def __init__(self, cache: SemanticCache):
        self.cache = cache

    @traceable(name="cache_lookup", run_type="retriever", tags=["cache", "lookup"])
    async def lookup(self, query: str, scope: Optional[Dict[str, Any]] = None) -> Optional[str]:
        """Cached response for the query, or None on a miss or a cache failure."""
        start_time = time.time()
        try:
            result = await asyncio.to_thread(self.cache.search, query, DEFAULT_STRATEGIES, scope)
        except Exception as e:
            logger.error(f"Cache lookup failed, treating as miss: {e}")
            record_error('cache', type(e).__name__)
            record_cache_operation('lookup', 'failure', time.time() - start_time)
            return None

        data = result.get("data") or []
        if not data:
            record_cache_operation('lookup', 'miss', time.time() - start_time)
            return None

        hit = data[0]
        record_cache_operation('lookup', 'hit', time.time() - start_time)
        logger.info(f"Cache hit via {hit['strategy']} strategy (similarity={hit['similarity']})")
        return hit["response"]

    @traceable(name="cache_store", run_type="tool", tags=["cache", "store"])
    async def store(
        self,
        query: str,
        response: str,
        ttl_millis: int,
        scope: Optional[Dict[str, Any]] = None,
    ) -> bool:
        """Write an entry; returns False (after logging) when the write fails."""
        start_time = time.time()
        try:
            await asyncio.to_thread(self.cache.set, query, response, ttl_millis, scope)
        except Exception as e:
            logger.error(f"Cache store failed: {e}")
            record_error('cache', type(e).__name__)
            record_cache_operation('store', 'failure', time.time() - start_time)
            return False

        record_cache_operation('store', 'success', time.time() - start_time)
        logger.info(f"Cached response for {format_ttl(ttl_millis)} (scope={scope_key(scope)})")
        return True

    async def check(self, query: str, scope: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        """Lookup diagnostics for a query without touching the conversation."""
        try:
            result = await asyncio.to_thread(self.cache.search, query, DEFAULT_STRATEGIES, scope)
        except Exception as e:
            record_error('cache', type(e).__name__)
            raise UpstreamUnavailableError(f"Semantic cache unavailable: {e}") from e

        data = result.get("data") or []
        hit = data[0] if data else None
        return {
            "query": query,
            "scope": scope_key(scope),
            "hit": hit is not None,
            "strategy": hit["strategy"] if hit else None,
            "similarity": hit["similarity"] if hit else None,
            "response": hit["response"] if hit else None,
        }
