"""
Restaurant retrieval index backed by a Chroma collection.

Each restaurant is one Chroma record keyed by its id: the fingerprint text,
its embedding and a flat metadata map written together by a single upsert.
Tag and numeric clauses are pushed down into Chroma's ``where`` filter;
geo-radius is evaluated on the candidate set with the haversine formula.
"""
import asyncio
import logging
import math
import re
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

from langchain_chroma import Chroma
from langchain_core.embeddings import Embeddings

from dining_agent.config import VECTOR_STORE_CONFIG
from dining_agent.errors import UpstreamUnavailableError
from dining_agent.models import RestaurantDocument
from dining_agent.observability import record_error

logger = logging.getLogger(__name__)

EARTH_RADIUS_KM = 6371.0088
UNIT_TO_KM = {"km": 1.0, "m": 0.001, "mi": 1.609344}

TAG_FIELDS = ("city", "locality", "type")
NUMERIC_FIELDS = ("rating", "price_for_two")


def haversine_km(lat1: float, lng1: float, lat2: float, lng2: float) -> float:
    """Great-circle distance between two coordinates in kilometres."""
    phi1, phi2 = math.radians(lat1), math.radians(lat2)
    d_phi = math.radians(lat2 - lat1)
    d_lambda = math.radians(lng2 - lng1)
    a = math.sin(d_phi / 2) ** 2 + math.cos(phi1) * math.cos(phi2) * math.sin(d_lambda / 2) ** 2
    return 2 * EARTH_RADIUS_KM * math.asin(math.sqrt(a))


def tag_slug(value: str) -> str:
    return re.sub(r"[^a-z0-9]+", "_", value.strip().lower()).strip("_")


@dataclass
class GeoRadius:
    latitude: float
    longitude: float
    radius: float
    unit: str = "km"

    def __post_init__(self):
        if self.unit not in UNIT_TO_KM:
            raise ValueError(f"Unsupported distance unit: {self.unit}")

    @property
    def radius_km(self) -> float:
        return self.radius * UNIT_TO_KM[self.unit]


@dataclass
class IndexQuery:
    """
    One index query. All clauses are combined with AND.

    ``sort_by`` is a sequence of (field, descending) pairs where field is a
    document attribute, ``score`` (vector distance) or ``distance`` (km from
    the geo centre).
    """
    text: str = "*"
    tags: Dict[str, str] = field(default_factory=dict)
    ranges: Dict[str, Tuple[Optional[float], Optional[float]]] = field(default_factory=dict)
    geo: Optional[GeoRadius] = None
    vector: Optional[List[float]] = None
    k: int = 10
    sort_by: Sequence[Tuple[str, bool]] = ()
    limit: int = 10


@dataclass
class IndexHit:
    document: RestaurantDocument
    score: Optional[float] = None  # vector distance, lower is closer
    distance_km: Optional[float] = None

    def to_dict(self) -> Dict[str, Any]:
        data = self.document.model_dump()
        if self.score is not None:
            data["similarity_distance"] = round(self.score, 4)
        if self.distance_km is not None:
            data["distance_km"] = round(self.distance_km, 2)
        return data


class RestaurantIndex:
    """Typed restaurant documents over a Chroma vector store."""

    def __init__(
        self,
        embeddings: Embeddings,
        collection_name: Optional[str] = None,
        persist_directory: Optional[str] = None,
    ):
        if persist_directory is None:
            persist_directory = VECTOR_STORE_CONFIG["persist_directory"]

        self.embeddings = embeddings
        self._size: Optional[int] = None
        self.collection_name = collection_name or VECTOR_STORE_CONFIG["collection_name"]
        self.store = Chroma(
            collection_name=self.collection_name,
            embedding_function=embeddings,
            persist_directory=persist_directory or None,
            collection_metadata={"hnsw:space": VECTOR_STORE_CONFIG["distance_metric"]},
        )
        logger.info(f"Restaurant index ready (collection={self.collection_name})")

    async def _run(self, func: Callable, *args, **kwargs):
        try:
            return await asyncio.to_thread(func, *args, **kwargs)
        except Exception as e:
            logger.error(f"Restaurant index call {getattr(func, '__name__', func)} failed: {e}")
            record_error('retrieval_index', type(e).__name__)
            raise UpstreamUnavailableError(f"Restaurant index unavailable: {e}") from e

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    async def upsert(self, documents: Sequence[RestaurantDocument]) -> int:
        """Insert or replace documents; returns the number written."""
        unique = {doc.id: doc for doc in documents}
        if not unique:
            return 0

        docs = list(unique.values())
        await self._run(
            self.store.add_texts,
            [doc.fingerprint_text() for doc in docs],
            metadatas=[self._to_metadata(doc) for doc in docs],
            ids=[doc.id for doc in docs],
        )
        self._size = None
        logger.info(f"Upserted {len(docs)} restaurants into {self.collection_name}")
        return len(docs)

    async def clear(self) -> None:
        ids = (await self._run(self.store.get, include=[]))["ids"]
        if ids:
            await self._run(self.store.delete, ids=ids)
        self._size = 0
        logger.info(f"Cleared {len(ids)} restaurants from {self.collection_name}")

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def count(self) -> int:
        """Number of indexed restaurants, recounted only after a write."""
        if self._size is None:
            result = await self._run(self.store.get, include=[])
            self._size = len(result["ids"])
        return self._size

    async def documents(self) -> List[RestaurantDocument]:
        result = await self._run(self.store.get, include=["metadatas"])
        return [self._from_metadata(m) for m in result.get("metadatas") or []]

    async def get(self, restaurant_id: str) -> Optional[RestaurantDocument]:
        result = await self._run(self.store.get, ids=[str(restaurant_id)], include=["metadatas"])
        metadatas = result.get("metadatas") or []
        return self._from_metadata(metadatas[0]) if metadatas else None

    async def embed(self, text: str) -> List[float]:
        try:
            return await self.embeddings.aembed_query(text)
        except Exception as e:
            logger.error(f"Embedding request failed: {e}")
            record_error('embeddings', type(e).__name__)
            raise UpstreamUnavailableError(f"Embedding service unavailable: {e}") from e

    async def query(self, query: IndexQuery) -> List[IndexHit]:
        """Run one query and return at most ``query.limit`` ranked hits."""
        where = self._build_where(query.tags, query.ranges)

        if query.vector is not None:
            hits = await self._knn(query.vector, query.k, where, widen=query.geo is not None)
        else:
            hits = await self._scan(where)

        hits = [hit for hit in hits if self._matches_text(hit.document, query.text)]

        if query.geo is not None:
            hits = self._within_radius(hits, query.geo)

        hits = self._sort(hits, query.sort_by)
        return hits[:max(query.limit, 0)]

    async def _knn(
        self,
        vector: List[float],
        k: int,
        where: Optional[Dict[str, Any]],
        widen: bool,
    ) -> List[IndexHit]:
        total = await self.count()
        if total == 0:
            return []

        # A radius post-filter needs every filtered candidate, not just the top k
        n_results = total if widen else max(1, min(k, total))
        results = await self._run(
            self.store.similarity_search_by_vector_with_relevance_scores,
            embedding=vector,
            k=n_results,
            filter=where,
        )
        return [
            IndexHit(document=self._from_metadata(doc.metadata), score=float(score))
            for doc, score in results
        ]

    async def _scan(self, where: Optional[Dict[str, Any]]) -> List[IndexHit]:
        result = await self._run(self.store.get, where=where, include=["metadatas"])
        return [IndexHit(document=self._from_metadata(m)) for m in result.get("metadatas") or []]

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    @staticmethod
    def _to_metadata(doc: RestaurantDocument) -> Dict[str, Any]:
        metadata: Dict[str, Any] = {
            "id": doc.id,
            "name": doc.name,
            "city_tag": doc.city.strip().lower(),
            "locality_tag": doc.locality.strip().lower(),
            "type_tag": doc.type.strip().lower(),
            "rating": float(doc.rating),
            "price_for_two": float(doc.price_for_two),
            "review_count": int(doc.review_count),
            "payload": doc.model_dump_json(),
        }
        if doc.has_location:
            metadata["latitude"] = float(doc.latitude)
            metadata["longitude"] = float(doc.longitude)
        for cuisine in doc.cuisine:
            slug = tag_slug(cuisine)
            if slug:
                metadata[f"cuisine_{slug}"] = True
        return metadata

    @staticmethod
    def _from_metadata(metadata: Dict[str, Any]) -> RestaurantDocument:
        return RestaurantDocument.model_validate_json(metadata["payload"])

    @staticmethod
    def _build_where(
        tags: Dict[str, str],
        ranges: Dict[str, Tuple[Optional[float], Optional[float]]],
    ) -> Optional[Dict[str, Any]]:
        clauses: List[Dict[str, Any]] = []

        for field_name, value in tags.items():
            if not value:
                continue
            if field_name == "cuisine":
                # Comma separated cuisines are alternatives
                flags = [{f"cuisine_{slug}": True} for slug in map(tag_slug, value.split(",")) if slug]
                if len(flags) == 1:
                    clauses.append(flags[0])
                elif flags:
                    clauses.append({"$or": flags})
            elif field_name in TAG_FIELDS:
                clauses.append({f"{field_name}_tag": value.strip().lower()})
            else:
                raise ValueError(f"Unknown tag field: {field_name}")

        for field_name, (low, high) in ranges.items():
            if field_name not in NUMERIC_FIELDS:
                raise ValueError(f"Unknown numeric field: {field_name}")
            if low is not None:
                clauses.append({field_name: {"$gte": float(low)}})
            if high is not None:
                clauses.append({field_name: {"$lte": float(high)}})

        if not clauses:
            return None
        if len(clauses) == 1:
            return clauses[0]
        return {"$and": clauses}

    @staticmethod
    def _matches_text(document: RestaurantDocument, text: str) -> bool:
        if not text or text.strip() == "*":
            return True
        haystack = document.fingerprint_text().lower()
        return all(term in haystack for term in re.findall(r"\w+", text.lower()))

    @staticmethod
    def _within_radius(hits: List[IndexHit], geo: GeoRadius) -> List[IndexHit]:
        kept = []
        for hit in hits:
            doc = hit.document
            if not doc.has_location:
                continue
            distance = haversine_km(geo.latitude, geo.longitude, doc.latitude, doc.longitude)
            if distance <= geo.radius_km:
                hit.distance_km = distance
                kept.append(hit)
        return kept

    @staticmethod
    def _sort(hits: List[IndexHit], sort_by: Sequence[Tuple[str, bool]]) -> List[IndexHit]:
        # Stable sorts applied from the least to the most significant key
        for field_name, descending in reversed(list(sort_by)):
            if field_name == "score":
                key = lambda h: h.score if h.score is not None else math.inf
            elif field_name == "distance":
                key = lambda h: h.distance_km if h.distance_km is not None else math.inf
            else:
                key = lambda h, name=field_name: getattr(h.document, name)
            hits.sort(key=key, reverse=descending)
        return hits
