"""
Hybrid restaurant retrieval with a fixed fallback ladder.

Ladder, first non-empty result wins:
1. semantic  - embed the free-text query, KNN restricted by every filter
2. location  - geo-radius around the coordinate with the remaining filters
3. popular   - rating >= 4.0 in the city/cuisine, best rated first
4. retry 1 or 2 without the cuisine filter
5. popular listing for the city as the final fallback

LangSmith Tracing:
- Retrieval operations are traced under the "retrieval" tag
- Data ingestion is traced under the "data-ingestion" tag
"""
import json
import logging
import time
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any, Dict, List, Optional

from langsmith import traceable

from dining_agent.config import SEARCH_CONFIG, DATA_CONFIG
from dining_agent.errors import RestaurantNotFoundError, ValidationError
from dining_agent.index import GeoRadius, IndexHit, IndexQuery, RestaurantIndex
from dining_agent.models import RestaurantDocument
from dining_agent.observability import (
    record_fallback,
    record_retrieval,
    update_vector_store_size,
)

logger = logging.getLogger(__name__)

SEMANTIC = "semantic"
LOCATION = "location"
POPULAR = "popular"
POPULAR_FALLBACK = "popular_fallback"


def _clean(value: Optional[str]) -> Optional[str]:
    if value is None:
        return None
    value = value.strip()
    return value or None


@dataclass
class SearchFilters:
    """Structured search filters, normalised and validated on construction."""
    latitude: Optional[float] = None
    longitude: Optional[float] = None
    radius_km: Optional[float] = None
    cuisine: Optional[str] = None
    city: Optional[str] = None
    locality: Optional[str] = None
    type: Optional[str] = None
    max_price: Optional[float] = None
    min_rating: Optional[float] = None

    def __post_init__(self):
        self.cuisine = _clean(self.cuisine)
        self.city = _clean(self.city)
        self.locality = _clean(self.locality)
        self.type = _clean(self.type)

        if (self.latitude is None) != (self.longitude is None):
            raise ValidationError("Both latitude and longitude must be provided together")
        if self.latitude is not None and not -90 <= self.latitude <= 90:
            raise ValidationError("Latitude must be between -90 and 90")
        if self.longitude is not None and not -180 <= self.longitude <= 180:
            raise ValidationError("Longitude must be between -180 and 180")
        if self.radius_km is not None and self.radius_km <= 0:
            raise ValidationError("Radius must be greater than 0")
        if self.max_price is not None and self.max_price < 0:
            raise ValidationError("Max price must be 0 or more")
        if self.min_rating is not None:
            self.min_rating = min(max(self.min_rating, 0.0), 5.0)

    @property
    def has_coordinate(self) -> bool:
        return self.latitude is not None and self.longitude is not None

    def without_cuisine(self) -> "SearchFilters":
        return replace(self, cuisine=None)

    def tags(self) -> Dict[str, str]:
        tags = {"cuisine": self.cuisine, "city": self.city, "locality": self.locality, "type": self.type}
        return {name: value for name, value in tags.items() if value}

    def ranges(self) -> Dict[str, tuple]:
        ranges = {}
        if self.max_price is not None:
            ranges["price_for_two"] = (None, self.max_price)
        if self.min_rating is not None:
            ranges["rating"] = (self.min_rating, None)
        return ranges

    def geo(self) -> Optional[GeoRadius]:
        if not self.has_coordinate:
            return None
        radius = self.radius_km or SEARCH_CONFIG["default_radius_km"]
        return GeoRadius(self.latitude, self.longitude, radius, "km")

    def describe(self) -> Dict[str, Any]:
        return {name: value for name, value in self.__dict__.items() if value is not None}


@dataclass
class SearchOutcome:
    hits: List[IndexHit]
    search_strategy: str
    relaxed_filters: List[str] = field(default_factory=list)
    fallback_applied: bool = False
    fallback_message: Optional[str] = None
    original_criteria: Dict[str, Any] = field(default_factory=dict)

    @property
    def restaurants(self) -> List[RestaurantDocument]:
        return [hit.document for hit in self.hits]


class RestaurantRAGSystem:
    """
    Restaurant retrieval over the hybrid index.

    Features:
    - Semantic, geo and popularity strategies behind one search call
    - Cuisine relaxation and a popularity fallback so searches rarely come back empty
    - Detail lookup and bulk data loading
    """

    def __init__(self, index: RestaurantIndex):
        self.index = index
        logger.info("RAG System initialized")

    @staticmethod
    def clamp_limit(limit: Optional[int]) -> int:
        if limit is None:
            return SEARCH_CONFIG["default_limit"]
        return min(max(int(limit), 1), SEARCH_CONFIG["max_limit"])

    @traceable(
        name="hybrid_search",
        run_type="retriever",
        tags=["retrieval", "hybrid-search", "fallback-ladder"]
    )
    async def hybrid_search(
        self,
        query: Optional[str] = None,
        filters: Optional[SearchFilters] = None,
        limit: Optional[int] = None,
        use_semantic_search: bool = True,
    ) -> SearchOutcome:
        """
        Search restaurants, walking the fallback ladder until something matches.

        Args:
            query: Free-text query, used by the semantic step
            filters: Structured filters
            limit: Maximum number of results
            use_semantic_search: Disable to skip the semantic step

        Returns:
            SearchOutcome with at most ``limit`` hits, the strategy that
            produced them and which filters were relaxed on the way
        """
        filters = filters or SearchFilters()
        limit = self.clamp_limit(limit)
        query = (query or "").strip()

        if query and use_semantic_search:
            strategy = SEMANTIC
        elif filters.has_coordinate:
            strategy = LOCATION
        else:
            strategy = POPULAR

        relaxed: List[str] = []
        start_time = time.time()

        try:
            hits = await self._run_strategy(strategy, query, filters, limit)

            if not hits and filters.cuisine and strategy in (SEMANTIC, LOCATION):
                logger.info(f"[FALLBACK] No {strategy} matches for cuisine '{filters.cuisine}', retrying without it")
                record_fallback("drop_cuisine")
                relaxed.append("cuisine")
                hits = await self._run_strategy(strategy, query, filters.without_cuisine(), limit)

            if not hits:
                logger.info(f"[FALLBACK] {strategy} search empty, falling back to popular restaurants")
                record_fallback(POPULAR_FALLBACK)
                for name in ("cuisine", "locality", "type", "max_price", "min_rating"):
                    if getattr(filters, name) is not None and name not in relaxed:
                        relaxed.append(name)
                if filters.has_coordinate:
                    relaxed.append("location")
                strategy = POPULAR_FALLBACK
                hits = await self.popular_restaurants(city=filters.city, limit=limit)

        except Exception:
            record_retrieval(strategy, time.time() - start_time, 0, success=False)
            raise

        hits = hits[:limit]
        record_retrieval(strategy, time.time() - start_time, len(hits), success=True)
        logger.info(f"Hybrid search returned {len(hits)} results via {strategy} (relaxed: {relaxed or 'none'})")

        return SearchOutcome(
            hits=hits,
            search_strategy=strategy,
            relaxed_filters=relaxed,
            fallback_applied=bool(relaxed) or strategy == POPULAR_FALLBACK,
            fallback_message=self._fallback_message(filters, relaxed, strategy, hits),
            original_criteria=filters.describe(),
        )

    async def _run_strategy(
        self,
        strategy: str,
        query: str,
        filters: SearchFilters,
        limit: int,
    ) -> List[IndexHit]:
        if strategy == SEMANTIC:
            candidates = limit * SEARCH_CONFIG["semantic_headroom"]
            vector = await self.index.embed(query)
            sort_by = [("distance", False)] if filters.has_coordinate else [("score", False)]
            return await self.index.query(IndexQuery(
                tags=filters.tags(),
                ranges=filters.ranges(),
                geo=filters.geo(),
                vector=vector,
                k=candidates,
                sort_by=sort_by,
                limit=candidates,
            ))

        if strategy == LOCATION:
            return await self.index.query(IndexQuery(
                tags=filters.tags(),
                ranges=filters.ranges(),
                geo=filters.geo(),
                sort_by=[("distance", False)],
                limit=limit,
            ))

        return await self.popular_restaurants(city=filters.city, cuisine=filters.cuisine, limit=limit)

    def _fallback_message(
        self,
        filters: SearchFilters,
        relaxed: List[str],
        strategy: str,
        hits: List[IndexHit],
    ) -> Optional[str]:
        if not relaxed and strategy != POPULAR_FALLBACK:
            return None

        wanted = f"{filters.cuisine} restaurants" if filters.cuisine else "restaurants"
        where = filters.locality or filters.city
        if where:
            wanted += f" in {where}"

        if not hits:
            return f"No matches found for {wanted}, and no popular alternatives were available."
        if strategy == POPULAR_FALLBACK:
            scope = f" in {filters.city}" if filters.city else ""
            return f"No exact matches found for {wanted}. Showing popular restaurants{scope} instead."
        return f"No exact matches found for {wanted}. Showing results without the {', '.join(relaxed)} filter."

    @traceable(name="popular_restaurants", run_type="retriever", tags=["retrieval", "popular"])
    async def popular_restaurants(
        self,
        city: Optional[str] = None,
        cuisine: Optional[str] = None,
        limit: Optional[int] = None,
    ) -> List[IndexHit]:
        """Top rated restaurants (rating >= floor), best first, ties by review count."""
        tags = {name: value for name, value in {"city": _clean(city), "cuisine": _clean(cuisine)}.items() if value}
        return await self.index.query(IndexQuery(
            tags=tags,
            ranges={"rating": (SEARCH_CONFIG["popular_min_rating"], None)},
            sort_by=[("rating", True), ("review_count", True)],
            limit=self.clamp_limit(limit),
        ))

    async def get_restaurant_by_id(self, restaurant_id: str) -> RestaurantDocument:
        """Retrieve a restaurant by id or raise RestaurantNotFoundError."""
        restaurant = await self.index.get(str(restaurant_id).strip())
        if restaurant is None:
            raise RestaurantNotFoundError(str(restaurant_id))
        return restaurant

    async def filter_options(self) -> Dict[str, Any]:
        """Distinct filter values and numeric bounds across the indexed restaurants."""
        restaurants = await self.index.documents()
        prices = [r.price_for_two for r in restaurants]
        ratings = [r.rating for r in restaurants]

        return {
            "cuisines": sorted({c.strip() for r in restaurants for c in r.cuisine if c.strip()}),
            "cities": sorted({r.city.strip() for r in restaurants if r.city.strip()}),
            "localities": sorted({r.locality.strip() for r in restaurants if r.locality.strip()}),
            "types": sorted({r.type.strip() for r in restaurants if r.type.strip()}),
            "price": {"min": min(prices), "max": max(prices)} if prices else None,
            "rating": {"min": min(ratings), "max": max(ratings)} if ratings else None,
            "price_ranges": SEARCH_CONFIG["price_ranges"],
            "rating_ranges": [
                {"label": f"{floor}+ Stars", "min": floor} for floor in SEARCH_CONFIG["rating_ranges"]
            ],
        }

    async def stats(self) -> Dict[str, Any]:
        options = await self.filter_options()
        return {
            "total_restaurants": await self.index.count(),
            "total_cuisines": len(options["cuisines"]),
            "total_cities": len(options["cities"]),
            "total_types": len(options["types"]),
            "cuisines": options["cuisines"],
            "cities": options["cities"],
            "types": options["types"],
        }

    @traceable(name="load_restaurant_data", run_type="tool", tags=["data-ingestion", "json"])
    def load_restaurant_data(self, data_path: Optional[str] = None) -> List[RestaurantDocument]:
        """Load restaurant records from a JSON list."""
        data_path = data_path or DATA_CONFIG["restaurant_data_path"]

        try:
            with open(data_path, 'r', encoding='utf-8') as f:
                records = json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            logger.error(f"Error loading restaurant data: {e}")
            raise

        restaurants = [RestaurantDocument.model_validate(record) for record in records]
        logger.info(f"Loaded {len(restaurants)} restaurants from {data_path}")
        return restaurants

    @traceable(
        name="initialize_rag_pipeline",
        run_type="chain",
        tags=["data-ingestion", "pipeline", "initialization"]
    )
    async def initialize_pipeline(
        self,
        data_path: Optional[str] = None,
        force_rebuild: bool = False,
    ) -> int:
        """
        Make sure the index holds the restaurant data set.

        Args:
            data_path: JSON file to load, defaults to DATA_CONFIG
            force_rebuild: Drop and reload even if the index is populated

        Returns:
            Number of documents in the index
        """
        existing = await self.index.count()
        if existing and not force_rebuild:
            logger.info(f"Using existing index with {existing} restaurants")
            update_vector_store_size(existing)
            return existing

        data_path = data_path or DATA_CONFIG["restaurant_data_path"]
        if not Path(data_path).exists():
            logger.warning(f"Restaurant data not found at {data_path}; index holds {existing} documents")
            update_vector_store_size(existing)
            return existing

        restaurants = self.load_restaurant_data(data_path)
        if force_rebuild:
            await self.index.clear()
        await self.index.upsert(restaurants)

        count = await self.index.count()
        update_vector_store_size(count)
        logger.info(f"RAG pipeline initialized with {count} restaurants")
        return count
