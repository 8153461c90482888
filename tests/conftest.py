"""
Shared fixtures: deterministic embeddings, scripted chat models, seeded
restaurant indexes and fully wired concierge services.
"""
import asyncio
import hashlib
import math
import re
import uuid
from typing import Callable, List, Optional, Sequence

import pytest
from langchain_core.embeddings import Embeddings
from langchain_core.messages import AIMessage, BaseMessage, HumanMessage

from dining_agent.agents import ConciergeWorkflow, RestaurantDiscoveryAgent, ToolCallingModel
from dining_agent.bootstrap import ConciergeServices
from dining_agent.cache import CacheGateway, SemanticCache
from dining_agent.index import RestaurantIndex
from dining_agent.models import RestaurantDocument
from dining_agent.rag_system import RestaurantRAGSystem
from dining_agent.reservations import ReservationRepository, ReservationService
from dining_agent.sessions import SessionStore
from dining_agent.tools import ToolRegistry


# ============================================================================
# TEST DOUBLES
# ============================================================================

class KeywordEmbeddings(Embeddings):
    """
    Bag-of-words embeddings: every lowercase token is hashed into one of the
    dimensions and a constant bias dimension keeps vectors non-zero. Texts
    with the same tokens embed identically.
    """

    def __init__(self, dimensions: int = 128):
        self.dimensions = dimensions

    def _embed(self, text: str) -> List[float]:
        vector = [0.0] * self.dimensions
        for token in re.findall(r"\w+", text.lower()):
            slot = int(hashlib.md5(token.encode("utf-8")).hexdigest(), 16) % (self.dimensions - 1)
            vector[slot] += 1.0
        vector[-1] = 1.0
        norm = math.sqrt(sum(v * v for v in vector))
        return [v / norm for v in vector]

    def embed_documents(self, texts: List[str]) -> List[List[float]]:
        return [self._embed(text) for text in texts]

    def embed_query(self, text: str) -> List[float]:
        return self._embed(text)


class ScriptedChatModel:
    """Returns queued AIMessages in order; fails loudly when the script runs out."""

    def __init__(self, responses: Sequence[AIMessage] = ()):
        self.responses = list(responses)
        self.calls: List[List[BaseMessage]] = []

    async def ainvoke(self, messages, *args, **kwargs) -> AIMessage:
        self.calls.append(list(messages))
        if not self.responses:
            raise AssertionError("ScriptedChatModel called more times than scripted")
        return self.responses.pop(0)


class FailingChatModel:
    async def ainvoke(self, messages, *args, **kwargs):
        raise ConnectionError("model endpoint unreachable")


class EchoChatModel:
    """Answers every request with the latest user message after a short delay."""

    def __init__(self, delay: float = 0.01):
        self.delay = delay

    async def ainvoke(self, messages, *args, **kwargs) -> AIMessage:
        await asyncio.sleep(self.delay)
        last_user = [m for m in messages if isinstance(m, HumanMessage)][-1]
        return AIMessage(content=f"echo: {last_user.content}")


class FailingCache:
    """Stands in for a SemanticCache whose backend is down."""

    def search(self, prompt, search_strategies=(), attributes=None):
        raise ConnectionError("cache backend unreachable")

    def set(self, prompt, response, ttl_millis, attributes=None):
        raise ConnectionError("cache backend unreachable")


def tool_call(name: str, args: Optional[dict] = None, call_id: Optional[str] = None) -> AIMessage:
    """AIMessage requesting a single tool call."""
    return AIMessage(
        content="",
        tool_calls=[{"name": name, "args": args or {}, "id": call_id or f"call_{uuid.uuid4().hex[:8]}"}],
    )


def unique_collection(prefix: str) -> str:
    return f"{prefix}-{uuid.uuid4().hex[:12]}"


# ============================================================================
# DATA
# ============================================================================

RESTAURANTS = [
    {
        "id": 1, "name": "Roma Trattoria", "cuisine": "Italian, Pizza",
        "city": "New Delhi", "locality": "Khan Market", "address": "12 Khan Market, New Delhi",
        "latitude": 28.6003, "longitude": 77.2270, "rating": 4.5, "reviewCount": 820,
        "priceFor2": 2200, "type": "Casual Dining",
        "about": "Wood-fired pizza and handmade pasta", "knownFor": "Truffle risotto",
    },
    {
        "id": 2, "name": "Pasta Piazza", "cuisine": "Italian",
        "city": "New Delhi", "locality": "Khan Market", "address": "40 Khan Market, New Delhi",
        "latitude": 28.6001, "longitude": 77.2275, "rating": 4.1, "reviewCount": 310,
        "priceFor2": 1800, "type": "Cafe",
        "about": "Fresh pasta and espresso", "knownFor": "Carbonara",
    },
    {
        "id": 3, "name": "Dilli Darbar", "cuisine": "North Indian, Mughlai",
        "city": "New Delhi", "locality": "Connaught Place", "address": "N-Block, Connaught Place",
        "latitude": 28.6315, "longitude": 77.2167, "rating": 4.6, "reviewCount": 1500,
        "priceFor2": 1500, "type": "Casual Dining",
        "about": "Rich curries and kebabs from the tandoor", "knownFor": "Butter chicken",
    },
    {
        "id": 4, "name": "Spice Route", "cuisine": "Thai, Asian",
        "city": "New Delhi", "locality": "Connaught Place", "address": "Janpath, Connaught Place",
        "latitude": 28.6320, "longitude": 77.2190, "rating": 4.3, "reviewCount": 640,
        "priceFor2": 3000, "type": "Fine Dining",
        "about": "Southeast Asian dishes in an ornate dining room", "knownFor": "Green curry",
    },
    {
        "id": 5, "name": "Chai Corner", "cuisine": "Cafe, Beverages",
        "city": "New Delhi", "locality": "Hauz Khas", "address": "Hauz Khas Village",
        "latitude": 28.5494, "longitude": 77.2001, "rating": 3.8, "reviewCount": 120,
        "priceFor2": 500, "type": "Cafe",
        "about": "Tea, snacks and board games", "knownFor": "Masala chai",
    },
    {
        "id": 6, "name": "Sushi Sen", "cuisine": "Japanese, Sushi",
        "city": "Gurugram", "locality": "Cyber Hub", "address": "Cyber Hub, DLF Phase 2",
        "latitude": 28.4950, "longitude": 77.0890, "rating": 4.4, "reviewCount": 900,
        "priceFor2": 2800, "type": "Fine Dining",
        "about": "Omakase counter and sake bar", "knownFor": "Salmon nigiri",
    },
    {
        "id": 7, "name": "Tandoor Tales", "cuisine": "North Indian",
        "city": "Gurugram", "locality": "Sector 29", "address": "Leisure Valley Road, Sector 29",
        "latitude": 28.4690, "longitude": 77.0660, "rating": 4.0, "reviewCount": 450,
        "priceFor2": 1200, "type": "Casual Dining",
        "about": "Clay oven breads and grills", "knownFor": "Dal makhani",
    },
    {
        "id": 8, "name": "Burger Barn", "cuisine": "American, Burger",
        "city": "Gurugram", "locality": "Cyber Hub", "address": "Cyber Hub, DLF Phase 2",
        "latitude": 28.4952, "longitude": 77.0885, "rating": 3.9, "reviewCount": 300,
        "priceFor2": 900, "type": "Quick Bites",
        "about": "Smash burgers and shakes", "knownFor": "Double cheeseburger",
    },
]


# ============================================================================
# FIXTURES
# ============================================================================

@pytest.fixture
def embeddings() -> KeywordEmbeddings:
    return KeywordEmbeddings()


@pytest.fixture
def restaurant_documents() -> List[RestaurantDocument]:
    return [RestaurantDocument.model_validate(record) for record in RESTAURANTS]


@pytest.fixture
async def index(embeddings, restaurant_documents) -> RestaurantIndex:
    index = RestaurantIndex(embeddings, collection_name=unique_collection("restaurants"), persist_directory="")
    await index.upsert(restaurant_documents)
    return index


@pytest.fixture
async def rag_system(index) -> RestaurantRAGSystem:
    return RestaurantRAGSystem(index)


@pytest.fixture
def semantic_cache(embeddings) -> SemanticCache:
    return SemanticCache(embeddings, collection_name=unique_collection("cache"), persist_directory="")


@pytest.fixture
def session_store() -> SessionStore:
    return SessionStore()


@pytest.fixture
async def reservation_service(rag_system, session_store) -> ReservationService:
    return ReservationService(ReservationRepository(), rag_system, session_store)


@pytest.fixture
def answer_model() -> ScriptedChatModel:
    return ScriptedChatModel()


@pytest.fixture
async def tool_registry(rag_system, reservation_service, answer_model) -> ToolRegistry:
    return ToolRegistry(rag_system, reservation_service, answer_model)


@pytest.fixture
async def make_services(rag_system, semantic_cache, session_store, reservation_service, tool_registry) -> Callable:
    """Factory wiring a ConciergeServices around a given chat model."""

    def factory(chat_model, cache=None, max_iterations: Optional[int] = None) -> ConciergeServices:
        cache_gateway = CacheGateway(cache or semantic_cache)
        agent = RestaurantDiscoveryAgent(
            ToolCallingModel(chat_model, "scripted"),
            tool_registry,
            session_store,
            max_iterations=max_iterations,
        )
        return ConciergeServices(
            rag_system=rag_system,
            cache_gateway=cache_gateway,
            session_store=session_store,
            reservation_service=reservation_service,
            tool_registry=tool_registry,
            workflow=ConciergeWorkflow(agent, cache_gateway, session_store),
        )

    return factory
