"""
Composition root: builds every collaborator once and wires them together.
"""
import logging
from dataclasses import dataclass
from typing import Optional

from langchain_core.embeddings import Embeddings
from langchain_openai import ChatOpenAI, OpenAIEmbeddings

from dining_agent.agents import ConciergeWorkflow, RestaurantDiscoveryAgent, ToolCallingModel
from dining_agent.cache import CacheGateway, SemanticCache
from dining_agent.config import DIRECT_ANSWER_CONFIG, EMBEDDING_CONFIG, OPENAI_API_KEY
from dining_agent.index import RestaurantIndex
from dining_agent.rag_system import RestaurantRAGSystem
from dining_agent.reservations import ReservationRepository, ReservationService
from dining_agent.sessions import SessionStore
from dining_agent.tools import ToolRegistry

logger = logging.getLogger(__name__)


@dataclass
class ConciergeServices:
    rag_system: RestaurantRAGSystem
    cache_gateway: CacheGateway
    session_store: SessionStore
    reservation_service: ReservationService
    tool_registry: ToolRegistry
    workflow: ConciergeWorkflow


def build_services(
    api_key: Optional[str] = None,
    embeddings: Optional[Embeddings] = None,
    chat_model=None,
    answer_model=None,
    restaurant_collection: Optional[str] = None,
    cache_collection: Optional[str] = None,
) -> ConciergeServices:
    """
    Build the concierge services.

    Args:
        api_key: OpenAI API key, defaults to OPENAI_API_KEY
        embeddings: Embedding model shared by the index and the cache
        chat_model: Runnable already bound to the tool schemas
        answer_model: Chat model used by the direct_answer tool
        restaurant_collection: Chroma collection for restaurants
        cache_collection: Chroma collection for the semantic cache
    """
    api_key = api_key or OPENAI_API_KEY

    if embeddings is None:
        embeddings = OpenAIEmbeddings(
            model=EMBEDDING_CONFIG["model"],
            openai_api_key=api_key
        )
    if answer_model is None:
        answer_model = ChatOpenAI(
            model=DIRECT_ANSWER_CONFIG["model"],
            temperature=DIRECT_ANSWER_CONFIG["temperature"],
            max_tokens=DIRECT_ANSWER_CONFIG["max_tokens"],
            openai_api_key=api_key
        )

    index = RestaurantIndex(embeddings, collection_name=restaurant_collection)
    rag_system = RestaurantRAGSystem(index)
    cache_gateway = CacheGateway(SemanticCache(embeddings, collection_name=cache_collection))
    session_store = SessionStore()
    reservation_service = ReservationService(ReservationRepository(), rag_system, session_store)
    tool_registry = ToolRegistry(rag_system, reservation_service, answer_model)

    if chat_model is None:
        model = ToolCallingModel.from_config(api_key, tool_registry.tools)
    else:
        model = ToolCallingModel(chat_model)

    agent = RestaurantDiscoveryAgent(model, tool_registry, session_store)
    workflow = ConciergeWorkflow(agent, cache_gateway, session_store)

    logger.info("Concierge services built")
    return ConciergeServices(
        rag_system=rag_system,
        cache_gateway=cache_gateway,
        session_store=session_store,
        reservation_service=reservation_service,
        tool_registry=tool_registry,
        workflow=workflow,
    )
