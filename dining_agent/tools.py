"""
Tool registry for the restaurant discovery agent.

Every tool is a LangChain StructuredTool with a pydantic argument schema.
Tools are dispatched by name through ``ToolRegistry.dispatch``, which
- overwrites the session id of reservation tools with the trusted one,
- refuses ``cancel_reservation`` unless ``get_user_reservations`` ran earlier
  in the same turn and returned that id,
- turns domain errors into ``success: false`` payloads the model can narrate,
- flags upstream failures and timeouts so the turn is never cached.
"""
import asyncio
import json
import logging
import time
from dataclasses import dataclass, field
from typing import Annotated, Any, Dict, List, Optional, Set

from langchain_core.messages import HumanMessage, SystemMessage
from langchain_core.tools import BaseTool, InjectedToolArg, StructuredTool
from pydantic import BaseModel, Field
from pydantic import ValidationError as SchemaValidationError

from dining_agent.config import AGENT_CONFIG, DIRECT_ANSWER_CONFIG, SYSTEM_PROMPTS
from dining_agent.errors import DiningAgentError, PolicyViolationError, UpstreamUnavailableError
from dining_agent.observability import record_error, record_llm_call, record_tool_call
from dining_agent.rag_system import RestaurantRAGSystem, SearchFilters
from dining_agent.reservations import ReservationService
from dining_agent.tool_names import (
    CANCEL_RESERVATION,
    DIRECT_ANSWER,
    LIST_RESERVATIONS,
    MAKE_RESERVATION,
    POPULAR_RESTAURANTS,
    RESTAURANT_DETAILS,
    SEARCH_RESTAURANTS,
    SESSION_SCOPED_TOOLS,
)

logger = logging.getLogger(__name__)


# ============================================================================
# ARGUMENT SCHEMAS
# ============================================================================

class SearchRestaurantsInput(BaseModel):
    query: Optional[str] = Field(
        default=None,
        description="What the user is looking for in their own words, e.g. 'romantic Italian dinner with a view'"
    )
    latitude: Optional[float] = Field(default=None, description="Latitude to search around (pass together with longitude)")
    longitude: Optional[float] = Field(default=None, description="Longitude to search around (pass together with latitude)")
    radius_km: Optional[float] = Field(default=None, description="Search radius in km around the coordinate (default 15)")
    cuisine: Optional[str] = Field(default=None, description="Cuisine, e.g. 'Italian' or 'North Indian'")
    city: Optional[str] = Field(default=None, description="City name")
    locality: Optional[str] = Field(default=None, description="Neighbourhood or area, e.g. 'Khan Market'")
    type: Optional[str] = Field(default=None, description="Establishment type, e.g. 'Casual Dining', 'Cafe', 'Fine Dining'")
    max_price: Optional[float] = Field(default=None, description="Maximum price for two")
    min_rating: Optional[float] = Field(default=None, description="Minimum rating from 0 to 5")
    limit: Optional[int] = Field(default=None, description="Number of results (default 5)")
    use_semantic_search: bool = Field(default=True, description="Match the query by meaning; disable for pure filter searches")


class RestaurantDetailsInput(BaseModel):
    restaurant_id: str = Field(description="Restaurant id from a previous search result")


class PopularRestaurantsInput(BaseModel):
    city: Optional[str] = Field(default=None, description="City name")
    cuisine: Optional[str] = Field(default=None, description="Cuisine")
    limit: Optional[int] = Field(default=None, description="Number of results (default 5)")


class MakeReservationInput(BaseModel):
    restaurant_id: str = Field(description="Restaurant id from a previous search result")
    date: str = Field(description="Reservation date as YYYY-MM-DD")
    time: str = Field(description="Reservation time as HH:MM (24 hour)")
    guests: int = Field(description="Number of guests")
    special_requests: Optional[str] = Field(default=None, description="Seating or dietary requests")
    session_id: Annotated[str, InjectedToolArg] = Field(default="", description="Trusted session id")


class ListReservationsInput(BaseModel):
    session_id: Annotated[str, InjectedToolArg] = Field(default="", description="Trusted session id")


class CancelReservationInput(BaseModel):
    reservation_id: str = Field(description="Exact reservation id returned by get_user_reservations")
    session_id: Annotated[str, InjectedToolArg] = Field(default="", description="Trusted session id")


class DirectAnswerInput(BaseModel):
    question: str = Field(description="General dining question to answer from knowledge")


# ============================================================================
# DISPATCH TYPES
# ============================================================================

@dataclass
class ToolContext:
    """Per-turn facts the dispatcher relies on."""
    session_id: str
    listed_reservation_ids: Optional[Set[str]] = None  # None until a listing ran this turn


@dataclass
class ToolOutcome:
    name: str
    content: str
    success: bool
    failed: bool = False  # upstream failure: the turn must not be cached
    restaurants: List[Dict[str, Any]] = field(default_factory=list)


def _failure_payload(message: str, code: str) -> Dict[str, Any]:
    return {"type": "error", "success": False, "error": message, "code": code}


def _surfaced_restaurants(payload: Dict[str, Any]) -> List[Dict[str, Any]]:
    """Compact restaurant cards for the UI from a search/details payload."""
    if payload.get("type") == "restaurant_details":
        found = [payload["restaurant"]]
    else:
        found = payload.get("restaurants") or []

    return [
        {
            "id": r["id"],
            "name": r["name"],
            "cuisine": r.get("cuisine", []),
            "rating": r.get("rating"),
            "price_for_two": r.get("price_for_two"),
            "city": r.get("city"),
            "locality": r.get("locality"),
            "distance_km": r.get("distance_km"),
        }
        for r in found
    ]


class ToolRegistry:
    """The fixed set of tools and their name-based dispatcher."""

    def __init__(
        self,
        rag_system: RestaurantRAGSystem,
        reservation_service: ReservationService,
        answer_model: Any,
        tool_timeout: Optional[float] = None,
    ):
        self.rag_system = rag_system
        self.reservation_service = reservation_service
        self.answer_model = answer_model
        self.tool_timeout = tool_timeout or AGENT_CONFIG["tool_timeout"]

        self.tools: List[BaseTool] = self._build_tools()
        self._tools_by_name: Dict[str, BaseTool] = {tool.name: tool for tool in self.tools}

    @property
    def names(self) -> List[str]:
        return list(self._tools_by_name)

    def _build_tools(self) -> List[BaseTool]:
        return [
            StructuredTool.from_function(
                coroutine=self._search_restaurants,
                name=SEARCH_RESTAURANTS,
                description=(
                    "Search restaurants by meaning and filters: cuisine, city, locality, type, price for two, "
                    "rating, or a coordinate and radius. Use this for almost every restaurant request."
                ),
                args_schema=SearchRestaurantsInput,
            ),
            StructuredTool.from_function(
                coroutine=self._get_restaurant_details,
                name=RESTAURANT_DETAILS,
                description="Get full details (address, price, rating, description) of one restaurant by id.",
                args_schema=RestaurantDetailsInput,
            ),
            StructuredTool.from_function(
                coroutine=self._get_popular_restaurants,
                name=POPULAR_RESTAURANTS,
                description="List the highest rated restaurants, optionally in a city or for a cuisine.",
                args_schema=PopularRestaurantsInput,
            ),
            StructuredTool.from_function(
                coroutine=self._make_reservation,
                name=MAKE_RESERVATION,
                description="Book a table. Contact details come from the user's profile.",
                args_schema=MakeReservationInput,
            ),
            StructuredTool.from_function(
                coroutine=self._get_user_reservations,
                name=LIST_RESERVATIONS,
                description="List the user's reservations with a summary. Always call this before cancelling.",
                args_schema=ListReservationsInput,
            ),
            StructuredTool.from_function(
                coroutine=self._cancel_reservation,
                name=CANCEL_RESERVATION,
                description=(
                    "Cancel one reservation. Only use an id returned by get_user_reservations in this conversation turn."
                ),
                args_schema=CancelReservationInput,
            ),
            StructuredTool.from_function(
                coroutine=self._direct_answer,
                name=DIRECT_ANSWER,
                description="Answer a general dining question (dishes, cuisines, etiquette) without restaurant data.",
                args_schema=DirectAnswerInput,
            ),
        ]

    # ------------------------------------------------------------------
    # Dispatch
    # ------------------------------------------------------------------

    async def dispatch(self, name: str, args: Optional[Dict[str, Any]], context: ToolContext) -> ToolOutcome:
        """Execute one model-requested tool call and describe the result."""
        start_time = time.time()

        tool = self._tools_by_name.get(name)
        if tool is None:
            logger.warning(f"Model requested unknown tool: {name}")
            record_tool_call("unknown", time.time() - start_time, "failure")
            return ToolOutcome(
                name=name,
                content=json.dumps(_failure_payload("Unknown tool requested", "UNKNOWN_TOOL")),
                success=False,
            )

        # Never trust a model-supplied session id
        arguments = {k: v for k, v in (args or {}).items() if k not in ("session_id", "sessionId")}
        if name in SESSION_SCOPED_TOOLS:
            arguments["session_id"] = context.session_id

        failed = False
        try:
            if name == CANCEL_RESERVATION:
                cancel_args = CancelReservationInput.model_validate(arguments)
                self._check_cancellation_allowed(cancel_args.reservation_id, context)

            payload = await asyncio.wait_for(tool.ainvoke(arguments), timeout=self.tool_timeout)
            status = "success"

            if name == LIST_RESERVATIONS:
                context.listed_reservation_ids = {r["id"] for r in payload["reservations"]}

        except SchemaValidationError as e:
            logger.warning(f"Invalid arguments for {name}: {e}")
            payload = _failure_payload(f"Invalid arguments: {e.errors(include_url=False)}", "INVALID_ARGUMENTS")
            status = "failure"
        except UpstreamUnavailableError as e:
            logger.error(f"Tool {name} upstream failure: {e}")
            payload = _failure_payload("The service is temporarily unavailable. Please try again shortly.", e.code)
            status, failed = "error", True
        except DiningAgentError as e:
            logger.info(f"Tool {name} rejected: {e.message}")
            payload = _failure_payload(e.message, e.code)
            status = "failure"
        except asyncio.TimeoutError:
            logger.error(f"Tool {name} timed out after {self.tool_timeout}s")
            record_error('tools', 'TimeoutError')
            payload = _failure_payload("The request took too long. Please try again.", "TIMEOUT")
            status, failed = "error", True
        except Exception as e:
            logger.error(f"Tool {name} failed unexpectedly: {e}", exc_info=True)
            record_error('tools', type(e).__name__)
            payload = _failure_payload("Something went wrong while running this tool.", "TOOL_ERROR")
            status, failed = "error", True

        record_tool_call(name, time.time() - start_time, status)
        success = bool(payload.get("success"))
        return ToolOutcome(
            name=name,
            content=json.dumps(payload, default=str),
            success=success,
            failed=failed,
            restaurants=_surfaced_restaurants(payload) if success else [],
        )

    @staticmethod
    def _check_cancellation_allowed(reservation_id: str, context: ToolContext) -> None:
        if context.listed_reservation_ids is None:
            raise PolicyViolationError(
                "Call get_user_reservations first, then cancel using an id from that list."
            )
        if reservation_id not in context.listed_reservation_ids:
            raise PolicyViolationError(
                "That reservation id is not in the user's reservation list. Ask the user which reservation to cancel."
            )

    # ------------------------------------------------------------------
    # Handlers
    # ------------------------------------------------------------------

    async def _search_restaurants(
        self,
        query: Optional[str] = None,
        latitude: Optional[float] = None,
        longitude: Optional[float] = None,
        radius_km: Optional[float] = None,
        cuisine: Optional[str] = None,
        city: Optional[str] = None,
        locality: Optional[str] = None,
        type: Optional[str] = None,
        max_price: Optional[float] = None,
        min_rating: Optional[float] = None,
        limit: Optional[int] = None,
        use_semantic_search: bool = True,
    ) -> Dict[str, Any]:
        filters = SearchFilters(
            latitude=latitude,
            longitude=longitude,
            radius_km=radius_km,
            cuisine=cuisine,
            city=city,
            locality=locality,
            type=type,
            max_price=max_price,
            min_rating=min_rating,
        )
        outcome = await self.rag_system.hybrid_search(query, filters, limit, use_semantic_search)
        restaurants = [hit.to_dict() for hit in outcome.hits]

        return {
            "type": "restaurant_search",
            "success": True,
            "restaurants": restaurants,
            "count": len(restaurants),
            "search_strategy": outcome.search_strategy,
            "fallback_applied": outcome.fallback_applied,
            "relaxed_filters": outcome.relaxed_filters,
            "original_criteria": outcome.original_criteria,
            "message": outcome.fallback_message or f"Found {len(restaurants)} restaurants",
        }

    async def _get_restaurant_details(self, restaurant_id: str) -> Dict[str, Any]:
        restaurant = await self.rag_system.get_restaurant_by_id(restaurant_id)
        return {
            "type": "restaurant_details",
            "success": True,
            "restaurant": restaurant.model_dump(),
        }

    async def _get_popular_restaurants(
        self,
        city: Optional[str] = None,
        cuisine: Optional[str] = None,
        limit: Optional[int] = None,
    ) -> Dict[str, Any]:
        hits = await self.rag_system.popular_restaurants(city=city, cuisine=cuisine, limit=limit)
        restaurants = [hit.to_dict() for hit in hits]
        return {
            "type": "popular_restaurants",
            "success": True,
            "restaurants": restaurants,
            "count": len(restaurants),
            "message": f"Found {len(restaurants)} popular restaurants",
        }

    async def _make_reservation(
        self,
        restaurant_id: str,
        date: str,
        time: str,
        guests: int,
        special_requests: Optional[str] = None,
        session_id: str = "",
    ) -> Dict[str, Any]:
        result = await self.reservation_service.create_reservation(
            session_id=session_id,
            restaurant_id=restaurant_id,
            date=date,
            time=time,
            guests=guests,
            special_requests=special_requests,
        )
        reservation = result["reservation"]
        return {
            "type": "reservation_created",
            "success": True,
            **result,
            "message": (
                f"Table for {reservation['guests']} booked at {result['restaurant']['name']} "
                f"on {reservation['date']} at {reservation['time']}"
            ),
        }

    async def _get_user_reservations(self, session_id: str = "") -> Dict[str, Any]:
        result = await self.reservation_service.get_user_reservations(session_id)
        count = result["summary"]["total_reservations"]
        return {
            "type": "user_reservations",
            "success": True,
            **result,
            "message": f"Found {count} reservation{'s' if count != 1 else ''}" if count else "No reservations found",
        }

    async def _cancel_reservation(self, reservation_id: str, session_id: str = "") -> Dict[str, Any]:
        reservation = await self.reservation_service.cancel_reservation(reservation_id, session_id)
        return {
            "type": "reservation_cancelled",
            "success": True,
            "reservation": reservation.model_dump(mode="json"),
            "message": f"Reservation {reservation.id} on {reservation.date} at {reservation.time} has been cancelled",
        }

    async def _direct_answer(self, question: str) -> Dict[str, Any]:
        start_time = time.time()
        try:
            response = await self.answer_model.ainvoke([
                SystemMessage(content=SYSTEM_PROMPTS["direct_answer"]),
                HumanMessage(content=question),
            ])
        except Exception as e:
            record_llm_call('direct_answer', DIRECT_ANSWER_CONFIG["model"], time.time() - start_time, success=False)
            raise UpstreamUnavailableError(f"Answer model unavailable: {e}") from e

        usage = getattr(response, "usage_metadata", None) or {}
        record_llm_call(
            agent='direct_answer',
            model=DIRECT_ANSWER_CONFIG["model"],
            duration=time.time() - start_time,
            prompt_tokens=usage.get("input_tokens", 0),
            completion_tokens=usage.get("output_tokens", 0),
            success=True
        )
        return {"type": "direct_answer", "success": True, "answer": response.content}
