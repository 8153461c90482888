"""
REST API for the dining concierge using FastAPI.
Exposes the chat turn pipeline plus restaurant, reservation and monitoring endpoints.

Observability:
- Prometheus metrics: /metrics endpoint
- LangSmith tracing: chat turns, model calls, retrieval and cache operations
- Health checks: /health endpoint
- Latency metrics: /latency/summary endpoint
"""
import logging
import time
from contextlib import asynccontextmanager
from typing import Any, Dict, List, Optional

from fastapi import FastAPI, HTTPException, Path, Query, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, PlainTextResponse
from langsmith import traceable
from pydantic import BaseModel, ConfigDict, Field

from dining_agent import __version__
from dining_agent.bootstrap import ConciergeServices, build_services
from dining_agent.config import OPENAI_API_KEY, SESSION_CONFIG
from dining_agent.errors import DiningAgentError
from dining_agent.langsmith_tracing import get_tracer, initialize_langsmith_tracing
from dining_agent.observability import (
    get_latency_summary,
    get_metrics,
    health_checker,
    record_request,
    set_system_info,
    track_active_requests,
)

logger = logging.getLogger(__name__)


# ============================================================================
# REQUEST/RESPONSE MODELS
# ============================================================================

class ChatRequest(BaseModel):
    """Request model for one chat turn."""
    model_config = ConfigDict(
        populate_by_name=True,
        json_schema_extra={
            "example": {
                "sessionId": "alice",
                "chatId": "default",
                "message": "Show me Italian restaurants in Khan Market",
                "useSmartRecall": False
            }
        }
    )

    session_id: str = Field(..., min_length=1, max_length=100, alias="sessionId")
    chat_id: str = Field(default=SESSION_CONFIG["default_chat_id"], max_length=100, alias="chatId")
    message: str = Field(..., min_length=1, max_length=2000, description="The user's message")
    use_smart_recall: bool = Field(
        default=False,
        alias="useSmartRecall",
        description="Scope cached answers to this session"
    )


class ChatResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    success: bool = True
    content: str
    is_cached_response: bool = Field(..., alias="isCachedResponse")


class EndSessionRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    session_id: str = Field(..., min_length=1, alias="sessionId")


class HistoryMessage(BaseModel):
    role: str
    content: str
    timestamp: str


class HistoryResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    success: bool = True
    session_id: str = Field(..., alias="sessionId")
    chat_id: str = Field(..., alias="chatId")
    messages: List[HistoryMessage]


class BookReservationRequest(BaseModel):
    """Request model for booking a table over HTTP."""
    model_config = ConfigDict(
        populate_by_name=True,
        json_schema_extra={
            "example": {
                "sessionId": "alice",
                "restaurantId": "3",
                "date": "2026-12-24",
                "time": "19:30",
                "guests": 4
            }
        }
    )

    session_id: str = Field(..., min_length=1, max_length=100, alias="sessionId")
    restaurant_id: str = Field(..., min_length=1, alias="restaurantId")
    date: str = Field(..., description="Reservation date as YYYY-MM-DD")
    time: str = Field(..., description="Reservation time as HH:MM")
    guests: int = Field(..., description="Number of guests")
    special_requests: Optional[str] = Field(default=None, max_length=500, alias="specialRequests")


class CancelReservationRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    session_id: str = Field(..., min_length=1, alias="sessionId")


class ErrorResponse(BaseModel):
    """Error response model."""
    success: bool = False
    error: str = Field(..., description="Error message")
    code: str = Field(..., description="Error code")


# ============================================================================
# APPLICATION STATE
# ============================================================================

class AppState:
    """Global application state."""
    services: Optional[ConciergeServices] = None
    initialized: bool = False


app_state = AppState()


def get_services() -> ConciergeServices:
    if not app_state.initialized or app_state.services is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="System is still initializing"
        )
    return app_state.services


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Lifecycle manager for FastAPI application."""
    # Startup
    logger.info("Starting Dining Concierge API...")

    langsmith_tracer = initialize_langsmith_tracing()

    set_system_info(
        version=__version__,
        environment='production',
        api_type='rest',
        langsmith_enabled=str(langsmith_tracer.is_enabled()),
        langsmith_project=langsmith_tracer.project_name if langsmith_tracer.is_enabled() else 'N/A'
    )

    try:
        logger.info("Building concierge services...")
        app_state.services = build_services(OPENAI_API_KEY)
        await app_state.services.rag_system.initialize_pipeline(force_rebuild=False)

        app_state.initialized = True
        logger.info("System initialization complete")

    except Exception as e:
        logger.error(f"Failed to initialize system: {e}")
        app_state.initialized = False
        raise

    yield

    # Shutdown
    logger.info("Shutting down Dining Concierge API...")
    app_state.initialized = False


# ============================================================================
# FASTAPI APPLICATION
# ============================================================================

app = FastAPI(
    title="Dining Concierge API",
    description="Conversational restaurant discovery and reservations with a semantic cache",
    version=__version__,
    lifespan=lifespan,
    docs_url="/docs",
    redoc_url="/redoc",
    openapi_url="/openapi.json"
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# ============================================================================
# ENDPOINTS
# ============================================================================

@app.get("/", tags=["General"])
async def root():
    """Root endpoint with API information."""
    return {
        "service": "Dining Concierge API",
        "version": __version__,
        "status": "running" if app_state.initialized else "initializing",
        "docs": "/docs",
        "health": "/health",
        "metrics": "/metrics"
    }


@app.post(
    "/ai/chat",
    response_model=ChatResponse,
    responses={
        400: {"model": ErrorResponse, "description": "Invalid request"},
        503: {"model": ErrorResponse, "description": "Service unavailable"}
    },
    tags=["Chat"]
)
@traceable(name="api_chat", run_type="chain", tags=["api", "chat"])
async def chat(request: ChatRequest):
    """
    Send one message to the concierge.

    The turn is answered from the semantic cache when a matching query was
    answered before, otherwise by the tool-calling agent.

    **Example messages:**
    - "Show me Italian restaurants in Khan Market"
    - "Book a table for 4 at the first one tomorrow at 8pm"
    - "Cancel my reservation"
    """
    services = get_services()
    start_time = time.time()
    outcome = 'error'

    try:
        with track_active_requests('api_chat'):
            result = await services.workflow.process_turn(
                session_id=request.session_id,
                chat_id=request.chat_id,
                message=request.message,
                use_smart_recall=request.use_smart_recall,
            )
        outcome = 'success'
        return ChatResponse(content=result.content, is_cached_response=result.is_cached_response)
    finally:
        record_request('api_chat', time.time() - start_time, outcome)


@app.post("/ai/chat/end-session", tags=["Chat"])
async def end_session(request: EndSessionRequest):
    """Remove the session record: transcripts and profile."""
    services = get_services()
    session_id = request.session_id.strip().lower()

    if not await services.session_store.end_session(session_id):
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Session {session_id} not found"
        )
    return {"success": True, "message": f"Session {session_id} ended"}


@app.get("/ai/chat/history", response_model=HistoryResponse, tags=["Chat"])
async def chat_history(
    session_id: str = Query(..., min_length=1, alias="sessionId"),
    chat_id: str = Query(SESSION_CONFIG["default_chat_id"], alias="chatId"),
):
    """Transcript of one conversation, oldest message first."""
    services = get_services()
    session_id = session_id.strip().lower()
    messages = await services.session_store.get_chat_history(session_id, chat_id)

    return HistoryResponse(
        session_id=session_id,
        chat_id=chat_id,
        messages=[
            HistoryMessage(role=m.role, content=m.content, timestamp=m.timestamp.isoformat())
            for m in messages
        ],
    )


@app.get("/ai/chat/cache-check", tags=["Chat"])
async def cache_check(
    query: str = Query(..., min_length=1, description="Message to look up"),
    session_id: Optional[str] = Query(None, alias="sessionId"),
    use_smart_recall: bool = Query(False, alias="useSmartRecall"),
) -> Dict[str, Any]:
    """Show whether a message would be answered from the cache, without running a turn."""
    services = get_services()

    scope = None
    if use_smart_recall and session_id:
        scope = {"sessionId": session_id.strip().lower()}

    result = await services.cache_gateway.check(query.strip(), scope)
    return {"success": True, **result}


@app.get("/restaurants/popular", tags=["Restaurants"])
async def popular_restaurants(
    city: Optional[str] = Query(None, description="City filter"),
    cuisine: Optional[str] = Query(None, description="Cuisine filter"),
    limit: Optional[int] = Query(None, ge=1, description="Maximum results"),
) -> Dict[str, Any]:
    """Highest rated restaurants, optionally in a city or for a cuisine."""
    services = get_services()
    hits = await services.rag_system.popular_restaurants(city=city, cuisine=cuisine, limit=limit)
    return {"success": True, "data": [hit.to_dict() for hit in hits]}


@app.get("/restaurants/filters", tags=["Restaurants"])
async def restaurant_filters() -> Dict[str, Any]:
    """Values available for the search filters."""
    services = get_services()
    return {"success": True, "data": await services.rag_system.filter_options()}


@app.get("/restaurants/stats", tags=["Restaurants"])
async def restaurant_stats() -> Dict[str, Any]:
    services = get_services()
    return {"success": True, "data": await services.rag_system.stats()}


@app.get("/restaurants/{restaurant_id}", tags=["Restaurants"])
async def get_restaurant(
    restaurant_id: str = Path(..., min_length=1, description="Restaurant ID")
) -> Dict[str, Any]:
    """Get detailed information about a specific restaurant."""
    services = get_services()
    restaurant = await services.rag_system.get_restaurant_by_id(restaurant_id)
    return restaurant.model_dump()


@app.get("/reservations", tags=["Reservations"])
async def list_reservations(
    session_id: str = Query(..., min_length=1, alias="sessionId")
) -> Dict[str, Any]:
    """Reservations of a session with a status summary."""
    services = get_services()
    result = await services.reservation_service.get_user_reservations(session_id.strip().lower())
    return {"success": True, **result}


@app.post("/reservations", status_code=status.HTTP_201_CREATED, tags=["Reservations"])
async def book_reservation(request: BookReservationRequest) -> Dict[str, Any]:
    """
    Book a table. Name, phone and email are copied from the session profile.
    """
    services = get_services()
    result = await services.reservation_service.create_reservation(
        session_id=request.session_id.strip().lower(),
        restaurant_id=request.restaurant_id,
        date=request.date,
        time=request.time,
        guests=request.guests,
        special_requests=request.special_requests,
    )
    reservation = result["reservation"]
    return {
        "success": True,
        "data": result,
        "message": (
            f"Reservation confirmed for {reservation['guests']} guests "
            f"on {reservation['date']} at {reservation['time']}"
        ),
    }


@app.get("/reservations/{reservation_id}", tags=["Reservations"])
async def get_reservation(
    reservation_id: str = Path(..., min_length=1),
    session_id: str = Query(..., min_length=1, alias="sessionId"),
) -> Dict[str, Any]:
    services = get_services()
    result = await services.reservation_service.get_reservation(reservation_id, session_id.strip().lower())
    return {"success": True, "data": result}


@app.put("/reservations/{reservation_id}/cancel", tags=["Reservations"])
async def cancel_reservation(
    request: CancelReservationRequest,
    reservation_id: str = Path(..., min_length=1),
) -> Dict[str, Any]:
    """Cancel a reservation owned by the session, at least 2 hours before it starts."""
    services = get_services()
    reservation = await services.reservation_service.cancel_reservation(
        reservation_id, request.session_id.strip().lower()
    )
    return {
        "success": True,
        "data": reservation.model_dump(mode="json"),
        "message": "Reservation cancelled successfully",
    }


@app.put("/reservations/{reservation_id}/complete", tags=["Reservations"])
async def complete_reservation(reservation_id: str = Path(..., min_length=1)) -> Dict[str, Any]:
    """Mark a confirmed reservation as completed once the guests have dined."""
    services = get_services()
    reservation = await services.reservation_service.complete_reservation(reservation_id)
    return {"success": True, "data": reservation.model_dump(mode="json")}


@app.get("/health", tags=["Monitoring"])
async def health_check():
    """
    Health check endpoint for load balancers and monitoring.

    Returns:
    - 200: Service is healthy
    - 503: Service is unhealthy or still initializing
    """
    stats = health_checker.get_stats()
    healthy = stats["healthy"] and app_state.initialized

    return JSONResponse(
        status_code=status.HTTP_200_OK if healthy else status.HTTP_503_SERVICE_UNAVAILABLE,
        content={
            "status": "healthy" if healthy else "unhealthy",
            "initialized": app_state.initialized,
            **stats
        }
    )


@app.get("/metrics", response_class=PlainTextResponse, tags=["Monitoring"])
async def metrics():
    """Prometheus metrics endpoint."""
    return get_metrics().decode('utf-8')


@app.get("/stats", tags=["Monitoring"])
async def get_stats():
    """Get system statistics including LangSmith observability status."""
    tracer = get_tracer()

    if not app_state.initialized or app_state.services is None:
        return {
            "initialized": False,
            "message": "System is still initializing",
            "langsmith": tracer.status()
        }

    services = app_state.services
    return {
        "initialized": True,
        "indexed_restaurants": await services.rag_system.index.count(),
        "active_sessions": services.session_store.session_count(),
        "tools": services.tool_registry.names,
        "health": health_checker.get_stats(),
        "observability": {
            "prometheus_metrics": "/metrics",
            "langsmith": tracer.status()
        }
    }


@app.get("/latency/summary", tags=["Monitoring"])
async def get_latency_statistics():
    """
    Latency summary statistics (count, average, min, max, latest) per metric
    type, read from the latency log file.
    """
    return get_latency_summary()


# ============================================================================
# ERROR HANDLERS
# ============================================================================

@app.exception_handler(DiningAgentError)
async def dining_agent_error_handler(request: Request, exc: DiningAgentError):
    """Map domain errors to their HTTP status."""
    if exc.status_code >= 500:
        logger.error(f"{type(exc).__name__} on {request.url.path}: {exc.message}")
    return JSONResponse(
        status_code=exc.status_code,
        content=ErrorResponse(success=False, error=exc.message, code=exc.code).model_dump()
    )


@app.exception_handler(Exception)
async def internal_error_handler(request: Request, exc: Exception):
    """Handle unexpected errors."""
    logger.error(f"Internal server error on {request.url.path}: {exc}", exc_info=True)
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content=ErrorResponse(success=False, error="Internal server error", code="INTERNAL_ERROR").model_dump()
    )


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "dining_agent.api:app",
        host="0.0.0.0",
        port=8080,
        reload=True,
        log_level="info"
    )
