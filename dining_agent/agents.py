"""
Query orchestration using LangGraph.

Each user turn runs through a three node graph:
1. query_cache_check - look the message up in the semantic cache
2. restaurant_discovery_agent - bounded tool-calling loop (skipped on a hit)
3. process_work_output_with_caching - tool-based TTL and cache write

LangSmith Tracing:
- Model decisions: traced as "restaurant_discovery_agent" chains
- Cache lookups/stores: traced by the cache gateway
- Full turn: traced as "concierge_turn" chain
"""
import asyncio
import logging
import time
import weakref
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, TypedDict, Union

from langchain_core.messages import AIMessage, BaseMessage, HumanMessage, SystemMessage, ToolMessage
from langchain_core.tools import BaseTool
from langchain_openai import ChatOpenAI
from langgraph.graph import END, StateGraph
from langsmith import traceable

from dining_agent.cache import CacheGateway
from dining_agent.config import (
    AGENT_CONFIG,
    CACHE_CONFIG,
    FALLBACK_MESSAGES,
    LLM_CONFIG,
    SESSION_CONFIG,
    SYSTEM_PROMPTS,
)
from dining_agent.errors import UpstreamUnavailableError, ValidationError
from dining_agent.models import CacheStatus, ChatMessage, Profile, TurnResult
from dining_agent.observability import (
    health_checker,
    record_error,
    record_llm_call,
    record_request,
    record_turn,
    track_active_requests,
)
from dining_agent.sessions import SessionStore
from dining_agent.tool_names import ERROR_SENTINEL
from dining_agent.tools import ToolContext, ToolRegistry
from dining_agent.ttl_policy import determine_cache_ttl, format_ttl

logger = logging.getLogger(__name__)


# ============================================================================
# MODEL OUTPUT
# ============================================================================

@dataclass
class ToolInvocation:
    id: str
    name: str
    args: Dict[str, Any]


@dataclass
class FinalAnswer:
    text: str


@dataclass
class ToolCalls:
    calls: List[ToolInvocation]
    message: AIMessage  # echoed back into the context before the tool results


ModelDecision = Union[FinalAnswer, ToolCalls]


def _message_text(content: Any) -> str:
    if isinstance(content, str):
        return content
    # Content blocks
    return "".join(block.get("text", "") for block in content if isinstance(block, dict))


class ToolCallingModel:
    """A chat model bound to the tool schemas, answering with a ModelDecision."""

    def __init__(self, runnable: Any, model_name: Optional[str] = None):
        self.runnable = runnable
        self.model_name = model_name or LLM_CONFIG["model"]

    @classmethod
    def from_config(cls, api_key: str, tools: List[BaseTool]) -> "ToolCallingModel":
        llm = ChatOpenAI(
            model=LLM_CONFIG["model"],
            temperature=LLM_CONFIG["temperature"],
            max_tokens=LLM_CONFIG["max_tokens"],
            timeout=LLM_CONFIG["request_timeout"],
            openai_api_key=api_key
        )
        return cls(llm.bind_tools(tools), LLM_CONFIG["model"])

    async def decide(self, messages: List[BaseMessage]) -> ModelDecision:
        start_time = time.time()
        try:
            response = await self.runnable.ainvoke(messages)
        except Exception as e:
            logger.error(f"Model call failed: {e}")
            record_llm_call(
                agent='restaurant_discovery',
                model=self.model_name,
                duration=time.time() - start_time,
                success=False
            )
            raise UpstreamUnavailableError(f"Language model unavailable: {e}") from e

        usage = getattr(response, "usage_metadata", None) or {}
        record_llm_call(
            agent='restaurant_discovery',
            model=self.model_name,
            duration=time.time() - start_time,
            prompt_tokens=usage.get("input_tokens", 0),
            completion_tokens=usage.get("output_tokens", 0),
            success=True
        )

        tool_calls = getattr(response, "tool_calls", None) or []
        if tool_calls:
            return ToolCalls(
                calls=[
                    ToolInvocation(
                        id=call.get("id") or f"call_{i}",
                        name=call["name"],
                        args=call.get("args") or {},
                    )
                    for i, call in enumerate(tool_calls)
                ],
                message=response,
            )
        return FinalAnswer(text=_message_text(response.content))


# ============================================================================
# TURN STATE
# ============================================================================

class TurnState(TypedDict, total=False):
    """State shared across the nodes of one turn."""
    session_id: str
    query: str
    history: List[ChatMessage]
    cache_scope: Optional[Dict[str, str]]
    cache_status: str
    tools_used: List[str]
    result: str
    restaurants: List[Dict[str, Any]]
    iterations: int


def profile_context(profile: Optional[Profile]) -> str:
    """Profile facts shown to the model in the system prompt."""
    if profile is None:
        return "No profile information available."

    lines = [f"- Name: {profile.name}"]
    if profile.locality:
        lines.append(f"- Locality: {profile.locality}")
    if profile.latitude is not None and profile.longitude is not None:
        lines.append(f"- Coordinates: latitude {profile.latitude}, longitude {profile.longitude}")
    if profile.preferences:
        lines.append(f"- Preferences: {', '.join(profile.preferences)}")
    return "\n".join(lines)


class RestaurantDiscoveryAgent:
    """
    Bounded tool-calling loop.

    The model either answers or asks for tool calls; tool results are fed
    back until it answers or the iteration cap is reached. Tool calls that
    fail upstream, a failed model call and the cap all mark the turn with
    the error sentinel so it is never cached.
    """

    def __init__(
        self,
        model: ToolCallingModel,
        registry: ToolRegistry,
        session_store: SessionStore,
        max_iterations: Optional[int] = None,
        model_timeout: Optional[float] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.model = model
        self.registry = registry
        self.session_store = session_store
        self.max_iterations = max_iterations or AGENT_CONFIG["max_iterations"]
        self.model_timeout = model_timeout or AGENT_CONFIG["model_timeout"]
        self._clock = clock or datetime.now

    async def _initial_messages(self, state: TurnState) -> List[BaseMessage]:
        profile = await self.session_store.get_profile(state["session_id"])
        system_prompt = SYSTEM_PROMPTS["restaurant_discovery"].format(
            current_datetime=self._clock().strftime("%A, %Y-%m-%d %H:%M"),
            profile_context=profile_context(profile),
        )

        messages: List[BaseMessage] = [SystemMessage(content=system_prompt)]
        for msg in state.get("history", [])[-AGENT_CONFIG["history_window"]:]:
            if msg.role == "user":
                messages.append(HumanMessage(content=msg.content))
            else:
                messages.append(AIMessage(content=msg.content))
        messages.append(HumanMessage(content=state["query"]))
        return messages

    @traceable(
        name="restaurant_discovery_agent",
        run_type="chain",
        tags=["agent", "tool-calling", "restaurant-discovery"]
    )
    async def run(self, state: TurnState) -> Dict[str, Any]:
        messages = await self._initial_messages(state)
        context = ToolContext(session_id=state["session_id"])
        tools_used: List[str] = []
        restaurants: Dict[str, Dict[str, Any]] = {}
        last_text = ""

        def finish(text: str, iterations: int, failed: bool = False) -> Dict[str, Any]:
            if failed and ERROR_SENTINEL not in tools_used:
                tools_used.append(ERROR_SENTINEL)
            return {
                "result": text,
                "tools_used": tools_used,
                "restaurants": list(restaurants.values()),
                "iterations": iterations,
            }

        for iteration in range(1, self.max_iterations + 1):
            try:
                decision = await asyncio.wait_for(self.model.decide(messages), timeout=self.model_timeout)
            except (UpstreamUnavailableError, asyncio.TimeoutError) as e:
                logger.error(f"Model unavailable on iteration {iteration}: {e or 'timed out'}")
                record_error('agent', type(e).__name__)
                return finish(FALLBACK_MESSAGES["apology"], iteration, failed=True)

            if isinstance(decision, FinalAnswer):
                text = decision.text.strip()
                if not text:
                    logger.warning("Model returned an empty answer")
                    return finish(last_text or FALLBACK_MESSAGES["apology"], iteration, failed=True)
                logger.info(f"Agent answered after {iteration} iteration(s), tools: {tools_used or 'none'}")
                return finish(text, iteration)

            messages.append(decision.message)
            partial = _message_text(decision.message.content).strip()
            if partial:
                last_text = partial

            for call in decision.calls:
                logger.info(f"Calling tool {call.name} with {call.args}")
                tools_used.append(call.name)
                outcome = await self.registry.dispatch(call.name, call.args, context)
                messages.append(ToolMessage(content=outcome.content, tool_call_id=call.id, name=call.name))

                if outcome.failed and ERROR_SENTINEL not in tools_used:
                    tools_used.append(ERROR_SENTINEL)
                for restaurant in outcome.restaurants:
                    restaurants.setdefault(restaurant["id"], restaurant)

        logger.warning(f"Agent hit the iteration cap ({self.max_iterations}) without a final answer")
        record_error('agent', 'IterationLimitExceeded')
        return finish(last_text or FALLBACK_MESSAGES["iteration_limit"], self.max_iterations, failed=True)


class ConciergeWorkflow:
    """
    Per-turn orchestrator using LangGraph.

    Architecture:
    1. Cache check -> END on a hit
    2. Restaurant discovery agent -> bounded tool loop
    3. Cache write -> TTL from the tools used

    Features:
    - Turns for the same session are serialised
    - Cache failures degrade to a miss or an unsaved answer
    - The transcript gets the user and assistant messages once per turn
    """

    def __init__(
        self,
        agent: RestaurantDiscoveryAgent,
        cache_gateway: CacheGateway,
        session_store: SessionStore,
        lookup_timeout: Optional[float] = None,
        store_timeout: Optional[float] = None,
    ):
        self.agent = agent
        self.cache_gateway = cache_gateway
        self.session_store = session_store
        self.lookup_timeout = lookup_timeout or CACHE_CONFIG["lookup_timeout"]
        self.store_timeout = store_timeout or CACHE_CONFIG["store_timeout"]

        self._session_locks: "weakref.WeakValueDictionary[str, asyncio.Lock]" = weakref.WeakValueDictionary()

        self.workflow = self._build_workflow()
        logger.info("Concierge workflow initialized")

    def _build_workflow(self):
        """Build the LangGraph workflow with the cache-hit short circuit."""
        workflow = StateGraph(TurnState)

        workflow.add_node("query_cache_check", self.query_cache_check)
        workflow.add_node("restaurant_discovery_agent", self.agent.run)
        workflow.add_node("process_work_output_with_caching", self.process_work_output_with_caching)

        workflow.set_entry_point("query_cache_check")
        workflow.add_conditional_edges(
            "query_cache_check",
            self._route_after_cache_check,
            {
                "hit": END,
                "miss": "restaurant_discovery_agent"
            }
        )
        workflow.add_edge("restaurant_discovery_agent", "process_work_output_with_caching")
        workflow.add_edge("process_work_output_with_caching", END)

        return workflow.compile()

    @staticmethod
    def _route_after_cache_check(state: TurnState) -> str:
        return "hit" if state.get("cache_status") == CacheStatus.HIT.value else "miss"

    async def query_cache_check(self, state: TurnState) -> Dict[str, Any]:
        try:
            cached = await asyncio.wait_for(
                self.cache_gateway.lookup(state["query"], state.get("cache_scope")),
                timeout=self.lookup_timeout,
            )
        except asyncio.TimeoutError:
            logger.warning(f"Cache lookup timed out after {self.lookup_timeout}s, treating as miss")
            record_error('cache', 'TimeoutError')
            cached = None

        if cached is None:
            return {"cache_status": CacheStatus.MISS.value}

        return {
            "cache_status": CacheStatus.HIT.value,
            "result": cached,
            "tools_used": [],
            "restaurants": [],
        }

    async def process_work_output_with_caching(self, state: TurnState) -> Dict[str, Any]:
        tools_used = state.get("tools_used", [])

        if ERROR_SENTINEL in tools_used:
            logger.info("Skipping cache: the turn ended with an error")
            return {"cache_status": CacheStatus.SKIP.value}

        ttl = determine_cache_ttl(tools_used)
        if ttl == 0:
            logger.info(f"Skipping cache for personal/dynamic tools: {tools_used}")
            return {"cache_status": CacheStatus.SKIP.value}

        try:
            saved = await asyncio.wait_for(
                self.cache_gateway.store(state["query"], state["result"], ttl, state.get("cache_scope")),
                timeout=self.store_timeout,
            )
        except asyncio.TimeoutError:
            logger.error(f"Cache store timed out after {self.store_timeout}s")
            record_error('cache', 'TimeoutError')
            saved = False

        if not saved:
            return {"cache_status": CacheStatus.ERROR.value}

        logger.info(f"Response cached for {format_ttl(ttl)}")
        return {"cache_status": CacheStatus.SAVED.value}

    def _session_lock(self, session_id: str) -> asyncio.Lock:
        lock = self._session_locks.get(session_id)
        if lock is None:
            lock = asyncio.Lock()
            self._session_locks[session_id] = lock
        return lock

    @traceable(
        name="concierge_turn",
        run_type="chain",
        tags=["workflow", "semantic-cache", "restaurant-discovery"]
    )
    async def process_turn(
        self,
        session_id: str,
        chat_id: Optional[str],
        message: str,
        use_smart_recall: bool = False,
    ) -> TurnResult:
        """
        Process one user message.

        Args:
            session_id: Session identifier, normalised to lowercase
            chat_id: Conversation within the session
            message: The user's message
            use_smart_recall: Scope cache lookups and writes to this session

        Returns:
            TurnResult with the reply and how it was produced

        Raises:
            ValidationError: when the session id or message is missing
        """
        session_id = (session_id or "").strip().lower()
        chat_id = (chat_id or "").strip() or SESSION_CONFIG["default_chat_id"]
        message = (message or "").strip()

        if not session_id:
            raise ValidationError("sessionId is required")
        if not message:
            raise ValidationError("message is required")

        start_time = time.time()
        with track_active_requests('concierge'):
            async with self._session_lock(session_id):
                result = await self._run_pipeline(session_id, chat_id, message, use_smart_recall)

        status = 'error' if ERROR_SENTINEL in result.tools_used else 'success'
        record_request('concierge', time.time() - start_time, status)
        return result

    async def _run_pipeline(
        self,
        session_id: str,
        chat_id: str,
        message: str,
        use_smart_recall: bool,
    ) -> TurnResult:
        iterations = 0
        try:
            history = await self.session_store.get_or_create_chat_history(session_id, chat_id)
            initial_state: TurnState = {
                "session_id": session_id,
                "query": message,
                "history": history,
                "cache_scope": {"sessionId": session_id} if use_smart_recall else None,
                "cache_status": CacheStatus.MISS.value,
                "tools_used": [],
                "result": "",
                "restaurants": [],
                "iterations": 0,
            }

            logger.info(f"Processing turn for session {session_id}: {message}")
            final_state = await self.workflow.ainvoke(initial_state)

            iterations = final_state.get("iterations", 0)
            cache_status = CacheStatus(final_state.get("cache_status", CacheStatus.MISS.value))
            result = TurnResult(
                content=final_state.get("result") or FALLBACK_MESSAGES["apology"],
                is_cached_response=cache_status == CacheStatus.HIT,
                cache_status=cache_status,
                tools_used=final_state.get("tools_used", []),
                restaurants=final_state.get("restaurants", []),
            )
            health_checker.record_success()

        except Exception as e:
            logger.error(f"Error in workflow: {e}", exc_info=True)
            record_error('workflow', type(e).__name__)
            health_checker.record_error()
            result = TurnResult(
                content=FALLBACK_MESSAGES["apology"],
                cache_status=CacheStatus.ERROR,
                tools_used=[ERROR_SENTINEL],
            )

        await self._append_transcript(session_id, chat_id, message, result.content)
        record_turn(result.cache_status.value, iterations)
        logger.info(
            f"Turn complete for session {session_id}: cache={result.cache_status.value}, "
            f"tools={result.tools_used or 'none'}"
        )
        return result

    async def _append_transcript(self, session_id: str, chat_id: str, message: str, reply: str) -> None:
        try:
            await self.session_store.append_messages(session_id, chat_id, [
                ChatMessage(role="user", content=message),
                ChatMessage(role="assistant", content=reply),
            ])
        except Exception as e:
            logger.error(f"Failed to save transcript for session {session_id}: {e}")
            record_error('session_store', type(e).__name__)
