"""
Tests for the tool-calling agent and the per-turn workflow.
"""
import asyncio
from datetime import datetime, timedelta

import pytest
from langchain_core.messages import AIMessage, HumanMessage, SystemMessage

from dining_agent.agents import FinalAnswer, ToolCalls, ToolCallingModel, profile_context
from dining_agent.bootstrap import build_services
from dining_agent.config import FALLBACK_MESSAGES
from dining_agent.errors import UpstreamUnavailableError, ValidationError
from dining_agent.models import CacheStatus, Profile
from dining_agent.tool_names import (
    CANCEL_RESERVATION,
    DIRECT_ANSWER,
    ERROR_SENTINEL,
    LIST_RESERVATIONS,
    MAKE_RESERVATION,
    SEARCH_RESTAURANTS,
)
from dining_agent.ttl_policy import SEARCH_TTL

from tests.conftest import (
    EchoChatModel,
    FailingCache,
    FailingChatModel,
    KeywordEmbeddings,
    ScriptedChatModel,
    tool_call,
    unique_collection,
)


def cached_entries(semantic_cache):
    return semantic_cache.store.get(include=["metadatas"])["metadatas"]


class TestToolCallingModel:

    async def test_final_answer(self):
        model = ToolCallingModel(ScriptedChatModel([AIMessage(content="Hello!")]), "scripted")
        decision = await model.decide([HumanMessage(content="hi")])

        assert isinstance(decision, FinalAnswer)
        assert decision.text == "Hello!"

    async def test_tool_calls(self):
        model = ToolCallingModel(ScriptedChatModel([tool_call(SEARCH_RESTAURANTS, {"query": "sushi"}, "call_1")]))
        decision = await model.decide([HumanMessage(content="sushi please")])

        assert isinstance(decision, ToolCalls)
        assert decision.calls[0].id == "call_1"
        assert decision.calls[0].name == SEARCH_RESTAURANTS
        assert decision.calls[0].args == {"query": "sushi"}

    async def test_content_blocks_are_joined(self):
        message = AIMessage(content=[{"type": "text", "text": "Try "}, {"type": "text", "text": "Sushi Sen"}])
        decision = await ToolCallingModel(ScriptedChatModel([message])).decide([])
        assert decision.text == "Try Sushi Sen"

    async def test_failure_is_upstream_unavailable(self):
        with pytest.raises(UpstreamUnavailableError):
            await ToolCallingModel(FailingChatModel()).decide([HumanMessage(content="hi")])


class TestProfileContext:

    def test_missing_profile(self):
        assert profile_context(None) == "No profile information available."

    def test_profile_lines(self):
        text = profile_context(Profile(
            name="Alice", locality="Khan Market", latitude=28.6, longitude=77.2, preferences=["vegetarian"],
        ))
        assert "- Name: Alice" in text
        assert "- Locality: Khan Market" in text
        assert "latitude 28.6, longitude 77.2" in text
        assert "- Preferences: vegetarian" in text


class TestConciergeWorkflow:
    """End-to-end turns against scripted models and in-memory stores."""

    async def test_search_turn_is_cached_then_served_from_cache(self, make_services, semantic_cache):
        model = ScriptedChatModel([
            tool_call(SEARCH_RESTAURANTS, {"query": "sushi", "city": "Gurugram"}),
            AIMessage(content="Sushi Sen at Cyber Hub is your best bet."),
        ])
        workflow = make_services(model).workflow

        first = await workflow.process_turn("alice", None, "Sushi in Gurugram?")

        assert first.content == "Sushi Sen at Cyber Hub is your best bet."
        assert first.cache_status == CacheStatus.SAVED
        assert not first.is_cached_response
        assert first.tools_used == [SEARCH_RESTAURANTS]
        assert "Sushi Sen" in [r["name"] for r in first.restaurants]

        entry = cached_entries(semantic_cache)[0]
        assert entry["expires_at"] - entry["created_at"] == SEARCH_TTL

        second = await workflow.process_turn("alice", None, "Sushi in Gurugram?")

        assert second.content == first.content
        assert second.is_cached_response
        assert second.cache_status == CacheStatus.HIT
        assert second.tools_used == []
        assert len(model.calls) == 2

    async def test_cached_answer_is_shared_across_sessions(self, make_services):
        model = ScriptedChatModel([
            tool_call(SEARCH_RESTAURANTS, {"query": "sushi", "city": "Gurugram"}),
            AIMessage(content="Sushi Sen."),
        ])
        workflow = make_services(model).workflow

        await workflow.process_turn("alice", None, "Sushi in Gurugram?")
        result = await workflow.process_turn("bob", None, "sushi in gurugram")

        assert result.is_cached_response
        assert result.content == "Sushi Sen."

    async def test_book_then_cancel(self, make_services, reservation_service):
        date = (datetime.now() + timedelta(days=5)).strftime("%Y-%m-%d")
        model = ScriptedChatModel([
            tool_call(MAKE_RESERVATION, {"restaurant_id": "3", "date": date, "time": "19:30", "guests": 2}),
            AIMessage(content="Booked a table for two at Dilli Darbar."),
        ])
        workflow = make_services(model).workflow

        booked = await workflow.process_turn("alice", None, "Book Dilli Darbar for two at 7:30pm")

        assert booked.tools_used == [MAKE_RESERVATION]
        assert booked.cache_status == CacheStatus.SKIP
        reservation_id = (await reservation_service.get_user_reservations("alice"))["reservations"][0]["id"]

        model.responses.extend([
            tool_call(LIST_RESERVATIONS),
            tool_call(CANCEL_RESERVATION, {"reservation_id": reservation_id, "session_id": "mallory"}),
            AIMessage(content="Your Dilli Darbar booking is cancelled."),
        ])
        cancelled = await workflow.process_turn("alice", None, "Cancel my reservation")

        assert cancelled.content == "Your Dilli Darbar booking is cancelled."
        assert cancelled.tools_used == [LIST_RESERVATIONS, CANCEL_RESERVATION]
        assert cancelled.cache_status == CacheStatus.SKIP
        listing = await reservation_service.get_user_reservations("alice")
        assert listing["reservations"][0]["status"] == "cancelled"

    async def test_cancel_without_listing_is_refused(self, make_services, reservation_service):
        date = (datetime.now() + timedelta(days=5)).strftime("%Y-%m-%d")
        model = ScriptedChatModel([
            tool_call(MAKE_RESERVATION, {"restaurant_id": "3", "date": date, "time": "19:30", "guests": 2}),
            AIMessage(content="Booked."),
        ])
        workflow = make_services(model).workflow
        await workflow.process_turn("alice", None, "Book Dilli Darbar")
        reservation_id = (await reservation_service.get_user_reservations("alice"))["reservations"][0]["id"]

        model.responses.extend([
            tool_call(CANCEL_RESERVATION, {"reservation_id": reservation_id}),
            AIMessage(content="Which reservation should I cancel?"),
        ])
        result = await workflow.process_turn("alice", None, "Cancel it")

        assert result.content == "Which reservation should I cancel?"
        assert ERROR_SENTINEL not in result.tools_used
        tool_result = model.calls[-1][-1]
        assert "POLICY_VIOLATION" in tool_result.content
        listing = await reservation_service.get_user_reservations("alice")
        assert listing["reservations"][0]["status"] == "confirmed"

    async def test_iteration_cap_returns_last_text(self, make_services):
        model = ScriptedChatModel([
            AIMessage(
                content="Let me look a little further.",
                tool_calls=[{"name": SEARCH_RESTAURANTS, "args": {"query": "pizza"}, "id": "call_1"}],
            ),
            tool_call(SEARCH_RESTAURANTS, {"query": "pizza"}),
            tool_call(SEARCH_RESTAURANTS, {"query": "pizza"}),
        ])
        workflow = make_services(model, max_iterations=3).workflow

        result = await workflow.process_turn("alice", None, "Pizza?")

        assert result.content == "Let me look a little further."
        assert result.tools_used.count(SEARCH_RESTAURANTS) == 3
        assert ERROR_SENTINEL in result.tools_used
        assert result.cache_status == CacheStatus.SKIP
        assert len(model.calls) == 3

    async def test_iteration_cap_without_text(self, make_services, semantic_cache):
        model = ScriptedChatModel([tool_call(SEARCH_RESTAURANTS, {"query": "pizza"}) for _ in range(2)])
        workflow = make_services(model, max_iterations=2).workflow

        result = await workflow.process_turn("alice", None, "Pizza?")

        assert result.content == FALLBACK_MESSAGES["iteration_limit"]
        assert result.cache_status == CacheStatus.SKIP
        assert cached_entries(semantic_cache) == []

    async def test_model_failure_returns_apology(self, make_services, session_store, semantic_cache):
        workflow = make_services(FailingChatModel()).workflow

        result = await workflow.process_turn("alice", "dinner", "Sushi in Gurugram?")

        assert result.content == FALLBACK_MESSAGES["apology"]
        assert result.tools_used == [ERROR_SENTINEL]
        assert result.cache_status == CacheStatus.SKIP
        assert cached_entries(semantic_cache) == []

        transcript = await session_store.get_chat_history("alice", "dinner")
        assert [(m.role, m.content) for m in transcript] == [
            ("user", "Sushi in Gurugram?"),
            ("assistant", FALLBACK_MESSAGES["apology"]),
        ]

    async def test_empty_answer_is_not_cached(self, make_services, semantic_cache):
        workflow = make_services(ScriptedChatModel([AIMessage(content="   ")])).workflow

        result = await workflow.process_turn("alice", None, "Hello")

        assert result.content == FALLBACK_MESSAGES["apology"]
        assert ERROR_SENTINEL in result.tools_used
        assert cached_entries(semantic_cache) == []

    async def test_tool_upstream_failure_is_not_cached(self, make_services, semantic_cache):
        # The answer model behind direct_answer has nothing scripted and fails
        model = ScriptedChatModel([
            tool_call(DIRECT_ANSWER, {"question": "What is biryani?"}),
            AIMessage(content="I couldn't look that up right now."),
        ])
        workflow = make_services(model).workflow

        result = await workflow.process_turn("alice", None, "What is biryani?")

        assert result.content == "I couldn't look that up right now."
        assert result.tools_used == [DIRECT_ANSWER, ERROR_SENTINEL]
        assert result.cache_status == CacheStatus.SKIP
        assert cached_entries(semantic_cache) == []

    async def test_cache_failure_still_answers(self, make_services):
        model = ScriptedChatModel([
            tool_call(SEARCH_RESTAURANTS, {"query": "sushi", "city": "Gurugram"}),
            AIMessage(content="Sushi Sen."),
        ])
        workflow = make_services(model, cache=FailingCache()).workflow

        result = await workflow.process_turn("alice", None, "Sushi in Gurugram?")

        assert result.content == "Sushi Sen."
        assert not result.is_cached_response
        assert result.cache_status == CacheStatus.ERROR

    async def test_smart_recall_scopes_cache_to_session(self, make_services):
        model = ScriptedChatModel([AIMessage(content="Dilli Darbar, as usual.")])
        services = make_services(model)

        result = await services.workflow.process_turn("alice", None, "My usual place?", use_smart_recall=True)
        assert result.cache_status == CacheStatus.SAVED

        gateway = services.cache_gateway
        assert await gateway.lookup("My usual place?") is None
        assert await gateway.lookup("My usual place?", {"sessionId": "bob"}) is None
        assert await gateway.lookup("My usual place?", {"sessionId": "alice"}) == "Dilli Darbar, as usual."

    async def test_history_and_profile_reach_the_model(self, make_services, session_store):
        model = ScriptedChatModel([AIMessage(content="Hi Alice!"), AIMessage(content="Dilli Darbar.")])
        workflow = make_services(model).workflow

        await workflow.process_turn("Alice", None, "Hello there")
        await workflow.process_turn("ALICE", None, "Where should I eat tonight?")

        messages = model.calls[1]
        assert isinstance(messages[0], SystemMessage)
        assert "- Name: Alice" in messages[0].content
        assert [m.content for m in messages[1:]] == ["Hello there", "Hi Alice!", "Where should I eat tonight?"]
        assert session_store.session_count() == 1

    async def test_invalid_input(self, make_services):
        workflow = make_services(ScriptedChatModel()).workflow

        with pytest.raises(ValidationError):
            await workflow.process_turn("alice", None, "   ")
        with pytest.raises(ValidationError):
            await workflow.process_turn("  ", None, "hello")

    async def test_turns_for_one_session_are_serialised(self, make_services, session_store):
        workflow = make_services(EchoChatModel(delay=0.02)).workflow
        messages = ["pizza", "sushi", "tacos", "curry", "ramen"]

        results = await asyncio.gather(*[workflow.process_turn("alice", None, m) for m in messages])

        assert [r.content for r in results] == [f"echo: {m}" for m in messages]
        transcript = await session_store.get_chat_history("alice", "default")
        assert len(transcript) == 2 * len(messages)
        for user, assistant in zip(transcript[::2], transcript[1::2]):
            assert user.role == "user" and assistant.role == "assistant"
            assert assistant.content == f"echo: {user.content}"

    async def test_cancelled_turn_is_not_cached(self, make_services, semantic_cache, session_store):
        workflow = make_services(EchoChatModel(delay=0.5)).workflow

        task = asyncio.create_task(workflow.process_turn("alice", None, "pizza"))
        await asyncio.sleep(0.1)
        task.cancel()

        with pytest.raises(asyncio.CancelledError):
            await task
        assert cached_entries(semantic_cache) == []
        assert await session_store.get_chat_history("alice", "default") == []

        result = await asyncio.wait_for(workflow.process_turn("alice", None, "sushi"), timeout=5)
        assert result.content == "echo: sushi"
        assert result.cache_status == CacheStatus.SAVED


class TestBuildServices:

    async def test_wires_collaborators(self, tmp_path, monkeypatch):
        monkeypatch.chdir(tmp_path)
        services = build_services(
            api_key="test-key",
            embeddings=KeywordEmbeddings(),
            chat_model=ScriptedChatModel([AIMessage(content="Hello!")]),
            answer_model=ScriptedChatModel(),
            restaurant_collection=unique_collection("restaurants"),
            cache_collection=unique_collection("cache"),
        )

        assert services.workflow.agent.registry is services.tool_registry
        assert services.reservation_service.rag_system is services.rag_system

        result = await services.workflow.process_turn("alice", None, "Hello")
        assert result.content == "Hello!"
        assert result.tools_used == []
