"""
Unit tests for the tool registry and its dispatcher.
"""
import json
from datetime import datetime, timedelta

import pytest
from langchain_core.messages import AIMessage

from dining_agent.tool_names import (
    CANCEL_RESERVATION,
    DIRECT_ANSWER,
    LIST_RESERVATIONS,
    MAKE_RESERVATION,
    RESTAURANT_DETAILS,
    SEARCH_RESTAURANTS,
)
from dining_agent.tools import ToolContext, ToolRegistry

from tests.conftest import EchoChatModel, FailingChatModel


def future_date(days: int = 5) -> str:
    return (datetime.now() + timedelta(days=days)).strftime("%Y-%m-%d")


@pytest.fixture
async def alice(session_store):
    await session_store.get_or_create_chat_history("alice", "default")
    await session_store.get_or_create_chat_history("bob", "default")
    return ToolContext(session_id="alice")


async def book(registry, context, restaurant_id="3"):
    outcome = await registry.dispatch(
        MAKE_RESERVATION,
        {"restaurant_id": restaurant_id, "date": future_date(), "time": "19:30", "guests": 2},
        context,
    )
    return json.loads(outcome.content)["reservation"]["id"]


class TestToolSchemas:

    def test_registered_tools(self, tool_registry):
        assert set(tool_registry.names) == {
            "semantic_search_restaurants",
            "get_restaurant_details",
            "get_popular_restaurants",
            "make_reservation",
            "get_user_reservations",
            "cancel_reservation",
            "direct_answer",
        }

    def test_session_id_is_hidden_from_the_model(self, tool_registry):
        for tool in tool_registry.tools:
            properties = tool.tool_call_schema.model_json_schema().get("properties", {})
            assert "session_id" not in properties

    def test_reservation_schema_exposes_booking_fields(self, tool_registry):
        tool = next(t for t in tool_registry.tools if t.name == MAKE_RESERVATION)
        properties = tool.tool_call_schema.model_json_schema()["properties"]
        assert {"restaurant_id", "date", "time", "guests"} <= set(properties)


class TestDispatch:
    """Test dispatch outcomes for each kind of result."""

    async def test_search(self, tool_registry, alice):
        outcome = await tool_registry.dispatch(
            SEARCH_RESTAURANTS,
            {"query": "sushi", "city": "Gurugram", "limit": 2},
            alice,
        )
        payload = json.loads(outcome.content)

        assert outcome.success and not outcome.failed
        assert payload["type"] == "restaurant_search"
        assert payload["count"] == len(payload["restaurants"]) <= 2
        assert payload["original_criteria"] == {"city": "Gurugram"}
        assert outcome.restaurants[0]["name"] == "Sushi Sen"
        assert set(outcome.restaurants[0]) == {
            "id", "name", "cuisine", "rating", "price_for_two", "city", "locality", "distance_km"
        }

    async def test_details(self, tool_registry, alice):
        outcome = await tool_registry.dispatch(RESTAURANT_DETAILS, {"restaurant_id": "6"}, alice)

        assert outcome.success
        assert json.loads(outcome.content)["restaurant"]["known_for"] == "Salmon nigiri"
        assert [r["name"] for r in outcome.restaurants] == ["Sushi Sen"]

    async def test_domain_error_is_a_failure_payload(self, tool_registry, alice):
        outcome = await tool_registry.dispatch(RESTAURANT_DETAILS, {"restaurant_id": "999"}, alice)
        payload = json.loads(outcome.content)

        assert not outcome.success
        assert not outcome.failed
        assert payload == {
            "type": "error",
            "success": False,
            "error": "Restaurant with ID 999 not found",
            "code": "RESTAURANT_NOT_FOUND",
        }

    async def test_unknown_tool(self, tool_registry, alice):
        outcome = await tool_registry.dispatch("order_pizza", {}, alice)

        assert not outcome.success and not outcome.failed
        assert json.loads(outcome.content)["code"] == "UNKNOWN_TOOL"

    async def test_invalid_arguments(self, tool_registry, alice):
        outcome = await tool_registry.dispatch(MAKE_RESERVATION, {"restaurant_id": "3", "guests": "many"}, alice)

        assert not outcome.success and not outcome.failed
        assert json.loads(outcome.content)["code"] == "INVALID_ARGUMENTS"

    async def test_session_id_is_injected(self, tool_registry, reservation_service, alice):
        outcome = await tool_registry.dispatch(
            MAKE_RESERVATION,
            {
                "restaurant_id": "3", "date": future_date(), "time": "19:30", "guests": 2,
                "session_id": "bob", "sessionId": "bob",
            },
            alice,
        )

        assert outcome.success
        assert json.loads(outcome.content)["reservation"]["session_id"] == "alice"
        assert (await reservation_service.get_user_reservations("bob"))["summary"]["total_reservations"] == 0

    async def test_listing_is_scoped_to_trusted_session(self, tool_registry, alice):
        await book(tool_registry, ToolContext(session_id="bob"))

        outcome = await tool_registry.dispatch(LIST_RESERVATIONS, {"session_id": "bob"}, alice)
        payload = json.loads(outcome.content)

        assert payload["reservations"] == []
        assert payload["message"] == "No reservations found"
        assert alice.listed_reservation_ids == set()

    async def test_direct_answer(self, tool_registry, answer_model, alice):
        answer_model.responses.append(AIMessage(content="Biryani is a layered rice dish."))

        outcome = await tool_registry.dispatch(DIRECT_ANSWER, {"question": "What is biryani?"}, alice)

        assert outcome.success
        assert json.loads(outcome.content)["answer"] == "Biryani is a layered rice dish."
        assert answer_model.calls[0][-1].content == "What is biryani?"

    async def test_answer_model_failure_marks_turn_failed(self, rag_system, reservation_service, alice):
        registry = ToolRegistry(rag_system, reservation_service, FailingChatModel())
        outcome = await registry.dispatch(DIRECT_ANSWER, {"question": "What is biryani?"}, alice)

        assert not outcome.success
        assert outcome.failed
        assert json.loads(outcome.content)["code"] == "UPSTREAM_UNAVAILABLE"

    async def test_timeout_marks_turn_failed(self, rag_system, reservation_service, alice):
        registry = ToolRegistry(rag_system, reservation_service, EchoChatModel(delay=1.0), tool_timeout=0.05)
        outcome = await registry.dispatch(DIRECT_ANSWER, {"question": "What is biryani?"}, alice)

        assert outcome.failed
        assert json.loads(outcome.content)["code"] == "TIMEOUT"


class TestCancellationGuard:
    """Cancelling requires a listing earlier in the same turn."""

    async def test_cancel_refused_without_listing(self, tool_registry, reservation_service, alice):
        reservation_id = await book(tool_registry, alice)

        outcome = await tool_registry.dispatch(CANCEL_RESERVATION, {"reservation_id": reservation_id}, alice)

        assert not outcome.success and not outcome.failed
        assert json.loads(outcome.content)["code"] == "POLICY_VIOLATION"
        listing = await reservation_service.get_user_reservations("alice")
        assert listing["reservations"][0]["status"] == "confirmed"

    async def test_cancel_refused_for_unlisted_id(self, tool_registry, alice):
        await book(tool_registry, alice)
        await tool_registry.dispatch(LIST_RESERVATIONS, {}, alice)

        outcome = await tool_registry.dispatch(CANCEL_RESERVATION, {"reservation_id": "res_123_guess"}, alice)
        assert json.loads(outcome.content)["code"] == "POLICY_VIOLATION"

    async def test_cancel_after_listing(self, tool_registry, alice):
        reservation_id = await book(tool_registry, alice)

        listing = await tool_registry.dispatch(LIST_RESERVATIONS, {}, alice)
        assert alice.listed_reservation_ids == {reservation_id}
        assert json.loads(listing.content)["message"] == "Found 1 reservation"

        outcome = await tool_registry.dispatch(
            CANCEL_RESERVATION,
            {"reservation_id": reservation_id, "session_id": "bob"},
            alice,
        )
        payload = json.loads(outcome.content)

        assert outcome.success
        assert payload["type"] == "reservation_cancelled"
        assert payload["reservation"]["status"] == "cancelled"

    async def test_other_sessions_reservation_cannot_be_cancelled(self, tool_registry, alice):
        bob = ToolContext(session_id="bob")
        reservation_id = await book(tool_registry, bob)

        # Even if the id were somehow listed, ownership is checked by the service
        alice.listed_reservation_ids = {reservation_id}
        outcome = await tool_registry.dispatch(CANCEL_RESERVATION, {"reservation_id": reservation_id}, alice)

        assert json.loads(outcome.content)["code"] == "UNAUTHORIZED"

    async def test_malformed_cancel_is_invalid_arguments(self, tool_registry, alice):
        outcome = await tool_registry.dispatch(CANCEL_RESERVATION, {}, alice)

        assert not outcome.success and not outcome.failed
        assert json.loads(outcome.content)["code"] == "INVALID_ARGUMENTS"
