"""Names of the tools exposed to the language model."""

SEARCH_RESTAURANTS = "semantic_search_restaurants"
RESTAURANT_DETAILS = "get_restaurant_details"
POPULAR_RESTAURANTS = "get_popular_restaurants"
MAKE_RESERVATION = "make_reservation"
LIST_RESERVATIONS = "get_user_reservations"
CANCEL_RESERVATION = "cancel_reservation"
DIRECT_ANSWER = "direct_answer"

# Marks a turn whose tool loop failed; such turns are never cached
ERROR_SENTINEL = "error"

RESERVATION_TOOLS = frozenset({MAKE_RESERVATION, LIST_RESERVATIONS, CANCEL_RESERVATION})

# Tools that receive the trusted session id from the orchestrator
SESSION_SCOPED_TOOLS = RESERVATION_TOOLS
