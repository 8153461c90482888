"""
Cache lifetime policy keyed on the tools a turn invoked.

The decision is taken from the recorded tool names only, never from the
answer text.
"""
from typing import Iterable

from dining_agent.tool_names import (
    RESERVATION_TOOLS,
    POPULAR_RESTAURANTS,
    DIRECT_ANSWER,
    SEARCH_RESTAURANTS,
    RESTAURANT_DETAILS,
)

HOUR_MS = 60 * 60 * 1000
DAY_MS = 24 * HOUR_MS

NO_CACHE = 0
STATIC_TTL = 7 * DAY_MS
SEARCH_TTL = 24 * HOUR_MS
DETAILS_TTL = 6 * HOUR_MS
DEFAULT_TTL = 12 * HOUR_MS


def determine_cache_ttl(tools_used: Iterable[str]) -> int:
    """Return the cache TTL in milliseconds for a turn's tool trace."""
    used = set(tools_used)

    if used & RESERVATION_TOOLS:
        return NO_CACHE
    if POPULAR_RESTAURANTS in used or DIRECT_ANSWER in used:
        return STATIC_TTL
    if SEARCH_RESTAURANTS in used:
        return SEARCH_TTL
    if RESTAURANT_DETAILS in used:
        return DETAILS_TTL
    return DEFAULT_TTL


def format_ttl(ttl_ms: int) -> str:
    """Human readable TTL for logs, e.g. '7 days' or '6 hours'."""
    if ttl_ms <= 0:
        return "No cache"

    days = ttl_ms // DAY_MS
    if days >= 1:
        return f"{days} day{'s' if days > 1 else ''}"

    hours = ttl_ms // HOUR_MS
    return f"{hours} hour{'s' if hours != 1 else ''}"
