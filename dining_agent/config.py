"""
Configuration settings for the dining concierge agent.
"""
import os
from typing import Dict, Any

# =============================================================================
# LANGSMITH OBSERVABILITY CONFIGURATION
# =============================================================================
LANGSMITH_CONFIG: Dict[str, Any] = {
    "tracing_enabled": os.getenv("LANGCHAIN_TRACING_V2", "true").lower() == "true",
    "api_key": os.getenv("LANGCHAIN_API_KEY", ""),
    "project_name": os.getenv("LANGCHAIN_PROJECT", "dining-concierge"),
    "endpoint": os.getenv("LANGCHAIN_ENDPOINT", "https://api.smith.langchain.com"),
    # Trace tags for filtering in LangSmith dashboard
    "default_tags": ["dining-concierge", "tool-agent"],
    "default_metadata": {
        "app_version": "1.0.0",
        "system": "dining-concierge"
    }
}

# LLM Configuration
LLM_CONFIG: Dict[str, Any] = {
    "model": os.getenv("LLM_MODEL", "gpt-4o-mini"),
    "temperature": 0.3,
    "max_tokens": 1000,
    "request_timeout": 60,
}

# Free-form dining answers use a cooler, tool-less model call
DIRECT_ANSWER_CONFIG: Dict[str, Any] = {
    "model": os.getenv("LLM_MODEL", "gpt-4o-mini"),
    "temperature": 0.2,
    "max_tokens": 600,
}

# Embedding Configuration
EMBEDDING_CONFIG: Dict[str, Any] = {
    "model": os.getenv("EMBEDDING_MODEL", "text-embedding-3-small"),
}

# Vector Store Configuration
VECTOR_STORE_CONFIG: Dict[str, Any] = {
    "collection_name": "restaurants",
    "distance_metric": "cosine",
    # Empty string keeps the collection in memory
    "persist_directory": os.getenv("VECTOR_STORE_DIR", "./data/vectorstore"),
}

# Hybrid Search Configuration
SEARCH_CONFIG: Dict[str, Any] = {
    "default_limit": 5,
    "max_limit": 20,
    "default_radius_km": 15.0,
    "popular_min_rating": 4.0,
    "semantic_headroom": 2,  # semantic step asks for limit * headroom candidates
    "price_ranges": [
        {"label": "Budget (Under 500)", "min": 0, "max": 500},
        {"label": "Mid-range (500-1000)", "min": 500, "max": 1000},
        {"label": "Premium (1000-2000)", "min": 1000, "max": 2000},
        {"label": "Luxury (Above 2000)", "min": 2000, "max": 10000},
    ],
    "rating_ranges": [4.5, 4.0, 3.5, 3.0],
}

# Semantic Cache Configuration
CACHE_CONFIG: Dict[str, Any] = {
    "collection_name": "semantic_cache",
    "persist_directory": os.getenv("CACHE_STORE_DIR", ""),
    "similarity_threshold": float(os.getenv("CACHE_SIMILARITY_THRESHOLD", "0.9")),
    "lookup_timeout": 5.0,
    "store_timeout": 5.0,
}

# Agent Configuration
AGENT_CONFIG: Dict[str, Any] = {
    "max_iterations": 8,
    "model_timeout": 60.0,
    "tool_timeout": 30.0,
    "history_window": 20,  # transcript messages sent to the model
}

# Reservation Configuration
RESERVATION_CONFIG: Dict[str, Any] = {
    "cancellation_lead_hours": 2,
    "max_guests": 20,
}

# Defaults for lazily created sessions
SESSION_CONFIG: Dict[str, Any] = {
    "default_chat_id": "default",
    "email_domain": "example.com",
    "default_phone": "+91-0000000000",
    "default_locality": "Unknown",
}

# Data Configuration
DATA_CONFIG: Dict[str, Any] = {
    "restaurant_data_path": os.getenv("RESTAURANT_DATA_PATH", "./data/restaurants.json"),
}

# System Prompts
SYSTEM_PROMPTS: Dict[str, str] = {
    "restaurant_discovery": """You are a friendly dining concierge that helps users discover restaurants and manage table reservations.

Current date and time: {current_datetime}

About the user:
{profile_context}

Tools available to you:
- semantic_search_restaurants: the main search tool. Pass the user's wording as `query` and any explicit filters (cuisine, city, locality, type, max_price, min_rating). For "near me" requests use the user's coordinates from the profile above.
- get_restaurant_details: full details for one restaurant id taken from earlier search results.
- get_popular_restaurants: top rated places, optionally by city or cuisine.
- make_reservation: book a table. Needs restaurant_id, date (YYYY-MM-DD), time (HH:MM) and guests. Contact details come from the user's profile automatically.
- get_user_reservations: list the user's bookings.
- cancel_reservation: cancel one booking.
- direct_answer: general dining knowledge questions (etiquette, dishes, cuisines) that need no restaurant data.

Rules:
1. Never invent restaurants, ids or reservation ids. Only use ids returned by a tool.
2. To cancel, ALWAYS call get_user_reservations first, then call cancel_reservation with the exact id from that list. If several bookings could match, ask the user which one.
3. Resolve relative dates ("tomorrow", "this Friday") against the current date before booking.
4. When a search result says filters were relaxed, tell the user what was broadened.
5. Use the user's preferences to personalise suggestions when they are relevant.
6. Keep answers concise: name, cuisine, locality, rating and price for two for each suggestion.
""",
    "direct_answer": """You are a knowledgeable dining expert. Answer questions about food, cuisines, dishes, dining etiquette and restaurant culture.
Be accurate and practical. Do not recommend specific restaurants by name; say that a restaurant search can help with that instead.
""",
}

FALLBACK_MESSAGES: Dict[str, str] = {
    "apology": "I'm sorry, I ran into a problem while handling your request. Please try again in a moment.",
    "iteration_limit": "I'm sorry, I couldn't finish working that out. Could you rephrase or narrow down your request?",
}

# Environment variables (with defaults for demo)
OPENAI_API_KEY = os.getenv("OPENAI_API_KEY", "")

# Logging Configuration
LOGGING_CONFIG: Dict[str, Any] = {
    "level": os.getenv("LOG_LEVEL", "INFO"),
    "format": "%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    "file": "./logs/dining_agent.log",
    "latency_file": "./logs/latency_metrics.log",
}
