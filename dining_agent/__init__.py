"""
Dining Concierge

Conversational restaurant discovery and table reservations: a tool-calling
agent over a hybrid restaurant index, fronted by a semantic response cache
whose expiry is chosen from the tools each turn used.
"""

__version__ = "1.0.0"
__description__ = "LLM dining concierge with hybrid retrieval, tool dispatch and a semantic cache"
