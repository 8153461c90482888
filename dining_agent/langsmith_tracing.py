"""
LangSmith observability integration for the dining concierge.

Individual operations are traced with ``langsmith.traceable``; this module
wires the environment so those traces (and LangChain's own model and tool
runs) are shipped to the configured project.

LangSmith Dashboard: https://smith.langchain.com/
"""
import os
import logging
from typing import Any, Dict, Optional

from langsmith import Client

from dining_agent.config import LANGSMITH_CONFIG

logger = logging.getLogger(__name__)


class LangSmithTracer:
    """Process-wide LangSmith tracing manager."""

    _instance: Optional['LangSmithTracer'] = None
    _initialized: bool = False

    def __new__(cls) -> 'LangSmithTracer':
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __init__(self):
        if self._initialized:
            return

        self.enabled = LANGSMITH_CONFIG["tracing_enabled"]
        self.project_name = LANGSMITH_CONFIG["project_name"]
        self.default_tags = LANGSMITH_CONFIG["default_tags"]
        self.default_metadata = LANGSMITH_CONFIG["default_metadata"]
        self.client: Optional[Client] = None

        if self.enabled and LANGSMITH_CONFIG["api_key"]:
            try:
                # Environment drives LangChain auto-tracing and @traceable
                os.environ["LANGCHAIN_TRACING_V2"] = "true"
                os.environ["LANGCHAIN_API_KEY"] = LANGSMITH_CONFIG["api_key"]
                os.environ["LANGCHAIN_PROJECT"] = self.project_name
                os.environ["LANGCHAIN_ENDPOINT"] = LANGSMITH_CONFIG["endpoint"]

                self.client = Client(
                    api_key=LANGSMITH_CONFIG["api_key"],
                    api_url=LANGSMITH_CONFIG["endpoint"]
                )
                logger.info(f"LangSmith tracing initialized for project: {self.project_name}")
            except Exception as e:
                logger.warning(f"Failed to initialize LangSmith client: {e}")
                self.enabled = False
        else:
            logger.info("LangSmith tracing is disabled (no API key or tracing disabled)")

        self._initialized = True

    def is_enabled(self) -> bool:
        """Check if LangSmith tracing is enabled and configured."""
        return self.enabled and self.client is not None

    def status(self) -> Dict[str, Any]:
        enabled = self.is_enabled()
        return {
            "enabled": enabled,
            "project": self.project_name if enabled else None,
            "dashboard": "https://smith.langchain.com/" if enabled else None,
            "default_tags": self.default_tags if enabled else [],
        }


_tracer: Optional[LangSmithTracer] = None


def get_tracer() -> LangSmithTracer:
    """Get the global LangSmith tracer instance."""
    global _tracer
    if _tracer is None:
        _tracer = LangSmithTracer()
    return _tracer


def initialize_langsmith_tracing() -> LangSmithTracer:
    """
    Initialize LangSmith tracing for the application.
    Call this at application startup.
    """
    tracer = get_tracer()
    if tracer.is_enabled():
        logger.info("LangSmith observability is active")
        logger.info(f"   Project: {tracer.project_name}")
    else:
        logger.info("LangSmith tracing disabled (no API key configured)")
    return tracer
