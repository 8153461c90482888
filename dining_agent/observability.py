"""
Production-grade observability using Prometheus metrics.
Tracks turn outcomes, LLM and tool latencies, retrieval fallbacks, cache
behaviour and system health.
"""
import time
import logging
from collections import defaultdict
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Dict

from prometheus_client import (
    Counter,
    Histogram,
    Gauge,
    Info,
    generate_latest,
    REGISTRY,
)

from dining_agent.config import LOGGING_CONFIG

logger = logging.getLogger(__name__)

# ============================================================================
# LATENCY METRICS FILE LOGGER
# ============================================================================

LATENCY_LOG_FILE = Path(LOGGING_CONFIG["latency_file"])
LATENCY_LOG_FILE.parent.mkdir(parents=True, exist_ok=True)

latency_logger = logging.getLogger("latency_metrics")
latency_logger.setLevel(logging.INFO)
latency_logger.propagate = False

latency_file_handler = logging.FileHandler(LATENCY_LOG_FILE, mode='a')
latency_file_handler.setLevel(logging.INFO)

# Format: timestamp | metric_type | component | duration | details
latency_file_handler.setFormatter(logging.Formatter(
    '%(asctime)s | %(message)s',
    datefmt='%Y-%m-%d %H:%M:%S'
))
latency_logger.addHandler(latency_file_handler)


def log_latency_to_file(
    metric_type: str,
    component: str,
    duration_ms: float,
    **kwargs
):
    """
    Log latency metrics to a dedicated file for quick access.

    Args:
        metric_type: Type of metric (llm_call, tool_call, retrieval, cache)
        component: Component name (model, tool name, ladder strategy, ...)
        duration_ms: Duration in milliseconds
        **kwargs: Additional metadata to log
    """
    details = " | ".join([f"{k}={v}" for k, v in kwargs.items() if v is not None])

    log_message = f"{metric_type:20s} | {component:28s} | {duration_ms:8.2f}ms"
    if details:
        log_message += f" | {details}"

    latency_logger.info(log_message)


# ============================================================================
# METRIC DEFINITIONS
# ============================================================================

# Turn Metrics
TURN_COUNT = Counter(
    'concierge_turns_total',
    'Total number of processed user turns',
    ['cache_status']  # hit, miss, skip, saved, error
)

REQUEST_COUNT = Counter(
    'concierge_requests_total',
    'Total number of requests by entry point',
    ['agent', 'status']
)

REQUEST_DURATION = Histogram(
    'concierge_request_duration_seconds',
    'Request processing duration in seconds',
    ['agent'],
    buckets=(0.1, 0.5, 1.0, 2.0, 5.0, 10.0, 30.0, 60.0)
)

AGENT_ITERATIONS = Histogram(
    'agent_loop_iterations',
    'Model invocations per agent loop',
    buckets=(1, 2, 3, 4, 5, 6, 8, 10)
)

# LLM Metrics
LLM_CALL_COUNT = Counter(
    'llm_calls_total',
    'Total number of LLM API calls',
    ['agent', 'model', 'status']
)

LLM_LATENCY = Histogram(
    'llm_call_duration_seconds',
    'LLM API call duration in seconds',
    ['agent', 'model'],
    buckets=(0.1, 0.5, 1.0, 2.0, 5.0, 10.0, 20.0, 30.0)
)

LLM_TOKEN_USAGE = Counter(
    'llm_tokens_total',
    'Total tokens used in LLM calls',
    ['agent', 'token_type']  # token_type: prompt, completion, total
)

LLM_COST = Counter(
    'llm_cost_usd_total',
    'Estimated LLM API cost in USD',
    ['agent', 'model']
)

# Tool Metrics
TOOL_CALL_COUNT = Counter(
    'tool_calls_total',
    'Tool invocations requested by the model',
    ['tool', 'status']  # status: success, failure, error
)

TOOL_LATENCY = Histogram(
    'tool_call_duration_seconds',
    'Tool execution duration in seconds',
    ['tool'],
    buckets=(0.01, 0.05, 0.1, 0.25, 0.5, 1.0, 2.0, 5.0, 10.0)
)

# Retrieval Metrics
RETRIEVAL_LATENCY = Histogram(
    'retrieval_duration_seconds',
    'Hybrid retrieval duration in seconds',
    ['strategy'],  # semantic, location, popular, popular_fallback
    buckets=(0.01, 0.05, 0.1, 0.25, 0.5, 1.0, 2.0, 5.0)
)

RETRIEVAL_COUNT = Counter(
    'retrieval_operations_total',
    'Total number of retrieval operations',
    ['strategy', 'status']
)

DOCUMENTS_RETRIEVED = Histogram(
    'documents_retrieved_count',
    'Number of documents returned per search',
    ['strategy'],
    buckets=(0, 1, 5, 10, 20, 50, 100)
)

FALLBACK_COUNT = Counter(
    'retrieval_fallbacks_total',
    'Fallback ladder steps taken after an empty result',
    ['step']  # drop_cuisine, popular_fallback
)

# Cache Metrics
CACHE_OPERATIONS = Counter(
    'cache_operations_total',
    'Cache operations',
    ['operation', 'result']  # operation: lookup, store; result: hit, miss, success, failure
)

CACHE_LATENCY = Histogram(
    'cache_operation_duration_seconds',
    'Semantic cache operation duration in seconds',
    ['operation'],
    buckets=(0.005, 0.01, 0.05, 0.1, 0.25, 0.5, 1.0, 5.0)
)

# Error Metrics
ERROR_COUNT = Counter(
    'errors_total',
    'Total number of errors',
    ['component', 'error_type']
)

# System Metrics
ACTIVE_REQUESTS = Gauge(
    'active_requests',
    'Number of requests currently being processed',
    ['agent']
)

VECTOR_STORE_SIZE = Gauge(
    'vector_store_documents_total',
    'Total number of restaurant documents in the index'
)

SYSTEM_INFO = Info(
    'dining_concierge_system',
    'System information'
)


@contextmanager
def track_active_requests(agent: str):
    """Track number of active requests for an agent."""
    ACTIVE_REQUESTS.labels(agent=agent).inc()
    try:
        yield
    finally:
        ACTIVE_REQUESTS.labels(agent=agent).dec()


# ============================================================================
# HELPER FUNCTIONS
# ============================================================================

def record_llm_call(
    agent: str,
    model: str,
    duration: float,
    prompt_tokens: int = 0,
    completion_tokens: int = 0,
    success: bool = True
):
    """
    Record metrics for an LLM API call.

    Args:
        agent: Name of the agent making the call
        model: Model name (e.g., 'gpt-4o-mini')
        duration: Call duration in seconds
        prompt_tokens: Number of prompt tokens used
        completion_tokens: Number of completion tokens generated
        success: Whether the call succeeded
    """
    status = 'success' if success else 'error'

    LLM_CALL_COUNT.labels(agent=agent, model=model, status=status).inc()
    LLM_LATENCY.labels(agent=agent, model=model).observe(duration)

    log_latency_to_file(
        metric_type="llm_call",
        component=f"{agent}/{model}",
        duration_ms=duration * 1000,
        status=status,
        prompt_tokens=prompt_tokens,
        completion_tokens=completion_tokens,
    )

    if success:
        LLM_TOKEN_USAGE.labels(agent=agent, token_type='prompt').inc(prompt_tokens)
        LLM_TOKEN_USAGE.labels(agent=agent, token_type='completion').inc(completion_tokens)
        LLM_TOKEN_USAGE.labels(agent=agent, token_type='total').inc(prompt_tokens + completion_tokens)
        LLM_COST.labels(agent=agent, model=model).inc(
            estimate_llm_cost(model, prompt_tokens, completion_tokens)
        )


def estimate_llm_cost(model: str, prompt_tokens: int, completion_tokens: int) -> float:
    """
    Estimate LLM API cost based on model and token usage.
    Prices are approximate and should be updated based on actual pricing.
    """
    # Prices per 1K tokens
    pricing = {
        'gpt-4o': {'prompt': 0.0025, 'completion': 0.01},
        'gpt-4o-mini': {'prompt': 0.00015, 'completion': 0.0006},
        'gpt-4-turbo': {'prompt': 0.01, 'completion': 0.03},
    }

    model_pricing = pricing.get(model, {'prompt': 0.0025, 'completion': 0.01})

    prompt_cost = (prompt_tokens / 1000) * model_pricing['prompt']
    completion_cost = (completion_tokens / 1000) * model_pricing['completion']

    return prompt_cost + completion_cost


def record_tool_call(tool: str, duration: float, status: str):
    """Record one tool dispatch (status: success, failure or error)."""
    TOOL_CALL_COUNT.labels(tool=tool, status=status).inc()
    TOOL_LATENCY.labels(tool=tool).observe(duration)
    log_latency_to_file(
        metric_type="tool_call",
        component=tool,
        duration_ms=duration * 1000,
        status=status,
    )


def record_retrieval(
    strategy: str,
    duration: float,
    num_documents: int,
    success: bool = True
):
    """
    Record retrieval operation metrics.

    Args:
        strategy: Ladder step that produced the result
        duration: Retrieval duration in seconds
        num_documents: Number of documents returned
        success: Whether retrieval succeeded
    """
    status = 'success' if success else 'error'

    RETRIEVAL_LATENCY.labels(strategy=strategy).observe(duration)
    RETRIEVAL_COUNT.labels(strategy=strategy, status=status).inc()

    log_latency_to_file(
        metric_type="retrieval",
        component=strategy,
        duration_ms=duration * 1000,
        status=status,
        num_documents=num_documents
    )

    if success:
        DOCUMENTS_RETRIEVED.labels(strategy=strategy).observe(num_documents)


def record_fallback(step: str):
    FALLBACK_COUNT.labels(step=step).inc()


def record_cache_operation(operation: str, result: str, duration: float):
    CACHE_OPERATIONS.labels(operation=operation, result=result).inc()
    CACHE_LATENCY.labels(operation=operation).observe(duration)
    log_latency_to_file(
        metric_type="cache",
        component=operation,
        duration_ms=duration * 1000,
        result=result,
    )


def record_turn(cache_status: str, iterations: int = 0):
    TURN_COUNT.labels(cache_status=cache_status).inc()
    if iterations:
        AGENT_ITERATIONS.observe(iterations)


def record_error(component: str, error_type: str):
    """Record an error occurrence."""
    ERROR_COUNT.labels(component=component, error_type=error_type).inc()


def record_request(agent: str, duration: float, status: str = 'success'):
    """
    Record a completed request.

    Args:
        agent: Entry point that processed the request
        duration: Request duration in seconds
        status: Request status (success, error)
    """
    REQUEST_COUNT.labels(agent=agent, status=status).inc()
    REQUEST_DURATION.labels(agent=agent).observe(duration)


def update_vector_store_size(size: int):
    """Update the vector store size gauge."""
    VECTOR_STORE_SIZE.set(size)


def set_system_info(version: str, environment: str, **kwargs):
    """
    Set system information.

    Args:
        version: Application version
        environment: Environment (dev, staging, production)
        **kwargs: Additional info fields
    """
    SYSTEM_INFO.info({
        'version': version,
        'environment': environment,
        **kwargs
    })


# ============================================================================
# METRICS ENDPOINT
# ============================================================================

def get_metrics() -> bytes:
    """
    Get current metrics in Prometheus format.

    Returns:
        Metrics in Prometheus exposition format
    """
    return generate_latest(REGISTRY)


# ============================================================================
# HEALTH CHECK
# ============================================================================

class HealthChecker:
    """Simple health check tracker."""

    def __init__(self):
        self.last_request_time = time.time()
        self.error_count = 0
        self.success_count = 0

    def record_success(self):
        """Record a successful request."""
        self.last_request_time = time.time()
        self.success_count += 1

    def record_error(self):
        """Record a failed request."""
        self.error_count += 1

    def is_healthy(self) -> bool:
        """Unhealthy once more than half of the requests failed."""
        total_requests = self.success_count + self.error_count

        if total_requests == 0:
            return True  # No traffic yet

        return self.error_count / total_requests < 0.5

    def get_stats(self) -> dict:
        """Get health stats."""
        total = self.success_count + self.error_count
        return {
            'success_count': self.success_count,
            'error_count': self.error_count,
            'total_requests': total,
            'error_rate': self.error_count / total if total > 0 else 0,
            'last_request_seconds_ago': time.time() - self.last_request_time,
            'healthy': self.is_healthy()
        }


# Global health checker instance
health_checker = HealthChecker()


def get_latency_summary() -> Dict[str, Any]:
    """
    Calculate summary statistics from the latency log file.

    Returns:
        Dictionary with average, min, max latencies by metric type
    """
    try:
        if not LATENCY_LOG_FILE.exists():
            return {"message": "No latency metrics logged yet."}

        with open(LATENCY_LOG_FILE, 'r') as f:
            lines = f.readlines()

        metrics_by_type = defaultdict(list)

        for line in lines:
            parts = line.strip().split('|')
            if len(parts) < 4:
                continue
            try:
                metrics_by_type[parts[1].strip()].append(float(parts[3].strip().replace('ms', '')))
            except ValueError:
                continue

        summary = {}
        for metric_type, durations in metrics_by_type.items():
            summary[metric_type] = {
                "count": len(durations),
                "avg_ms": sum(durations) / len(durations),
                "min_ms": min(durations),
                "max_ms": max(durations),
                "latest_ms": durations[-1]
            }

        return summary
    except OSError as e:
        logger.error(f"Error calculating latency summary: {e}")
        return {"error": str(e)}
