"""
Command line entry point for the dining concierge.
Provides a single-query mode and an interactive chat.

Observability:
- Prometheus metrics: /metrics endpoint on the metrics port
- LangSmith tracing: chat turns, model calls, retrieval and cache operations
- Health checks: /health endpoint on the metrics port
"""
import argparse
import asyncio
import json
import logging
import os
import sys
from http.server import BaseHTTPRequestHandler, HTTPServer
from pathlib import Path
from threading import Thread
from typing import Optional

from dining_agent import __version__
from dining_agent.bootstrap import ConciergeServices, build_services
from dining_agent.config import LOGGING_CONFIG, OPENAI_API_KEY, SESSION_CONFIG
from dining_agent.errors import ValidationError
from dining_agent.langsmith_tracing import initialize_langsmith_tracing
from dining_agent.models import TurnResult
from dining_agent.observability import get_metrics, health_checker, set_system_info

Path(LOGGING_CONFIG["file"]).parent.mkdir(parents=True, exist_ok=True)
logging.basicConfig(
    level=LOGGING_CONFIG["level"],
    format=LOGGING_CONFIG["format"],
    handlers=[
        logging.StreamHandler(sys.stdout),
        logging.FileHandler(LOGGING_CONFIG["file"], mode='a')
    ]
)
logger = logging.getLogger(__name__)


# ============================================================================
# METRICS HTTP SERVER
# ============================================================================

class MetricsHandler(BaseHTTPRequestHandler):
    """HTTP handler for Prometheus metrics endpoint."""

    def do_GET(self):
        if self.path == '/metrics':
            metrics_data = get_metrics()
            self.send_response(200)
            self.send_header('Content-Type', 'text/plain; charset=utf-8')
            self.end_headers()
            self.wfile.write(metrics_data)
        elif self.path == '/health':
            health_stats = health_checker.get_stats()
            self.send_response(200 if health_stats['healthy'] else 503)
            self.send_header('Content-Type', 'application/json')
            self.end_headers()
            self.wfile.write(json.dumps(health_stats).encode())
        else:
            self.send_response(404)
            self.end_headers()

    def log_message(self, format, *args):
        """Suppress default logging."""
        pass


def start_metrics_server(port: int = 8000) -> HTTPServer:
    """Start metrics server in background thread."""
    server = HTTPServer(('0.0.0.0', port), MetricsHandler)
    thread = Thread(target=server.serve_forever, daemon=True)
    thread.start()
    logger.info(f"Metrics server started on http://0.0.0.0:{port}")
    logger.info(f"   - Metrics: http://localhost:{port}/metrics")
    logger.info(f"   - Health:  http://localhost:{port}/health")
    return server


# ============================================================================
# MAIN APPLICATION
# ============================================================================

class ConciergeApp:
    """
    Terminal front end for one session.

    Features:
    - Single query and interactive chat
    - Transcript display and session reset
    """

    def __init__(
        self,
        services: ConciergeServices,
        session_id: str,
        chat_id: str = SESSION_CONFIG["default_chat_id"],
        use_smart_recall: bool = False,
    ):
        self.services = services
        self.session_id = session_id.strip().lower()
        self.chat_id = chat_id
        self.use_smart_recall = use_smart_recall

    async def ask(self, message: str) -> TurnResult:
        return await self.services.workflow.process_turn(
            self.session_id,
            self.chat_id,
            message,
            use_smart_recall=self.use_smart_recall,
        )

    async def show_history(self):
        messages = await self.services.session_store.get_chat_history(self.session_id, self.chat_id)
        if not messages:
            print("No messages yet.")
            return
        for msg in messages:
            speaker = "You" if msg.role == "user" else "Assistant"
            print(f"[{msg.timestamp:%H:%M}] {speaker}: {msg.content}")

    @staticmethod
    def print_result(result: TurnResult):
        print(f"Assistant: {result.content}\n")
        details = [f"cache={result.cache_status.value}"]
        if result.tools_used:
            details.append(f"tools={', '.join(result.tools_used)}")
        if result.restaurants:
            details.append(f"restaurants={len(result.restaurants)}")
        print(f"({'; '.join(details)})")

    async def interactive_mode(self):
        """Run interactive CLI mode."""
        print("\n" + "=" * 70)
        print("Dining Concierge - Interactive Mode")
        print("=" * 70)
        print(f"\nSession: {self.session_id} (chat: {self.chat_id})")
        print("Try messages like:")
        print("  - Show me Italian restaurants in Khan Market")
        print("  - Book a table for 2 at the first one tomorrow at 8pm")
        print("  - What are my reservations?")
        print("\nType 'quit' or 'exit' to end, 'clear' to end the session, 'history' for the transcript.\n")

        while True:
            try:
                message = input("\nYou: ").strip()

                if not message:
                    continue

                command = message.lower()
                if command in ['quit', 'exit']:
                    print("\nGoodbye!\n")
                    break

                if command == 'clear':
                    await self.services.session_store.end_session(self.session_id)
                    print("Session cleared!")
                    continue

                if command == 'history':
                    await self.show_history()
                    continue

                result = await self.ask(message)
                self.print_result(result)

            except (KeyboardInterrupt, EOFError):
                print("\n\nInterrupted. Goodbye!\n")
                break
            except ValidationError as e:
                print(f"\n[ERROR] {e.message}\n")


async def run(args: argparse.Namespace, api_key: str) -> None:
    services = build_services(api_key)
    await services.rag_system.initialize_pipeline(data_path=args.data, force_rebuild=args.rebuild)

    app = ConciergeApp(services, args.session, args.chat, use_smart_recall=args.smart_recall)

    if args.query:
        result = await app.ask(args.query)
        app.print_result(result)
        return

    await app.interactive_mode()


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Dining concierge")
    parser.add_argument("--session", type=str, default="guest", help="Session id (default: guest)")
    parser.add_argument(
        "--chat",
        type=str,
        default=SESSION_CONFIG["default_chat_id"],
        help="Conversation id within the session"
    )
    parser.add_argument("--query", type=str, help="Single message to process (non-interactive)")
    parser.add_argument(
        "--smart-recall",
        action="store_true",
        help="Scope cached answers to this session"
    )
    parser.add_argument("--data", type=str, default=None, help="Restaurant JSON file to load")
    parser.add_argument("--rebuild", action="store_true", help="Rebuild the restaurant index from scratch")
    parser.add_argument(
        "--metrics-port",
        type=int,
        default=8000,
        help="Port for Prometheus metrics server (default: 8000)"
    )
    parser.add_argument("--no-metrics", action="store_true", help="Disable metrics server")
    return parser


def main(argv: Optional[list] = None):
    """Main entry point."""
    args = build_parser().parse_args(argv)

    api_key = os.getenv("OPENAI_API_KEY", OPENAI_API_KEY)
    if not api_key:
        print("\n[ERROR] Error: OPENAI_API_KEY environment variable not set.")
        print("Please set your OpenAI API key:")
        print("  export OPENAI_API_KEY='your-api-key-here'\n")
        sys.exit(1)

    try:
        langsmith_tracer = initialize_langsmith_tracing()

        set_system_info(
            version=__version__,
            environment=os.getenv('ENVIRONMENT', 'development'),
            python_version=sys.version.split()[0],
            langsmith_enabled=str(langsmith_tracer.is_enabled()),
            langsmith_project=langsmith_tracer.project_name if langsmith_tracer.is_enabled() else 'N/A'
        )

        if not args.no_metrics:
            try:
                start_metrics_server(port=args.metrics_port)
            except OSError as e:
                logger.warning(f"Could not start metrics server: {e}")

        asyncio.run(run(args, api_key))

    except Exception as e:
        logger.error(f"Fatal error: {e}", exc_info=True)
        print(f"\n[ERROR] Fatal error: {e}\n")
        sys.exit(1)


if __name__ == "__main__":
    main()
