"""
Command-line interface for Browser-Pilot.
"""

import argparse
import asyncio
import sys

import structlog
import uvicorn

from .config import get_settings
from .errors import ToolConnectionError
from .tools import MCPClient

structlog.configure(
    processors=[
        structlog.stdlib.add_log_level,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.dev.ConsoleRenderer(colors=True),
    ],
    wrapper_class=structlog.stdlib.BoundLogger,
    context_class=dict,
    logger_factory=structlog.stdlib.LoggerFactory(),
    cache_logger_on_first_use=True,
)

logger = structlog.get_logger()


def main() -> None:
    """Main entry point for the CLI."""
    parser = argparse.ArgumentParser(
        prog="browser-pilot",
        description="Browser-Pilot - model-driven browser automation over MCP",
    )

    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    serve_parser = subparsers.add_parser("serve", help="Start the API server")
    serve_parser.add_argument("--host", default=None, help="Host to bind to")
    serve_parser.add_argument("--port", type=int, default=None, help="Port to bind to")
    serve_parser.add_argument("--reload", action="store_true", help="Enable auto-reload")

    config_parser = subparsers.add_parser("config", help="Show configuration")
    config_parser.add_argument("--check", action="store_true", help="Check configuration validity")

    tools_parser = subparsers.add_parser("tools", help="List the tools an MCP server exposes")
    tools_parser.add_argument("endpoint", help="MCP server URL")

    args = parser.parse_args()

    if args.command is None:
        parser.print_help()
        sys.exit(0)

    if args.command == "serve":
        settings = get_settings()
        run_server(args.host or settings.host, args.port or settings.port, args.reload)
    elif args.command == "config":
        show_config(args.check)
    elif args.command == "tools":
        sys.exit(asyncio.run(list_tools(args.endpoint)))
    else:
        parser.print_help()


def run_server(host: str, port: int, reload: bool) -> None:
    """Run the FastAPI server."""
    logger.info("Starting Browser-Pilot server", host=host, port=port)

    uvicorn.run(
        "browser_pilot.api.app:create_app",
        host=host,
        port=port,
        reload=reload,
        factory=True,
        log_level=get_settings().log_level.lower(),
    )


async def list_tools(endpoint: str) -> int:
    """Connect to an MCP server and print its tool catalog."""
    settings = get_settings()
    client = MCPClient(settings.get_connection_config())

    try:
        await client.connect(endpoint)
    except (ToolConnectionError, ValueError) as e:
        logger.error("Could not connect to MCP server", endpoint=endpoint, error=str(e))
        return 1

    try:
        tools = client.tools
        print(f"\n{len(tools)} tool(s) at {client.endpoint}\n")
        for tool in tools:
            print(f"  {tool.name:<30} {tool.description}")
    finally:
        await client.disconnect()

    return 0


def show_config(check: bool) -> None:
    """Show current configuration."""
    settings = get_settings()

    def mask(value: str) -> str:
        if not value:
            return "(not set)"
        return value[:4] + "..." + value[-4:] if len(value) > 10 else "****"

    print("\n=== Browser-Pilot Configuration ===\n")

    print("Server:")
    print(f"  Host: {settings.host}")
    print(f"  Port: {settings.port}")
    print(f"  Debug: {settings.debug}")
    print(f"  Log Level: {settings.log_level}")

    print("\nModel:")
    print(f"  Provider: {settings.default_provider}")
    print(f"  Model: {settings.default_model}")
    print(f"  Anthropic Key: {mask(settings.anthropic_api_key)}")
    print(f"  Base URL: {settings.anthropic_base_url or '(default)'}")

    print("\nOrchestration:")
    print(f"  Max Iterations: {settings.max_iterations}")
    print(f"  History Budget: {settings.max_history_tokens} tokens")
    print(f"  Tool Result Limit: {settings.max_tool_result_chars} chars")
    print(f"  Dedupe Across Iterations: {settings.dedupe_across_iterations}")

    print("\nMCP:")
    print(f"  Retries: {settings.mcp_max_retries}")
    print(f"  Connection Timeout: {settings.mcp_connection_timeout}s")
    print(f"  Call Timeout: {settings.mcp_call_timeout}s")
    print(f"  Keepalive: {settings.mcp_keepalive_interval}s")
    print(f"  Idle Eviction: {settings.mcp_client_idle_timeout}s")

    if check:
        print("\n=== Configuration Check ===\n")
        errors = []
        warnings = []

        if not settings.anthropic_api_key:
            errors.append("ANTHROPIC_API_KEY is required")

        if settings.max_iterations < 1:
            errors.append("MAX_ITERATIONS must be at least 1")

        if settings.mcp_call_timeout >= settings.model_timeout:
            warnings.append("MCP_CALL_TIMEOUT is not shorter than MODEL_TIMEOUT")

        if errors:
            print("❌ Errors:")
            for e in errors:
                print(f"   - {e}")

        if warnings:
            print("⚠️  Warnings:")
            for w in warnings:
                print(f"   - {w}")

        if not errors and not warnings:
            print("✅ Configuration looks good!")
        elif not errors:
            print("\n✅ Configuration is valid (with warnings)")
        else:
            print("\n❌ Configuration has errors - fix them before starting")


if __name__ == "__main__":
    main()
