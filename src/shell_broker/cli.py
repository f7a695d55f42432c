"""
Command-line interface for shell-broker.
"""

import argparse
import asyncio
import logging
import sys

import structlog

from .client import BrokerClient
from .config import Settings, get_settings
from .server import BrokerServer

logger = structlog.get_logger()


def configure_logging(level: str = "INFO") -> None:
    """Route structlog through stdlib logging with console rendering."""
    logging.basicConfig(level=level, format="%(message)s", stream=sys.stderr)

    structlog.configure(
        processors=[
            structlog.stdlib.add_log_level,
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.dev.ConsoleRenderer(colors=sys.stderr.isatty()),
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )


def main() -> None:
    """Main entry point for the CLI."""
    settings = get_settings()

    parser = argparse.ArgumentParser(
        prog="shell-broker",
        description="shell-broker - multiplex interactive shells over one control connection",
    )

    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    serve_parser = subparsers.add_parser("serve", help="Start the broker")
    serve_parser.add_argument("--host", default=settings.host, help="Host to bind to")
    serve_parser.add_argument("--port", type=int, default=settings.port, help="Port to bind to")

    client_parser = subparsers.add_parser("client", help="Connect to a running broker interactively")
    client_parser.add_argument("--host", default="127.0.0.1", help="Broker host")
    client_parser.add_argument("--port", type=int, default=settings.port, help="Broker port")

    subparsers.add_parser("config", help="Show configuration")

    args = parser.parse_args()

    if args.command is None:
        parser.print_help()
        sys.exit(0)

    configure_logging(settings.log_level)

    if args.command == "serve":
        run_server(settings.model_copy(update={"host": args.host, "port": args.port}))
    elif args.command == "client":
        run_client(args.host, args.port)
    elif args.command == "config":
        show_config(settings)
    else:
        parser.print_help()


def run_server(settings: Settings) -> None:
    """Run the broker until SIGTERM/SIGINT."""
    logger.info("Starting shell-broker", host=settings.host, port=settings.port)
    try:
        asyncio.run(BrokerServer(settings).run())
    except OSError as e:
        logger.error("Could not start broker", host=settings.host, port=settings.port, error=str(e))
        sys.exit(1)


def run_client(host: str, port: int) -> None:
    """Run the interactive client."""
    try:
        asyncio.run(BrokerClient(host, port).run())
    except ConnectionError as e:
        logger.error("Could not connect to broker", host=host, port=port, error=str(e))
        sys.exit(1)
    except KeyboardInterrupt:
        pass


def show_config(settings: Settings) -> None:
    """Show current configuration."""
    print("\n=== shell-broker Configuration ===\n")

    print("Server:")
    print(f"  Host: {settings.host}")
    print(f"  Port: {settings.port}")
    print(f"  Log Level: {settings.log_level}")

    print("\nShells:")
    print(f"  Default Shell: {settings.default_shell_path}")
    print(f"  RC File: {settings.rc_file}")
    print(f"  Prompt: {settings.prompt!r}")
    print(f"  Max Sessions: {settings.max_sessions or 'unlimited'}")
    print(f"  Terminate Grace: {settings.terminate_grace_seconds}s")

    print("\nProtocol:")
    print(f"  Max Message Size: {settings.max_message_bytes} bytes")
    print(f"  Reply To Unknown Types: {settings.reply_to_unknown_types}")


if __name__ == "__main__":
    main()
