"""
Crowdflash Server CLI - Command-line interface for the coordination server.

Entry point:
    crowdflash-server   - run the WebSocket server and HTTP API
"""

import argparse
import asyncio
import logging
import signal
import sys

# Fix Windows console encoding for unicode characters
if sys.platform == "win32":
    sys.stdout.reconfigure(encoding="utf-8", errors="replace")
    sys.stderr.reconfigure(encoding="utf-8", errors="replace")

logger = logging.getLogger(__name__)


def validate_port(value: str) -> int:
    """Validate port number is in valid range."""
    try:
        port = int(value)
    except ValueError:
        raise argparse.ArgumentTypeError(f"Invalid port number: {value}")

    if not 1 <= port <= 65535:
        raise argparse.ArgumentTypeError(f"Port must be between 1 and 65535, got: {port}")
    return port


def validate_optional_port(value: str) -> int:
    """Like validate_port, but 0 means disabled."""
    if value.strip() == "0":
        return 0
    return validate_port(value)


def validate_hostname(value: str) -> str:
    """Validate hostname or IP address."""
    if not value or len(value) > 253:
        raise argparse.ArgumentTypeError(f"Invalid hostname: {value}")
    valid_chars = set("abcdefghijklmnopqrstuvwxyzABCDEFGHIJKLMNOPQRSTUVWXYZ0123456789.-:[]")
    if not all(c in valid_chars for c in value):
        raise argparse.ArgumentTypeError(f"Invalid characters in hostname: {value}")
    return value


def validate_interval(value: str) -> float:
    try:
        interval = float(value)
    except ValueError:
        raise argparse.ArgumentTypeError(f"Invalid interval: {value}")
    if not 0.1 <= interval <= 3600:
        raise argparse.ArgumentTypeError(f"Interval must be between 0.1 and 3600, got: {interval}")
    return interval


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="crowdflash-server",
        description="Crowdflash Server - real-time control for a flashlight mob",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Settings not given on the command line come from CROWDFLASH_* environment
variables (or .env). The admin password hash must be set for login:

  export CROWDFLASH_ADMIN_PASSWORD_HASH="$(crowdflash-auth hash 'secret')"

Examples:
  crowdflash-server                     # Defaults: ws :3000, http :3001
  crowdflash-server --port 8080         # Custom WebSocket port
  crowdflash-server --http-port 0       # Disable the HTTP API
        """,
    )
    parser.add_argument("--host", type=validate_hostname, help="Bind address")
    parser.add_argument("--port", "-p", type=validate_port, help="WebSocket port")
    parser.add_argument(
        "--http-port", type=validate_optional_port, help="HTTP API port (0 disables)"
    )
    parser.add_argument(
        "--metrics-interval",
        type=validate_interval,
        help="Seconds between periodic metrics pushes to admins",
    )
    parser.add_argument("--json-logs", action="store_true", help="Emit JSON log lines")
    parser.add_argument("--debug", action="store_true", help="Enable debug logging")
    return parser


def main(argv=None):
    """Run the Crowdflash server."""
    args = build_parser().parse_args(argv)

    from crowdflash.config import get_settings
    from crowdflash.logging_config import configure_logging
    from crowdflash.server import CrowdflashServer

    configure_logging(json_logs=args.json_logs, level=logging.DEBUG if args.debug else logging.INFO)

    try:
        settings = get_settings()
    except ValueError as e:
        print(f"\nERROR: Invalid configuration: {e}")
        return 1

    overrides = {
        key: value
        for key, value in (
            ("host", args.host),
            ("port", args.port),
            ("http_port", args.http_port),
            ("metrics_interval", args.metrics_interval),
        )
        if value is not None
    }
    if overrides:
        settings = settings.model_copy(update=overrides)

    server = CrowdflashServer(settings=settings)

    def signal_handler(sig, frame):
        server.stop()

    signal.signal(signal.SIGINT, signal_handler)
    signal.signal(signal.SIGTERM, signal_handler)

    try:
        asyncio.run(server.run())
    except KeyboardInterrupt:
        pass
    except OSError as e:
        logger.error(f"Server failed: {e}")
        return 1

    return 0


if __name__ == "__main__":
    sys.exit(main())
