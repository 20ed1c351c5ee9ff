"""
Process entrypoint: runs the engine and its HTTP facade.

The engine keeps its state in memory, so it lives in the same process as
the FastAPI app that exposes it.

Usage:
    python -m lxc_server [OPTIONS]
    lxc-console-server [OPTIONS]  (after pip install)

Environment Variables:
    LXC_CONSOLE_ENDPOINT: LXD unix socket path or https:// URL (default: autodetect)
    LXC_CONSOLE_REFRESH_INTERVAL: Seconds between heartbeat refreshes (default: 10.0)
    LXC_CONSOLE_POLL_INTERVAL: Seconds between operation polls (default: 0.5)
    LXC_CONSOLE_STATUS_SOURCE: "poll" or "wait" (default: poll)
    (see lxc_common.config for the full list)
"""

import argparse
import logging
import sys

import uvicorn

from lxc_client.client import LxdApiClient
from lxc_common.config import STATUS_SOURCES, EngineConfig
from lxc_common.errors import ConsoleError
from lxc_engine.reconciler import Reconciler

from . import app as server_app

logger = logging.getLogger(__name__)


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    """
    Parse command-line arguments.

    Returns:
        Parsed arguments
    """
    parser = argparse.ArgumentParser(
        description="LXC Console server - asynchronous operation engine for LXD",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Note: Command-line arguments override LXC_CONSOLE_* environment variables.

Examples:
  # Local LXD, default settings
  lxc-console-server

  # Long-poll LXD for operation status instead of polling
  lxc-console-server --status-source wait

  # Remote LXD over HTTPS with a client certificate
  lxc-console-server --endpoint https://lxd.example.com:8443 \\
      --cert ~/.config/lxc/client.crt --key ~/.config/lxc/client.key
        """,
    )

    parser.add_argument(
        "--endpoint",
        type=str,
        default=None,
        help="LXD unix socket path or https:// URL (default: LXC_CONSOLE_ENDPOINT env or autodetect)",
    )
    parser.add_argument("--cert", type=str, default=None, help="Client certificate for HTTPS")
    parser.add_argument("--key", type=str, default=None, help="Client key for HTTPS")
    parser.add_argument(
        "--insecure",
        action="store_true",
        help="Skip server certificate verification for HTTPS endpoints",
    )
    parser.add_argument(
        "--interval",
        type=float,
        default=None,
        help="Seconds between heartbeat refreshes (default: LXC_CONSOLE_REFRESH_INTERVAL env or 10.0)",
    )
    parser.add_argument(
        "--poll-interval",
        type=float,
        default=None,
        help="Seconds between operation polls (default: LXC_CONSOLE_POLL_INTERVAL env or 0.5)",
    )
    parser.add_argument(
        "--status-source",
        type=str,
        default=None,
        choices=list(STATUS_SOURCES),
        help="How operation status is followed (default: LXC_CONSOLE_STATUS_SOURCE env or poll)",
    )
    parser.add_argument("--host", type=str, default="127.0.0.1", help="Bind address")
    parser.add_argument("--port", type=int, default=8000, help="Bind port")
    parser.add_argument(
        "--log-level",
        type=str,
        default="INFO",
        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
        help="Logging level (default: INFO)",
    )

    return parser.parse_args(argv)


def build_config(args: argparse.Namespace) -> EngineConfig:
    """
    Build the engine configuration from the environment and CLI args.

    Invalid (non-positive) intervals on the command line are logged and
    ignored.
    """
    config = EngineConfig.from_env()

    if args.endpoint:
        config.endpoint = args.endpoint
    if args.status_source:
        config.status_source = args.status_source

    for arg_name, field_name in (
        ("interval", "refresh_interval"),
        ("poll_interval", "poll_interval"),
    ):
        value = getattr(args, arg_name)
        if value is None:
            continue
        if value <= 0:
            logger.warning(
                f"Invalid --{arg_name.replace('_', '-')}={value}, "
                f"using {getattr(config, field_name)}"
            )
            continue
        setattr(config, field_name, value)

    config.validate()
    return config


def main(argv: list[str] | None = None) -> int:
    """
    Main entrypoint for the server.

    Returns:
        Exit code (0 for success, 1 for error)
    """
    args = parse_args(argv)

    logging.basicConfig(
        level=getattr(logging, args.log_level),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )

    if bool(args.cert) != bool(args.key):
        logger.error("--cert and --key must be given together")
        return 1

    try:
        config = build_config(args)
        cert = (args.cert, args.key) if args.cert else None
        client = LxdApiClient(
            config.endpoint,
            timeout=config.request_timeout,
            cert=cert,
            verify=not args.insecure,
        )
    except (ConsoleError, ValueError) as e:
        logger.error(f"Invalid configuration: {e}")
        return 1

    logger.info("Starting LXC Console server")
    logger.info(f"  Endpoint: {config.endpoint or client.base_url}")
    logger.info(f"  Refresh interval: {config.refresh_interval}s")
    logger.info(f"  Status source: {config.status_source}")

    try:
        info = client.ping()
        logger.info(f"  LXD API version: {info.get('api_version', 'unknown')}")
    except ConsoleError as e:
        logger.warning(f"LXD is not reachable yet ({e}), the engine will keep retrying")

    server_app.configure(Reconciler(client, config), client)

    try:
        uvicorn.run(
            server_app.app,
            host=args.host,
            port=args.port,
            log_level=args.log_level.lower(),
        )
        return 0
    except KeyboardInterrupt:
        logger.info("Interrupted by user")
        return 0
    except Exception as e:
        logger.error(f"Fatal error: {e}", exc_info=True)
        return 1


if __name__ == "__main__":
    sys.exit(main())
