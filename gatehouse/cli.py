"""
Command-line interface for the gatehouse identity service.

Commands:
    check-config  Load and validate the configuration file
    sweep         Remove expired refresh tokens and magic links, deactivate expired API keys
    serve         Run the HTTP API with uvicorn
"""

import argparse
import asyncio
import logging
import os
import sys

import uvicorn

from . import __version__
from .bootstrap import build_services, configure_logging
from .config import LoggingConfig, load_settings, require_signing_keys, resolve_config_path
from .exceptions import ConfigurationError

logger = logging.getLogger("gatehouse")


def _load(args_ns):
    settings = load_settings(resolve_config_path(args_ns.config))
    if args_ns.debug:
        settings = settings.model_copy(
            update={"logging": LoggingConfig(level="DEBUG", debug=True)}
        )
    configure_logging(settings.logging)
    return settings


def handle_check_config_command(args_ns):
    """Handles the 'check-config' command."""
    try:
        settings = _load(args_ns)
        require_signing_keys(settings)
    except ConfigurationError as e:
        print(f"❌ {e.message}")
        return False

    configured = settings.oauth.configured_providers()
    print("✅ Configuration is valid")
    print(f"  Environment: {settings.environment}")
    print(f"  Store: {settings.store.backend}")
    print(f"  OAuth providers: {', '.join(configured) or 'none'}")
    print(f"  Notifications: {settings.notifications.service_url or 'log only'}")
    return True


async def handle_sweep_command(args_ns):
    """Handles the 'sweep' command."""
    settings = _load(args_ns)
    services = await build_services(settings)
    try:
        refresh_tokens = await services.tokens.sweep()
        magic_links = await services.magic_links.sweep()
        api_keys = await services.api_keys.sweep_expired()
    finally:
        await services.aclose()

    print(f"Removed {refresh_tokens} refresh tokens and {magic_links} magic links")
    print(f"Deactivated {api_keys} expired API keys")


async def handle_serve_command(args_ns):
    """Handles the 'serve' command."""
    from .web import create_app

    settings = _load(args_ns)
    services = await build_services(settings)
    if args_ns.seed_roles:
        await services.rbac.seed_defaults()

    host = args_ns.host or settings.server.host
    port = args_ns.port or settings.server.port
    logger.info(f"Starting gatehouse on {host}:{port}")

    server = uvicorn.Server(
        uvicorn.Config(
            create_app(services),
            host=host,
            port=port,
            log_level="debug" if args_ns.debug else "info",
        )
    )
    await server.serve()


def create_parser():
    """Create and configure the CLI argument parser."""
    parser = argparse.ArgumentParser(
        prog="gatehouse", description="Identity and access service."
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    parser.add_argument(
        "--debug", action="store_true", help="Enable debug logging."
    )
    parser.add_argument(
        "--config",
        "-c",
        help="Path to config file. Default: $GATEHOUSE_CONFIG or ./gatehouse.yaml.",
        default=None,
    )

    subparsers = parser.add_subparsers(
        title="commands", dest="command", required=False, help="Command to execute"
    )

    check_parser = subparsers.add_parser(
        "check-config", help="Validate the configuration file."
    )
    check_parser.set_defaults(func=handle_check_config_command)

    sweep_parser = subparsers.add_parser(
        "sweep", help="Remove stale credentials from the store."
    )
    sweep_parser.set_defaults(func=handle_sweep_command)

    serve_parser = subparsers.add_parser("serve", help="Run the HTTP API.")
    serve_parser.add_argument(
        "--host", help="Bind socket to this host. Default: server.host from config", default=None
    )
    serve_parser.add_argument(
        "--port",
        "-p",
        type=int,
        help="Bind socket to this port. Default: server.port from config",
        default=None,
    )
    serve_parser.add_argument(
        "--seed-roles",
        action="store_true",
        help="Define the built-in roles and permissions before serving.",
    )
    serve_parser.set_defaults(func=handle_serve_command)

    return parser


def main(argv=None):
    parser = create_parser()
    args_ns = parser.parse_args(argv)

    if args_ns.debug or os.getenv("GATEHOUSE_DEBUG"):
        args_ns.debug = True

    if not hasattr(args_ns, "func"):
        parser.print_help()
        return 1

    handler = args_ns.func
    try:
        if asyncio.iscoroutinefunction(handler):
            result = asyncio.run(handler(args_ns))
        else:
            result = handler(args_ns)
    except ConfigurationError as e:
        logger.error(f"Configuration error: {e.message}")
        return 1
    except KeyboardInterrupt:
        logger.info("Shutdown requested")
        return 0
    return 1 if result is False else 0


if __name__ == "__main__":
    sys.exit(main())
