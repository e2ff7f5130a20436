#!/usr/bin/env python3
"""Command-line interface.

Usage:
    access-grants run                    # maintenance jobs and payment polling
    access-grants serve --port 8000      # operator API plus the jobs
    access-grants grant-admin            # permanent grants for ADMIN_ID
    access-grants health
    access-grants expire-payments
"""

import argparse
import asyncio
import logging
import signal
import sys
from typing import List, Optional

from .config import Settings
from .exceptions import ConfigurationError, ProvisioningError
from .runtime import ProvisioningRuntime

logger = logging.getLogger(__name__)

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


def configure_logging(level: str = "INFO") -> None:
    logging.basicConfig(level=getattr(logging, level.upper(), logging.INFO), format=LOG_FORMAT)


async def run_daemon(runtime: ProvisioningRuntime) -> int:
    """Run the scheduler until SIGINT or SIGTERM."""
    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop.set)
        except NotImplementedError:
            pass

    await runtime.start()
    try:
        await stop.wait()
    finally:
        logger.info("Shutting down...")
        await runtime.shutdown()
    return 0


async def run_grant_admin(runtime: ProvisioningRuntime, principal_id: int, endpoints: Optional[List[str]]) -> int:
    async with runtime:
        views = await runtime.grants.grant_permanent(principal_id, endpoints)
    for view in views:
        endpoint = runtime.settings.endpoint_map()[view.grant.endpoint_code]
        print(f"{endpoint.emoji} {endpoint.name}:")
        print(view.descriptor)
        print("")
    return 0


async def run_health(runtime: ProvisioningRuntime) -> int:
    async with runtime:
        results = await runtime.adapter.health_check_all()
    for code, ok in results.items():
        print(f"{code}: {'up' if ok else 'DOWN'}")
    return 0 if all(results.values()) else 1


async def run_expire_payments(runtime: ProvisioningRuntime) -> int:
    async with runtime:
        count = await runtime.store.expire_stale_payments()
    print(f"Expired {count} pending payment(s)")
    return 0


def serve(settings: Settings, host: str, port: int) -> int:
    import uvicorn

    from .api import create_app

    runtime = ProvisioningRuntime.from_settings(settings)
    uvicorn.run(create_app(runtime), host=host, port=port, log_config=None)
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="access-grants",
        description="Provision and reconcile paid access grants on remote panels",
    )
    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    subparsers.add_parser("run", help="Run maintenance jobs and payment polling")

    serve_parser = subparsers.add_parser("serve", help="Run the operator API with maintenance jobs")
    serve_parser.add_argument("--host", default="127.0.0.1", help="Bind address")
    serve_parser.add_argument("--port", type=int, default=8000, help="Bind port")

    admin_parser = subparsers.add_parser("grant-admin", help="Create permanent grants")
    admin_parser.add_argument(
        "--principal",
        type=int,
        default=None,
        help="Principal to grant (default: ADMIN_ID)",
    )
    admin_parser.add_argument(
        "--endpoint",
        action="append",
        dest="endpoints",
        help="Endpoint code; repeat for several (default: all)",
    )

    subparsers.add_parser("health", help="Probe every endpoint once")
    subparsers.add_parser("expire-payments", help="Expire stale pending payments now")

    return parser


def main(argv: Optional[List[str]] = None) -> int:
    """Main entry point for the CLI."""
    parser = build_parser()
    args = parser.parse_args(argv)

    if not args.command:
        parser.print_help()
        return 1

    try:
        settings = Settings.from_env()
    except ConfigurationError as e:
        configure_logging()
        logger.error(f"Configuration error: {e}")
        return 2

    configure_logging(settings.log_level)

    try:
        if args.command == "serve":
            return serve(settings, args.host, args.port)

        runtime = ProvisioningRuntime.from_settings(settings)
        if args.command == "run":
            return asyncio.run(run_daemon(runtime))
        if args.command == "grant-admin":
            principal_id = args.principal or settings.admin_id
            if principal_id is None:
                logger.error("No principal given and ADMIN_ID is not set")
                return 2
            return asyncio.run(run_grant_admin(runtime, principal_id, args.endpoints))
        if args.command == "health":
            return asyncio.run(run_health(runtime))
        if args.command == "expire-payments":
            return asyncio.run(run_expire_payments(runtime))
    except ProvisioningError as e:
        logger.error(f"{args.command} failed: {type(e).__name__}: {e}")
        return 1

    parser.print_help()
    return 1


if __name__ == "__main__":
    sys.exit(main())
