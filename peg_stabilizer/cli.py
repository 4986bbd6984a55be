"""
Peg stabilizer command line.

Examples:
  # API server (paper mode unless PAPER_MODE=false and chain settings are set)
  peg-stabilizer serve --port 8000

  # API server with the monitoring loop running
  peg-stabilizer serve --keeper

  # One-off reads
  peg-stabilizer prices
  peg-stabilizer deviation --target 0.01
  peg-stabilizer health

  # Monitoring loop only
  peg-stabilizer run --iterations 10
"""

import argparse
import asyncio
import json
import logging
import os
import sys

from .config_loader import load_bot_config, load_chain_settings, load_environment
from .exceptions import PegStabilizerError
from .service import PegBotService, PegKeeper, create_service
from .utils import get_logger, setup_logging

logger = get_logger(__name__)


async def _build(args) -> PegBotService:
    bot_config = load_bot_config(args.config)
    settings = load_chain_settings(args.config)
    db_path = args.db or os.getenv("PEG_DB_PATH")
    return await create_service(bot_config, settings, db_path=db_path)


def _print(payload) -> None:
    print(json.dumps(payload, indent=2, default=str))


async def _read(args, fetch) -> int:
    service = await _build(args)
    try:
        _print(await fetch(service))
    finally:
        await service.close()
    return 0


def cmd_prices(args) -> int:
    async def fetch(service):
        return (await service.get_current_prices()).to_dict()

    return asyncio.run(_read(args, fetch))


def cmd_deviation(args) -> int:
    async def fetch(service):
        return (await service.get_deviation(args.target)).to_dict()

    return asyncio.run(_read(args, fetch))


def cmd_health(args) -> int:
    async def run() -> int:
        service = await _build(args)
        try:
            report = await service.get_health()
        finally:
            await service.close()
        _print(report.to_dict())
        return 0 if report.healthy else 1

    return asyncio.run(run())


def cmd_run(args) -> int:
    async def run() -> int:
        service = await _build(args)
        keeper = PegKeeper(service)
        try:
            await keeper.run(max_iterations=args.iterations)
        finally:
            await service.close()
        return 0

    try:
        return asyncio.run(run())
    except KeyboardInterrupt:
        logger.info("Stopped by user")
        return 0


def cmd_serve(args) -> int:
    import uvicorn

    from .web_server import create_app

    async def serve() -> None:
        service = await _build(args)
        keeper = PegKeeper(service) if args.keeper else None
        app = create_app(service, keeper=keeper)
        config = uvicorn.Config(
            app, host=args.host, port=args.port, log_level=args.log_level.lower()
        )
        await uvicorn.Server(config).serve()

    asyncio.run(serve())
    return 0


def build_parser() -> argparse.ArgumentParser:
    """Build argument parser with subcommands."""
    p = argparse.ArgumentParser(
        prog="peg-stabilizer",
        description="Peg stabilization bot",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    p.add_argument("--config", type=str, help="Path to bot config YAML")
    p.add_argument(
        "--db",
        type=str,
        help="SQLite database for trades and configuration (in-memory if unset)",
    )
    p.add_argument("--env-file", type=str, help="Path to .env file")
    p.add_argument(
        "--log-level",
        default=os.getenv("LOG_LEVEL", "INFO"),
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
    )
    sub = p.add_subparsers(dest="command")

    serve = sub.add_parser("serve", help="Run the HTTP API")
    serve.add_argument("--host", default=os.getenv("HOST", "0.0.0.0"))
    serve.add_argument("--port", type=int, default=int(os.getenv("PORT", "8000")))
    serve.add_argument(
        "--keeper", action="store_true", help="Run the monitoring loop alongside the API"
    )
    serve.set_defaults(func=cmd_serve)

    prices = sub.add_parser("prices", help="Print the current price snapshot")
    prices.set_defaults(func=cmd_prices)

    deviation = sub.add_parser("deviation", help="Print the peg deviation")
    deviation.add_argument("--target", type=float, help="Override the target peg")
    deviation.set_defaults(func=cmd_deviation)

    health = sub.add_parser("health", help="Check price, chain and store health")
    health.set_defaults(func=cmd_health)

    run = sub.add_parser("run", help="Run the monitoring loop")
    run.add_argument("--iterations", type=int, help="Stop after N checks")
    run.set_defaults(func=cmd_run)

    return p


def main(argv=None) -> int:
    """Main entry point."""
    parser = build_parser()
    args = parser.parse_args(argv)

    if not hasattr(args, "func"):
        parser.print_help()
        return 2

    # .env must be loaded before the config readers look at os.environ
    load_environment(args.env_file)
    setup_logging(getattr(logging, args.log_level))

    try:
        return args.func(args)
    except PegStabilizerError as e:
        logger.error(f"{type(e).__name__}: {e}")
        return 1


if __name__ == "__main__":
    sys.exit(main())
