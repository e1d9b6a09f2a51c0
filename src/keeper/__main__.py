"""Infra-market Keeper - Entry Point

Usage:
    python -m keeper [--config PATH] [--log-level LEVEL] [COMMAND]

Commands:
    run             - Start the keeper (default)
    status MARKET   - Print the ledger phase of one market
    version         - Show version

Examples:
    python -m keeper
    python -m keeper --config config/production.toml --log-level DEBUG
    python -m keeper status 0x5FbDB2315678afecb367f032d93F642f64180aa3
"""

import argparse
import asyncio
import sys
from pathlib import Path

from keeper import __version__


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    """Parse command-line arguments."""
    parser = argparse.ArgumentParser(
        prog="keeper",
        description="Keeper that drives infra-market lifecycles on chain",
    )

    parser.add_argument(
        "--version",
        action="version",
        version=f"Keeper {__version__}",
    )

    parser.add_argument(
        "--config",
        type=Path,
        default=None,
        help="Path to configuration file (TOML)",
    )

    parser.add_argument(
        "--log-level",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        default=None,
        help="Log level",
    )

    subparsers = parser.add_subparsers(dest="command", help="Commands")

    subparsers.add_parser("run", help="Start the keeper")

    status = subparsers.add_parser("status", help="Print the ledger phase of a market")
    status.add_argument("market", help="Trading address of the market")

    subparsers.add_parser("version", help="Show version")

    return parser.parse_args(argv)


def find_config_file(specified: Path | None) -> Path | None:
    """Find configuration file."""
    if specified and specified.exists():
        return specified

    search_paths = [
        Path("config/default.toml"),
        Path("keeper.toml"),
        Path("/etc/keeper/keeper.toml"),
    ]

    for path in search_paths:
        if path.exists():
            return path

    return None


def load_config(args: argparse.Namespace):
    from keeper.core.config import ConfigManager

    config_path = find_config_file(args.config)
    return ConfigManager(config_path) if config_path else ConfigManager()


async def run_keeper(args: argparse.Namespace) -> int:
    """Run the keeper until a shutdown signal."""
    import structlog

    from keeper.app import KeeperApp
    from keeper.core.logging import setup_logging
    from keeper.core.retry import ConfigurationError

    config = load_config(args)
    setup_logging(
        level=args.log_level or config.get("keeper.log_level", "INFO"),
        json_output=config.get_bool("keeper.log_json", False),
    )
    log = structlog.get_logger()

    try:
        app = KeeperApp(config)
    except ConfigurationError as e:
        log.error("configuration_invalid", error=str(e), missing=e.missing_keys)
        return 1

    log.info("starting_keeper", version=__version__)
    try:
        await app.run_forever()
        return 0
    except KeyboardInterrupt:
        log.info("shutdown_requested")
        await app.stop()
        return 0
    except Exception as e:
        log.error("fatal_error", error=str(e))
        return 1


async def show_status(args: argparse.Namespace) -> int:
    """Print phase and seconds remaining of one market."""
    from keeper.core.config import KeeperSettings
    from keeper.core.logging import setup_logging
    from keeper.core.retry import ConfigurationError, KeeperError
    from keeper.integrations.chain import LedgerClient

    config = load_config(args)
    setup_logging(level=args.log_level or "WARNING")

    try:
        settings = KeeperSettings.from_config(config)
    except ConfigurationError as e:
        print(f"Configuration error: {e}")
        return 1

    ledger = LedgerClient(
        rpc_url=settings.rpc_url,
        infra_market_address=settings.infra_market_address,
        batch_sweeper_address=settings.batch_sweeper_address,
    )
    try:
        await ledger.connect()
        status = await ledger.status(args.market)
    except KeeperError as e:
        print(f"Status read failed: {e}")
        return 1
    finally:
        await ledger.close()

    print(f"Market: {args.market}")
    print(f"Phase: {status.phase.name}")
    print(f"Seconds remaining: {status.seconds_remaining}")
    return 0


def main(argv: list[str] | None = None) -> int:
    """Main entry point."""
    args = parse_args(argv)

    if args.command == "version":
        print(f"Keeper {__version__}")
        return 0

    if args.command == "status":
        return asyncio.run(show_status(args))

    return asyncio.run(run_keeper(args))


if __name__ == "__main__":
    sys.exit(main())
