#!/usr/bin/env python3
"""
Timed-Settlement Engine - Application Entry Point.

============================================================
SINGLE ENTRYPOINT
============================================================
Runs the settlement engine with its HTTP API.

- In-memory balance ledger seeded from configuration on every start.
  It is not durable: positions restored from SQLite settle onto
  the fresh balance. Use --no-persistence for demo runs, or wire
  a durable BalanceLedger before persisting positions.
- Demo reference prices (no market-data feed)
- SQLite persistence by default (DATABASE_URL to override)

============================================================
USAGE
============================================================
    python app.py
    python app.py --port 9000 --no-persistence
    LOG_LEVEL=DEBUG python app.py --env-file .env

============================================================
"""

import argparse
import asyncio
import logging
import os
import sys
from decimal import Decimal
from typing import Optional

from aiohttp import web

from settlement_engine.alerting import TelegramNotifier
from settlement_engine.api import create_app
from settlement_engine.config import SettlementEngineConfig
from settlement_engine.engine import SettlementEngine
from settlement_engine.ledger import InMemoryBalanceLedger
from settlement_engine.price_source import DEFAULT_REFERENCE_PRICES, StaticPriceSource
from settlement_engine.repository import PositionRepository


logger = logging.getLogger("settlement_engine.app")


# ============================================================
# LOGGING
# ============================================================

def setup_logging(level: str = "INFO") -> None:
    """Configure logging."""
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s | %(levelname)s | %(name)s | %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )


# ============================================================
# CLI
# ============================================================

def create_parser() -> argparse.ArgumentParser:
    """Create the argument parser."""
    parser = argparse.ArgumentParser(
        prog="settlement-engine",
        description="Timed-settlement trade engine with HTTP API",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument("--env-file", default=None, help="Path to a .env file")
    parser.add_argument("--host", default=None, help="API host (default: from config)")
    parser.add_argument("--port", type=int, default=None, help="API port (default: from config)")
    parser.add_argument("--database-url", default=None, help="SQLAlchemy async database URL")
    parser.add_argument(
        "--no-persistence",
        action="store_true",
        help="Keep all state in memory",
    )
    parser.add_argument(
        "--initial-balance",
        type=Decimal,
        default=None,
        help="Starting balance of the in-memory ledger",
    )
    parser.add_argument(
        "--log-level",
        default=os.getenv("LOG_LEVEL", "INFO"),
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Log level (default: LOG_LEVEL or INFO)",
    )
    return parser


def build_config(args: argparse.Namespace) -> SettlementEngineConfig:
    """Environment first, CLI flags override."""
    config = SettlementEngineConfig.from_env(args.env_file)

    if args.host:
        config.api.host = args.host
    if args.port:
        config.api.port = args.port
    if args.database_url:
        config.persistence.database_url = args.database_url
    if args.no_persistence:
        config.persistence.enabled = False
    if args.initial_balance is not None:
        config.initial_balance = args.initial_balance

    return config


# ============================================================
# RUNTIME
# ============================================================

async def run_application(config: SettlementEngineConfig) -> int:
    """
    Wire and run the engine until cancelled.

    Returns:
        Exit code
    """
    asset = config.reservation.settlement_asset
    ledger = InMemoryBalanceLedger({asset: config.initial_balance})
    prices = StaticPriceSource(DEFAULT_REFERENCE_PRICES)

    repository: Optional[PositionRepository] = None
    if config.persistence.enabled:
        repository = PositionRepository.from_url(
            config.persistence.database_url, echo=config.persistence.echo
        )
        await repository.create_tables()
        logger.warning(
            "Positions persist but the in-memory ledger does not; "
            "restored positions settle onto a re-seeded balance"
        )

    notifier = TelegramNotifier(config.alerting) if config.alerting.enabled else None

    engine = SettlementEngine(
        ledger=ledger,
        price_source=prices,
        config=config,
        repository=repository,
        notifier=notifier,
    )

    runner = web.AppRunner(create_app(engine))

    try:
        await engine.start()
        await runner.setup()
        site = web.TCPSite(runner, config.api.host, config.api.port)
        await site.start()

        logger.info(f"Settlement API listening on http://{config.api.host}:{config.api.port}/api")
        logger.info(f"Balance: {ledger.available(asset)} {asset}")

        while True:
            await asyncio.sleep(3600)

    except asyncio.CancelledError:
        return 0
    except Exception as e:
        logger.error(f"Fatal error: {e}", exc_info=True)
        return 1
    finally:
        await runner.cleanup()
        await engine.stop()
        if repository is not None:
            await repository.close()


def main() -> int:
    """Main entry point."""
    args = create_parser().parse_args()
    setup_logging(args.log_level)
    config = build_config(args)

    try:
        return asyncio.run(run_application(config))
    except KeyboardInterrupt:
        logger.info("Interrupted by user")
        return 130


# ============================================================
# ENTRY POINT
# ============================================================

if __name__ == "__main__":
    sys.exit(main())
