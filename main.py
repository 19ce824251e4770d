"""
Exit Engine - Main Entry Point

Monitors open token positions and sells them when exit triggers fire.

Usage:
    # Check configuration
    python main.py --check

    # Run with paper execution
    python main.py --dry-run

    # Run live, with an external transaction sender
    python main.py --live --sender my_wallet.sender:create_sender

    # Show persisted positions
    python main.py --status

    # Initialize database
    python main.py --init-db
"""

import argparse
import asyncio
import importlib
import signal
from typing import Dict, Optional

import structlog

from exit_engine.core.config import engine_config
from exit_engine.core.engine import ExitEngine, create_swap_service
from exit_engine.core.exceptions import ConfigurationError
from exit_engine.exchange.base import PriceOracle, SwapExecutionService, TransactionSender
from exit_engine.exchange.birdeye import BirdeyePriceOracle
from exit_engine.ingest.webhook_server import WebhookServer
from exit_engine.notifications.base import NotificationSink
from exit_engine.notifications.sinks import create_notifier
from exit_engine.storage.database import Database
from exit_engine.utils.logging_config import setup_logging

logger = structlog.get_logger(__name__)


def load_sender(target: str) -> TransactionSender:
    """Build a TransactionSender from ``module.path:factory``."""
    module_name, _, attr = target.partition(":")
    if not module_name or not attr:
        raise ConfigurationError(f"Sender must look like 'module:factory', got '{target}'")
    factory = getattr(importlib.import_module(module_name), attr)
    return factory()


class ExitBot:
    """
    Main application for the exit engine.

    Wires the price oracle, swap execution, notifications, database and the
    optional webhook receiver around an ExitEngine.
    """

    def __init__(self, sender: Optional[TransactionSender] = None):
        self.sender = sender

        # Components
        self.engine: Optional[ExitEngine] = None
        self.oracle: Optional[PriceOracle] = None
        self.swap_service: Optional[SwapExecutionService] = None
        self.notifier: Optional[NotificationSink] = None
        self.database: Optional[Database] = None
        self.webhook: Optional[WebhookServer] = None

        # State
        self._shutdown_event = asyncio.Event()
        self._initialized = False

    async def initialize(self):
        """Initialize all components based on configuration."""
        logger.info("bot.initializing", dry_run=engine_config.is_dry_run)

        self.oracle = BirdeyePriceOracle(engine_config.oracle)
        self.swap_service = create_swap_service(self.oracle, self.sender, engine_config)
        self.notifier = create_notifier(engine_config.notification)
        self.database = Database()

        self.engine = ExitEngine(
            swap_service=self.swap_service,
            oracle=self.oracle,
            notifier=self.notifier,
            database=self.database,
            config=engine_config,
        )

        if engine_config.monitor.webhook_enabled:
            self.webhook = WebhookServer(self.engine.gateway, engine_config.monitor)

        self._initialized = True
        logger.info("bot.initialized")

    async def run(self):
        """Run until SIGINT/SIGTERM."""
        if not self._initialized:
            raise RuntimeError("Bot not initialized. Call initialize() first.")

        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.add_signal_handler(sig, self._signal_handler)

        try:
            await self.engine.start()
            if self.webhook:
                await self.webhook.start()

            await self._shutdown_event.wait()

        except Exception as e:
            logger.error("bot.error", error=str(e), exc_info=True)
            raise
        finally:
            await self.shutdown()

    async def close_all(self, reason: str) -> Dict:
        """Start the engine, close every active position and shut down."""
        if not self._initialized:
            raise RuntimeError("Bot not initialized. Call initialize() first.")

        try:
            await self.engine.start()
            return await self.engine.close_all_positions(reason)
        finally:
            await self.shutdown()

    async def shutdown(self):
        """Perform graceful shutdown."""
        logger.info("bot.shutting_down")

        if self.webhook:
            await self.webhook.stop()
        if self.engine and self.engine.running:
            await self.engine.stop()
        if self.swap_service:
            await self.swap_service.close()
        if self.oracle:
            await self.oracle.close()
        if self.notifier:
            await self.notifier.close()
        if self.database:
            await self.database.close()

        logger.info("bot.shutdown_complete")

    def _signal_handler(self):
        """Handle shutdown signals."""
        logger.info("bot.shutdown_signal_received")
        self._shutdown_event.set()


def check_configuration() -> Dict:
    """
    Check if configuration is valid.

    Returns:
        Dictionary with validation results
    """
    validation = engine_config.validate_configuration()
    warnings = []

    if engine_config.is_dry_run:
        warnings.append("Paper execution: no transactions will be sent")
    else:
        warnings.append("LIVE execution: exits will sell real tokens")

    if not engine_config.monitor.webhook_enabled:
        warnings.append("Webhook receiver disabled: relying on polling only")

    return {
        "valid": validation["valid"],
        "issues": validation["issues"],
        "warnings": warnings,
        "ladder": [
            f"+{gain * 100}% -> {fraction}"
            for gain, fraction in engine_config.thresholds.partial_take_profit_ladder
        ],
    }


async def print_status():
    """Print persisted positions."""
    db = Database()
    await db.initialize()
    try:
        positions = await db.load_positions()
    finally:
        await db.close()

    print("\n" + "=" * 60)
    print("           EXIT ENGINE - POSITIONS")
    print("=" * 60)
    if not positions:
        print("\nNo positions recorded")
    for position in positions:
        state = "ACTIVE" if position.active else f"CLOSED ({position.exit_reason.value})"
        print(f"\n{position.symbol or position.token_id}  [{state}]")
        print(f"  Entry:     {position.entry_price}  x {position.entry_amount}")
        print(f"  Remaining: {position.remaining_amount}")
        print(f"  PnL:       {position.pnl_pct() * 100:+.2f}%  realized {position.realized_pnl}")
        fired = ", ".join(sorted(str(key) for key in position.fired_triggers)) or "-"
        print(f"  Fired:     {fired}")
    print("\n" + "=" * 60)


async def main():
    """Main entry point."""
    parser = argparse.ArgumentParser(description="Exit Engine - automated position exits")

    mode = parser.add_mutually_exclusive_group()
    mode.add_argument("--dry-run", action="store_true", help="Force paper execution")
    mode.add_argument("--live", action="store_true", help="Execute real swaps")
    parser.add_argument(
        "--sender",
        help="Transaction sender factory as 'module:callable' (required with --live)",
    )

    parser.add_argument("--status", action="store_true", help="Show persisted positions and exit")
    parser.add_argument("--check", action="store_true", help="Check configuration and exit")
    parser.add_argument("--init-db", action="store_true", help="Initialize database and exit")
    parser.add_argument(
        "--close-all",
        metavar="REASON",
        nargs="?",
        const="manual close via CLI",
        help="Sell every active position and exit",
    )

    args = parser.parse_args()

    setup_logging()

    if args.dry_run:
        engine_config.system.dry_run = True
    elif args.live:
        engine_config.system.dry_run = False

    config_check = check_configuration()

    if args.check:
        print("\n" + "=" * 60)
        print("           CONFIGURATION CHECK")
        print("=" * 60)
        if config_check["valid"]:
            print("\n✓ Configuration is valid")
        else:
            print("\n✗ Configuration errors:")
            for issue in config_check["issues"]:
                print(f"   - {issue}")
        for warning in config_check["warnings"]:
            print(f"\n{warning}")
        print(f"\nTake-profit ladder: {', '.join(config_check['ladder'])}")
        print("\n" + "=" * 60)
        return

    if args.init_db:
        print("\nInitializing database...")
        db = Database()
        await db.initialize()
        print("✓ Database initialized successfully")
        await db.close()
        return

    if args.status:
        await print_status()
        return

    if not config_check["valid"]:
        print("\n✗ Configuration errors:")
        for issue in config_check["issues"]:
            print(f"   - {issue}")
        print("\nPlease check your .env file and try again.")
        return

    sender = load_sender(args.sender) if args.sender else None
    bot = ExitBot(sender=sender)

    try:
        await bot.initialize()
        if args.close_all:
            outcomes = await bot.close_all(args.close_all)
            for position_id, outcome in outcomes.items():
                detail = outcome.signature if outcome.executed else outcome.error
                print(f"{position_id}: {outcome.status.value} {detail or ''}")
            print(f"\n{sum(o.executed for o in outcomes.values())}/{len(outcomes)} positions closed")
        else:
            await bot.run()
    except KeyboardInterrupt:
        print("\n\nShutdown requested by user...")
    except ConfigurationError as e:
        logger.error("main.configuration_error", issues=e.issues)
        print(f"\n✗ Configuration error: {e}")
        raise
    except Exception as e:
        logger.error("main.error", error=str(e), exc_info=True)
        print(f"\n✗ Fatal error: {e}")
        raise


if __name__ == "__main__":
    asyncio.run(main())
