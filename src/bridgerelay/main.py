"""Main entry point for the bridge relay.

Commands:
    run        start both bridge directions (default)
    reconcile  retry outstanding origin acknowledgements once
    status     print record counts and both on-chain bridge states
"""

import argparse
import asyncio
import json
import logging
import signal
from typing import Optional, Sequence

from dotenv import load_dotenv

from bridgerelay.config import Settings, get_settings
from bridgerelay.errors import ConfigurationError
from bridgerelay.relay.bridge import BridgeRelay

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_CONFIG_ERROR = 1
EXIT_FAILURE = 2


def setup_logging(settings: Settings) -> None:
    """Configure root logging once for the process."""
    if settings.debug:
        level = logging.DEBUG
    else:
        level = getattr(logging, settings.log_level.upper(), logging.INFO)
    logging.basicConfig(
        level=level,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )


async def run_relay(relay: BridgeRelay, settings: Settings) -> int:
    """Start the relay and run until both directions stop."""
    try:
        await relay.start()
        if settings.metrics_port:
            relay.metrics.serve(settings.metrics_port)
        await relay.run()
    finally:
        await relay.close()
    return EXIT_OK


async def run_reconcile(relay: BridgeRelay) -> int:
    try:
        report = await relay.reconcile_once()
    finally:
        await relay.close()
    print(
        f"Checked {report.checked} acknowledgements: "
        f"{report.acknowledged} done, {report.failed} failed"
    )
    return EXIT_OK if report.failed == 0 else EXIT_FAILURE


async def run_status(relay: BridgeRelay) -> int:
    try:
        status = await relay.status()
    finally:
        await relay.close()
    print(json.dumps(status, indent=2))
    return EXIT_OK


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="bridge-relay", description="Bidirectional Solana <-> EVM lock/release relay"
    )
    parser.add_argument(
        "command",
        nargs="?",
        default="run",
        choices=["run", "reconcile", "status"],
        help="What to do (default: run)",
    )
    parser.add_argument("--debug", action="store_true", help="Enable debug logging")
    return parser


def main(argv: Optional[Sequence[str]] = None) -> int:
    """Main entry point."""
    args = build_parser().parse_args(argv)
    load_dotenv()
    settings = get_settings()
    if args.debug:
        settings = settings.model_copy(update={"debug": True})
    setup_logging(settings)

    try:
        relay = BridgeRelay.from_settings(settings)
    except ConfigurationError as e:
        logger.critical(f"Configuration error: {e}")
        return EXIT_CONFIG_ERROR

    loop = asyncio.new_event_loop()
    asyncio.set_event_loop(loop)

    if args.command == "run":
        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.add_signal_handler(sig, relay.shutdown)
        coro = run_relay(relay, settings)
    elif args.command == "reconcile":
        coro = run_reconcile(relay)
    else:
        coro = run_status(relay)

    try:
        return loop.run_until_complete(coro)
    except ConfigurationError as e:
        logger.critical(f"Startup aborted: {e}")
        return EXIT_CONFIG_ERROR
    except KeyboardInterrupt:
        logger.info("Keyboard interrupt received")
        return EXIT_OK
    finally:
        loop.close()


if __name__ == "__main__":
    raise SystemExit(main())
