"""Application entrypoint for the feedloom aggregator.

Runs the long-lived service by default:
1) load configuration and persisted caches
2) refresh sources on their schedule and watch the config file
3) flush caches on shutdown

``--once`` and ``--refresh`` run a single pass and exit.
"""

from __future__ import annotations

import argparse
import signal
import threading
from pathlib import Path

from dotenv import load_dotenv

from .errors import ConfigError, FeedloomError
from .orchestrator import Orchestrator
from .utils.logging import configure_logging, get_logger


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="feedloom - scheduled feed aggregation with AI classification")
    parser.add_argument(
        "--config",
        default="config.json",
        help="Path to the configuration file (JSON, or YAML by suffix)",
    )
    parser.add_argument(
        "--log-level",
        default=None,
        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
        help="Logging verbosity (defaults to LOG_LEVEL or INFO)",
    )
    parser.add_argument(
        "--once",
        action="store_true",
        help="Refresh every source once, flush caches and exit",
    )
    parser.add_argument(
        "--refresh",
        metavar="TARGET",
        default=None,
        help="Refresh one source URL or folder:<id> and exit",
    )
    parser.add_argument(
        "--force",
        action="store_true",
        help="With --once/--refresh: reprocess even when the feed is unchanged",
    )
    return parser.parse_args(argv)


def main(argv: list[str] | None = None) -> int:
    load_dotenv(override=False)
    args = parse_args(argv)
    configure_logging(level=args.log_level)
    logger = get_logger("fl.main")

    config_path = Path(args.config)
    logger.info("Loading configuration from %s", config_path)
    try:
        orch = Orchestrator(config_path, watch_config=not (args.once or args.refresh))
    except ConfigError as exc:
        logger.error("Invalid configuration: %s", exc)
        return 1

    if args.once or args.refresh:
        orch.restore()
        try:
            if args.refresh:
                orch.refresh(args.refresh, forced=args.force)
                failures = 0
            else:
                failures = orch.refresh_all(forced=args.force)
        except FeedloomError as exc:
            logger.error("Refresh failed: %s", exc)
            failures = 1
        finally:
            orch.updater.wait_background()
            orch.updater.close()
            orch.caches.shutdown()
        return 1 if failures else 0

    stop = threading.Event()

    def _handle_signal(signum, _frame) -> None:
        logger.info("Received signal %s, shutting down", signum)
        stop.set()

    signal.signal(signal.SIGINT, _handle_signal)
    signal.signal(signal.SIGTERM, _handle_signal)

    orch.start()
    try:
        stop.wait()
    finally:
        orch.stop()
    return 0


if __name__ == "__main__":  # pragma: no cover - script entrypoint
    raise SystemExit(main())
