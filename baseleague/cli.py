# baseleague/cli.py
"""
One-off operator commands.

  baseleague run      settle every fixture that is ready, then exit
  baseleague refund   settle, then refund single-wager fixtures
"""
import argparse
import json
import logging
import signal
import sys
import threading
from typing import List, Optional

from .clients.fpl import FixtureFeedClient
from .core.config import get_settings
from .core.logging import configure_logging
from .db.session import build_engine, build_session_factory, create_schema
from .domain.errors import LedgerError
from .services.pool_ledger import PoolLedger
from .services.settlement import SettlementOrchestrator

log = logging.getLogger("baseleague.cli")


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(prog="baseleague", description="BaseLeague settlement operator tools")
    parser.add_argument("--verbose", action="store_true", help="Enable debug logging")
    parser.add_argument(
        "--no-pool-ledger",
        action="store_true",
        help="Do not mirror results into the pool ledger database",
    )
    sub = parser.add_subparsers(dest="command", required=True)
    sub.add_parser("run", help="Run one settlement pass")
    sub.add_parser("refund", help="Run one settlement pass, then refund unmatched single wagers")
    return parser.parse_args(argv)


def install_stop_handlers(stop: threading.Event) -> None:
    """SIGINT/SIGTERM ask the pass to stop after the fixture in flight."""

    def _request_stop(signum, _frame):
        log.warning("signal %s received; finishing the current fixture then stopping", signum)
        stop.set()

    signal.signal(signal.SIGINT, _request_stop)
    signal.signal(signal.SIGTERM, _request_stop)


def main(argv: Optional[List[str]] = None) -> int:
    args = parse_args(argv)
    settings = get_settings()
    configure_logging("DEBUG" if args.verbose else settings.log_level)

    if not settings.writes_enabled:
        log.error("AUTHORITY_PRIVATE_KEY not set; nothing to do")
        return 1

    stop = threading.Event()
    install_stop_handlers(stop)

    pool_ledger = None
    if not args.no_pool_ledger:
        engine = build_engine(settings.database_url)
        create_schema(engine)
        pool_ledger = PoolLedger(build_session_factory(engine))

    with FixtureFeedClient(
        settings.feed_base_url, settings.feed_timeout_seconds, cache_ttl=settings.bootstrap_cache_seconds
    ) as feed:
        orchestrator = SettlementOrchestrator(settings, feed, pool_ledger=pool_ledger)
        summary = orchestrator.run_once(stop=stop)
        out = {"settlement": summary.model_dump(mode="json", exclude={"started_at", "finished_at"})}
        if args.command == "refund" and not stop.is_set() and not (summary.processed == 0 and summary.errors):
            try:
                out["refunds"] = orchestrator.refund_unmatched_wagers()
            except LedgerError as e:
                log.error("refund pass aborted: %s", e)
                out["refunds"] = {"refunded": 0, "error": str(e)}

    json.dump(out, sys.stdout, indent=2, default=str)
    sys.stdout.write("\n")
    return 0 if summary.errors == 0 else 2


if __name__ == "__main__":
    sys.exit(main())
