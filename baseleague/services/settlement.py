"""
Settlement orchestration.

One pass (`run_once`) finds fixtures with unsettled on-ledger wagers, makes
sure the oracle holds their result (pulling it from the feed when needed),
settles them on the payout contract and mirrors the result into the pool
ledger. Every write is idempotent, so a pass can be repeated at any time;
a failing fixture is recorded and the pass moves on.
"""
from __future__ import annotations

import logging
import threading
from datetime import datetime, timedelta, timezone
from typing import Callable, Dict, List, NamedTuple, Optional

from sqlalchemy.exc import SQLAlchemyError
from web3 import Web3

from ..clients.chain import AuthoritySigner, connect
from ..clients.fpl import FixtureFeedClient, find_fixture
from ..clients.oracle import OutcomeOracleBridge
from ..clients.payout import PayoutLedgerBridge, group_unsettled
from ..core.config import Settings
from ..domain.errors import (
    AlreadySettled,
    AuthorizationRejected,
    FeedUnavailable,
    LedgerError,
    OutcomeNotAvailable,
    PoolLedgerError,
)
from ..domain.models import (
    AlreadyExists,
    FixtureRecord,
    GroupState,
    RunSummary,
    SettlementJob,
    WagerGroup,
)
from .payout import project_chain_settlement
from .pool_ledger import PoolLedger
from .resolve import conclude

log = logging.getLogger(__name__)

Clock = Callable[[], datetime]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Ledgers(NamedTuple):
    oracle: OutcomeOracleBridge
    payout: PayoutLedgerBridge
    signer: Optional[AuthoritySigner]


LedgerFactory = Callable[[], Ledgers]


def build_ledgers(settings: Settings) -> Ledgers:
    """Connect to the RPC and bind both contracts to the authority signer."""
    w3: Web3 = connect(settings)
    signer = None
    if settings.authority_private_key:
        signer = AuthoritySigner.from_key(
            w3, settings.authority_private_key, receipt_timeout=settings.receipt_timeout_seconds
        )
    try:
        oracle = OutcomeOracleBridge.from_settings(w3, settings, signer)
        payout = PayoutLedgerBridge.from_settings(w3, settings, signer)
    except ValueError as e:
        raise LedgerError(f"invalid contract address: {e}") from e
    return Ledgers(oracle, payout, signer)


class _FeedSnapshot:
    """Feed fixtures fetched at most once per pass; a failure is remembered too."""

    def __init__(self, feed: FixtureFeedClient):
        self._feed = feed
        self._records: Optional[List[FixtureRecord]] = None
        self._error: Optional[FeedUnavailable] = None

    def fixtures(self) -> List[FixtureRecord]:
        if self._error is not None:
            raise self._error
        if self._records is None:
            try:
                self._records = self._feed.fetch_all_fixtures()
            except FeedUnavailable as e:
                self._error = e
                raise
        return self._records


class SettlementOrchestrator:
    def __init__(
        self,
        settings: Settings,
        feed: FixtureFeedClient,
        ledger_factory: Optional[LedgerFactory] = None,
        pool_ledger: Optional[PoolLedger] = None,
        clock: Clock = _utcnow,
    ):
        self._settings = settings
        self._feed = feed
        self._factory = ledger_factory or (lambda: build_ledgers(settings))
        self._pool = pool_ledger
        self._clock = clock
        self._grace = timedelta(minutes=settings.conclusion_grace_minutes)
        self._ledgers: Optional[Ledgers] = None
        self.last_run: Optional[RunSummary] = None

    @property
    def writes_enabled(self) -> bool:
        return self._settings.writes_enabled

    def ledgers(self) -> Ledgers:
        # built lazily and kept, so the payout bridge's scan watermark survives between passes
        if self._ledgers is None:
            self._ledgers = self._factory()
        return self._ledgers

    # ------------ one pass ------------
    def run_once(self, stop: Optional[threading.Event] = None) -> RunSummary:
        if not self.writes_enabled:
            log.warning("authority key not configured; settlement pass skipped")
            summary = RunSummary(finished_at=self._clock())
            self.last_run = summary
            return summary

        try:
            ledgers = self.ledgers()
            self._check_balance(ledgers)
            groups = group_unsettled(ledgers.payout.list_unsettled_wagers())
        except LedgerError as e:
            log.error("settlement pass aborted: %s", e)
            summary = RunSummary.fatal(str(e))
            self.last_run = summary
            return summary

        summary = RunSummary(started_at=self._clock())
        log.info("settlement pass: %d fixture(s) with unsettled wagers", len(groups))
        snapshot = _FeedSnapshot(self._feed)
        for key in sorted(groups):
            if stop is not None and stop.is_set():
                log.info("stop requested; %d fixture(s) left for the next pass", len(groups) - summary.processed)
                break
            job = self.process_group(groups[key], ledgers, snapshot)
            summary.record(job)
        if stop is None or not stop.is_set():
            summary.reconciled = self.reconcile_pool(ledgers)
        summary.finished_at = self._clock()
        log.info(
            "settlement pass done: processed=%d settled=%d skipped=%d errors=%d reconciled=%d",
            summary.processed, summary.settled, summary.skipped, summary.errors, summary.reconciled,
        )
        self.last_run = summary
        return summary

    def _check_balance(self, ledgers: Ledgers) -> None:
        if ledgers.signer is None:
            return
        try:
            balance = ledgers.signer.balance_eth()
        except LedgerError as e:
            log.warning("could not read authority balance: %s", e)
            return
        if balance < self._settings.low_balance_threshold_eth:
            log.warning(
                "authority %s balance low: %.6f ETH (threshold %s)",
                ledgers.signer.address, balance, self._settings.low_balance_threshold_eth,
            )

    # ------------ one fixture ------------
    def process_group(
        self, group: WagerGroup, ledgers: Ledgers, snapshot: Optional[_FeedSnapshot] = None
    ) -> SettlementJob:
        gw, mid = group.key
        job = SettlementJob(gameweek=gw, match_id=mid, wager_count=group.wager_count)
        snapshot = snapshot or _FeedSnapshot(self._feed)
        try:
            self._settle_group(job, group, ledgers, snapshot)
        except OutcomeNotAvailable as e:
            self._fail(job, f"result not available on the oracle yet: {e}", retryable=True)
        except AuthorizationRejected as e:
            self._fail(job, f"authority not permitted, operator action needed: {e}", retryable=False)
        except FeedUnavailable as e:
            self._fail(job, f"feed unavailable: {e}", retryable=True)
        except LedgerError as e:
            self._fail(job, str(e), retryable=e.retryable)
        except ValueError as e:
            self._fail(job, f"invalid result: {e}", retryable=False)
        except Exception as e:
            log.exception("unexpected failure settling %s/%s", gw, mid)
            self._fail(job, f"unexpected error: {e}", retryable=False)
        log.info("fixture %s/%s -> %s %s", gw, mid, job.state.value, job.message)
        return job

    @staticmethod
    def _fail(job: SettlementJob, message: str, *, retryable: bool) -> None:
        job.state = GroupState.FAILED
        job.success = False
        job.retryable = retryable
        job.message = message

    def _settle_group(
        self, job: SettlementJob, group: WagerGroup, ledgers: Ledgers, snapshot: _FeedSnapshot
    ) -> None:
        gw, mid = group.key
        if ledgers.payout.is_fixture_settled(gw, mid):
            job.state = GroupState.ALREADY_SETTLED
            job.message = "already settled"
            return

        if ledgers.oracle.has_outcome(gw, mid):
            job.state = GroupState.OUTCOME_CHECKED
            record = ledgers.oracle.get_outcome(gw, mid)
            home, away = record.home_score, record.away_score
        else:
            job.state = GroupState.OUTCOME_MISSING
            fixture = find_fixture(snapshot.fixtures(), group.key)
            job.state = GroupState.FEED_CHECKED
            if fixture is None:
                job.state = GroupState.NOT_CONCLUDED
                job.message = "fixture not found in feed"
                return
            result = conclude(fixture, now=self._clock(), grace=self._grace)
            if result.heuristic:
                job.details["heuristic"] = True
            if not result.final:
                job.state = GroupState.NOT_CONCLUDED
                job.message = f"not finished (status: {result.status})"
                return
            home, away = result.home_score, result.away_score
            submitted = ledgers.oracle.submit_outcome(gw, mid, home, away, result.status)
            if isinstance(submitted, AlreadyExists):
                home, away = submitted.existing.home_score, submitted.existing.away_score
                job.details["outcome"] = "already_exists"
            else:
                job.details["outcome_tx"] = submitted.tx_hash
            job.state = GroupState.RESULT_SUBMITTED

        job.details["score"] = {"home": home, "away": away}
        job.details["projection"] = project_chain_settlement(group.wagers, home, away)

        try:
            receipt = ledgers.payout.settle(gw, mid)
        except AlreadySettled:
            job.message = "already settled by another writer"
        else:
            job.details["transaction_hash"] = receipt.tx_hash
            job.details["block_number"] = receipt.block_number
            if receipt.events:
                job.details["events"] = receipt.events
            job.message = "settled"
        job.state = GroupState.SETTLED
        job.success = True
        self._mirror(job, mid, home, away)

    def _mirror(self, job: SettlementJob, match_id: int, home: int, away: int) -> None:
        if self._pool is None:
            return
        try:
            summary = self._pool.record_result(str(match_id), home, away)
        except (PoolLedgerError, SQLAlchemyError) as e:
            log.warning("pool ledger mirror failed for match=%s: %s", match_id, e)
            job.details["pool_ledger_error"] = str(e)
            return
        if summary is not None:
            job.details["pool_payout"] = summary.model_dump(mode="json")

    # ------------ pool catch-up ------------
    def reconcile_pool(self, ledgers: Ledgers) -> int:
        """
        Replay oracle results into pool fixtures that still hold pending wagers.

        A mirror that failed after the on-ledger settle is never retried by the
        group loop (those wagers are no longer unsettled), so each pass sweeps
        the pool ledger for fixtures the oracle already has a result for.
        Returns the number of fixtures paid out.
        """
        if self._pool is None:
            return 0
        try:
            pending = self._pool.unpaid_fixtures(limit=self._settings.max_wagers_per_run)
        except SQLAlchemyError as e:
            log.warning("pool ledger unreadable, reconcile skipped: %s", e)
            return 0

        paid = 0
        for external_id, gameweek in pending:
            try:
                match_id = int(external_id)
            except ValueError:
                continue
            try:
                if not ledgers.oracle.has_outcome(gameweek, match_id):
                    continue
                record = ledgers.oracle.get_outcome(gameweek, match_id)
                summary = self._pool.record_result(external_id, record.home_score, record.away_score)
            except (LedgerError, PoolLedgerError, SQLAlchemyError) as e:
                log.warning("pool reconcile failed gameweek=%s match=%s: %s", gameweek, match_id, e)
                continue
            if summary is not None:
                paid += 1
                log.info("pool fixture %s paid out from oracle result", external_id)
        return paid

    # ------------ refunds ------------
    def refund_unmatched_wagers(self) -> Dict[str, object]:
        """Refund fixtures whose only unsettled wager has nobody on the other side."""
        if not self.writes_enabled:
            log.warning("authority key not configured; refunds skipped")
            return {"refunded": 0, "details": []}
        ledgers = self.ledgers()
        groups = group_unsettled(ledgers.payout.list_unsettled_wagers())
        refunded = 0
        details: List[Dict[str, object]] = []
        for key in sorted(groups):
            group = groups[key]
            if group.wager_count != 1:
                continue
            gw, mid = key
            entry: Dict[str, object] = {**key.as_dict(), "wager_id": group.opener.id}
            try:
                if ledgers.payout.is_fixture_settled(gw, mid):
                    entry["result"] = "already_settled"
                else:
                    receipt = ledgers.payout.refund_unmatched(gw, mid)
                    entry["result"] = "refunded"
                    entry["transaction_hash"] = receipt.tx_hash
                    refunded += 1
            except LedgerError as e:
                log.warning("refund failed gameweek=%s match=%s: %s", gw, mid, e)
                entry["result"] = "error"
                entry["error"] = str(e)
            details.append(entry)
        log.info("refunded %d unmatched wager(s)", refunded)
        return {"refunded": refunded, "details": details}
