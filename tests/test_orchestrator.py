import threading
from datetime import datetime, timedelta, timezone

import pytest

from baseleague.core.config import Settings
from baseleague.domain.errors import (
    AlreadySettled,
    AuthorizationRejected,
    FeedUnavailable,
    LedgerRejected,
    LedgerUnavailable,
    NotFound,
    OutcomeNotAvailable,
)
from baseleague.domain.models import (
    AlreadyExists,
    FixtureKey,
    FixtureRecord,
    GroupState,
    OnLedgerWager,
    OutcomeRecord,
    Prediction,
    TxReceipt,
)
from baseleague.services.settlement import Ledgers, SettlementOrchestrator

NOW = datetime(2025, 9, 1, 18, 0, tzinfo=timezone.utc)
KEY = "0x" + "11" * 32


def _receipt(n=1):
    return TxReceipt(tx_hash=f"0x{n:064x}", block_number=100 + n)


class FakeOracle:
    def __init__(self, outcomes=None, race=()):
        self.outcomes = dict(outcomes or {})
        self.race = set(race)
        self.submitted = []

    def has_outcome(self, gw, mid):
        return (gw, mid) in self.outcomes

    def get_outcome(self, gw, mid):
        if (gw, mid) not in self.outcomes:
            raise NotFound("missing")
        h, a = self.outcomes[(gw, mid)]
        return OutcomeRecord(gameweek=gw, match_id=mid, home_score=h, away_score=a, status="FT", timestamp=1)

    def submit_outcome(self, gw, mid, home, away, status):
        self.submitted.append((gw, mid, home, away, status))
        if (gw, mid) in self.race:
            # another writer anchored it first
            self.outcomes[(gw, mid)] = (home, away)
            return AlreadyExists(existing=self.get_outcome(gw, mid))
        self.outcomes[(gw, mid)] = (home, away)
        return _receipt(len(self.submitted))


class FakePayout:
    def __init__(self, oracle, wagers, errors=None, settled=()):
        self.oracle = oracle
        self.wagers = list(wagers)
        self.errors = dict(errors or {})
        self.settled = set(settled)
        self.settle_calls = []
        self.refunds = []
        self.list_error = None

    def list_unsettled_wagers(self):
        if self.list_error:
            raise self.list_error
        return [w for w in self.wagers if w.key not in self.settled]

    def is_fixture_settled(self, gw, mid):
        return (gw, mid) in self.settled

    def settle(self, gw, mid):
        self.settle_calls.append((gw, mid))
        if (gw, mid) in self.errors:
            raise self.errors[(gw, mid)]
        if not self.oracle.has_outcome(gw, mid):
            raise OutcomeNotAvailable("MatchNotFulfilled", reason="MatchNotFulfilled")
        self.settled.add((gw, mid))
        return _receipt(99)

    def refund_unmatched(self, gw, mid):
        self.refunds.append((gw, mid))
        return _receipt(7)


class FakeFeed:
    def __init__(self, records=(), error=None):
        self.records = list(records)
        self.error = error
        self.calls = 0

    def fetch_all_fixtures(self):
        self.calls += 1
        if self.error:
            raise self.error
        return self.records


class FakePool:
    def __init__(self, error=None, unpaid=(), summary=None):
        self.calls = []
        self.error = error
        self.unpaid = list(unpaid)
        self.summary = summary

    def record_result(self, fixture_id, home, away):
        self.calls.append((fixture_id, home, away))
        if self.error:
            raise self.error
        self.unpaid = [u for u in self.unpaid if u[0] != fixture_id]
        return self.summary

    def unpaid_fixtures(self, limit=50):
        return list(self.unpaid)[:limit]


def _wager(i, gw, mid, prediction=Prediction.HOME, amount=10**18):
    return OnLedgerWager(id=i, bettor="0xb0b", gameweek=gw, match_id=mid,
                         amount=amount, prediction=prediction, timestamp=1_700_000_000 + i)


def _fixture(mid, gw=5, finished=True, home=2, away=1, kickoff_ago=timedelta(hours=3), started=True):
    return FixtureRecord(id=mid, event=gw, team_h=1, team_a=2,
                         team_h_score=home if finished else None, team_a_score=away if finished else None,
                         kickoff_time=NOW - kickoff_ago, finished=finished, started=started)


def _settings(**kw):
    kw.setdefault("authority_private_key", KEY)
    return Settings(_env_file=None, **kw)


def _orchestrator(oracle, payout, feed, pool=None, settings=None, signer=None):
    return SettlementOrchestrator(
        settings or _settings(),
        feed,
        ledger_factory=lambda: Ledgers(oracle, payout, signer),
        pool_ledger=pool,
        clock=lambda: NOW,
    )


def test_outcome_present_settles_and_mirrors_pool():
    oracle = FakeOracle({(5, 42): (2, 1)})
    payout = FakePayout(oracle, [_wager(0, 5, 42), _wager(1, 5, 42, Prediction.AWAY)])
    pool = FakePool()
    feed = FakeFeed()
    summary = _orchestrator(oracle, payout, feed, pool).run_once()

    assert (summary.processed, summary.settled, summary.skipped, summary.errors) == (1, 1, 0, 0)
    job = summary.details[0]
    assert job["state"] == GroupState.SETTLED.value
    assert job["wager_count"] == 2
    assert job["details"]["projection"]["winning_outcome"] == "win"
    assert pool.calls == [("42", 2, 1)]
    assert feed.calls == 0
    assert oracle.submitted == []


def test_missing_outcome_is_submitted_from_feed_then_settled():
    oracle = FakeOracle()
    payout = FakePayout(oracle, [_wager(0, 5, 42)])
    feed = FakeFeed([_fixture(42, home=3, away=3)])
    summary = _orchestrator(oracle, payout, feed).run_once()

    assert summary.settled == 1
    assert oracle.submitted == [(5, 42, 3, 3, "FT")]
    assert payout.settle_calls == [(5, 42)]


def test_not_finished_fixture_is_skipped_not_failed():
    oracle = FakeOracle()
    payout = FakePayout(oracle, [_wager(0, 5, 42)])
    feed = FakeFeed([_fixture(42, finished=False, kickoff_ago=timedelta(minutes=30))])
    summary = _orchestrator(oracle, payout, feed).run_once()

    assert (summary.processed, summary.settled, summary.skipped, summary.errors) == (1, 0, 1, 0)
    assert summary.details[0]["state"] == GroupState.NOT_CONCLUDED.value
    assert oracle.submitted == []
    assert payout.settle_calls == []


def test_stale_kickoff_without_finished_flag_is_never_submitted():
    oracle = FakeOracle()
    payout = FakePayout(oracle, [_wager(0, 5, 42)])
    feed = FakeFeed([_fixture(42, finished=False, started=False, kickoff_ago=timedelta(hours=5))])
    summary = _orchestrator(oracle, payout, feed).run_once()

    job = summary.details[0]
    assert job["state"] == GroupState.NOT_CONCLUDED.value
    assert job["details"]["heuristic"] is True
    assert oracle.submitted == []


def test_concurrent_submission_still_settles():
    oracle = FakeOracle(race={(5, 42)})
    payout = FakePayout(oracle, [_wager(0, 5, 42)])
    feed = FakeFeed([_fixture(42)])
    summary = _orchestrator(oracle, payout, feed).run_once()

    assert (summary.settled, summary.errors) == (1, 0)
    assert summary.details[0]["details"]["outcome"] == "already_exists"
    assert payout.settle_calls == [(5, 42)]


def test_already_settled_group_is_skipped():
    oracle = FakeOracle({(5, 42): (1, 0)})
    payout = FakePayout(oracle, [_wager(0, 5, 42)])
    payout.list_unsettled_wagers = lambda: [_wager(0, 5, 42)]
    payout.settled.add((5, 42))
    summary = _orchestrator(oracle, payout, FakeFeed()).run_once()

    assert (summary.skipped, summary.errors) == (1, 0)
    assert summary.details[0]["state"] == GroupState.ALREADY_SETTLED.value
    assert payout.settle_calls == []


def test_settle_race_counts_as_success():
    oracle = FakeOracle({(5, 42): (1, 0)})
    payout = FakePayout(oracle, [_wager(0, 5, 42)],
                        errors={(5, 42): AlreadySettled("dup", reason="MatchAlreadySettled")})
    summary = _orchestrator(oracle, payout, FakeFeed()).run_once()
    assert (summary.settled, summary.errors) == (1, 0)


@pytest.mark.parametrize("error,retryable", [
    (OutcomeNotAvailable("MatchNotFulfilled"), True),
    (LedgerUnavailable("timeout"), True),
    (AuthorizationRejected("UnauthorizedCaller"), False),
    (LedgerRejected("weird revert"), False),
])
def test_group_failures_are_isolated(error, retryable):
    oracle = FakeOracle({(5, 42): (1, 0), (5, 43): (0, 0)})
    payout = FakePayout(oracle, [_wager(0, 5, 42), _wager(1, 5, 43)], errors={(5, 42): error})
    summary = _orchestrator(oracle, payout, FakeFeed()).run_once()

    assert (summary.processed, summary.settled, summary.errors) == (2, 1, 1)
    failed = summary.details[0]
    assert failed["state"] == GroupState.FAILED.value
    assert failed["retryable"] is retryable
    assert summary.details[1]["success"] is True


def test_feed_outage_fetched_once_and_marks_groups_retryable():
    oracle = FakeOracle()
    payout = FakePayout(oracle, [_wager(0, 5, 42), _wager(1, 5, 43)])
    feed = FakeFeed(error=FeedUnavailable("503"))
    summary = _orchestrator(oracle, payout, feed).run_once()

    assert summary.errors == 2
    assert all(d["retryable"] for d in summary.details)
    assert feed.calls == 1


def test_ledger_build_failure_aborts_run():
    def boom():
        raise LedgerUnavailable("cannot reach RPC")

    orch = SettlementOrchestrator(_settings(), FakeFeed(), ledger_factory=boom, clock=lambda: NOW)
    summary = orch.run_once()
    assert (summary.processed, summary.settled, summary.errors) == (0, 0, 1)
    assert summary.details == [{"error": "cannot reach RPC"}]


def test_enumeration_failure_aborts_run():
    oracle = FakeOracle()
    payout = FakePayout(oracle, [])
    payout.list_error = LedgerUnavailable("nextBetId failed")
    summary = _orchestrator(oracle, payout, FakeFeed()).run_once()
    assert (summary.processed, summary.errors) == (0, 1)


def test_writes_disabled_returns_empty_summary():
    called = []
    orch = SettlementOrchestrator(
        _settings(authority_private_key=None), FakeFeed(),
        ledger_factory=lambda: called.append(1), clock=lambda: NOW,
    )
    summary = orch.run_once()
    assert (summary.processed, summary.settled, summary.errors) == (0, 0, 0)
    assert called == []


def test_pool_mirror_failure_does_not_fail_group():
    from baseleague.domain.errors import ResultConflict

    oracle = FakeOracle({(5, 42): (2, 1)})
    payout = FakePayout(oracle, [_wager(0, 5, 42)])
    summary = _orchestrator(oracle, payout, FakeFeed(), FakePool(error=ResultConflict("lose vs win"))).run_once()
    assert summary.settled == 1
    assert summary.details[0]["details"]["pool_ledger_error"] == "lose vs win"


def test_pool_database_error_after_settle_is_caught_up_next_pass():
    from sqlalchemy.exc import OperationalError

    from baseleague.domain.models import PayoutSummary

    oracle = FakeOracle({(5, 42): (2, 1)})
    payout = FakePayout(oracle, [_wager(0, 5, 42)])
    pool = FakePool(error=OperationalError("UPDATE fixture", {}, Exception("database is locked")),
                    unpaid=[("42", 5)])
    orch = _orchestrator(oracle, payout, FakeFeed(), pool)

    first = orch.run_once()
    assert payout.settled == {(5, 42)}
    assert (first.settled, first.errors, first.reconciled) == (1, 0, 0)
    assert "database is locked" in first.details[0]["details"]["pool_ledger_error"]

    pool.error = None
    pool.summary = PayoutSummary(fixture_id="42", winning_outcome="win", total_pool=1, winning_pool=1,
                                 winning_count=1, losing_count=0, payout_multiplier=0.95)
    second = orch.run_once()
    assert second.processed == 0
    assert second.reconciled == 1
    assert pool.calls[-1] == ("42", 2, 1)
    assert pool.unpaid == []


def test_reconcile_waits_for_oracle_result():
    oracle = FakeOracle()
    pool = FakePool(unpaid=[("42", 5), ("not-a-match", 5)])
    summary = _orchestrator(oracle, FakePayout(oracle, []), FakeFeed(), pool).run_once()
    assert summary.reconciled == 0
    assert pool.calls == []


def test_rerun_is_idempotent():
    oracle = FakeOracle()
    payout = FakePayout(oracle, [_wager(0, 5, 42)])
    feed = FakeFeed([_fixture(42)])
    orch = _orchestrator(oracle, payout, feed)
    first = orch.run_once()
    second = orch.run_once()
    assert first.settled == 1
    assert second.processed == 0
    assert len(oracle.submitted) == 1
    assert len(payout.settle_calls) == 1


def test_stop_token_ends_pass_between_groups():
    oracle = FakeOracle({(5, 42): (1, 0), (5, 43): (1, 0)})
    payout = FakePayout(oracle, [_wager(0, 5, 42), _wager(1, 5, 43)])
    stop = threading.Event()
    original = payout.settle

    def settle_then_stop(gw, mid):
        stop.set()
        return original(gw, mid)

    payout.settle = settle_then_stop
    summary = _orchestrator(oracle, payout, FakeFeed()).run_once(stop=stop)
    assert summary.processed == 1
    assert payout.settled == {(5, 42)}


def test_groups_processed_in_key_order():
    oracle = FakeOracle({(6, 1): (0, 1), (5, 43): (1, 0), (5, 42): (1, 1)})
    payout = FakePayout(oracle, [_wager(0, 6, 1), _wager(1, 5, 43), _wager(2, 5, 42)])
    _orchestrator(oracle, payout, FakeFeed()).run_once()
    assert payout.settle_calls == [(5, 42), (5, 43), (6, 1)]


def test_refund_only_single_wager_groups():
    oracle = FakeOracle()
    payout = FakePayout(oracle, [_wager(0, 5, 42), _wager(1, 5, 42), _wager(2, 5, 43)])
    out = _orchestrator(oracle, payout, FakeFeed()).refund_unmatched_wagers()
    assert out["refunded"] == 1
    assert payout.refunds == [(5, 43)]
    assert out["details"][0] == {**FixtureKey(5, 43).as_dict(), "wager_id": 2,
                                 "result": "refunded", "transaction_hash": _receipt(7).tx_hash}
