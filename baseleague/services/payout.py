"""Pari-mutuel payout math shared by the pool ledger and the on-ledger projection."""

from __future__ import annotations

from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Dict, Iterable, Mapping, Optional, Protocol

from ..domain.models import POOL_OUTCOMES, FixtureStatus, OnLedgerWager, PayoutInfo, PoolOutcome

PAYOUT_RATE = Decimal("0.95")   # 5% fee, fixed


class PooledFixture(Protocol):
    status: str
    home_score: Optional[int]
    away_score: Optional[int]

    @property
    def pools(self) -> Mapping[str, Mapping[str, Any]]: ...


@dataclass
class PoolSnapshot:
    """Plain pooled fixture, used where no pool-ledger row exists (on-ledger groups)."""
    status: FixtureStatus = "pending"
    home_score: Optional[int] = None
    away_score: Optional[int] = None
    pools: Dict[str, Dict[str, Any]] = field(
        default_factory=lambda: {o: {"total": Decimal(0), "bet_count": 0} for o in POOL_OUTCOMES}
    )


def winning_outcome(home_score: int, away_score: int) -> PoolOutcome:
    if home_score > away_score:
        return "win"
    if away_score > home_score:
        return "lose"
    return "draw"


def _total(pools: Mapping[str, Mapping[str, Any]], outcome: str) -> Decimal:
    return Decimal(pools.get(outcome, {}).get("total") or 0)


def compute_payout(fixture: PooledFixture) -> Optional[PayoutInfo]:
    if fixture.status != "finished" or fixture.home_score is None or fixture.away_score is None:
        return None
    outcome = winning_outcome(fixture.home_score, fixture.away_score)
    pools = fixture.pools
    total_pool = sum((_total(pools, o) for o in POOL_OUTCOMES), Decimal(0))
    winning_pool = _total(pools, outcome)
    if winning_pool == 0:
        return None
    return PayoutInfo(
        winning_outcome=outcome,
        total_pool=total_pool,
        winning_pool=winning_pool,
        payout_rate=PAYOUT_RATE,
        total_payout=total_pool * PAYOUT_RATE,
    )


def payout_for(amount: Decimal | int, info: PayoutInfo) -> Decimal:
    return Decimal(amount) * info.multiplier


def pools_from_chain_wagers(wagers: Iterable[OnLedgerWager]) -> PoolSnapshot:
    snap = PoolSnapshot()
    for w in wagers:
        bucket = snap.pools[w.pool_outcome]
        bucket["total"] += Decimal(w.amount)
        bucket["bet_count"] += 1
    return snap


def project_chain_settlement(
    wagers: Iterable[OnLedgerWager], home_score: int, away_score: int
) -> Dict[str, Any]:
    """What the payout contract should distribute for these wagers, in wei."""
    snap = pools_from_chain_wagers(wagers)
    snap.status = "finished"
    snap.home_score, snap.away_score = home_score, away_score
    info = compute_payout(snap)
    if info is None:
        return {"winning_outcome": winning_outcome(home_score, away_score), "payable": False}
    return {
        "winning_outcome": info.winning_outcome,
        "payable": True,
        "total_pool": int(info.total_pool),
        "winning_pool": int(info.winning_pool),
        "projected_payout": int(info.total_payout),
    }
