from __future__ import annotations

from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum, IntEnum
from typing import Annotated, Any, Dict, List, Literal, NamedTuple, Optional, Union

from pydantic import BaseModel, ConfigDict, Field

# Pool outcomes are always relative to the home side.
PoolOutcome = Literal["win", "draw", "lose"]
POOL_OUTCOMES: tuple[PoolOutcome, ...] = ("win", "draw", "lose")
FixtureStatus = Literal["pending", "live", "finished", "cancelled"]
WagerStatus = Literal["pending", "won", "lost", "cancelled"]


class Prediction(IntEnum):
    """On-ledger prediction codes (uint8 in the payout contract)."""
    HOME = 0
    DRAW = 1
    AWAY = 2

    @property
    def pool_outcome(self) -> PoolOutcome:
        return {Prediction.HOME: "win", Prediction.DRAW: "draw", Prediction.AWAY: "lose"}[self]


class FixtureKey(NamedTuple):
    """Composite key a fixture is recorded under on both contracts."""
    gameweek: int
    match_id: int

    def as_dict(self) -> Dict[str, int]:
        return {"gameweek": self.gameweek, "match_id": self.match_id}


# ---------- feed ----------
class Team(BaseModel):
    id: int
    name: str
    short_name: str = ""


class Period(BaseModel):
    """One gameweek entry from the bootstrap `events` array."""
    model_config = ConfigDict(extra="ignore")

    id: int
    finished: bool = False
    is_current: bool = False


class FixtureRecord(BaseModel):
    """Raw fixture row as served by the feed (`GET /fixtures/`)."""
    model_config = ConfigDict(extra="ignore")

    id: int
    event: Optional[int] = None          # gameweek; null while unscheduled
    team_h: int
    team_a: int
    team_h_score: Optional[int] = None
    team_a_score: Optional[int] = None
    kickoff_time: Optional[datetime] = None
    finished: bool = False
    started: Optional[bool] = False

    @property
    def key(self) -> Optional[FixtureKey]:
        return FixtureKey(self.event, self.id) if self.event is not None else None

    @property
    def status_code(self) -> str:
        if self.finished:
            return "FT"
        if self.started:
            return "LIVE"
        return "NS"


# ---------- oracle ----------
class OutcomeRecord(BaseModel):
    gameweek: int
    match_id: int
    home_score: int
    away_score: int
    status: str
    timestamp: int
    exists: bool = True


class TxReceipt(BaseModel):
    tx_hash: str
    block_number: int
    status: int = 1
    gas_used: Optional[int] = None
    events: List[Dict[str, Any]] = Field(default_factory=list)


class AlreadyExists(BaseModel):
    """Result of an outcome submission that found a record already anchored."""
    existing: OutcomeRecord


# ---------- wagers (two ledgers, one tagged union) ----------
class PoolWagerView(BaseModel):
    ledger: Literal["pool"] = "pool"
    id: int
    user_id: str
    fixture_id: str
    outcome: PoolOutcome
    amount: Decimal
    status: WagerStatus = "pending"
    payout: Decimal = Decimal(0)

    @property
    def pool_outcome(self) -> PoolOutcome:
        return self.outcome


class OnLedgerWager(BaseModel):
    ledger: Literal["chain"] = "chain"
    id: int
    bettor: str
    gameweek: int
    match_id: int
    amount: int                          # wei
    prediction: Prediction
    is_settled: bool = False
    is_winner: bool = False
    timestamp: int = 0

    @property
    def key(self) -> FixtureKey:
        return FixtureKey(self.gameweek, self.match_id)

    @property
    def pool_outcome(self) -> PoolOutcome:
        return self.prediction.pool_outcome


WagerPosition = Annotated[Union[PoolWagerView, OnLedgerWager], Field(discriminator="ledger")]


class WagerGroup(BaseModel):
    """Unsettled on-ledger wagers for one fixture, earliest first."""
    key: FixtureKey
    wagers: List[OnLedgerWager] = Field(default_factory=list)

    @property
    def wager_count(self) -> int:
        return len(self.wagers)

    @property
    def opener(self) -> Optional[OnLedgerWager]:
        return self.wagers[0] if self.wagers else None


# ---------- payout math ----------
class PayoutInfo(BaseModel):
    winning_outcome: PoolOutcome
    total_pool: Decimal
    winning_pool: Decimal
    payout_rate: Decimal
    total_payout: Decimal

    @property
    def multiplier(self) -> Decimal:
        return self.total_payout / self.winning_pool


class PayoutSummary(BaseModel):
    fixture_id: str
    winning_outcome: PoolOutcome
    total_pool: Decimal
    winning_pool: Decimal
    winning_count: int
    losing_count: int
    payout_multiplier: Decimal


# ---------- orchestration ----------
class GroupState(str, Enum):
    DISCOVERED = "discovered"
    OUTCOME_CHECKED = "outcome_checked"
    OUTCOME_MISSING = "outcome_missing"
    FEED_CHECKED = "feed_checked"
    NOT_CONCLUDED = "not_concluded"
    RESULT_SUBMITTED = "result_submitted"
    ALREADY_SETTLED = "already_settled"
    SETTLED = "settled"
    FAILED = "failed"


class SettlementJob(BaseModel):
    gameweek: int
    match_id: int
    wager_count: Optional[int] = None
    state: GroupState = GroupState.DISCOVERED
    success: bool = False
    retryable: bool = False
    message: str = ""
    details: Dict[str, Any] = Field(default_factory=dict)

    @property
    def skipped(self) -> bool:
        return self.state in (GroupState.NOT_CONCLUDED, GroupState.ALREADY_SETTLED)


class RunSummary(BaseModel):
    processed: int = 0
    settled: int = 0
    skipped: int = 0
    errors: int = 0
    reconciled: int = 0
    details: List[Dict[str, Any]] = Field(default_factory=list)
    started_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    finished_at: Optional[datetime] = None

    def record(self, job: SettlementJob) -> None:
        self.processed += 1
        if job.success:
            self.settled += 1
        elif job.skipped:
            self.skipped += 1
        else:
            self.errors += 1
        self.details.append(job.model_dump(mode="json"))

    @classmethod
    def fatal(cls, message: str) -> "RunSummary":
        now = datetime.now(timezone.utc)
        return cls(errors=1, details=[{"error": message}], started_at=now, finished_at=now)
