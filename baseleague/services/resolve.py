from __future__ import annotations
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Optional

from ..core.config import TERMINAL_STATUS
from ..domain.models import FixtureRecord

DEFAULT_GRACE = timedelta(hours=2)   # typical match duration


@dataclass(frozen=True)
class Conclusion:
    concluded: bool
    home_score: int
    away_score: int
    status: str
    heuristic: bool = False          # concluded only because kickoff is old

    @property
    def final(self) -> bool:
        return self.concluded and self.status == TERMINAL_STATUS


def kickoff_elapsed(record: FixtureRecord, now: datetime, grace: timedelta) -> bool:
    ko = record.kickoff_time
    if ko is None:
        return False
    if ko.tzinfo is None:
        ko = ko.replace(tzinfo=timezone.utc)
    return (now - ko) > grace


def conclude(
    record: FixtureRecord,
    *,
    now: Optional[datetime] = None,
    grace: timedelta = DEFAULT_GRACE,
) -> Conclusion:
    """
    Decide whether the feed says a fixture is over, and with what score.

    Concluded when the feed flags it finished, or when kickoff is older than
    the grace window (stale feed). Null scores read as 0, so the fallback
    can report a postponed match as a 0-0; callers get `heuristic=True`
    for that case. The status code stays the feed's, so only a finished
    flag yields the terminal "FT".
    """
    now = now or datetime.now(timezone.utc)
    by_clock = kickoff_elapsed(record, now, grace)
    return Conclusion(
        concluded=bool(record.finished or by_clock),
        home_score=record.team_h_score if record.team_h_score is not None else 0,
        away_score=record.team_a_score if record.team_a_score is not None else 0,
        status=record.status_code,
        heuristic=bool(by_clock and not record.finished),
    )
