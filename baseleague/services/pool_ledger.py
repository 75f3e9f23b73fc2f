"""
Off-ledger pool ledger.

Mirrors fixtures and user wagers in the database and applies pari-mutuel
payouts. Result ingestion and payout application are separate steps so each
can be retried on its own without paying anyone twice.
"""
from __future__ import annotations

import logging
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, Iterable, List, Mapping, Optional, Tuple

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, sessionmaker

from ..db.schema import Fixture, Wager
from ..domain.errors import (
    AlreadyProcessed,
    DuplicateWager,
    FixtureClosed,
    FixtureNotFound,
    InvalidWager,
    ResultConflict,
)
from ..domain.models import POOL_OUTCOMES, FixtureRecord, PayoutSummary, PoolWagerView, Team
from .payout import compute_payout, payout_for, winning_outcome

log = logging.getLogger(__name__)

CLOSED_STATUSES = ("finished", "cancelled")


def _feed_status(rec: FixtureRecord) -> str:
    if rec.finished:
        return "finished"
    if rec.started:
        return "live"
    return "pending"


def _to_view(w: Wager, external_id: str) -> PoolWagerView:
    return PoolWagerView(
        id=w.id,
        user_id=w.user_id,
        fixture_id=external_id,
        outcome=w.outcome,
        amount=Decimal(w.amount),
        status=w.status,
        payout=Decimal(w.payout or 0),
    )


class PoolLedger:
    def __init__(self, session_factory: sessionmaker[Session]):
        self._sessions = session_factory

    # ------------ helpers ------------
    @staticmethod
    def _fixture(session: Session, fixture_id: str, *, lock: bool = False) -> Fixture:
        stmt = select(Fixture).where(Fixture.external_id == str(fixture_id))
        if lock:
            stmt = stmt.with_for_update()
        fx = session.scalars(stmt).first()
        if fx is None:
            raise FixtureNotFound(f"fixture {fixture_id} not found")
        return fx

    @staticmethod
    def _summary(session: Session, fx: Fixture) -> PayoutSummary:
        counts = dict(
            session.execute(
                select(Wager.status, func.count(Wager.id))
                .where(Wager.fixture_id == fx.id, Wager.status.in_(("won", "lost")))
                .group_by(Wager.status)
            ).all()
        )
        return PayoutSummary(
            fixture_id=fx.external_id,
            winning_outcome=fx.winning_outcome,
            total_pool=fx.total_pool,
            winning_pool=Decimal(fx.pools[fx.winning_outcome]["total"]),
            winning_count=counts.get("won", 0),
            losing_count=counts.get("lost", 0),
            payout_multiplier=Decimal(fx.payout_multiplier or 0),
        )

    # ------------ placement ------------
    def place_wager(self, user_id: str, fixture_id: str, outcome: str, amount: Any) -> PoolWagerView:
        if not user_id:
            raise InvalidWager("user id is required")
        if outcome not in POOL_OUTCOMES:
            raise InvalidWager("outcome must be win, draw, or lose")
        try:
            stake = Decimal(str(amount))
        except (InvalidOperation, ValueError) as e:
            raise InvalidWager(f"invalid amount {amount!r}") from e
        if not stake.is_finite() or stake <= 0:
            raise InvalidWager("amount must be greater than 0")

        with self._sessions() as session:
            fx = self._fixture(session, fixture_id, lock=True)
            if fx.status in CLOSED_STATUSES:
                raise FixtureClosed(f"fixture {fixture_id} is {fx.status}")
            existing = session.scalars(
                select(Wager.id).where(Wager.user_id == user_id, Wager.fixture_id == fx.id)
            ).first()
            if existing is not None:
                raise DuplicateWager(f"user {user_id} already holds a wager on fixture {fixture_id}")

            wager = Wager(user_id=user_id, fixture_id=fx.id, outcome=outcome, amount=stake)
            session.add(wager)
            fx.add_to_pool(outcome, stake)
            try:
                session.commit()
            except IntegrityError as e:
                session.rollback()
                raise DuplicateWager(f"user {user_id} already holds a wager on fixture {fixture_id}") from e
            log.info("wager placed user=%s fixture=%s outcome=%s amount=%s", user_id, fixture_id, outcome, stake)
            return _to_view(wager, fx.external_id)

    # ------------ result ingestion ------------
    def ingest_result(self, fixture_id: str, home_score: int, away_score: int) -> Dict[str, Any]:
        if home_score < 0 or away_score < 0:
            raise InvalidWager("scores must be non-negative")
        with self._sessions() as session:
            fx = self._fixture(session, fixture_id, lock=True)
            if fx.is_payout_processed:
                raise AlreadyProcessed(f"payout already processed for fixture {fixture_id}")
            outcome = winning_outcome(home_score, away_score)
            if fx.winning_outcome is not None and fx.winning_outcome != outcome:
                raise ResultConflict(
                    f"fixture {fixture_id} already resolved as {fx.winning_outcome}, got {outcome}"
                )
            fx.home_score = home_score
            fx.away_score = away_score
            fx.status = "finished"
            fx.winning_outcome = outcome
            session.commit()
            log.info("result ingested fixture=%s %s-%s -> %s", fixture_id, home_score, away_score, outcome)
            return fx.as_dict()

    # ------------ payout application ------------
    def apply_payout(self, fixture_id: str) -> Optional[PayoutSummary]:
        with self._sessions() as session:
            fx = self._fixture(session, fixture_id, lock=True)
            if fx.is_payout_processed:
                return self._summary(session, fx)
            if fx.winning_outcome is None:
                log.info("no result ingested for fixture=%s; payout deferred", fixture_id)
                return None

            info = compute_payout(fx)
            if info is None:
                log.warning("winning pool empty for fixture=%s; payout not applied", fixture_id)
                return None

            pending = session.scalars(
                select(Wager).where(Wager.fixture_id == fx.id, Wager.status == "pending")
            ).all()
            for w in pending:
                if w.outcome == info.winning_outcome:
                    w.status = "won"
                    w.payout = payout_for(w.amount, info)
                else:
                    w.status = "lost"
                    w.payout = Decimal(0)

            fx.payout_multiplier = info.multiplier
            fx.is_payout_processed = True
            session.commit()
            summary = self._summary(session, fx)
            log.info(
                "payout applied fixture=%s outcome=%s winners=%d losers=%d multiplier=%s",
                fixture_id, summary.winning_outcome, summary.winning_count,
                summary.losing_count, summary.payout_multiplier,
            )
            return summary

    def record_result(self, fixture_id: str, home_score: int, away_score: int) -> Optional[PayoutSummary]:
        """Ingest then apply, tolerating fixtures this ledger does not track."""
        try:
            self.ingest_result(fixture_id, home_score, away_score)
        except FixtureNotFound:
            log.debug("fixture %s not tracked by pool ledger", fixture_id)
            return None
        except AlreadyProcessed:
            pass
        return self.apply_payout(fixture_id)

    # ------------ feed sync ------------
    def sync_fixtures(
        self,
        records: Iterable[FixtureRecord],
        teams: Mapping[int, Team],
        current_period: int,
    ) -> Dict[str, int]:
        created = updated = skipped = 0
        now = datetime.now(timezone.utc)
        with self._sessions() as session:
            for rec in records:
                ext = str(rec.id)
                fx = session.scalars(select(Fixture).where(Fixture.external_id == ext)).first()
                home = teams.get(rec.team_h)
                away = teams.get(rec.team_a)
                fields = {
                    "home_team": home.name if home else f"Team {rec.team_h}",
                    "away_team": away.name if away else f"Team {rec.team_a}",
                    "home_team_id": str(rec.team_h),
                    "away_team_id": str(rec.team_a),
                    "kickoff_time": rec.kickoff_time or now,
                    "gameweek": rec.event or current_period,
                }
                if fx is None:
                    session.add(Fixture(external_id=ext, status=_feed_status(rec), **fields))
                    created += 1
                    continue
                if fx.status in CLOSED_STATUSES:
                    # results flow in through ingest_result only
                    skipped += 1
                    continue
                for k, v in fields.items():
                    setattr(fx, k, v)
                fx.status = _feed_status(rec)
                updated += 1
            session.commit()
        log.info("fixtures synced: %d new, %d updated, %d closed", created, updated, skipped)
        return {"created": created, "updated": updated, "skipped": skipped}

    # ------------ reads ------------
    def get_fixture(self, fixture_id: str) -> Dict[str, Any]:
        with self._sessions() as session:
            return self._fixture(session, fixture_id).as_dict()

    def unpaid_fixtures(self, limit: int = 50) -> List[Tuple[str, int]]:
        """(external_id, gameweek) of fixtures still holding pending wagers, oldest kickoff first."""
        with self._sessions() as session:
            rows = session.execute(
                select(Fixture.external_id, Fixture.gameweek)
                .where(
                    Fixture.is_payout_processed.is_(False),
                    Fixture.status != "cancelled",
                    Fixture.gameweek.is_not(None),
                    select(Wager.id)
                    .where(Wager.fixture_id == Fixture.id, Wager.status == "pending")
                    .exists(),
                )
                .order_by(Fixture.kickoff_time, Fixture.id)
                .limit(limit)
            ).all()
        return [(ext, gw) for ext, gw in rows]

    def user_wagers(self, user_id: str) -> List[PoolWagerView]:
        with self._sessions() as session:
            rows = session.execute(
                select(Wager, Fixture.external_id)
                .join(Fixture, Wager.fixture_id == Fixture.id)
                .where(Wager.user_id == user_id)
                .order_by(Wager.created_at.desc(), Wager.id.desc())
            ).all()
            return [_to_view(w, ext) for w, ext in rows]

    def stats(self) -> Dict[str, Any]:
        with self._sessions() as session:
            total_wagers = session.scalar(select(func.count(Wager.id))) or 0
            total_fixtures = session.scalar(select(func.count(Fixture.id))) or 0
            pool_value = session.scalar(
                select(func.coalesce(func.sum(Fixture.win_total + Fixture.draw_total + Fixture.lose_total), 0))
            )
        pool_value = Decimal(str(pool_value or 0))
        return {
            "total_wagers": total_wagers,
            "total_fixtures": total_fixtures,
            "total_pool_value": pool_value,
            "average_wager_amount": (pool_value / total_wagers) if total_wagers else Decimal(0),
        }
