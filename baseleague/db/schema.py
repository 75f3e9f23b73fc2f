"""Pool ledger tables: fixtures with pari-mutuel pools, and off-ledger wagers."""

from __future__ import annotations

from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Dict, List, Optional

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    DateTime,
    Enum as SAEnum,
    ForeignKey,
    Integer,
    MetaData,
    Numeric,
    String,
    UniqueConstraint,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship

# Shared metadata constant so every table gets stable constraint names
naming_convention = {
    "ix": "ix_%(column_0_label)s",
    "uq": "uq_%(table_name)s_%(column_0_name)s",
    "ck": "ck_%(table_name)s_%(constraint_name)s",
    "fk": "fk_%(table_name)s_%(column_0_name)s_%(referred_table_name)s",
    "pk": "pk_%(table_name)s",
}
metadata = MetaData(naming_convention=naming_convention)

Amount = Numeric(36, 18)


class Base(DeclarativeBase):
    metadata = metadata


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


fixture_status_enum = SAEnum("pending", "live", "finished", "cancelled", name="fixture_status", metadata=metadata)
pool_outcome_enum = SAEnum("win", "draw", "lose", name="pool_outcome", metadata=metadata)
wager_status_enum = SAEnum("pending", "won", "lost", "cancelled", name="wager_status", metadata=metadata)


class Fixture(Base):
    __tablename__ = "fixture"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    external_id: Mapped[str] = mapped_column(
        String, unique=True, index=True, nullable=False,
        comment="Feed fixture id (also the on-ledger match id)",
    )
    home_team: Mapped[str] = mapped_column(String, nullable=False)
    away_team: Mapped[str] = mapped_column(String, nullable=False)
    home_team_id: Mapped[str] = mapped_column(String, nullable=False)
    away_team_id: Mapped[str] = mapped_column(String, nullable=False)
    kickoff_time: Mapped[datetime] = mapped_column(DateTime(timezone=True), index=True, nullable=False)
    status: Mapped[str] = mapped_column(fixture_status_enum, default="pending", index=True, nullable=False)
    home_score: Mapped[Optional[int]] = mapped_column(Integer)
    away_score: Mapped[Optional[int]] = mapped_column(Integer)
    gameweek: Mapped[Optional[int]] = mapped_column(Integer, index=True)

    win_total: Mapped[Decimal] = mapped_column(Amount, default=Decimal(0), nullable=False)
    win_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    draw_total: Mapped[Decimal] = mapped_column(Amount, default=Decimal(0), nullable=False)
    draw_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    lose_total: Mapped[Decimal] = mapped_column(Amount, default=Decimal(0), nullable=False)
    lose_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)

    winning_outcome: Mapped[Optional[str]] = mapped_column(pool_outcome_enum)
    is_payout_processed: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    payout_multiplier: Mapped[Optional[Decimal]] = mapped_column(Amount)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, onupdate=_utcnow, nullable=False
    )

    wagers: Mapped[List["Wager"]] = relationship(back_populates="fixture")

    __table_args__ = (
        CheckConstraint(
            "NOT is_payout_processed OR (winning_outcome IS NOT NULL AND status = 'finished')",
            name="processed_requires_result",
        ),
    )

    @property
    def pools(self) -> Dict[str, Dict[str, Any]]:
        return {
            "win": {"total": self.win_total, "bet_count": self.win_count},
            "draw": {"total": self.draw_total, "bet_count": self.draw_count},
            "lose": {"total": self.lose_total, "bet_count": self.lose_count},
        }

    @property
    def total_pool(self) -> Decimal:
        return Decimal(self.win_total) + Decimal(self.draw_total) + Decimal(self.lose_total)

    def add_to_pool(self, outcome: str, amount: Decimal) -> None:
        setattr(self, f"{outcome}_total", Decimal(getattr(self, f"{outcome}_total") or 0) + amount)
        setattr(self, f"{outcome}_count", (getattr(self, f"{outcome}_count") or 0) + 1)

    def as_dict(self) -> Dict[str, Any]:
        return {
            "external_id": self.external_id,
            "home_team": self.home_team,
            "away_team": self.away_team,
            "kickoff_time": self.kickoff_time.isoformat() if self.kickoff_time else None,
            "status": self.status,
            "home_score": self.home_score,
            "away_score": self.away_score,
            "gameweek": self.gameweek,
            "pools": {k: {"total": str(v["total"]), "bet_count": v["bet_count"]} for k, v in self.pools.items()},
            "total_pool": str(self.total_pool),
            "winning_outcome": self.winning_outcome,
            "is_payout_processed": self.is_payout_processed,
        }


class Wager(Base):
    __tablename__ = "wager"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[str] = mapped_column(String, index=True, nullable=False)
    fixture_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("fixture.id", ondelete="RESTRICT"), index=True, nullable=False
    )
    outcome: Mapped[str] = mapped_column(pool_outcome_enum, nullable=False)
    amount: Mapped[Decimal] = mapped_column(Amount, nullable=False)
    status: Mapped[str] = mapped_column(wager_status_enum, default="pending", index=True, nullable=False)
    payout: Mapped[Decimal] = mapped_column(Amount, default=Decimal(0), nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow, nullable=False)

    fixture: Mapped[Fixture] = relationship(back_populates="wagers")

    # one position per user per fixture (hedging prevention)
    __table_args__ = (
        UniqueConstraint("user_id", "fixture_id", name="uq_wager_user_fixture"),
        CheckConstraint("amount > 0", name="positive_amount"),
    )


__all__ = ["Base", "metadata", "Fixture", "Wager"]
