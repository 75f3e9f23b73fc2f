from __future__ import annotations

from decimal import Decimal
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field


class RunResponse(BaseModel):
    processed: int
    settled: int
    skipped: int = 0
    errors: int
    reconciled: int = 0
    details: List[Dict[str, Any]] = Field(default_factory=list)


class StatusResponse(BaseModel):
    enabled: bool = Field(..., description="Authority key configured; ledger writes possible")
    schedule: str
    run_on_startup: bool
    oracle_contract_address: str
    payout_contract_address: str
    scheduler_running: bool
    busy: bool
    last_run: Optional[RunResponse] = None


class ManualResultRequest(BaseModel):
    gameweek: int = Field(..., ge=1)
    match_id: int = Field(..., ge=1)
    home_score: int = Field(..., ge=0, le=255)
    away_score: int = Field(..., ge=0, le=255)
    status: str = Field("FT", min_length=1, max_length=10)


class IngestResultRequest(BaseModel):
    home_score: int = Field(..., ge=0)
    away_score: int = Field(..., ge=0)


class PoolStatsResponse(BaseModel):
    total_wagers: int
    total_fixtures: int
    total_pool_value: Decimal
    average_wager_amount: Decimal


class PlaceWagerRequest(BaseModel):
    user_id: str = Field(..., min_length=1, max_length=128)
    outcome: str = Field(..., description="win, draw or lose, relative to the home side")
    amount: Decimal
