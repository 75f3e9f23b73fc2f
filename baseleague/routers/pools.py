# baseleague/routers/pools.py
from __future__ import annotations

from typing import Any, Dict

from fastapi import APIRouter, Depends, HTTPException

from ..clients.fpl import FixtureFeedClient
from ..deps import get_feed, get_pool_ledger
from ..domain.errors import (
    AlreadyProcessed,
    DuplicateWager,
    FeedUnavailable,
    FixtureClosed,
    FixtureNotFound,
    InvalidWager,
    ResultConflict,
)
from ..schemas.settlement import IngestResultRequest, PlaceWagerRequest, PoolStatsResponse
from ..services.pool_ledger import PoolLedger

router = APIRouter(prefix="/pools", tags=["pools"])


@router.post("/sync", summary="Create or refresh fixtures from the feed")
def sync_fixtures(
    ledger: PoolLedger = Depends(get_pool_ledger),
    feed: FixtureFeedClient = Depends(get_feed),
) -> Dict[str, int]:
    feed.clear_cache()
    try:
        records = feed.fetch_all_fixtures()
        teams = feed.fetch_teams()
        period = feed.fetch_current_period()
    except FeedUnavailable as e:
        raise HTTPException(status_code=502, detail=f"feed unavailable: {e}")
    return ledger.sync_fixtures(records, teams, period)


@router.post("/{fixture_id}/result", summary="Record a result and apply pool payouts")
def record_result(
    fixture_id: str,
    body: IngestResultRequest,
    ledger: PoolLedger = Depends(get_pool_ledger),
) -> Dict[str, Any]:
    try:
        fixture = ledger.ingest_result(fixture_id, body.home_score, body.away_score)
    except FixtureNotFound as e:
        raise HTTPException(status_code=404, detail=str(e))
    except ResultConflict as e:
        raise HTTPException(status_code=409, detail=str(e))
    except AlreadyProcessed:
        fixture = ledger.get_fixture(fixture_id)
    summary = ledger.apply_payout(fixture_id)
    return {
        "fixture": fixture,
        "payout": summary.model_dump(mode="json") if summary is not None else None,
    }


@router.post("/{fixture_id}/wagers", summary="Place a wager on a fixture pool")
def place_wager(
    fixture_id: str,
    body: PlaceWagerRequest,
    ledger: PoolLedger = Depends(get_pool_ledger),
) -> Dict[str, Any]:
    try:
        view = ledger.place_wager(body.user_id, fixture_id, body.outcome, body.amount)
    except FixtureNotFound as e:
        raise HTTPException(status_code=404, detail=str(e))
    except (FixtureClosed, DuplicateWager) as e:
        raise HTTPException(status_code=409, detail=str(e))
    except InvalidWager as e:
        raise HTTPException(status_code=400, detail=str(e))
    return {"wager": view.model_dump(mode="json"), "fixture": ledger.get_fixture(fixture_id)}


@router.get("/users/{user_id}/wagers", summary="Wagers held by one user, newest first")
def user_wagers(user_id: str, ledger: PoolLedger = Depends(get_pool_ledger)) -> Dict[str, Any]:
    wagers = ledger.user_wagers(user_id)
    return {"user_id": user_id, "count": len(wagers), "wagers": [w.model_dump(mode="json") for w in wagers]}


@router.get("/stats", response_model=PoolStatsResponse, summary="Pool ledger totals")
def pool_stats(ledger: PoolLedger = Depends(get_pool_ledger)):
    return ledger.stats()
