# baseleague/routers/oracle.py
from __future__ import annotations

from typing import Any, Dict

from fastapi import APIRouter, Depends, HTTPException, Path

from ..deps import get_orchestrator
from ..domain.errors import AuthorizationRejected, LedgerError, NotFound, SignerUnavailable
from ..domain.models import AlreadyExists
from ..schemas.settlement import ManualResultRequest
from ..services.settlement import SettlementOrchestrator

router = APIRouter(prefix="/oracle", tags=["oracle"])


def _oracle(orchestrator: SettlementOrchestrator):
    try:
        return orchestrator.ledgers().oracle
    except LedgerError as e:
        raise HTTPException(status_code=502, detail=f"ledger unavailable: {e}")


@router.post("/results", summary="Anchor a fixture result on the oracle (operator override)")
def submit_result(
    body: ManualResultRequest,
    orchestrator: SettlementOrchestrator = Depends(get_orchestrator),
) -> Dict[str, Any]:
    if not orchestrator.writes_enabled:
        raise HTTPException(status_code=503, detail="authority key not configured")
    oracle = _oracle(orchestrator)
    try:
        result = oracle.submit_outcome(
            body.gameweek, body.match_id, body.home_score, body.away_score, body.status
        )
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except SignerUnavailable as e:
        raise HTTPException(status_code=503, detail=str(e))
    except AuthorizationRejected as e:
        raise HTTPException(status_code=403, detail=str(e))
    except LedgerError as e:
        raise HTTPException(status_code=502, detail=str(e))

    if isinstance(result, AlreadyExists):
        raise HTTPException(
            status_code=409,
            detail={"message": "result already exists", "existing": result.existing.model_dump()},
        )
    return {"success": True, "receipt": result.model_dump()}


@router.get("/results/{gameweek}/{match_id}", summary="Read an anchored result")
def check_result(
    gameweek: int = Path(..., ge=1),
    match_id: int = Path(..., ge=1),
    orchestrator: SettlementOrchestrator = Depends(get_orchestrator),
) -> Dict[str, Any]:
    oracle = _oracle(orchestrator)
    try:
        if not oracle.has_outcome(gameweek, match_id):
            return {"exists": False, "gameweek": gameweek, "match_id": match_id}
        record = oracle.get_outcome(gameweek, match_id)
    except NotFound:
        return {"exists": False, "gameweek": gameweek, "match_id": match_id}
    except LedgerError as e:
        raise HTTPException(status_code=502, detail=str(e))
    return record.model_dump()
