# baseleague/routers/settlement.py
from __future__ import annotations

from fastapi import APIRouter, Depends

from ..core.config import Settings
from ..deps import get_orchestrator, get_scheduler, get_settings_dep
from ..schemas.settlement import RunResponse, StatusResponse
from ..services.scheduler import SettlementScheduler
from ..services.settlement import SettlementOrchestrator

router = APIRouter(prefix="/settlement", tags=["settlement"])

_RUN_FIELDS = {"processed", "settled", "skipped", "errors", "reconciled", "details"}


@router.post(
    "/run",
    response_model=RunResponse,
    summary="Run one settlement pass now",
    description=(
        "Synchronous pass over every fixture with unsettled wagers. Safe to call "
        "while the scheduler is running: each step is idempotent."
    ),
)
def run_settlement(orchestrator: SettlementOrchestrator = Depends(get_orchestrator)):
    summary = orchestrator.run_once()
    return RunResponse(**summary.model_dump(include=_RUN_FIELDS))


@router.get("/status", response_model=StatusResponse, summary="Settlement configuration and scheduler state")
def settlement_status(
    settings: Settings = Depends(get_settings_dep),
    orchestrator: SettlementOrchestrator = Depends(get_orchestrator),
    scheduler: SettlementScheduler = Depends(get_scheduler),
):
    last = orchestrator.last_run
    return StatusResponse(
        enabled=settings.writes_enabled,
        schedule=scheduler.schedule,
        run_on_startup=scheduler.run_on_startup,
        oracle_contract_address=settings.oracle_contract_address,
        payout_contract_address=settings.payout_contract_address,
        scheduler_running=scheduler.running,
        busy=scheduler.busy,
        last_run=(
            RunResponse(**last.model_dump(include=_RUN_FIELDS))
            if last is not None
            else None
        ),
    )
