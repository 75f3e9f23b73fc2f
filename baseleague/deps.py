# baseleague/deps.py
from fastapi import HTTPException, Request

from baseleague.clients.fpl import FixtureFeedClient
from baseleague.core.config import Settings
from baseleague.services.pool_ledger import PoolLedger
from baseleague.services.scheduler import SettlementScheduler
from baseleague.services.settlement import SettlementOrchestrator


def _state(request: Request, name: str):
    value = getattr(request.app.state, name, None)
    if value is None:
        raise HTTPException(status_code=503, detail=f"{name} not initialised")
    return value


def get_settings_dep(request: Request) -> Settings:
    return _state(request, "settings")


def get_orchestrator(request: Request) -> SettlementOrchestrator:
    return _state(request, "orchestrator")


def get_scheduler(request: Request) -> SettlementScheduler:
    return _state(request, "scheduler")


def get_pool_ledger(request: Request) -> PoolLedger:
    return _state(request, "pool_ledger")


def get_feed(request: Request) -> FixtureFeedClient:
    return _state(request, "feed")
