# baseleague/main.py
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI

from .clients.fpl import FixtureFeedClient
from .core.config import Settings, get_settings
from .core.logging import configure_logging
from .db.session import build_engine, build_session_factory, create_schema
from .routers import health, oracle, pools, settlement
from .services.pool_ledger import PoolLedger
from .services.scheduler import SettlementScheduler
from .services.settlement import SettlementOrchestrator


def create_app(settings: Optional[Settings] = None, *, start_scheduler: bool = True) -> FastAPI:
    settings = settings or get_settings()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        configure_logging(settings.log_level)
        engine = build_engine(settings.database_url)
        create_schema(engine)
        pool_ledger = PoolLedger(build_session_factory(engine))
        feed = FixtureFeedClient(
            settings.feed_base_url,
            settings.feed_timeout_seconds,
            cache_ttl=settings.bootstrap_cache_seconds,
        )
        orchestrator = SettlementOrchestrator(settings, feed, pool_ledger=pool_ledger)
        scheduler = SettlementScheduler(
            orchestrator, settings.settlement_schedule, run_on_startup=settings.run_on_startup
        )

        app.state.settings = settings
        app.state.pool_ledger = pool_ledger
        app.state.feed = feed
        app.state.orchestrator = orchestrator
        app.state.scheduler = scheduler
        if start_scheduler:
            scheduler.start()
        try:
            yield
        finally:
            scheduler.shutdown()
            feed.close()
            engine.dispose()

    app = FastAPI(title="BaseLeague Settlement API", version="0.1.0", lifespan=lifespan)

    # Routers
    app.include_router(health.router)
    app.include_router(settlement.router)
    app.include_router(oracle.router)
    app.include_router(pools.router)

    @app.get("/")
    def root():
        return {"service": "baseleague-settlement"}

    return app


app = create_app()
