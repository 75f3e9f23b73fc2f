# baseleague/core/config.py
from __future__ import annotations

from functools import lru_cache
from typing import Optional

from pydantic_settings import BaseSettings

# ----- Public constants -----
FPL_BASE_URL = "https://fantasy.premierleague.com/api"
DEFAULT_SCHEDULE = "*/5 * * * *"   # every five minutes
TERMINAL_STATUS = "FT"

# ----- App settings (env-driven) -----
class Settings(BaseSettings):
    # settlement authority; absent key disables every ledger write
    authority_private_key: Optional[str] = None
    rpc_url: str = "https://base-sepolia-rpc.publicnode.com"
    rpc_timeout_seconds: float = 30.0
    oracle_contract_address: str = "0x5D8F251D046819757054673CA6bB143f36B389FF"
    payout_contract_address: str = "0x3bf17469296eE3dADE758cD2F82F76f76EF14d40"

    # schedule
    settlement_schedule: str = DEFAULT_SCHEDULE
    run_on_startup: bool = False

    # feed
    feed_base_url: str = FPL_BASE_URL
    feed_timeout_seconds: float = 10.0
    bootstrap_cache_seconds: int = 300

    # settlement tuning
    max_wagers_per_run: int = 100
    conclusion_grace_minutes: int = 120
    receipt_timeout_seconds: float = 120.0
    settle_gas_limit: int = 500_000
    submit_gas_limit: int = 300_000
    low_balance_threshold_eth: float = 0.01

    database_url: str = "sqlite:///./baseleague.db"
    log_level: str = "INFO"

    class Config:
        env_prefix = ""
        env_file = ".env"
        case_sensitive = False

    @property
    def writes_enabled(self) -> bool:
        return bool(self.authority_private_key)


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings()
