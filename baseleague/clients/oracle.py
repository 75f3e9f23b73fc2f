# baseleague/clients/oracle.py
from __future__ import annotations

import logging
from typing import Any, Optional, Union

from web3 import Web3

from ..core.config import Settings
from ..domain.errors import LedgerRejected, NotFound, SignerUnavailable
from ..domain.models import AlreadyExists, OutcomeRecord, TxReceipt
from .chain import ORACLE_ABI, AuthoritySigner, map_ledger_error, to_receipt

log = logging.getLogger(__name__)

MAX_STATUS_LEN = 10
MAX_SCORE = 255  # uint8


class OutcomeOracleBridge:
    """
    Wrapper over the write-once outcome oracle contract.

      - read:  hasOutcome(gameweek, matchId) -> bool
               getOutcome(gameweek, matchId) -> (home, away, status, ts, exists)
      - write: setResultManually(gameweek, matchId, home, away, status)

    An outcome is anchored at most once per (gameweek, match id); a second
    submission comes back as AlreadyExists carrying the stored record.
    """

    def __init__(self, contract: Any, signer: Optional[AuthoritySigner] = None, *, gas_limit: int = 300_000):
        self._contract = contract
        self._signer = signer
        self._gas = gas_limit

    @classmethod
    def from_settings(
        cls, w3: Web3, settings: Settings, signer: Optional[AuthoritySigner] = None
    ) -> "OutcomeOracleBridge":
        contract = w3.eth.contract(
            address=Web3.to_checksum_address(settings.oracle_contract_address), abi=ORACLE_ABI
        )
        return cls(contract, signer, gas_limit=settings.submit_gas_limit)

    # ------------ reads ------------
    def has_outcome(self, gameweek: int, match_id: int) -> bool:
        try:
            return bool(self._contract.functions.hasOutcome(gameweek, match_id).call())
        except Exception as e:
            raise map_ledger_error(e, f"hasOutcome({gameweek},{match_id})") from e

    def get_outcome(self, gameweek: int, match_id: int) -> OutcomeRecord:
        try:
            raw = self._contract.functions.getOutcome(gameweek, match_id).call()
        except Exception as e:
            raise map_ledger_error(e, f"getOutcome({gameweek},{match_id})") from e
        home, away, status, ts, exists = raw
        if not exists:
            raise NotFound(f"no outcome for gameweek={gameweek} match={match_id}")
        return OutcomeRecord(
            gameweek=gameweek,
            match_id=match_id,
            home_score=int(home),
            away_score=int(away),
            status=str(status),
            timestamp=int(ts),
            exists=True,
        )

    # ------------ writes ------------
    def submit_outcome(
        self, gameweek: int, match_id: int, home_score: int, away_score: int, status: str
    ) -> Union[TxReceipt, AlreadyExists]:
        if not status or len(status) > MAX_STATUS_LEN:
            raise ValueError(f"status must be 1..{MAX_STATUS_LEN} characters")
        for score in (home_score, away_score):
            if not 0 <= score <= MAX_SCORE:
                raise ValueError(f"score {score} out of range 0..{MAX_SCORE}")
        if self._signer is None:
            raise SignerUnavailable("oracle bridge has no authority signer")

        if self.has_outcome(gameweek, match_id):
            return AlreadyExists(existing=self.get_outcome(gameweek, match_id))

        call = self._contract.functions.setResultManually(gameweek, match_id, home_score, away_score, status)
        try:
            raw = self._signer.send(call, gas=self._gas, action=f"setResultManually({gameweek},{match_id})")
        except LedgerRejected as e:
            # lost a race with another writer
            if e.reason == "OutcomeAlreadyExists" or self.has_outcome(gameweek, match_id):
                return AlreadyExists(existing=self.get_outcome(gameweek, match_id))
            raise
        receipt = to_receipt(raw)
        log.info(
            "outcome anchored gameweek=%s match=%s %s-%s %s tx=%s",
            gameweek, match_id, home_score, away_score, status, receipt.tx_hash,
        )
        return receipt
