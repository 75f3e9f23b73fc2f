# baseleague/clients/payout.py
from __future__ import annotations

import logging
from typing import Any, Dict, Iterable, List, Optional

from web3 import Web3
from web3.logs import DISCARD

from ..core.config import Settings
from ..domain.errors import LedgerError, SignerUnavailable
from ..domain.models import FixtureKey, OnLedgerWager, Prediction, TxReceipt, WagerGroup
from .chain import PAYOUT_ABI, AuthoritySigner, map_ledger_error, to_receipt

log = logging.getLogger(__name__)


class PayoutLedgerBridge:
    """
    Wrapper over the payout contract that holds on-ledger wagers.

      - read:  nextBetId(), getBet(id), isMatchSettled(gameweek, matchId)
      - write: settleMatch(gameweek, matchId), refundUnmatchedBet(gameweek, matchId)

    Wager ids are sequential from 0. The bridge keeps a low watermark past the
    leading run of settled wagers so repeated scans skip history.
    """

    def __init__(
        self,
        contract: Any,
        signer: Optional[AuthoritySigner] = None,
        *,
        max_wagers: int = 100,
        settle_gas: int = 500_000,
    ):
        self._contract = contract
        self._signer = signer
        self._max = max_wagers
        self._gas = settle_gas
        self.low_watermark = 0

    @classmethod
    def from_settings(
        cls, w3: Web3, settings: Settings, signer: Optional[AuthoritySigner] = None
    ) -> "PayoutLedgerBridge":
        contract = w3.eth.contract(
            address=Web3.to_checksum_address(settings.payout_contract_address), abi=PAYOUT_ABI
        )
        return cls(
            contract,
            signer,
            max_wagers=settings.max_wagers_per_run,
            settle_gas=settings.settle_gas_limit,
        )

    # ------------ reads ------------
    def next_wager_id(self) -> int:
        try:
            return int(self._contract.functions.nextBetId().call())
        except Exception as e:
            raise map_ledger_error(e, "nextBetId") from e

    def get_wager(self, wager_id: int) -> OnLedgerWager:
        try:
            raw = self._contract.functions.getBet(wager_id).call()
        except Exception as e:
            raise map_ledger_error(e, f"getBet({wager_id})") from e
        bettor, gameweek, match_id, amount, prediction, is_settled, is_winner, ts = raw
        return OnLedgerWager(
            id=wager_id,
            bettor=str(bettor),
            gameweek=int(gameweek),
            match_id=int(match_id),
            amount=int(amount),
            prediction=Prediction(int(prediction)),
            is_settled=bool(is_settled),
            is_winner=bool(is_winner),
            timestamp=int(ts),
        )

    def list_unsettled_wagers(self) -> List[OnLedgerWager]:
        upper = self.next_wager_id()
        out: List[OnLedgerWager] = []
        contiguous = True
        for wager_id in range(self.low_watermark, upper):
            if len(out) >= self._max:
                log.info("wager scan capped at %d (next id %d of %d)", self._max, wager_id, upper)
                break
            try:
                wager = self.get_wager(wager_id)
            except (LedgerError, ValueError) as e:
                log.warning("skip unreadable wager id=%s: %s", wager_id, e)
                contiguous = False
                continue
            if wager.is_settled:
                if contiguous:
                    self.low_watermark = wager_id + 1
                continue
            contiguous = False
            out.append(wager)
        return out

    def is_fixture_settled(self, gameweek: int, match_id: int) -> bool:
        try:
            return bool(self._contract.functions.isMatchSettled(gameweek, match_id).call())
        except Exception as e:
            raise map_ledger_error(e, f"isMatchSettled({gameweek},{match_id})") from e

    # ------------ writes ------------
    def _require_signer(self) -> AuthoritySigner:
        if self._signer is None:
            raise SignerUnavailable("payout bridge has no authority signer")
        return self._signer

    def _settled_events(self, raw: Dict[str, Any]) -> List[Dict[str, Any]]:
        try:
            decoded = self._contract.events.MatchSettled().process_receipt(raw, errors=DISCARD)
        except Exception as e:
            log.debug("MatchSettled decode failed: %s", e)
            return []
        return [{"event": ev["event"], **dict(ev["args"])} for ev in decoded]

    def settle(self, gameweek: int, match_id: int) -> TxReceipt:
        signer = self._require_signer()
        call = self._contract.functions.settleMatch(gameweek, match_id)
        raw = signer.send(call, gas=self._gas, action=f"settleMatch({gameweek},{match_id})")
        receipt = to_receipt(raw, self._settled_events(raw))
        log.info("fixture settled gameweek=%s match=%s tx=%s", gameweek, match_id, receipt.tx_hash)
        return receipt

    def refund_unmatched(self, gameweek: int, match_id: int) -> TxReceipt:
        signer = self._require_signer()
        call = self._contract.functions.refundUnmatchedBet(gameweek, match_id)
        raw = signer.send(call, gas=self._gas, action=f"refundUnmatchedBet({gameweek},{match_id})")
        receipt = to_receipt(raw)
        log.info("unmatched wager refunded gameweek=%s match=%s tx=%s", gameweek, match_id, receipt.tx_hash)
        return receipt


def group_unsettled(wagers: Iterable[OnLedgerWager]) -> Dict[FixtureKey, WagerGroup]:
    groups: Dict[FixtureKey, WagerGroup] = {}
    for w in wagers:
        groups.setdefault(w.key, WagerGroup(key=w.key)).wagers.append(w)
    for g in groups.values():
        g.wagers.sort(key=lambda w: (w.timestamp, w.id))
    return groups
