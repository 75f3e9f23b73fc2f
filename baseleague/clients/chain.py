# baseleague/clients/chain.py
from __future__ import annotations

import logging
import threading
from typing import Any, Dict, Optional

from eth_account import Account
from eth_account.signers.local import LocalAccount
from web3 import Web3
from web3.exceptions import ContractLogicError, TimeExhausted, Web3Exception

from ..core.config import Settings
from ..domain.errors import (
    AlreadySettled,
    AuthorizationRejected,
    LedgerError,
    LedgerRejected,
    LedgerUnavailable,
    OutcomeNotAvailable,
    SignerUnavailable,
)
from ..domain.models import TxReceipt

log = logging.getLogger(__name__)


def _fn(name: str, inputs: list, outputs: list | None = None, mutability: str = "view") -> Dict[str, Any]:
    return {
        "type": "function",
        "name": name,
        "inputs": inputs,
        "outputs": outputs or [],
        "stateMutability": mutability,
    }


def _arg(name: str, typ: str, components: list | None = None) -> Dict[str, Any]:
    out: Dict[str, Any] = {"name": name, "type": typ}
    if components:
        out["components"] = components
    return out


_KEY = [_arg("gameweek", "uint256"), _arg("matchId", "uint256")]

ORACLE_ABI = [
    _fn("hasOutcome", _KEY, [_arg("", "bool")]),
    _fn(
        "getOutcome",
        _KEY,
        [
            _arg(
                "",
                "tuple",
                [
                    _arg("homeScore", "uint8"),
                    _arg("awayScore", "uint8"),
                    _arg("status", "string"),
                    _arg("timestamp", "uint256"),
                    _arg("exists", "bool"),
                ],
            )
        ],
    ),
    _fn(
        "setResultManually",
        _KEY + [_arg("homeScore", "uint8"), _arg("awayScore", "uint8"), _arg("status", "string")],
        mutability="nonpayable",
    ),
]

PAYOUT_ABI = [
    _fn("nextBetId", [], [_arg("", "uint256")]),
    _fn(
        "getBet",
        [_arg("betId", "uint256")],
        [
            _arg(
                "",
                "tuple",
                [
                    _arg("bettor", "address"),
                    _arg("gameweek", "uint256"),
                    _arg("matchId", "uint256"),
                    _arg("amount", "uint256"),
                    _arg("prediction", "uint8"),
                    _arg("isSettled", "bool"),
                    _arg("isWinner", "bool"),
                    _arg("timestamp", "uint256"),
                ],
            )
        ],
    ),
    _fn("isMatchSettled", _KEY, [_arg("", "bool")]),
    _fn("settleMatch", _KEY, mutability="nonpayable"),
    _fn("refundUnmatchedBet", _KEY, mutability="nonpayable"),
    {
        "type": "event",
        "name": "MatchSettled",
        "anonymous": False,
        "inputs": [
            {"name": "gameweek", "type": "uint256", "indexed": True},
            {"name": "matchId", "type": "uint256", "indexed": True},
            {"name": "outcome", "type": "uint8", "indexed": False},
            {"name": "totalPayout", "type": "uint256", "indexed": False},
        ],
    },
]

# ------------ revert reasons ------------
# Custom errors are reported by selector; plain reverts by message.
KNOWN_REVERTS = (
    "MatchNotFulfilled",
    "MatchAlreadySettled",
    "OutcomeAlreadyExists",
    "UnauthorizedCaller",
    "OwnableUnauthorizedAccount",
    "InvalidGameweek",
    "InvalidMatchId",
    "InvalidConfiguration",
)
_SELECTOR_ARGS = {"OwnableUnauthorizedAccount": "address"}


def _selector(name: str) -> str:
    sig = f"{name}({_SELECTOR_ARGS.get(name, '')})"
    return Web3.keccak(text=sig)[:4].hex().removeprefix("0x").lower()


_SELECTORS = {_selector(n): n for n in KNOWN_REVERTS}

_TYPED = {
    "MatchNotFulfilled": OutcomeNotAvailable,
    "MatchAlreadySettled": AlreadySettled,
    "UnauthorizedCaller": AuthorizationRejected,
    "OwnableUnauthorizedAccount": AuthorizationRejected,
}


def revert_reason(exc: BaseException) -> Optional[str]:
    """Symbolic name of a contract revert, if recognisable."""
    data = getattr(exc, "data", None)
    if isinstance(data, (bytes, bytearray)):
        data = data.hex()
    if isinstance(data, str):
        head = data.lower().removeprefix("0x")[:8]
        if head in _SELECTORS:
            return _SELECTORS[head]
    text = " ".join(str(p) for p in (getattr(exc, "message", None), exc) if p)
    for name in KNOWN_REVERTS:
        if name in text:
            return name
    if "already exists" in text.lower():
        return "OutcomeAlreadyExists"
    if "caller is not the owner" in text.lower() or "unauthorized" in text.lower():
        return "UnauthorizedCaller"
    return None


def map_ledger_error(exc: BaseException, action: str) -> LedgerError:
    """Translate a web3/RPC failure into the ledger error taxonomy."""
    if isinstance(exc, LedgerError):
        return exc
    if isinstance(exc, ContractLogicError):
        reason = revert_reason(exc)
        cls = _TYPED.get(reason or "", LedgerRejected)
        return cls(f"{action} reverted: {reason or exc}", reason=reason)
    if isinstance(exc, TimeExhausted):
        return LedgerUnavailable(f"{action} not confirmed in time", reason="timeout")
    if isinstance(exc, (Web3Exception, OSError, TimeoutError)):
        return LedgerUnavailable(f"{action} failed: {exc}")
    return LedgerRejected(f"{action} failed: {exc}")


# ------------ connection + signing ------------
def connect(settings: Settings) -> Web3:
    w3 = Web3(Web3.HTTPProvider(settings.rpc_url, request_kwargs={"timeout": settings.rpc_timeout_seconds}))
    try:
        connected = w3.is_connected()
    except (Web3Exception, OSError) as e:
        raise LedgerUnavailable(f"cannot reach RPC {settings.rpc_url}: {e}") from e
    if not connected:
        raise LedgerUnavailable(f"cannot reach RPC {settings.rpc_url}")
    return w3


class AuthoritySigner:
    """
    Holds the settlement authority key and sends its transactions.

    Sends are serialised so two writes from this process never race for the
    same nonce; the pending nonce is re-read for every transaction.
    """

    def __init__(self, w3: Web3, account: LocalAccount, *, receipt_timeout: float = 120.0):
        self._w3 = w3
        self._account = account
        self._receipt_timeout = receipt_timeout
        self._lock = threading.Lock()

    @classmethod
    def from_key(cls, w3: Web3, private_key: str, *, receipt_timeout: float = 120.0) -> "AuthoritySigner":
        try:
            account = Account.from_key(private_key)
        except (ValueError, TypeError) as e:
            raise SignerUnavailable("authority private key is invalid") from e
        return cls(w3, account, receipt_timeout=receipt_timeout)

    @property
    def address(self) -> str:
        return self._account.address

    def balance_eth(self) -> float:
        try:
            wei = self._w3.eth.get_balance(self.address)
        except Exception as e:
            raise map_ledger_error(e, "getBalance") from e
        return float(Web3.from_wei(wei, "ether"))

    def send(self, call: Any, *, gas: int, action: str) -> Dict[str, Any]:
        """Simulate, sign, send and wait for `call` (a bound contract function)."""
        with self._lock:
            try:
                # dry run first so revert reasons surface before gas is spent
                call.call({"from": self.address})
                tx = call.build_transaction(
                    {
                        "from": self.address,
                        "nonce": self._w3.eth.get_transaction_count(self.address, "pending"),
                        "gas": gas,
                    }
                )
                signed = self._account.sign_transaction(tx)
                tx_hash = self._w3.eth.send_raw_transaction(signed.raw_transaction)
                log.info("%s sent tx=%s", action, tx_hash.hex())
                receipt = self._w3.eth.wait_for_transaction_receipt(tx_hash, timeout=self._receipt_timeout)
            except Exception as e:
                raise map_ledger_error(e, action) from e
        if receipt.get("status", 1) != 1:
            raise LedgerRejected(f"{action} reverted on-chain in block {receipt.get('blockNumber')}")
        return receipt


def to_receipt(raw: Dict[str, Any], events: Optional[list] = None) -> TxReceipt:
    tx_hash = raw.get("transactionHash")
    if isinstance(tx_hash, (bytes, bytearray)):
        tx_hash = "0x" + bytes(tx_hash).hex().removeprefix("0x")
    return TxReceipt(
        tx_hash=str(tx_hash),
        block_number=int(raw.get("blockNumber") or 0),
        status=int(raw.get("status", 1)),
        gas_used=raw.get("gasUsed"),
        events=events or [],
    )
