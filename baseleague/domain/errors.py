from __future__ import annotations

from typing import Optional


# ---------- feed ----------
class FeedUnavailable(RuntimeError):
    """Feed unreachable, returned an error status, or served a malformed payload."""


# ---------- ledgers ----------
class LedgerError(RuntimeError):
    retryable = False

    def __init__(self, message: str, *, reason: Optional[str] = None):
        super().__init__(message)
        self.reason = reason


class LedgerUnavailable(LedgerError):
    """RPC unreachable, timed out, or node lagging."""
    retryable = True


class SignerUnavailable(LedgerError):
    pass


class NotFound(LedgerError):
    pass


class OutcomeNotAvailable(LedgerError):
    retryable = True


class AlreadySettled(LedgerError):
    pass


class AuthorizationRejected(LedgerError):
    """The authority is not allowed to write. Needs an operator; never retried."""


class LedgerRejected(LedgerError):
    pass


# ---------- pool ledger ----------
class PoolLedgerError(RuntimeError):
    pass


class InvalidWager(PoolLedgerError):
    pass


class FixtureNotFound(PoolLedgerError):
    pass


class FixtureClosed(PoolLedgerError):
    pass


class DuplicateWager(PoolLedgerError):
    pass


class AlreadyProcessed(PoolLedgerError):
    pass


class ResultConflict(PoolLedgerError):
    pass
