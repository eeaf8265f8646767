# errors.py
"""
TikShot — error taxonomy shared by the crank, the gateways and the read API.
"""

from __future__ import annotations
from typing import Optional, Sequence


class CrankError(Exception):
    """Base class for every failure the crank knows how to classify."""


class OracleUnavailable(CrankError):
    """Price feed fetch failed or returned no update. Recoverable."""


class SubmissionFailed(CrankError):
    """A transaction was rejected, errored on-chain, or never confirmed. Recoverable."""

    def __init__(self, message: str, signature: Optional[str] = None, logs: Optional[Sequence[str]] = None):
        super().__init__(message)
        self.signature = signature
        self.logs = list(logs or [])


class AccountNotFound(CrankError):
    """Game / Round / Player account does not exist (yet)."""

    def __init__(self, kind: str, address: str):
        super().__init__(f"{kind} account not found: {address}")
        self.kind = kind
        self.address = address


class CleanupFailed(CrankError):
    """Closing a price update account failed; only the rent deposit is lost."""


class InvalidTransition(CrankError):
    """Round phase advanced to a state that is not its successor."""


class RoundNotSettled(ValueError):
    """Payouts are undefined until a round has a result."""
