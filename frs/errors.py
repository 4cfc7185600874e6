# FILE: frs/errors.py
from __future__ import annotations

"""
Error taxonomy shared by the settlement, compute and chain-sync layers.

Callers branch on the class (or on ``retryable``) to tell "retry later"
apart from "fix the request":

  - ValidationError          bad caller input, never retried
  - TransientError           compute provider: network / timeout / 5xx
  - PermanentError           compute provider: 4xx or unusable payload
  - InvalidProofError        compute provider answered, but not VALID
  - CircuitOpenError         local breaker is open, no call was made
  - LedgerError              ledger read/write failure or reverted tx
  - StoreError               persistence failure at the store boundary
  - SyncError                chain event could not be synchronized
"""

from typing import Any, Dict, Optional, Sequence


class FRSError(Exception):
    """Base class for every error raised by this package."""

    retryable: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "error": type(self).__name__,
            "message": str(self),
            "retryable": self.retryable,
        }


class ValidationError(FRSError, ValueError):
    def __init__(self, message: str, fields: Optional[Sequence[str]] = None) -> None:
        super().__init__(message)
        self.fields = tuple(fields or ())

    def to_dict(self) -> Dict[str, Any]:
        out = super().to_dict()
        if self.fields:
            out["fields"] = list(self.fields)
        return out


# ---------- compute provider ----------


class ComputeError(FRSError):
    def __init__(self, message: str, *, status_code: Optional[int] = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class TransientError(ComputeError):
    retryable = True


class PermanentError(ComputeError):
    retryable = False


class InvalidProofError(PermanentError):
    def __init__(self, message: str, *, response: Any = None) -> None:
        super().__init__(message)
        self.response = response


class CircuitOpenError(ComputeError):
    # retry later, but never inside the current request
    retryable = False


# ---------- ledger / store / sync ----------


class LedgerError(FRSError):
    pass


class StoreError(FRSError):
    pass


class SyncError(FRSError):
    pass


class MalformedEventError(SyncError):
    pass


__all__ = [
    "FRSError",
    "ValidationError",
    "ComputeError",
    "TransientError",
    "PermanentError",
    "InvalidProofError",
    "CircuitOpenError",
    "LedgerError",
    "StoreError",
    "SyncError",
    "MalformedEventError",
]
