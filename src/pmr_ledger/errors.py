"""Exception hierarchy shared by the ledger, cascade, snapshot and restore layers."""

from __future__ import annotations

from decimal import Decimal
from typing import Any, Mapping, Optional, Sequence


class LedgerError(Exception):
    """Base class for every domain error raised by the package."""


class ValidationError(LedgerError):
    """Raised when input to a ledger operation is malformed or out of range."""


class MissingReferenceError(ValidationError):
    """Raised when a referenced row or table is unknown."""


class OversellError(ValidationError):
    """Raised when a sale would take an inventory partition below zero."""

    def __init__(self, message: str, *, current_balance: Decimal, requested: Decimal) -> None:
        super().__init__(message)
        self.current_balance = current_balance
        self.requested = requested

    @property
    def shortfall(self) -> Decimal:
        return self.requested - self.current_balance


class InsufficiencyError(LedgerError):
    """Raised when a cascade action needs more raw resource than is on hand."""

    def __init__(self, message: str, *, current_balance: Decimal, required: Decimal) -> None:
        super().__init__(message)
        self.current_balance = current_balance
        self.required = required


class StoreError(LedgerError):
    """Raised when the row store fails a read or write."""


class BlobStoreError(LedgerError):
    """Raised when a snapshot cannot be uploaded, downloaded or listed."""


class SnapshotFormatError(LedgerError):
    """Raised when snapshot content is unreadable or lacks a mandatory sheet."""


class CascadeLinkAmbiguity(LedgerError):
    """Raised (in strict mode) when a legacy cascade link does not match exactly."""

    def __init__(
        self,
        message: str,
        *,
        primary: Optional[Mapping[str, Any]] = None,
        candidates: Sequence[Mapping[str, Any]] = (),
    ) -> None:
        super().__init__(message)
        self.primary = primary
        self.candidates = list(candidates)


__all__ = [
    "LedgerError",
    "ValidationError",
    "MissingReferenceError",
    "OversellError",
    "InsufficiencyError",
    "StoreError",
    "BlobStoreError",
    "SnapshotFormatError",
    "CascadeLinkAmbiguity",
]
