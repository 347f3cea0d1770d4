"""Error taxonomy for the modifier engine and job scheduler."""
from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime


class EmpireError(Exception):
    """Base class for all errors raised by :mod:`empire_core`."""


class ConfigurationError(EmpireError):
    """Raised for malformed modifier definitions or unknown stacking rules.

    These are fatal: the aggregator never falls back to an identity
    multiplier when it meets one, since a silent ``1.0`` would produce wrong
    balance outcomes.
    """


class TransientStoreError(EmpireError):
    """Raised when the backing store is temporarily unavailable (busy/locked)."""


class HandlerError(EmpireError):
    """Raised by job handlers for business-logic failures.

    The dispatcher routes these to :meth:`JobStore.fail`, consuming a retry.
    """


class JobStateError(EmpireError):
    """Raised when a caller requests a transition on a job that does not exist."""


@dataclass(frozen=True)
class LockTimeoutRecovered:
    """Informational record of a job reaped from a presumably crashed worker."""

    job_id: int
    kind: str
    locked_by: str
    locked_at: datetime
    timeout_seconds: int
    reaped_at: datetime

    def describe(self) -> str:
        overdue = (self.reaped_at - self.locked_at).total_seconds() - self.timeout_seconds
        return (
            f"Job #{self.job_id} ({self.kind}) reclaimed from {self.locked_by}; "
            f"lock expired {overdue:.0f}s ago"
        )


__all__ = [
    "EmpireError",
    "ConfigurationError",
    "TransientStoreError",
    "HandlerError",
    "JobStateError",
    "LockTimeoutRecovered",
]
